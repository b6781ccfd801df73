from essence.models.job import Job
from essence.models.training_asset import TrainingAsset
from essence.models.outbox_task import OutboxTask
from essence.models.unmatched_webhook import UnmatchedWebhook

__all__ = [
    'Job',
    'TrainingAsset',
    'OutboxTask',
    'UnmatchedWebhook',
]
