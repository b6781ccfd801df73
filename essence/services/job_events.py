import asyncio
from loguru import logger
from typing import Any, Dict, Set

from essence.services.job_state import JobStatus, is_terminal


class JobEventHub:
    """
    In-process change notifications for jobs.

    Every committed job mutation publishes a snapshot; WebSocket clients
    subscribed to that job id receive it. Nothing here is durable, clients
    fall back to polling GET /jobs/{id}.
    """

    def __init__(self, queue_size: int = 100):
        self._queue_size = queue_size
        # job_id -> subscriber queues
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, job_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        async with self._lock:
            self._subscribers.setdefault(job_id, set()).add(queue)
        return queue

    async def unsubscribe(self, job_id: str, queue: asyncio.Queue) -> None:
        async with self._lock:
            queues = self._subscribers.get(job_id)
            if not queues:
                return
            queues.discard(queue)
            if not queues:
                self._subscribers.pop(job_id, None)

    async def publish(self, job_id: str, snapshot: Dict[str, Any]) -> None:
        async with self._lock:
            queues = list(self._subscribers.get(job_id, ()))

        for queue in queues:
            try:
                queue.put_nowait(snapshot)
            except asyncio.QueueFull:
                # slow consumer, drop the oldest snapshot
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                queue.put_nowait(snapshot)
                logger.debug(f'[events] dropped stale snapshot for job={job_id}')


def job_snapshot(job) -> Dict[str, Any]:
    return {
        'id': job.id,
        'kind': job.kind,
        'status': job.status,
        'external_job_id': job.external_job_id,
        'output_artifact_ref': job.output_artifact_ref,
        'error_message': job.error_message,
        'registration_status': job.registration_status,
        'registration_asset_id': job.registration_asset_id,
        'finalized_at': job.finalized_at.isoformat() if job.finalized_at else None,
        'updated_at': job.updated_at.isoformat() if job.updated_at else None,
    }


async def publish_job(events: JobEventHub | None, job) -> None:
    if events is None:
        return
    await events.publish(job.id, job_snapshot(job))


def is_settled(snapshot: Dict[str, Any]) -> bool:
    """
    No further changes are expected: terminal, and for succeeded jobs the
    finalize_job task has re-hosted the artifact and settled registration.
    """
    if not is_terminal(snapshot['status']):
        return False
    if snapshot['status'] == JobStatus.SUCCEEDED.value:
        return snapshot['finalized_at'] is not None
    return True
