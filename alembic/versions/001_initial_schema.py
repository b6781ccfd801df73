"""Jobs, training assets, outbox and parked webhooks

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("external_job_id", sa.String, nullable=True, unique=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("input_parameters", sa.JSON, nullable=False),
        sa.Column("model_job_id", sa.String(32), nullable=True),
        sa.Column("output_artifact_ref", sa.Text),
        sa.Column("provider_output_ref", sa.Text),
        sa.Column("artifact_storage_path", sa.Text),
        sa.Column("error_message", sa.Text),
        sa.Column("logs", sa.Text),
        sa.Column("parent_references", sa.JSON, nullable=False),
        sa.Column("registration_asset_id", sa.String),
        sa.Column("registration_status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("registration_failure_reason", sa.Text),
        sa.Column("registration_tx_ref", sa.String),
        sa.Column("registration_failed_at", sa.DateTime),
        sa.Column("is_hidden", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("hidden_at", sa.DateTime),
        sa.Column("predict_time", sa.Float),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime),
        sa.Column("completed_at", sa.DateTime),
        sa.Column("finalized_at", sa.DateTime),
    )
    op.create_index("ix_jobs_kind", "jobs", ["kind"])
    op.create_index("ix_jobs_status", "jobs", ["status"])
    op.create_index("ix_jobs_model_job_id", "jobs", ["model_job_id"])
    op.create_index("idx_jobs_registration", "jobs", ["status", "registration_status"])

    op.create_table(
        "training_assets",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("job_id", sa.String(32), sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("original_filename", sa.String, nullable=False),
        sa.Column("storage_ref", sa.Text, nullable=False),
        sa.Column("content_type", sa.String),
        sa.Column("file_size", sa.Integer),
        sa.Column("display_order", sa.Integer, nullable=False, server_default="0"),
        sa.Column("registration_asset_id", sa.String),
        sa.Column("registration_status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("registration_failure_reason", sa.Text),
        sa.Column("registration_tx_ref", sa.String),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_training_assets_job_id", "training_assets", ["job_id"])

    op.create_table(
        "outbox_tasks",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("job_id", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("available_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("last_error", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_outbox_tasks_job_id", "outbox_tasks", ["job_id"])
    op.create_index("idx_outbox_due", "outbox_tasks", ["status", "available_at"])

    op.create_table(
        "unmatched_webhooks",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("external_job_id", sa.String, nullable=False),
        sa.Column("status", sa.String),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("received_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("resolved_at", sa.DateTime),
    )
    op.create_index("ix_unmatched_webhooks_external_job_id", "unmatched_webhooks", ["external_job_id"])


def downgrade() -> None:
    op.drop_table("unmatched_webhooks")
    op.drop_table("outbox_tasks")
    op.drop_table("training_assets")
    op.drop_table("jobs")
