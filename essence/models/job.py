import uuid
from sqlalchemy import String, Text, Boolean, Float, DateTime, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime

from essence.db.base import Base, utcnow


class Job(Base):
    __tablename__ = 'jobs'

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    kind: Mapped[str] = mapped_column(String(16), index=True)     # training | generation

    # provider prediction id, unique once set
    external_job_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)

    status: Mapped[str] = mapped_column(String(32), default='pending', index=True)

    input_parameters: Mapped[dict] = mapped_column(JSON, default=dict)
    model_job_id: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)

    output_artifact_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_output_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    artifact_storage_path: Mapped[str | None] = mapped_column(Text, nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    logs: Mapped[str | None] = mapped_column(Text, nullable=True)

    parent_references: Mapped[list] = mapped_column(JSON, default=list)

    registration_asset_id: Mapped[str | None] = mapped_column(String, nullable=True)
    registration_status: Mapped[str] = mapped_column(String(16), default='pending')    # pending | registered | failed
    registration_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    registration_tx_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    registration_failed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    is_hidden: Mapped[bool] = mapped_column(Boolean, default=False)
    hidden_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    predict_time: Mapped[float | None] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    # set once finalize_job has settled re-hosting and registration
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    assets: Mapped[list['TrainingAsset']] = relationship(
        back_populates='job',
        order_by='TrainingAsset.display_order',
        cascade='all, delete-orphan',
        lazy='selectin',
    )

    __table_args__ = (
        Index('idx_jobs_registration', 'status', 'registration_status'),
    )
