import uuid
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime

from essence.db.base import Base, utcnow


class TrainingAsset(Base):
    __tablename__ = 'training_assets'

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=lambda: uuid.uuid4().hex)

    job_id: Mapped[str] = mapped_column(ForeignKey('jobs.id', ondelete='CASCADE'), index=True)

    original_filename: Mapped[str] = mapped_column(String)
    storage_ref: Mapped[str] = mapped_column(Text)
    content_type: Mapped[str | None] = mapped_column(String, nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    display_order: Mapped[int] = mapped_column(Integer, default=0)

    registration_asset_id: Mapped[str | None] = mapped_column(String, nullable=True)
    registration_status: Mapped[str] = mapped_column(String(16), default='pending')    # pending | registered | failed
    registration_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    registration_tx_ref: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    job: Mapped['Job'] = relationship(back_populates='assets')
