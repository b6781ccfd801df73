from sqlalchemy import String, Text, Integer, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime

from essence.db.base import Base, utcnow


class OutboxTask(Base):
    __tablename__ = 'outbox_tasks'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    kind: Mapped[str] = mapped_column(String(32))        # submit_job | finalize_job
    job_id: Mapped[str] = mapped_column(String(32), index=True)

    status: Mapped[str] = mapped_column(String(16), default='pending')     # pending | running | done | failed
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    available_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_outbox_due', 'status', 'available_at'),
    )
