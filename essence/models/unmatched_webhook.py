from sqlalchemy import Integer, String, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime

from essence.db.base import Base, utcnow


class UnmatchedWebhook(Base):
    """Webhook whose external id matched no job when it arrived."""
    __tablename__ = 'unmatched_webhooks'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    external_job_id: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    payload: Mapped[dict] = mapped_column(JSON)

    received_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
