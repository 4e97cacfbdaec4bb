"""SQLAlchemy model for the outbound federation delivery queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Index, Integer, SmallInteger, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from exprsn_hub.db.session import Base
from exprsn_hub.db.time import UTCDateTime, utcnow

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

DEFAULT_PRIORITY = 5


class FederationQueueItem(Base):
    """Activity awaiting delivery to a remote inbox; kept after completion for audit."""

    __tablename__ = "federation_queue"
    __table_args__ = (Index("ix_federation_queue_pending", "status", "priority", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor: Mapped[str] = mapped_column(Text, nullable=False)
    object_payload: Mapped[str] = mapped_column("object", Text, nullable=False)  # JSON text
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    target: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=DEFAULT_PRIORITY)
    attempts: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    last_attempt: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_PENDING)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
