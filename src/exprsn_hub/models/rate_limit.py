"""SQLAlchemy model for persistent fixed-window rate-limit counters."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from exprsn_hub.db.session import Base
from exprsn_hub.db.time import UTCDateTime


class RateLimitCounter(Base):
    """Request count for one (principal, endpoint) window.

    Rows whose ``reset_at`` has passed are treated as absent and swept lazily.
    """

    __tablename__ = "rate_limits"
    __table_args__ = (
        UniqueConstraint("principal", "endpoint", name="uq_rate_limit_principal_endpoint"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    principal: Mapped[str] = mapped_column(String(255), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reset_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
