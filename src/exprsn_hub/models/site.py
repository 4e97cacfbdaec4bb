"""SQLAlchemy model for the durable shadow of per-site configuration."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from exprsn_hub.db.session import Base
from exprsn_hub.db.time import UTCDateTime, utcnow

DEFAULT_HEALTH_CHECK_PATH = "/api/health"


class SiteConfigRecord(Base):
    """Persisted ``SiteConfig``; mirrored to ``CONFIG_DIR/sites.json``."""

    __tablename__ = "site_configs"

    subdomain: Mapped[str] = mapped_column(String(63), primary_key=True)
    custom_domains: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    maintenance: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    health_check_path: Mapped[str] = mapped_column(
        Text, nullable=False, default=DEFAULT_HEALTH_CHECK_PATH
    )
    proxy_target: Mapped[str | None] = mapped_column(Text, nullable=True)
    env: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
