"""Schemas for the site administration API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class SiteConfigUpdate(BaseModel):
    """Partial update of a site's configuration."""

    model_config = ConfigDict(populate_by_name=True)

    maintenance: bool | None = None
    custom_domains: list[str] | None = Field(None, alias="customDomains")
    health_check_path: str | None = Field(None, alias="healthCheckPath")
    proxy_target: str | None = Field(None, alias="proxyTarget")
    env: dict[str, str] | None = None
