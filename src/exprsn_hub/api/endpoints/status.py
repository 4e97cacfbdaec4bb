"""Status app served on ``status.{base_domain}``."""

from __future__ import annotations

from collections import Counter
from typing import Any

from fastapi import APIRouter

from exprsn_hub.api.dependencies import HubDep, SessionUserDep
from exprsn_hub.hub import Hub

router = APIRouter(tags=["status"])


def status_summary(hub: Hub) -> dict[str, Any]:
    """Return every watched site's status plus a count per status value."""
    services = hub.poller.snapshot()
    counts = Counter(entry["status"] for entry in services.values())
    return {
        "baseDomain": hub.config.base_domain,
        "total": len(services),
        "counts": dict(counts),
        "services": services,
    }


@router.get("/")
def dashboard(hub: HubDep, user: SessionUserDep) -> dict[str, Any]:
    summary = status_summary(hub)
    summary["user"] = user.username
    return summary


@router.get("/api/status")
def api_status(hub: HubDep) -> dict[str, Any]:
    return status_summary(hub)
