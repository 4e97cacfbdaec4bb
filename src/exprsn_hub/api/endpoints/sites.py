"""Site administration API of the administrative app (admin role required)."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, status

from exprsn_hub.api.dependencies import AdminUserDep, HubDep, rate_limit
from exprsn_hub.core.errors import NotFound
from exprsn_hub.hosting.site import Site
from exprsn_hub.hub import Hub
from exprsn_hub.schemas.sites import SiteConfigUpdate
from exprsn_hub.services.rate_limit import ADMIN_API_POLICY, RELOAD_POLICY

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api",
    tags=["sites"],
    dependencies=[Depends(rate_limit(ADMIN_API_POLICY, "api:sites"))],
)


def site_summary(hub: Hub, site: Site, *, with_history: bool = False) -> dict[str, Any]:
    """Describe a site together with its latest health status."""
    data = site.to_dict()
    data["active"] = hub.sites.is_active(site.name)
    data["status"] = hub.poller.status(site.name).to_dict(with_history=with_history)
    return data


def _require_site(hub: Hub, name: str) -> Site:
    site = hub.sites.get(name)
    if site is None:
        raise NotFound(f"Site {name} not found")
    return site


@router.get("/sites")
def list_sites(hub: HubDep, _admin: AdminUserDep) -> list[dict[str, Any]]:
    return [site_summary(hub, site) for site in hub.sites.list()]


@router.get("/status")
def service_status(hub: HubDep, _admin: AdminUserDep) -> dict[str, dict[str, Any]]:
    return hub.poller.snapshot()


@router.get("/sites/{site}")
def get_site(site: str, hub: HubDep, _admin: AdminUserDep) -> dict[str, Any]:
    return site_summary(hub, _require_site(hub, site), with_history=True)


@router.post(
    "/reload/{site}",
    dependencies=[Depends(rate_limit(RELOAD_POLICY, "api:reload"))],
)
async def reload_site(site: str, hub: HubDep, admin: AdminUserDep) -> dict[str, Any]:
    """Rebuild a site's sub-application even if its inputs are unchanged.

    Raises:
        NotFound: If the site directory does not exist.
    """
    reloaded = await hub.sites.reload(site)
    logger.info("Site %s reloaded by %s", site, admin.username)
    return site_summary(hub, reloaded)


@router.patch("/sites/{site}/config")
async def update_site_config(
    site: str, payload: SiteConfigUpdate, hub: HubDep, admin: AdminUserDep
) -> dict[str, Any]:
    """Change maintenance mode, custom domains, health-check path, proxy target or env.

    Raises:
        Conflict: If a custom domain already belongs to another site.
        ValidationFailure: For malformed values.
    """
    changes = payload.model_dump(exclude_unset=True)
    updated = await hub.sites.update_config(site, changes)
    logger.info("Site %s configuration updated by %s: %s", site, admin.username, sorted(changes))
    return updated.to_dict()


@router.delete("/sites/{site}", status_code=status.HTTP_200_OK)
async def delete_site(site: str, hub: HubDep, admin: AdminUserDep) -> dict[str, Any]:
    if not await hub.sites.demolish(site):
        raise NotFound(f"Site {site} not found")
    logger.info("Site %s demolished by %s", site, admin.username)
    return {"site": site, "removed": True}
