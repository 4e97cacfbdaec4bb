"""Site lifecycle: materialize, reload and demolish per-site sub-applications."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from starlette.concurrency import run_in_threadpool
from starlette.types import ASGIApp

from exprsn_hub.core.errors import Conflict, HubError, NotFound
from exprsn_hub.core.settings import Settings
from exprsn_hub.db.session import SessionLocal
from exprsn_hub.hosting.dispatcher import SiteTable
from exprsn_hub.hosting.proxy import proxy_target_for
from exprsn_hub.hosting.site import (
    KIND_PROXY,
    Site,
    site_fingerprint,
    site_kind,
    validate_site_name,
)
from exprsn_hub.hosting.site_config import SiteConfig, SiteConfigStore
from exprsn_hub.hosting.status import StatusPoller
from exprsn_hub.services import events
from exprsn_hub.services.events import EventBus
from exprsn_hub.services.users import get_user_by_subdomain

logger = logging.getLogger(__name__)

AppBuilder = Callable[[Site], ASGIApp]


class SiteManager:
    """Owns the active ``Site`` objects and keeps the dispatcher table in sync."""

    def __init__(
        self,
        config: Settings,
        table: SiteTable,
        store: SiteConfigStore,
        poller: StatusPoller,
        bus: EventBus,
        app_builder: AppBuilder | None = None,
    ) -> None:
        self.config = config
        self.table = table
        self.store = store
        self.poller = poller
        self.bus = bus
        self.app_builder = app_builder
        self._sites: dict[str, Site] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._retiring: set[asyncio.Task[None]] = set()

    @property
    def sites_dir(self) -> Path:
        return Path(self.config.sites_dir)

    def get(self, name: str) -> Site | None:
        return self._sites.get(name)

    def is_active(self, name: str) -> bool:
        return name in self.table.state.sites

    def list(self) -> list[Site]:
        return [self._sites[name] for name in sorted(self._sites)]

    async def discover(self) -> int:
        """Materialize every site directory; failures are logged per site."""
        if not self.sites_dir.is_dir():
            return 0
        count = 0
        for directory in sorted(p for p in self.sites_dir.iterdir() if p.is_dir()):
            if directory.name.startswith("."):
                continue
            try:
                await self.materialize(directory.name)
            except HubError as exc:
                logger.error("Cannot materialize site %s: %s", directory.name, exc)
                continue
            count += 1
        return count

    async def materialize(self, name: str, *, force: bool = False) -> Site:
        """Build the site's sub-application and publish it to the dispatcher.

        Unchanged inputs leave an active site untouched unless ``force`` is set.

        Raises:
            ValidationFailure: For invalid or reserved names.
            NotFound: If ``sites/{name}`` does not exist.
            Conflict: If a custom domain belongs to another site.
        """
        validate_site_name(name)
        async with self._locks[name]:
            directory = self.sites_dir / name
            if not directory.is_dir():
                raise NotFound(f"Site directory {name} does not exist")

            site_config, owner = await run_in_threadpool(self._load_inputs, name)
            owner_id = owner[0] if owner else None
            fingerprint = site_fingerprint(directory, site_config, owner_id)
            current = self._sites.get(name)
            if (
                current is not None
                and not force
                and current.fingerprint == fingerprint
                and self.is_active(name)
            ):
                return current

            self.table.check_domains(name, site_config.custom_domains)
            site = self._build(name, directory, site_config, owner, fingerprint, current)
            previous_app = await self.table.publish(name, site.app, site_config.custom_domains)
            self._sites[name] = site
            self.poller.watch(site)

        if previous_app is not None and current is not None:
            self._schedule_retire(current)
            logger.info("Reloaded site %s (%s)", name, site.kind)
            await self.bus.publish(events.SITE_RELOADED, {"site": name, "kind": site.kind})
        else:
            logger.info("Materialized site %s (%s)", name, site.kind)
            await self.bus.publish(events.SITE_ADDED, site.to_dict())
        return site

    async def reload(self, name: str) -> Site:
        return await self.materialize(name, force=True)

    async def demolish(self, name: str) -> bool:
        """Stop routing to ``name``; in-flight requests finish on the old app."""
        async with self._locks[name]:
            site = self._sites.pop(name, None)
            removed = await self.table.retire(name)
            await self.poller.unwatch(name)
        if site is None and removed is None:
            return False
        if site is not None:
            await site.sockets.close_all(reason="site removed")
            self._schedule_retire(site)
        logger.info("Demolished site %s", name)
        await self.bus.publish(events.SITE_REMOVED, {"site": name})
        return True

    async def update_config(self, name: str, changes: Mapping[str, Any]) -> SiteConfig:
        """Apply admin changes to a site's configuration and rebuild it if active.

        Raises:
            ValidationFailure: For malformed values.
            Conflict: If a custom domain is claimed by another site.
        """
        validate_site_name(name)
        async with self._locks[name]:
            current = await run_in_threadpool(self.store.load, name)
            updated = current.merged(changes)
            for domain in updated.custom_domains:
                owner = await run_in_threadpool(self.store.domain_owner, domain)
                if owner is not None and owner != name:
                    raise Conflict(
                        f"Custom domain {domain} is already used by {owner}",
                        details={"domain": domain, "site": owner},
                    )
            self.table.check_domains(name, updated.custom_domains)
            await run_in_threadpool(self.store.save, updated)
        if name in self._sites:
            await self.materialize(name)
        return updated

    async def shutdown(self) -> None:
        for site in list(self._sites.values()):
            await site.sockets.close_all(reason="server shutting down")
            await self._close(site)
        self._sites.clear()
        for task in list(self._retiring):
            task.cancel()
        await asyncio.gather(*self._retiring, return_exceptions=True)
        self._retiring.clear()

    def _load_inputs(self, name: str) -> tuple[SiteConfig, tuple[int, str] | None]:
        site_config = self.store.load(name)
        with SessionLocal() as db:
            user = get_user_by_subdomain(db, name)
            owner = (user.id, user.username) if user is not None else None
        return site_config, owner

    def _build(
        self,
        name: str,
        directory: Path,
        site_config: SiteConfig,
        owner: tuple[int, str] | None,
        fingerprint: tuple,
        current: Site | None,
    ) -> Site:
        kind = site_kind(directory, site_config)
        site = Site(
            name=name,
            directory=directory,
            config=site_config,
            kind=kind,
            owner_id=owner[0] if owner else None,
            owner_username=owner[1] if owner else None,
            fingerprint=fingerprint,
        )
        if current is not None:
            site.sockets = current.sockets
        if kind == KIND_PROXY:
            site.proxy_target = proxy_target_for(self.config, name, site_config.proxy_target)
        if self.app_builder is None:
            raise RuntimeError("SiteManager has no application builder")
        site.app = self.app_builder(site)
        return site

    def _schedule_retire(self, site: Site) -> None:
        task = asyncio.create_task(self._retire_later(site))
        self._retiring.add(task)
        task.add_done_callback(self._retiring.discard)

    async def _retire_later(self, site: Site) -> None:
        await asyncio.sleep(self.config.site_drain_seconds)
        await self._close(site)

    @staticmethod
    async def _close(site: Site) -> None:
        if site.proxy is not None:
            await site.proxy.close()
