"""Filesystem watcher driving the route registry and the site manager.

``ROUTES_DIR`` holds route manifests (``*.json``); ``SITES_DIR`` holds one
directory per site. Events are debounced by watchfiles, so an editor writing a
file twice produces one reconcile pass.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable
from pathlib import Path

from watchfiles import Change, awatch

from exprsn_hub.core.errors import HubError
from exprsn_hub.core.settings import Settings
from exprsn_hub.hosting.site import INDEX_MODULE, SERVER_MODULE, SITE_NAME_RE
from exprsn_hub.hosting.sites import SiteManager
from exprsn_hub.routing.registry import RouteRegistry
from exprsn_hub.services import events
from exprsn_hub.services.events import EventBus
from exprsn_hub.services.registration import RESERVED_SITES

logger = logging.getLogger(__name__)

RELOAD_TRIGGERS = frozenset({SERVER_MODULE, INDEX_MODULE})


class FileWatcher:
    """Background task translating file events into registry and site operations."""

    def __init__(
        self,
        config: Settings,
        registry: RouteRegistry,
        sites: SiteManager,
        bus: EventBus,
    ) -> None:
        self.config = config
        self.registry = registry
        self.sites = sites
        self.bus = bus
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def routes_dir(self) -> Path:
        return Path(self.config.routes_dir).resolve()

    @property
    def sites_dir(self) -> Path:
        return Path(self.config.sites_dir).resolve()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self.routes_dir.mkdir(parents=True, exist_ok=True)
        self.sites_dir.mkdir(parents=True, exist_ok=True)
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="file-watcher")
        logger.info("Watching %s and %s", self.routes_dir, self.sites_dir)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("File watcher stopped")

    async def _run(self) -> None:
        async for changes in awatch(
            self.routes_dir,
            self.sites_dir,
            debounce=self.config.watch_debounce_ms,
            stop_event=self._stopping,
        ):
            try:
                await self.handle_changes(changes)
            except Exception:
                logger.exception("Failed to apply file changes")

    async def handle_changes(self, changes: Iterable[tuple[Change, str]]) -> None:
        """Group raw events per route file and per site, then reconcile each once."""
        route_files: set[Path] = set()
        site_files: defaultdict[str, set[str]] = defaultdict(set)
        routes_dir, sites_dir = self.routes_dir, self.sites_dir
        for _change, raw_path in changes:
            path = Path(raw_path).resolve()
            if path.is_relative_to(routes_dir):
                if path.suffix == ".json" and path.parent == routes_dir:
                    route_files.add(path)
            elif path.is_relative_to(sites_dir) and path != sites_dir:
                parts = path.relative_to(sites_dir).parts
                site_files[parts[0]].add("/".join(parts[1:]))

        for path in sorted(route_files):
            await self.reconcile_route(path)
        for name in sorted(site_files):
            await self.reconcile_site(name, site_files[name])

    async def reconcile_route(self, path: Path) -> None:
        if path.exists():
            descriptor = self.registry.load_file(path)
            if descriptor is None:
                return
            payload = {"action": "loaded", **descriptor.to_dict()}
        else:
            removed = self.registry.unregister_file(path)
            if removed is None:
                return
            payload = {"action": "removed", "path": removed, "filePath": str(path)}
        await self.bus.publish(events.ROUTES_CHANGED, payload)

    async def reconcile_site(self, name: str, changed: Iterable[str] = ()) -> None:
        """Bring site ``name`` in line with its directory.

        A new directory materializes the site, a removed one demolishes it, and a
        change to ``server.py`` or ``index.py`` reloads it.
        """
        if name.startswith(".") or name in RESERVED_SITES or not SITE_NAME_RE.match(name):
            logger.debug("Ignoring sites entry %s", name)
            return
        directory = self.sites_dir / name
        try:
            if not directory.is_dir():
                if self.sites.get(name) is not None or self.sites.is_active(name):
                    await self.sites.demolish(name)
                return
            if not self.sites.is_active(name):
                await self.sites.materialize(name)
            elif RELOAD_TRIGGERS.intersection(changed):
                await self.sites.reload(name)
        except HubError as exc:
            logger.error("Cannot reconcile site %s: %s", name, exc.message)
