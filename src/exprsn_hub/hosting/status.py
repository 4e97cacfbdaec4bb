"""Per-site health polling.

Every site gets a task that probes its health-check path on an interval and
records the outcome in a bounded, newest-first history. Each update is pushed
to the site's WebSocket namespace and published on the event bus before it is
written to the in-memory status.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from exprsn_hub.core.settings import Settings
from exprsn_hub.db.time import utcnow
from exprsn_hub.hosting.site import KIND_PROXY, Site
from exprsn_hub.services import events
from exprsn_hub.services.events import EventBus

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100

STATUS_UNKNOWN = "unknown"
STATUS_ACTIVE = "active"
STATUS_WARNING = "warning"
STATUS_ERROR = "error"
STATUS_MAINTENANCE = "maintenance"


@dataclass(frozen=True)
class StatusEntry:
    status: str
    timestamp: datetime
    message: str = ""
    response_time_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "responseTime": self.response_time_ms,
        }


@dataclass
class ServiceStatus:
    site: str
    status: str = STATUS_UNKNOWN
    last_checked: datetime | None = None
    history: deque[StatusEntry] = field(default_factory=lambda: deque(maxlen=HISTORY_LIMIT))

    def record(self, entry: StatusEntry) -> None:
        self.status = entry.status
        self.last_checked = entry.timestamp
        self.history.appendleft(entry)

    def to_dict(self, *, with_history: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "site": self.site,
            "status": self.status,
            "lastChecked": self.last_checked.isoformat() if self.last_checked else None,
        }
        if with_history:
            data["history"] = [entry.to_dict() for entry in self.history]
        return data


def classify(status_code: int) -> str:
    return STATUS_ACTIVE if 200 <= status_code < 300 else STATUS_WARNING


class StatusPoller:
    """Owns one polling task and one ``ServiceStatus`` per watched site."""

    def __init__(
        self,
        config: Settings,
        bus: EventBus,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.bus = bus
        self._transport = transport
        self._statuses: dict[str, ServiceStatus] = {}
        self._sites: dict[str, Site] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def status(self, site: str) -> ServiceStatus:
        return self._statuses.get(site) or ServiceStatus(site=site)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {name: status.to_dict() for name, status in self._statuses.items()}

    def is_watching(self, site: str) -> bool:
        task = self._tasks.get(site)
        return task is not None and not task.done()

    def watch(self, site: Site) -> None:
        """Start (or restart against a new ``site`` object) the polling task."""
        previous = self._tasks.pop(site.name, None)
        if previous is not None:
            previous.cancel()
        self._sites[site.name] = site
        self._statuses.setdefault(site.name, ServiceStatus(site=site.name))
        self._tasks[site.name] = asyncio.create_task(
            self._run(site.name), name=f"status-poller:{site.name}"
        )

    async def unwatch(self, name: str, *, message: str = "site removed") -> None:
        """Cancel polling and broadcast a final ``unknown`` status."""
        task = self._tasks.pop(name, None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        site = self._sites.get(name)
        if site is not None:
            await self.record(site, STATUS_UNKNOWN, message)
        self._sites.pop(name, None)
        self._statuses.pop(name, None)

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, name: str) -> None:
        interval = self.config.status_polling_seconds
        while True:
            site = self._sites.get(name)
            if site is None:
                return
            try:
                await self.check(site)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Status check for %s crashed", name)
            await asyncio.sleep(interval)

    async def check(self, site: Site) -> StatusEntry:
        """Probe ``site`` once and record the outcome."""
        if site.config.maintenance:
            return await self.record(site, STATUS_MAINTENANCE, "maintenance mode")

        started = time.perf_counter()
        try:
            status_code = await self.probe(site)
        except (httpx.HTTPError, OSError, TimeoutError) as exc:
            elapsed = (time.perf_counter() - started) * 1000
            return await self.record(site, STATUS_ERROR, f"{type(exc).__name__}: {exc}", elapsed)
        elapsed = (time.perf_counter() - started) * 1000
        return await self.record(site, classify(status_code), f"HTTP {status_code}", elapsed)

    async def probe(self, site: Site) -> int:
        """GET the health-check path; returns the HTTP status code."""
        path = site.config.health_check_path
        timeout = self.config.health_check_timeout
        if site.kind == KIND_PROXY and site.proxy_target:
            async with httpx.AsyncClient(
                base_url=site.proxy_target, timeout=timeout, transport=self._transport
            ) as client:
                response = await client.get(path)
            return response.status_code

        if site.app is None:
            raise OSError("site has no application")
        transport = httpx.ASGITransport(app=site.app)
        host = f"{site.name}.{self.config.base_domain}"
        async with httpx.AsyncClient(transport=transport, base_url=f"http://{host}") as client:
            response = await asyncio.wait_for(client.get(path), timeout=timeout)
        return response.status_code

    async def record(
        self,
        site: Site,
        status: str,
        message: str = "",
        response_time_ms: float | None = None,
    ) -> StatusEntry:
        entry = StatusEntry(
            status=status,
            timestamp=utcnow(),
            message=message,
            response_time_ms=round(response_time_ms, 2) if response_time_ms is not None else None,
        )
        payload = {"site": site.name, **entry.to_dict()}
        await site.sockets.broadcast("status-update", payload)
        await self.bus.publish(events.SERVICE_STATUS_UPDATE, payload)

        service = self._statuses.setdefault(site.name, ServiceStatus(site=site.name))
        previous = service.status
        service.record(entry)
        if previous != status:
            logger.info("Site %s status %s -> %s (%s)", site.name, previous, status, message)
        return entry
