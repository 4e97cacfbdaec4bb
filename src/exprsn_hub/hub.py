"""The hub: one object owning every long-lived service of the host process."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import httpx
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from exprsn_hub.core.settings import Settings, settings
from exprsn_hub.db.session import SessionLocal, create_tables, dispose_engine
from exprsn_hub.hosting.dispatcher import SiteTable
from exprsn_hub.hosting.site_config import SiteConfigStore
from exprsn_hub.hosting.sites import SiteManager
from exprsn_hub.hosting.status import StatusPoller
from exprsn_hub.hosting.watcher import FileWatcher
from exprsn_hub.hosting.websocket import ConnectionManager
from exprsn_hub.routing.registry import RouteRegistry
from exprsn_hub.services import events
from exprsn_hub.services.bootstrap import bootstrap
from exprsn_hub.services.cache import TTLCache
from exprsn_hub.services.events import EventBus, EventHandler
from exprsn_hub.services.federation import DeliveryClient, FederationQueue, FederationWorker
from exprsn_hub.services.identity import Authenticator
from exprsn_hub.services.jwks import KeyStore
from exprsn_hub.services.rate_limit import PersistentRateLimiter, RateLimiter
from exprsn_hub.services.sessions import SessionStore
from exprsn_hub.services.social import SocialService
from exprsn_hub.services.templates import HTMLRenderer, TemplateRenderer
from exprsn_hub.services.tokens import TokenService

logger = logging.getLogger(__name__)

ADMIN_EVENT_TOPICS = (
    events.SERVICE_STATUS_UPDATE,
    events.SITE_ADDED,
    events.SITE_REMOVED,
    events.SITE_RELOADED,
    events.ROUTES_CHANGED,
)


class Hub:
    """Container wiring caches, token service, queues, registry and sites together.

    Args:
        config: Settings to run with.
        delivery_transport: Optional httpx transport for federation deliveries.
        status_transport: Optional httpx transport for proxied-site health probes.
        proxy_transport: Optional httpx transport for reverse-proxied site traffic.
        renderer: Template renderer for HTML pages.
    """

    def __init__(
        self,
        config: Settings = settings,
        *,
        delivery_transport: httpx.AsyncBaseTransport | None = None,
        status_transport: httpx.AsyncBaseTransport | None = None,
        proxy_transport: httpx.AsyncBaseTransport | None = None,
        renderer: TemplateRenderer | None = None,
    ) -> None:
        self.config = config
        self.proxy_transport = proxy_transport
        self.cache = TTLCache(config.cache_ttl, redis_url=config.redis_url)
        self.session_cache = TTLCache(
            config.session_ttl, redis_url=config.redis_url, namespace="exprsn-session"
        )
        self.sessions = SessionStore(config, self.session_cache)
        self.keys = KeyStore(config.jwks_path)
        self.tokens = TokenService(config, self.cache, self.keys)
        self.limiter = RateLimiter(PersistentRateLimiter(SessionLocal))
        self.events = EventBus()
        self.queue = FederationQueue(config)
        self.worker = FederationWorker(
            config,
            DeliveryClient(config.federation_delivery_timeout, transport=delivery_transport),
        )
        self.social = SocialService(config, self.queue, self.events)
        self.renderer: TemplateRenderer = renderer or HTMLRenderer()
        self.authenticator = Authenticator(config, self.tokens, self.sessions)
        self.registry = RouteRegistry(self.authenticator, self.limiter)
        self.table = SiteTable()
        self.site_configs = SiteConfigStore(config)
        self.poller = StatusPoller(config, self.events, transport=status_transport)
        self.sites = SiteManager(config, self.table, self.site_configs, self.poller, self.events)
        self.watcher = FileWatcher(config, self.registry, self.sites, self.events)
        self.admin_sockets = ConnectionManager("admin")
        self.web_client_id: str | None = None
        self.started = False
        self._unsubscribe: list[Callable[[], None]] = []
        self._purge_task: asyncio.Task[None] | None = None

    async def start(self, *, watch: bool = True, deliver: bool = True) -> None:
        """Bootstrap storage and start the background subsystems.

        Raises:
            KeyStoreError: If the signing key cannot be loaded or created.
            ValueError: If the configuration is unusable.
        """
        self.config.validate_for_startup()
        await run_in_threadpool(create_tables)
        self.web_client_id = await run_in_threadpool(self._bootstrap)
        self.keys.load_or_create()

        loaded = self.registry.load_directory(self.config.routes_dir)
        logger.info("Loaded %d route manifests", loaded)
        for topic in ADMIN_EVENT_TOPICS:
            self._unsubscribe.append(self.events.subscribe(topic, self._admin_forwarder(topic)))
        self._unsubscribe.append(
            self.events.subscribe(events.NOTIFICATION, self._forward_notification)
        )

        count = await self.sites.discover()
        logger.info("Materialized %d sites", count)
        if watch:
            await self.watcher.start()
        if deliver and self.config.federation_enabled:
            await self.worker.start()
        self._purge_task = asyncio.create_task(self._purge_tokens_periodically())
        self.started = True
        logger.info("Exprsn hub started for %s", self.config.base_domain)

    def _bootstrap(self) -> str:
        with SessionLocal() as db:
            result = bootstrap(db, self.config, self.tokens)
            return result.web_client.id

    async def stop(self) -> None:
        """Stop watchers, pollers and workers, then release the database."""
        if self._purge_task is not None:
            self._purge_task.cancel()
            await asyncio.gather(self._purge_task, return_exceptions=True)
            self._purge_task = None
        await self.watcher.stop()
        await self.poller.stop()
        await self.sites.shutdown()
        await self.worker.close()
        await self.admin_sockets.close_all(reason="server shutting down")
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()
        dispose_engine()
        self.started = False
        logger.info("Exprsn hub stopped")

    def purge_expired_tokens(self) -> int:
        with SessionLocal() as db:
            return self.tokens.purge_expired(db)

    async def _purge_tokens_periodically(self) -> None:
        interval = max(0.05, float(self.config.token_purge_interval))
        while True:
            await asyncio.sleep(interval)
            try:
                removed = await run_in_threadpool(self.purge_expired_tokens)
            except SQLAlchemyError as exc:
                logger.error("Token purge failed: %s", exc, exc_info=True)
                continue
            if removed:
                logger.info("Purged %d expired codes and tokens", removed)

    async def _forward_notification(self, payload: dict[str, Any]) -> None:
        user_id = payload.get("user_id")
        if not isinstance(user_id, int):
            return
        for site in self.sites.list():
            await site.sockets.send_to_user(user_id, events.NOTIFICATION, payload)

    def _admin_forwarder(self, topic: str) -> EventHandler:
        async def forward(payload: dict[str, Any]) -> None:
            await self.admin_sockets.broadcast(topic, payload)

        return forward
