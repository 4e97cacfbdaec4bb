"""Per-site sub-application factory.

Every site gets its own FastAPI app. The hub's own routes (``/status``, ``/ws``
and, for user sites, discovery, federation and social APIs) come first, then the
site's handler: a reverse proxy when ``server.py`` exists, the module in
``index.py`` when present, otherwise plain static files.
"""

from __future__ import annotations

import importlib.util
import logging
import sys
from pathlib import Path
from types import ModuleType
from typing import TYPE_CHECKING

from fastapi import APIRouter, FastAPI
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.staticfiles import StaticFiles

from exprsn_hub.api.endpoints import discovery, federation, site as site_endpoints, social
from exprsn_hub.core.errors import Internal, install_error_handlers
from exprsn_hub.hosting.middleware import (
    MaintenanceMiddleware,
    SecurityHeadersMiddleware,
    SiteRateLimitMiddleware,
)
from exprsn_hub.hosting.proxy import SiteProxy
from exprsn_hub.hosting.site import INDEX_MODULE, KIND_LOCAL, KIND_PROXY, Site
from exprsn_hub.routing.registry import RegistryMiddleware

if TYPE_CHECKING:
    from exprsn_hub.hub import Hub

logger = logging.getLogger(__name__)

PUBLIC_DIR = "public"
SITE_MODULE_PREFIX = "exprsn_sites"


def load_site_module(site: Site) -> ModuleType:
    """Execute ``index.py`` afresh under ``exprsn_sites.{name}``.

    Raises:
        Internal: If the module cannot be imported.
    """
    path = site.directory / INDEX_MODULE
    module_name = f"{SITE_MODULE_PREFIX}.{site.name}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise Internal(f"Cannot load {path}", details={"site": site.name})
    module = importlib.util.module_from_spec(spec)
    previous = sys.modules.get(module_name)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        if previous is not None:
            sys.modules[module_name] = previous
        else:
            sys.modules.pop(module_name, None)
        logger.error("Loading %s failed: %s", path, exc)
        raise Internal(f"Cannot load {INDEX_MODULE} of {site.name}: {exc}") from exc
    return module


def _mount_local(app: FastAPI, site: Site) -> None:
    module = load_site_module(site)
    router = getattr(module, "router", None)
    handler = getattr(module, "app", None)
    if isinstance(router, APIRouter):
        app.include_router(router)
        public = site.directory / PUBLIC_DIR
        if public.is_dir():
            app.mount("/", StaticFiles(directory=public, html=True), name="public")
    elif handler is not None:
        app.mount("/", handler, name="handler")
    else:
        raise Internal(
            f"{INDEX_MODULE} of {site.name} defines neither router nor app",
            details={"site": site.name},
        )
    logger.info("Loaded local handler from %s", site.directory / INDEX_MODULE)


def _mount_handler(hub: Hub, app: FastAPI, site: Site) -> None:
    if site.kind == KIND_PROXY and site.proxy_target:
        site.proxy = SiteProxy(
            site.name,
            site.proxy_target,
            env=site.config.env,
            transport=hub.proxy_transport,
        )
        app.mount("/", site.proxy, name="proxy")
        logger.info("Proxying %s to %s", site.name, site.proxy_target)
        return
    app.include_router(site_endpoints.health_router)
    if site.kind == KIND_LOCAL:
        _mount_local(app, site)
        return
    app.mount("/", StaticFiles(directory=Path(site.directory), html=True), name="static")


def build_site_app(hub: Hub, site: Site) -> FastAPI:
    """Build the sub-application the dispatcher routes ``site`` traffic to.

    Raises:
        Internal: If a local handler module fails to load.
    """
    app = FastAPI(
        title=f"{site.name}.{hub.config.base_domain}",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    install_error_handlers(app, production=hub.config.is_production)
    app.state.hub = hub
    app.state.site = site

    app.include_router(site_endpoints.router)
    if site.is_user_site:
        app.include_router(discovery.router)
        app.include_router(federation.router)
        app.include_router(social.public_router)
        app.include_router(social.router)
    _mount_handler(hub, app, site)

    # Added innermost first.
    app.add_middleware(RegistryMiddleware, registry=hub.registry)
    app.add_middleware(
        SiteRateLimitMiddleware, limiter=hub.limiter, endpoint=f"site:{site.name}"
    )
    app.add_middleware(
        MaintenanceMiddleware,
        site=site.name,
        enabled=lambda: site.config.maintenance,
        renderer=hub.renderer,
    )
    app.add_middleware(GZipMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, hsts=hub.config.is_production)
    return app
