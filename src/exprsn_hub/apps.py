"""Application factories for the administrative app, reserved subdomains and the dispatcher."""

from __future__ import annotations

import functools

import httpx
from fastapi import FastAPI
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.staticfiles import StaticFiles

from exprsn_hub import __version__
from exprsn_hub.api.endpoints import (
    admin,
    auth,
    discovery,
    oauth,
    profile,
    registration,
    sites,
    status,
    webapp,
)
from exprsn_hub.core.errors import install_error_handlers
from exprsn_hub.hosting.dispatcher import Dispatcher
from exprsn_hub.hosting.middleware import SecurityHeadersMiddleware
from exprsn_hub.hosting.site_app import build_site_app
from exprsn_hub.hub import Hub
from exprsn_hub.routing.registry import RegistryMiddleware


def _base_app(hub: Hub, title: str, *, docs: bool = False) -> FastAPI:
    app = FastAPI(
        title=title,
        version=__version__,
        docs_url="/docs" if docs else None,
        redoc_url=None,
        openapi_url="/openapi.json" if docs else None,
    )
    install_error_handlers(app, production=hub.config.is_production)
    app.state.hub = hub
    return app


def _harden(hub: Hub, app: FastAPI) -> FastAPI:
    app.add_middleware(GZipMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, hsts=hub.config.is_production)
    return app


def create_admin_app(hub: Hub) -> FastAPI:
    """Fallback application for the base domain and unknown hosts.

    Registered manifest routes are served here ahead of the built-in routers.
    """
    app = _base_app(hub, "Exprsn Site Manager", docs=not hub.config.is_production)
    app.include_router(admin.router)
    app.include_router(auth.router)
    app.include_router(sites.router)
    app.include_router(profile.router)
    app.include_router(discovery.router)
    app.mount(
        "/media",
        StaticFiles(directory=hub.config.media_dir, check_dir=False),
        name="media",
    )
    app.add_middleware(RegistryMiddleware, registry=hub.registry)
    return _harden(hub, app)


def create_auth_app(hub: Hub) -> FastAPI:
    """OAuth 2.0 / OpenID Connect server on ``auth.{base_domain}``."""
    app = _base_app(hub, "Exprsn OAuth Server")
    app.include_router(oauth.router)
    return _harden(hub, app)


def create_register_app(hub: Hub) -> FastAPI:
    app = _base_app(hub, "Exprsn Registration")
    app.include_router(registration.router)
    return _harden(hub, app)


def create_status_app(hub: Hub) -> FastAPI:
    app = _base_app(hub, "Exprsn Status")
    app.include_router(status.router)
    return _harden(hub, app)


def create_webapp_app(
    hub: Hub, *, oauth_transport: httpx.AsyncBaseTransport | None = None
) -> FastAPI:
    """OAuth client app on ``app.{base_domain}``.

    Args:
        hub: Shared hub.
        oauth_transport: Transport for the code exchange with the token endpoint;
            ``None`` uses the network.
    """
    app = _base_app(hub, "Exprsn Web App")
    app.state.oauth_transport = oauth_transport
    app.include_router(webapp.router)
    return _harden(hub, app)


def create_dispatcher(
    hub: Hub,
    *,
    oauth_transport: httpx.AsyncBaseTransport | None = None,
    watch: bool = True,
    deliver: bool = True,
) -> Dispatcher:
    """Wire every sub-application behind the Host-header dispatcher.

    The dispatcher's lifespan starts and stops ``hub``.

    Args:
        hub: Hub owning the shared services.
        oauth_transport: Passed to the web app for its token exchange.
        watch: Start the filesystem watcher on startup.
        deliver: Start the federation delivery worker on startup.
    """
    hub.sites.app_builder = functools.partial(build_site_app, hub)
    reserved = {
        "auth": create_auth_app(hub),
        "register": create_register_app(hub),
        "status": create_status_app(hub),
        "app": create_webapp_app(hub, oauth_transport=oauth_transport),
    }
    return Dispatcher(
        hub.config.base_domain,
        hub.table,
        create_admin_app(hub),
        reserved,
        on_startup=functools.partial(hub.start, watch=watch, deliver=deliver),
        on_shutdown=hub.stop,
    )
