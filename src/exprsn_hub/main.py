"""Process entry point: build the dispatcher and run it under uvicorn.

``uvicorn --factory exprsn_hub.main:create_app`` serves plain HTTP only;
``exprsn-hub serve`` also listens on ``SSL_PORT`` when a certificate pair exists.
"""

from __future__ import annotations

import asyncio
import logging

import uvicorn

from exprsn_hub.apps import create_dispatcher
from exprsn_hub.core.logging import configure_logging
from exprsn_hub.core.settings import Settings, settings
from exprsn_hub.hosting.dispatcher import Dispatcher
from exprsn_hub.hub import Hub

logger = logging.getLogger(__name__)


def create_app(config: Settings = settings) -> Dispatcher:
    """Return the top-level ASGI application for ``config``."""
    configure_logging(config.log_level)
    return create_dispatcher(Hub(config))


def _servers(config: Settings, app: Dispatcher, host: str) -> list[uvicorn.Server]:
    servers = [
        uvicorn.Server(
            uvicorn.Config(app, host=host, port=config.port, log_config=None, lifespan="on")
        )
    ]
    if config.ssl_key_path.is_file() and config.ssl_cert_path.is_file():
        # Lifespan runs once, on the HTTP server.
        servers.append(
            uvicorn.Server(
                uvicorn.Config(
                    app,
                    host=host,
                    port=config.ssl_port,
                    log_config=None,
                    lifespan="off",
                    ssl_keyfile=str(config.ssl_key_path),
                    ssl_certfile=str(config.ssl_cert_path),
                )
            )
        )
    else:
        logger.warning(
            "No certificate pair in %s, HTTPS listener disabled", config.ssl_certs_dir
        )
    return servers


async def _serve_all(servers: list[uvicorn.Server]) -> None:
    """Run every server; when one stops, stop the others."""
    tasks = [asyncio.create_task(server.serve()) for server in servers]
    await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for server in servers:
        server.should_exit = True
    await asyncio.gather(*tasks)


def serve(config: Settings = settings, *, host: str = "0.0.0.0") -> int:
    """Run the hub until interrupted.

    Returns:
        Process exit status; non-zero when startup failed.
    """
    try:
        config.validate_for_startup()
    except ValueError as exc:
        configure_logging(config.log_level)
        logger.error("Invalid configuration: %s", exc)
        return 1

    app = create_app(config)
    servers = _servers(config, app, host)
    logger.info(
        "Serving %s on port %d%s",
        config.base_domain,
        config.port,
        f" and {config.ssl_port}" if len(servers) > 1 else "",
    )
    asyncio.run(_serve_all(servers))
    # uvicorn sets should_exit without started when the lifespan startup failed.
    if not servers[0].started:
        logger.error("Startup failed")
        return 1
    return 0
