"""Reverse proxy in front of a site's own HTTP service."""

from __future__ import annotations

import logging
from collections.abc import Mapping

import httpx
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from exprsn_hub import __version__
from exprsn_hub.core.errors import HubError, UpstreamFailure, UpstreamTimeout, error_response
from exprsn_hub.core.settings import Settings

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    }
)
# httpx decodes the body, so the upstream encoding no longer applies.
_DROPPED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-encoding"}


def proxy_port(config: Settings, site: str) -> int:
    """Port of the service a site runs next to the hub."""
    return config.port + ord(site[0]) % 1000


def proxy_target_for(config: Settings, site: str, configured: str | None = None) -> str:
    if configured:
        return configured.rstrip("/")
    return f"http://127.0.0.1:{proxy_port(config, site)}"


class SiteProxy:
    """ASGI application forwarding HTTP requests to ``target``."""

    def __init__(
        self,
        site: str,
        target: str,
        *,
        env: Mapping[str, str] | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.site = site
        self.target = target.rstrip("/")
        self.env = dict(env or {})
        self._client = httpx.AsyncClient(
            base_url=self.target,
            timeout=httpx.Timeout(timeout),
            transport=transport,
            follow_redirects=False,
        )

    def forward_headers(self, request: Request) -> dict[str, str]:
        headers = {
            name: value
            for name, value in request.headers.items()
            if name.lower() not in HOP_BY_HOP_HEADERS
            and not name.lower().startswith("x-forwarded-")
        }
        client_host = request.client.host if request.client else ""
        forwarded_for = request.headers.get("x-forwarded-for")
        headers["X-Forwarded-For"] = (
            f"{forwarded_for}, {client_host}" if forwarded_for else client_host
        )
        headers["X-Forwarded-Host"] = request.headers.get("host", "")
        headers["X-Forwarded-Proto"] = request.url.scheme
        headers["X-Proxied-By"] = f"exprsn-hub/{__version__}"
        headers["X-Site-Name"] = self.site
        for key, value in self.env.items():
            headers[f"X-Env-{key}"] = value
        return headers

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "websocket":
            await send({"type": "websocket.close", "code": 1011, "reason": "Not proxied"})
            return
        if scope["type"] != "http":
            return
        request = Request(scope, receive)
        try:
            response = await self.forward(request)
        except HubError as exc:
            response = error_response(exc)
        await response(scope, receive, send)

    async def forward(self, request: Request) -> Response:
        """Send ``request`` upstream and translate the answer.

        Raises:
            UpstreamTimeout: When the upstream does not answer in time.
            UpstreamFailure: On any other transport error.
        """
        path = request.scope.get("path", "/")
        query = request.scope.get("query_string", b"").decode("latin-1")
        url = f"{path}?{query}" if query else path
        body = await request.body()
        try:
            upstream = await self._client.request(
                request.method,
                url,
                content=body,
                headers=self.forward_headers(request),
            )
        except httpx.TimeoutException as exc:
            logger.warning("Proxy timeout for %s%s: %s", self.site, path, exc)
            raise UpstreamTimeout(f"Site {self.site} did not respond in time") from exc
        except httpx.HTTPError as exc:
            logger.warning("Proxy error for %s%s: %s", self.site, path, exc)
            raise UpstreamFailure(f"Site {self.site} is unavailable") from exc

        response = Response(content=upstream.content, status_code=upstream.status_code)
        for name, value in upstream.headers.multi_items():
            if name.lower() not in _DROPPED_RESPONSE_HEADERS:
                response.headers.append(name, value)
        return response

    async def close(self) -> None:
        await self._client.aclose()
