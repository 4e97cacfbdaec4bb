"""HTTP policy layer applied to every site sub-application."""

from __future__ import annotations

from collections.abc import Callable

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, Response
from starlette.types import ASGIApp

from exprsn_hub.core.errors import RateLimited, error_response
from exprsn_hub.services.rate_limit import SITE_POLICY, RateLimiter, RateLimitPolicy
from exprsn_hub.services.templates import TemplateRenderer

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "X-Permitted-Cross-Domain-Policies": "none",
}

# Paths that stay reachable while a site is in maintenance.
MAINTENANCE_EXEMPT_PATHS = frozenset({"/status"})


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add hardening headers the handler did not set itself."""

    def __init__(self, app: ASGIApp, *, hsts: bool = False) -> None:
        super().__init__(app)
        self.hsts = hsts

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        if self.hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
            )
        return response


class MaintenanceMiddleware(BaseHTTPMiddleware):
    """Answer 503 for everything but the status endpoint while enabled."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        site: str,
        enabled: Callable[[], bool],
        renderer: TemplateRenderer | None = None,
    ) -> None:
        super().__init__(app)
        self.site = site
        self.enabled = enabled
        self.renderer = renderer

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self.enabled() or request.url.path in MAINTENANCE_EXEMPT_PATHS:
            return await call_next(request)
        headers = {"Retry-After": "300"}
        if self.renderer is not None and "text/html" in request.headers.get("accept", ""):
            body = self.renderer.render(
                "maintenance", {"site": self.site, "title": f"{self.site} maintenance"}
            )
            return HTMLResponse(body, status_code=503, headers=headers)
        return JSONResponse(
            {"error": "maintenance", "message": f"{self.site} is under maintenance"},
            status_code=503,
            headers=headers,
        )


class SiteRateLimitMiddleware(BaseHTTPMiddleware):
    """Site-wide fixed window per client address."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        limiter: RateLimiter,
        endpoint: str,
        policy: RateLimitPolicy = SITE_POLICY,
    ) -> None:
        super().__init__(app)
        self.limiter = limiter
        self.endpoint = endpoint
        self.policy = policy

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        address = request.client.host if request.client else "unknown"
        decision = self.limiter.check(address, self.endpoint, self.policy)
        if decision is None:
            return await call_next(request)
        if not decision.allowed:
            response = error_response(RateLimited(decision.retry_after(self.limiter.now())))
        else:
            response = await call_next(request)
        for name, value in decision.headers().items():
            response.headers.setdefault(name, value)
        return response
