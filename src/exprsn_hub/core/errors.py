"""Domain error kinds and their translation to HTTP responses."""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class HubError(Exception):
    """Base exception for every error the hub translates at an HTTP boundary."""

    status_code: ClassVar[int] = status.HTTP_500_INTERNAL_SERVER_ERROR
    reason: ClassVar[str] = "internal_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def headers(self) -> dict[str, str] | None:
        return None

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.reason, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationFailure(HubError):
    """Malformed input."""

    status_code = status.HTTP_400_BAD_REQUEST
    reason = "validation_failed"


class AuthenticationFailure(HubError):
    """Missing or invalid credentials. Never reveals whether the principal exists."""

    status_code = status.HTTP_401_UNAUTHORIZED
    reason = "authentication_failed"

    def __init__(self, message: str = "Authentication required", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class AuthorizationFailure(HubError):
    """Authenticated but lacking the required scope or role."""

    status_code = status.HTTP_403_FORBIDDEN
    reason = "forbidden"


class RateLimited(HubError):
    """Too many requests within the current window."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    reason = "rate_limited"

    def __init__(self, retry_after: int, message: str = "Too many requests") -> None:
        super().__init__(message, details={"retry_after": retry_after})
        self.retry_after = retry_after

    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class NotFound(HubError):
    """Unresolved site, user, token or route."""

    status_code = status.HTTP_404_NOT_FOUND
    reason = "not_found"


class Conflict(HubError):
    """Unique-constraint violation (subdomain, custom domain, username)."""

    status_code = status.HTTP_409_CONFLICT
    reason = "conflict"


class UpstreamFailure(HubError):
    """A federation target or proxied child service failed."""

    status_code = status.HTTP_502_BAD_GATEWAY
    reason = "upstream_failure"


class UpstreamTimeout(UpstreamFailure):
    """A proxied child service did not answer in time."""

    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    reason = "upstream_timeout"


class Internal(HubError):
    """Last-resort failure."""


def error_response(exc: HubError) -> JSONResponse:
    """Render a domain error as a JSON response."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_body(),
        headers=exc.headers(),
    )


def install_error_handlers(app: FastAPI, *, production: bool = False) -> None:
    """Register exception handlers translating domain errors on ``app``."""

    @app.exception_handler(HubError)
    async def hub_error_handler(_request: Request, exc: HubError) -> JSONResponse:
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        _request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": ValidationFailure.reason,
                "message": "Request validation failed",
                "details": {"errors": jsonable_errors(exc)},
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled error on %s %s: %s",
            request.method,
            request.url.path,
            exc,
            exc_info=exc,
        )
        message = "Internal server error" if production else f"{type(exc).__name__}: {exc}"
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": Internal.reason, "message": message},
        )


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    """Return pydantic validation errors without non-serializable context."""
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", ""), "type": error.get("type")}
        for error in exc.errors()
    ]
