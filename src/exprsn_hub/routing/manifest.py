"""Route manifest files.

A manifest is a JSON document in ``ROUTES_DIR`` describing one mounted route::

    {
      "path": "/api/example",
      "handler": "echo",
      "methods": ["GET", "POST"],
      "auth": "oauth",
      "scope": "read",
      "rateLimit": {"windowMs": 60000, "max": 60},
      "version": 2
    }
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

AUTH_MODES = ("none", "session", "jwt", "oauth")
HTTP_METHODS = frozenset({"GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"})


class ManifestError(ValueError):
    """Raised when a manifest cannot be read or is invalid."""


class RouteManifest(BaseModel):
    """Schema of a route manifest file."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    path: str = Field(..., min_length=2, description="Mount prefix, e.g. /api/example")
    handler: str = Field(..., min_length=1, description="Built-in name or module:attribute")
    methods: list[str] = Field(default_factory=lambda: ["GET"])
    auth: Literal["none", "session", "jwt", "oauth"] = "none"
    scope: str | None = None
    role: str | None = None
    rate_limit: dict[str, Any] | None = Field(default=None, alias="rateLimit")
    version: int = 1
    enabled: bool = True

    @field_validator("path")
    @classmethod
    def _normalize_path(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith("/"):
            raise ValueError("path must start with '/'")
        value = value.rstrip("/")
        if not value:
            raise ValueError("the root path cannot be registered")
        return value

    @field_validator("methods")
    @classmethod
    def _normalize_methods(cls, value: list[str]) -> list[str]:
        methods = [item.upper() for item in value]
        unknown = set(methods).difference(HTTP_METHODS)
        if not methods or unknown:
            raise ValueError(f"unsupported methods: {sorted(unknown) or 'none given'}")
        return list(dict.fromkeys(methods))


def load_manifest(path: Path) -> RouteManifest:
    """Read and validate the manifest at ``path``.

    Raises:
        ManifestError: If the file is unreadable, not JSON, or fails validation.
    """
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ManifestError(f"Cannot read route manifest {path}: {exc}") from exc
    if not isinstance(document, dict):
        raise ManifestError(f"Route manifest {path} must be a JSON object")
    try:
        return RouteManifest.model_validate(document)
    except ValidationError as exc:
        raise ManifestError(f"Invalid route manifest {path}: {exc}") from exc
