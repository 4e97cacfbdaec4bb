"""A materialized site: its configuration, sub-application and sockets."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

from starlette.types import ASGIApp

from exprsn_hub.core.errors import ValidationFailure
from exprsn_hub.hosting.proxy import SiteProxy
from exprsn_hub.hosting.site_config import SiteConfig
from exprsn_hub.hosting.websocket import ConnectionManager
from exprsn_hub.services.registration import RESERVED_SITES

SITE_NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")

SERVER_MODULE = "server.py"
INDEX_MODULE = "index.py"

KIND_PROXY = "proxy"
KIND_LOCAL = "local"
KIND_STATIC = "static"


def validate_site_name(name: str) -> str:
    """Return ``name`` if it can serve as a site directory and DNS label.

    Raises:
        ValidationFailure: For malformed or reserved names.
    """
    if not SITE_NAME_RE.match(name or ""):
        raise ValidationFailure(f"Invalid site name: {name!r}", details={"field": "site"})
    if name in RESERVED_SITES:
        raise ValidationFailure(f"Site name {name!r} is reserved", details={"field": "site"})
    return name


def site_kind(directory: Path, site_config: SiteConfig) -> str:
    if site_config.proxy_target or (directory / SERVER_MODULE).is_file():
        return KIND_PROXY
    if (directory / INDEX_MODULE).is_file():
        return KIND_LOCAL
    return KIND_STATIC


def site_fingerprint(directory: Path, site_config: SiteConfig, owner_id: int | None) -> tuple:
    """Inputs that determine a site's observable behavior.

    Re-materializing with an unchanged fingerprint is a no-op.
    """
    mtimes = []
    for module in (SERVER_MODULE, INDEX_MODULE):
        path = directory / module
        mtimes.append(path.stat().st_mtime_ns if path.is_file() else None)
    config_key = tuple(sorted((k, repr(v)) for k, v in site_config.to_dict().items()))
    return (tuple(mtimes), config_key, owner_id)


@dataclass
class Site:
    name: str
    directory: Path
    config: SiteConfig
    kind: str
    owner_id: int | None = None
    owner_username: str | None = None
    app: ASGIApp | None = None
    proxy: SiteProxy | None = None
    proxy_target: str | None = None
    fingerprint: tuple = ()
    sockets: ConnectionManager = field(default_factory=ConnectionManager)

    @property
    def is_user_site(self) -> bool:
        return self.owner_id is not None

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "kind": self.kind,
            "owner": self.owner_username,
            "config": self.config.to_dict(),
            "proxyTarget": self.proxy_target,
            "connections": self.sockets.connection_count,
        }
