"""Per-site configuration kept in the database and mirrored to ``sites.json``."""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from sqlalchemy.orm import Session, sessionmaker

from exprsn_hub.core.errors import ValidationFailure
from exprsn_hub.core.settings import Settings
from exprsn_hub.db.session import SessionLocal
from exprsn_hub.models import SiteConfigRecord
from exprsn_hub.models.site import DEFAULT_HEALTH_CHECK_PATH

logger = logging.getLogger(__name__)

MIRROR_FILE = "sites.json"
_HOSTNAME_RE = re.compile(
    r"^(?=.{4,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$"
)


def normalize_domain(domain: str) -> str:
    """Lower-case ``domain`` and strip a trailing dot.

    Raises:
        ValidationFailure: If it is not a valid hostname.
    """
    value = (domain or "").strip().lower().rstrip(".")
    if not _HOSTNAME_RE.match(value):
        raise ValidationFailure(f"Invalid custom domain: {domain}", details={"field": "customDomains"})
    return value


@dataclass(frozen=True)
class SiteConfig:
    """Runtime view of a site's configuration."""

    subdomain: str
    custom_domains: tuple[str, ...] = ()
    maintenance: bool = False
    health_check_path: str = DEFAULT_HEALTH_CHECK_PATH
    proxy_target: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: SiteConfigRecord) -> SiteConfig:
        return cls(
            subdomain=record.subdomain,
            custom_domains=tuple(record.custom_domains or ()),
            maintenance=bool(record.maintenance),
            health_check_path=record.health_check_path or DEFAULT_HEALTH_CHECK_PATH,
            proxy_target=record.proxy_target,
            env=dict(record.env or {}),
        )

    @classmethod
    def from_mirror(cls, subdomain: str, data: Mapping[str, Any]) -> SiteConfig:
        """Build a config from a ``sites.json`` entry, ignoring invalid fields."""
        try:
            return cls(subdomain=subdomain).merged(data)
        except ValidationFailure as exc:
            logger.warning("Ignoring invalid sites.json entry for %s: %s", subdomain, exc.message)
            return cls(subdomain=subdomain)

    def merged(self, changes: Mapping[str, Any]) -> SiteConfig:
        """Return a copy with ``changes`` applied (camelCase or snake_case keys).

        Raises:
            ValidationFailure: If a value is malformed.
        """
        updates: dict[str, Any] = {}
        for key, value in changes.items():
            name = _FIELD_ALIASES.get(key, key)
            if name == "custom_domains":
                if isinstance(value, str) or not isinstance(value, list | tuple):
                    raise ValidationFailure(
                        "customDomains must be a list", details={"field": "customDomains"}
                    )
                updates[name] = tuple(dict.fromkeys(normalize_domain(item) for item in value))
            elif name == "maintenance":
                updates[name] = bool(value)
            elif name == "health_check_path":
                if not isinstance(value, str) or not value.startswith("/"):
                    raise ValidationFailure(
                        "healthCheckPath must start with '/'",
                        details={"field": "healthCheckPath"},
                    )
                updates[name] = value
            elif name == "proxy_target":
                if value in (None, ""):
                    updates[name] = None
                else:
                    parts = urlsplit(str(value))
                    if parts.scheme not in ("http", "https") or not parts.netloc:
                        raise ValidationFailure(
                            "proxyTarget must be an http(s) URL", details={"field": "proxyTarget"}
                        )
                    updates[name] = str(value).rstrip("/")
            elif name == "env":
                if not isinstance(value, Mapping):
                    raise ValidationFailure("env must be an object", details={"field": "env"})
                updates[name] = {str(k): str(v) for k, v in value.items()}
        return replace(self, **updates)

    def to_dict(self) -> dict[str, Any]:
        return {
            "subdomain": self.subdomain,
            "customDomains": list(self.custom_domains),
            "maintenance": self.maintenance,
            "healthCheckPath": self.health_check_path,
            "proxyTarget": self.proxy_target,
            "env": dict(self.env),
        }


_FIELD_ALIASES = {
    "customDomains": "custom_domains",
    "healthCheckPath": "health_check_path",
    "proxyTarget": "proxy_target",
}


class SiteConfigStore:
    """Loads, saves and mirrors ``SiteConfig`` rows."""

    def __init__(
        self,
        config: Settings,
        session_factory: sessionmaker[Session] | None = None,
    ) -> None:
        self.config = config
        self._session_factory = session_factory or SessionLocal

    @property
    def mirror_path(self) -> Path:
        return Path(self.config.config_dir) / MIRROR_FILE

    def load(self, subdomain: str) -> SiteConfig:
        """Return the stored config, creating it from the mirror or defaults."""
        with self._session_factory() as db:
            record = db.get(SiteConfigRecord, subdomain)
            if record is not None:
                return SiteConfig.from_record(record)
            seed = self._read_mirror().get("sites", {}).get(subdomain)
            site_config = (
                SiteConfig.from_mirror(subdomain, seed)
                if isinstance(seed, Mapping)
                else SiteConfig(subdomain=subdomain)
            )
            self._upsert(db, site_config)
            db.commit()
            self._write_mirror(db)
        return site_config

    def save(self, site_config: SiteConfig) -> SiteConfig:
        with self._session_factory() as db:
            self._upsert(db, site_config)
            db.commit()
            self._write_mirror(db)
        return site_config

    def all(self) -> dict[str, SiteConfig]:
        with self._session_factory() as db:
            return {
                record.subdomain: SiteConfig.from_record(record)
                for record in db.query(SiteConfigRecord).order_by(SiteConfigRecord.subdomain)
            }

    def domain_owner(self, domain: str) -> str | None:
        """Return the site whose stored config claims ``domain``."""
        for name, site_config in self.all().items():
            if domain in site_config.custom_domains:
                return name
        return None

    @staticmethod
    def _upsert(db: Session, site_config: SiteConfig) -> None:
        record = db.get(SiteConfigRecord, site_config.subdomain)
        if record is None:
            record = SiteConfigRecord(subdomain=site_config.subdomain)
            db.add(record)
        record.custom_domains = list(site_config.custom_domains)
        record.maintenance = site_config.maintenance
        record.health_check_path = site_config.health_check_path
        record.proxy_target = site_config.proxy_target
        record.env = dict(site_config.env)

    def _read_mirror(self) -> dict[str, Any]:
        try:
            data = json.loads(self.mirror_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            logger.warning("Cannot read %s: %s", self.mirror_path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_mirror(self, db: Session) -> None:
        sites: dict[str, Any] = {}
        domains: dict[str, str] = {}
        for record in db.query(SiteConfigRecord).order_by(SiteConfigRecord.subdomain):
            site_config = SiteConfig.from_record(record)
            entry = site_config.to_dict()
            entry.pop("subdomain")
            sites[record.subdomain] = entry
            for domain in site_config.custom_domains:
                domains[domain] = record.subdomain
        document = {"sites": sites, "customDomains": domains}
        path = self.mirror_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            logger.error("Cannot write %s: %s", path, exc)
