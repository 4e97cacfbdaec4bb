"""Application settings and configuration.

This module defines all configuration options for the Exprsn hub.
Settings are loaded from environment variables (or a ``.env`` file) with
development-friendly defaults.
"""

from __future__ import annotations

import re
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEV_SECRET_PLACEHOLDER = "exprsn-development-secret"

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86_400}


def parse_duration(value: str) -> int:
    """Convert a short duration string such as ``1d`` or ``15m`` to seconds.

    Args:
        value: Duration string; a bare number is interpreted as seconds.

    Returns:
        Number of seconds represented by ``value``.

    Raises:
        ValueError: If the string cannot be parsed.
    """
    match = _DURATION_RE.match(value)
    if match is None:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return int(amount) * _DURATION_UNITS[unit]


def _split_hosts(value: str) -> frozenset[str]:
    return frozenset(item.strip().lower() for item in value.split(",") if item.strip())


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Hosting
    base_domain: str = Field(default="exprsn.io", alias="BASE_DOMAIN")
    port: int = Field(default=80, alias="PORT")
    ssl_port: int = Field(default=443, alias="SSL_PORT")
    environment: str = Field(default="development", alias="NODE_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Filesystem layout
    sites_dir: Path = Field(default=Path("sites"), alias="SITES_DIR")
    routes_dir: Path = Field(default=Path("routes"), alias="ROUTES_DIR")
    config_dir: Path = Field(default=Path("config"), alias="CONFIG_DIR")
    backups_dir: Path = Field(default=Path("backups"), alias="BACKUPS_DIR")
    ssl_certs_dir: Path = Field(default=Path("ssl"), alias="SSL_CERTS_DIR")
    uploads_dir: Path = Field(default=Path("uploads"), alias="UPLOADS_DIR")
    media_dir: Path = Field(default=Path("media"), alias="MEDIA_DIR")

    # Database configuration
    db_path: Path = Field(default=Path("data/exprsn.db"), alias="DB_PATH")
    database_url: str | None = Field(default=None, alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Optional Redis cache backend
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    cache_ttl: int = Field(default=3600, alias="CACHE_TTL")

    # Sessions and admin JWTs
    session_secret: str = Field(default=DEV_SECRET_PLACEHOLDER, alias="SESSION_SECRET")
    session_ttl: int = Field(default=7 * 86_400, alias="SESSION_TTL")
    jwt_secret: str = Field(default=DEV_SECRET_PLACEHOLDER, alias="JWT_SECRET")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    jwt_expires_in: str = Field(default="1d", alias="JWT_EXPIRES_IN")

    # Bootstrap administrator
    admin_username: str = Field(default="admin", alias="ADMIN_USERNAME")
    admin_password: str = Field(default="", alias="ADMIN_PASSWORD")
    admin_email: str | None = Field(default=None, alias="ADMIN_EMAIL")

    # OAuth 2.0 / OpenID Connect
    oauth_issuer: str | None = Field(default=None, alias="OAUTH_ISSUER")
    jwks_path: Path = Field(default=Path("config/jwks.json"), alias="JWKS_PATH")
    access_token_ttl: int = Field(default=86_400, alias="ACCESS_TOKEN_TTL")
    refresh_token_ttl: int = Field(default=30 * 86_400, alias="REFRESH_TOKEN_TTL")
    authorization_code_ttl: int = Field(default=600, alias="AUTHORIZATION_CODE_TTL")
    token_purge_interval: float = Field(default=3600.0, alias="TOKEN_PURGE_INTERVAL")

    # Site health polling
    status_polling_interval: int = Field(default=30_000, alias="STATUS_POLLING_INTERVAL")
    health_check_timeout: float = Field(default=5.0, alias="HEALTH_CHECK_TIMEOUT")
    site_drain_seconds: float = Field(default=5.0, alias="SITE_DRAIN_SECONDS")
    watch_debounce_ms: int = Field(default=100, alias="WATCH_DEBOUNCE_MS")

    # Federation delivery
    federation_enabled: bool = Field(default=True, alias="FEDERATION_ENABLED")
    federation_whitelist: str = Field(default="", alias="FEDERATION_WHITELIST")
    federation_blacklist: str = Field(default="", alias="FEDERATION_BLACKLIST")
    federation_poll_interval: float = Field(default=30.0, alias="FEDERATION_POLL_INTERVAL")
    federation_batch_size: int = Field(default=20, alias="FEDERATION_BATCH_SIZE")
    federation_max_attempts: int = Field(default=5, alias="FEDERATION_MAX_ATTEMPTS")
    federation_delivery_timeout: float = Field(
        default=10.0,
        alias="FEDERATION_DELIVERY_TIMEOUT",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def is_production(self) -> bool:
        """Return True when running with ``NODE_ENV=production``."""
        return self.environment.lower() == "production"

    @property
    def effective_database_url(self) -> str:
        """Return the database URL, deriving a SQLite URL from ``DB_PATH``."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.db_path}"

    @property
    def issuer(self) -> str:
        """Return the OAuth issuer URL without a trailing slash."""
        issuer = self.oauth_issuer or f"https://auth.{self.base_domain}"
        return issuer.rstrip("/")

    @property
    def jwt_expires_seconds(self) -> int:
        """Return the admin JWT lifetime in seconds."""
        return parse_duration(self.jwt_expires_in)

    @property
    def status_polling_seconds(self) -> float:
        """Return the status polling interval in seconds."""
        return max(0.05, self.status_polling_interval / 1000)

    @property
    def federation_whitelist_hosts(self) -> frozenset[str]:
        return _split_hosts(self.federation_whitelist)

    @property
    def federation_blacklist_hosts(self) -> frozenset[str]:
        return _split_hosts(self.federation_blacklist)

    @property
    def session_cookie_domain(self) -> str | None:
        """Return the cookie domain shared by every subdomain of the base domain."""
        if "." not in self.base_domain or self.base_domain == "localhost":
            return None
        return f".{self.base_domain}"

    @property
    def ssl_key_path(self) -> Path:
        return self.ssl_certs_dir / "privkey.pem"

    @property
    def ssl_cert_path(self) -> Path:
        return self.ssl_certs_dir / "fullchain.pem"

    def validate_for_startup(self) -> None:
        """Reject configurations that are unsafe outside development.

        Raises:
            ValueError: If production is configured with placeholder secrets or
                without an administrator password.
        """
        if not self.is_production:
            return
        if DEV_SECRET_PLACEHOLDER in (self.session_secret, self.jwt_secret):
            raise ValueError("SESSION_SECRET and JWT_SECRET must be set in production")
        if not self.admin_password:
            raise ValueError("ADMIN_PASSWORD must be set in production")
        parse_duration(self.jwt_expires_in)


settings = Settings()
