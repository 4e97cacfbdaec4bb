"""First-run setup: directories, administrator, system OAuth client, sample route."""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.orm import Session

from exprsn_hub.core.security import hash_password
from exprsn_hub.core.settings import Settings
from exprsn_hub.models import OAuthClient, User
from exprsn_hub.models.user import ROLE_ADMIN
from exprsn_hub.services.federation import federation_id_for
from exprsn_hub.services.tokens import (
    GRANT_AUTHORIZATION_CODE,
    GRANT_REFRESH_TOKEN,
    TokenService,
)

logger = logging.getLogger(__name__)

WEB_APP_CLIENT_NAME = "Exprsn Web App"
WEB_APP_SCOPE = "openid profile email read write follow"
SAMPLE_ROUTE_FILE = "example.json"


@dataclass(frozen=True)
class BootstrapResult:
    admin: User
    web_client: OAuthClient
    generated_admin_password: str | None = None


def ensure_directories(config: Settings) -> None:
    for directory in (
        config.sites_dir,
        config.routes_dir,
        config.config_dir,
        config.backups_dir,
        config.ssl_certs_dir,
        config.uploads_dir,
        config.media_dir,
        config.jwks_path.parent,
    ):
        Path(directory).mkdir(parents=True, exist_ok=True)


def ensure_admin(db: Session, config: Settings) -> tuple[User, str | None]:
    """Create the configured administrator when no user holds that name.

    An empty ``ADMIN_PASSWORD`` outside production yields a random password,
    which is returned so the caller can report it once.

    Raises:
        ValueError: If no password is configured in production.
    """
    admin = db.query(User).filter(User.username == config.admin_username).first()
    if admin is not None:
        return admin, None

    password = config.admin_password
    generated = None
    if not password:
        if config.is_production:
            raise ValueError("ADMIN_PASSWORD must be set in production")
        generated = password = secrets.token_urlsafe(12)

    admin = User(
        username=config.admin_username,
        email=config.admin_email or f"{config.admin_username}@{config.base_domain}",
        password_hash=hash_password(password),
        role=ROLE_ADMIN,
        federation_id=federation_id_for(config.admin_username, None, config.base_domain),
        display_name="Administrator",
        email_verified=True,
        settings={},
    )
    db.add(admin)
    db.commit()
    db.refresh(admin)
    logger.info("Created administrator account %s", admin.username)
    return admin, generated


def ensure_web_client(db: Session, config: Settings, tokens: TokenService) -> OAuthClient:
    """Return the system client used by ``app.{base}``, creating it on first run."""
    client = (
        db.query(OAuthClient)
        .filter(OAuthClient.name == WEB_APP_CLIENT_NAME, OAuthClient.user_id.is_(None))
        .first()
    )
    if client is not None:
        return client
    client, _secret = tokens.register_client(
        db,
        name=WEB_APP_CLIENT_NAME,
        redirect_uris=[
            f"https://app.{config.base_domain}/callback",
            "http://localhost:3000/callback",
        ],
        grant_types=[GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN],
        scope=WEB_APP_SCOPE,
    )
    return client


def write_sample_route(routes_dir: Path) -> Path | None:
    """Drop an example manifest into an empty routes directory."""
    routes_dir.mkdir(parents=True, exist_ok=True)
    if any(routes_dir.glob("*.json")):
        return None
    path = routes_dir / SAMPLE_ROUTE_FILE
    manifest = {
        "path": "/api/example",
        "handler": "echo",
        "methods": ["GET", "POST"],
        "auth": "none",
        "rateLimit": {"windowMs": 60000, "max": 60},
        "version": 1,
    }
    path.write_text(json.dumps(manifest, indent=2) + "\n", encoding="utf-8")
    logger.info("Wrote sample route manifest %s", path)
    return path


def bootstrap(db: Session, config: Settings, tokens: TokenService) -> BootstrapResult:
    """Run every first-run step; safe to call on each start."""
    ensure_directories(config)
    admin, generated = ensure_admin(db, config)
    if generated is not None:
        logger.warning(
            "ADMIN_PASSWORD is empty; generated password for %s: %s",
            admin.username,
            generated,
        )
    web_client = ensure_web_client(db, config, tokens)
    write_sample_route(config.routes_dir)
    return BootstrapResult(admin=admin, web_client=web_client, generated_admin_password=generated)
