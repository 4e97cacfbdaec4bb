"""Personal subdomain registration and verification."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from exprsn_hub.core.errors import Conflict, NotFound, ValidationFailure
from exprsn_hub.core.security import generate_token
from exprsn_hub.db.time import utcnow
from exprsn_hub.models import SubdomainRegistration, User
from exprsn_hub.models.user import REGISTRATION_PENDING, REGISTRATION_VERIFIED

logger = logging.getLogger(__name__)

SUBDOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9-]{1,61}[a-z0-9]$")

# Owned by the dispatcher.
RESERVED_SITES = frozenset({"status", "register", "auth", "app"})
RESERVED_SUBDOMAINS = RESERVED_SITES | frozenset({"www", "mail", "smtp", "admin", "api"})

VERIFICATION_TOKEN_BYTES = 32


def validate_subdomain(subdomain: str) -> str:
    """Normalize and check a requested subdomain.

    Raises:
        ValidationFailure: If the label is malformed or reserved.
    """
    name = (subdomain or "").strip().lower()
    if not SUBDOMAIN_RE.match(name):
        raise ValidationFailure(
            "Subdomain must be 3-63 lowercase letters, digits or hyphens",
            details={"field": "subdomain"},
        )
    if name in RESERVED_SUBDOMAINS:
        raise ValidationFailure("This subdomain is reserved", details={"field": "subdomain"})
    return name


def subdomain_taken(db: Session, subdomain: str, sites_dir: Path | None = None) -> bool:
    """Return True if a user, a registration or a site directory already claims the name."""
    if db.query(User).filter(User.subdomain == subdomain).first() is not None:
        return True
    if (
        db.query(SubdomainRegistration)
        .filter(SubdomainRegistration.subdomain == subdomain)
        .first()
        is not None
    ):
        return True
    return sites_dir is not None and (sites_dir / subdomain).exists()


def request_subdomain(
    db: Session, user: User, subdomain: str, *, sites_dir: Path | None = None
) -> SubdomainRegistration:
    """Create a pending registration for ``user``.

    Raises:
        ValidationFailure: For malformed or reserved names.
        Conflict: If the name is taken or the user already registered one.
    """
    name = validate_subdomain(subdomain)
    if user.subdomain:
        raise Conflict("You already have a subdomain")
    existing = (
        db.query(SubdomainRegistration).filter(SubdomainRegistration.user_id == user.id).first()
    )
    if existing is not None:
        raise Conflict("You already have a pending subdomain registration")
    if subdomain_taken(db, name, sites_dir):
        raise Conflict("This subdomain is already taken")

    registration = SubdomainRegistration(
        user_id=user.id,
        subdomain=name,
        status=REGISTRATION_PENDING,
        verification_token=generate_token(VERIFICATION_TOKEN_BYTES),
    )
    db.add(registration)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise Conflict("This subdomain is already taken") from exc
    logger.info("User %s requested subdomain %s", user.username, name)
    return registration


def verify_subdomain(db: Session, token: str) -> SubdomainRegistration:
    """Consume a verification token and assign the subdomain to its user.

    Raises:
        NotFound: If the token is unknown or already used.
        Conflict: If another account claimed the subdomain meanwhile.
    """
    registration = (
        db.query(SubdomainRegistration)
        .filter(
            SubdomainRegistration.verification_token == token,
            SubdomainRegistration.status == REGISTRATION_PENDING,
        )
        .first()
        if token
        else None
    )
    if registration is None:
        raise NotFound("Invalid or expired verification token")

    user = db.get(User, registration.user_id)
    if user is None:
        raise NotFound("Invalid or expired verification token")

    registration.status = REGISTRATION_VERIFIED
    registration.verified_at = utcnow()
    registration.verification_token = None
    user.subdomain = registration.subdomain
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise Conflict("This subdomain is already taken") from exc
    logger.info("Verified subdomain %s for %s", registration.subdomain, user.username)
    return registration
