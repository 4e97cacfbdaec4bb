"""Account registration, lookup and credential checks."""

from __future__ import annotations

import logging
import re

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from exprsn_hub.core.errors import Conflict, ValidationFailure
from exprsn_hub.core.security import hash_password, verify_password
from exprsn_hub.core.settings import Settings
from exprsn_hub.db.time import utcnow
from exprsn_hub.models import User
from exprsn_hub.models.user import ROLE_ADMIN, ROLE_USER
from exprsn_hub.services.federation import federation_id_for

logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,30}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


def validate_registration(username: str, email: str, password: str) -> None:
    """Check the shape of registration input.

    Raises:
        ValidationFailure: Naming the first offending field.
    """
    if not USERNAME_RE.match(username or ""):
        raise ValidationFailure(
            "Username must be 3-30 characters of letters, digits and underscores",
            details={"field": "username"},
        )
    if not EMAIL_RE.match(email or ""):
        raise ValidationFailure("Invalid email address", details={"field": "email"})
    if not MIN_PASSWORD_LENGTH <= len(password or "") <= MAX_PASSWORD_LENGTH:
        raise ValidationFailure(
            f"Password must be {MIN_PASSWORD_LENGTH}-{MAX_PASSWORD_LENGTH} characters",
            details={"field": "password"},
        )


def register_user(
    db: Session,
    config: Settings,
    *,
    username: str,
    email: str,
    password: str,
    role: str = ROLE_USER,
    subdomain: str | None = None,
    display_name: str | None = None,
) -> User:
    """Create a local account.

    Raises:
        ValidationFailure: On malformed input.
        Conflict: If the username or email is taken.
    """
    validate_registration(username, email, password)
    email = email.strip().lower()
    existing = (
        db.query(User)
        .filter(or_(func.lower(User.username) == username.lower(), User.email == email))
        .first()
    )
    if existing is not None:
        raise Conflict("Username or email already exists")

    user = User(
        username=username,
        email=email,
        password_hash=hash_password(password),
        role=role,
        subdomain=subdomain,
        federation_id=federation_id_for(username, subdomain, config.base_domain),
        display_name=display_name or username,
        settings={},
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise Conflict("Username or email already exists") from exc
    db.refresh(user)
    logger.info("Registered user %s (%s)", user.username, user.role)
    return user


def authenticate(db: Session, login: str, password: str) -> User | None:
    """Return the active user matching ``login`` (username or email) and ``password``."""
    if not login or not password:
        return None
    user = (
        db.query(User)
        .filter(or_(User.username == login, User.email == login.strip().lower()))
        .first()
    )
    if user is None or not user.is_active:
        # Hash anyway so timing does not reveal whether the account exists.
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    user.last_login = utcnow()
    db.commit()
    return user


def get_user(db: Session, user_id: int | None) -> User | None:
    if user_id is None:
        return None
    user = db.get(User, user_id)
    return user if user is not None and user.is_active else None


def get_user_by_username(db: Session, username: str) -> User | None:
    return db.query(User).filter(User.username == username, User.is_active.is_(True)).first()


def get_user_by_subdomain(db: Session, subdomain: str) -> User | None:
    return db.query(User).filter(User.subdomain == subdomain, User.is_active.is_(True)).first()


def is_admin(user: User | None) -> bool:
    return user is not None and user.role == ROLE_ADMIN


_DUMMY_HASH = hash_password("exprsn-timing-equalizer")
