"""Password hashing, opaque token generation and admin JWT helpers."""

from __future__ import annotations

import hmac
import secrets
from datetime import timedelta
from typing import Any

import argon2
from jose import JWTError, jwt

from exprsn_hub.core.errors import AuthenticationFailure
from exprsn_hub.core.settings import Settings, settings
from exprsn_hub.db.time import utcnow

_hasher = argon2.PasswordHasher(type=argon2.Type.ID)


def hash_password(password: str) -> str:
    """Hash a password using argon2id. Returns the full encoded hash."""
    return _hasher.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its argon2id hash. Never raises on mismatch."""
    try:
        return _hasher.verify(password_hash, password)
    except argon2.exceptions.VerifyMismatchError:
        return False
    except argon2.exceptions.InvalidHashError:
        return False
    except argon2.exceptions.VerificationError:
        return False


def generate_token(nbytes: int = 32) -> str:
    """Return ``nbytes`` of randomness as a hex string."""
    return secrets.token_hex(nbytes)


def constant_time_equals(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode(), right.encode())


def create_access_token(
    user_id: int,
    extra_claims: dict[str, Any] | None = None,
    config: Settings | None = None,
) -> str:
    """Create an HS256 JWT identifying ``user_id`` for the admin JSON API."""
    config = config or settings
    now = utcnow()
    to_encode: dict[str, Any] = {"id": user_id, "sub": str(user_id), "iat": now}
    if extra_claims:
        to_encode.update(extra_claims)
    to_encode["exp"] = now + timedelta(seconds=config.jwt_expires_seconds)
    encoded_jwt: str = jwt.encode(
        to_encode,
        config.jwt_secret,
        algorithm=config.jwt_algorithm,
    )
    return encoded_jwt


def decode_access_token(token: str, config: Settings | None = None) -> int:
    """Return the user id carried by an admin JWT.

    Raises:
        AuthenticationFailure: If the token is malformed, expired or unsigned.
    """
    config = config or settings
    try:
        payload = jwt.decode(token, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except JWTError as err:
        raise AuthenticationFailure("Invalid token") from err
    user_id = payload.get("id")
    if not isinstance(user_id, int):
        raise AuthenticationFailure("Invalid token")
    return user_id
