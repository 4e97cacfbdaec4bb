"""Signing key management for OpenID Connect id_tokens.

The RSA key pair is generated once, persisted next to the public JWK set at
``JWKS_PATH`` and reloaded on restart so the key id stays stable.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwk, jwt

logger = logging.getLogger(__name__)

SIGNING_ALGORITHM = "RS256"
RSA_KEY_SIZE = 2048


class KeyStoreError(RuntimeError):
    """Raised when the signing key cannot be loaded or generated."""


@dataclass(frozen=True)
class SigningKey:
    """Private key material plus its public JWK."""

    kid: str
    private_pem: str
    public_jwk: dict[str, Any]


def _public_jwk(kid: str, private_key: rsa.RSAPrivateKey) -> dict[str, Any]:
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_dict = jwk.construct(public_pem.decode("ascii"), SIGNING_ALGORITHM).to_dict()
    return {
        "kty": key_dict["kty"],
        "n": key_dict["n"],
        "e": key_dict["e"],
        "kid": kid,
        "use": "sig",
        "alg": SIGNING_ALGORITHM,
    }


def generate_signing_key() -> SigningKey:
    """Create a fresh RSA signing key with a random key id."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
    kid = str(uuid.uuid4())
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    return SigningKey(kid=kid, private_pem=private_pem, public_jwk=_public_jwk(kid, private_key))


class KeyStore:
    """Loads or creates the signing key stored at ``path``."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._key: SigningKey | None = None

    @property
    def key(self) -> SigningKey:
        if self._key is None:
            self._key = self.load_or_create()
        return self._key

    def load_or_create(self) -> SigningKey:
        """Return the persisted key, generating and saving one on first use.

        Raises:
            KeyStoreError: If the file is unreadable, malformed or cannot be written.
        """
        if self.path.exists():
            try:
                document = json.loads(self.path.read_text(encoding="utf-8"))
                public = document["keys"][0]
                kid = public["kid"]
                private_pem = document["privateKeys"][kid]
            except (OSError, ValueError, KeyError, IndexError, TypeError) as exc:
                raise KeyStoreError(f"Invalid JWKS file at {self.path}: {exc}") from exc
            self._key = SigningKey(kid=kid, private_pem=private_pem, public_jwk=public)
            logger.info("Loaded signing key %s from %s", kid, self.path)
            return self._key

        try:
            key = generate_signing_key()
            self.path.parent.mkdir(parents=True, exist_ok=True)
            document = {"keys": [key.public_jwk], "privateKeys": {key.kid: key.private_pem}}
            self.path.write_text(json.dumps(document, indent=2), encoding="utf-8")
            self.path.chmod(0o600)
        except (OSError, ValueError) as exc:
            raise KeyStoreError(f"Unable to create JWKS at {self.path}: {exc}") from exc
        logger.info("Generated new signing key %s at %s", key.kid, self.path)
        self._key = key
        return key

    def jwks(self) -> dict[str, list[dict[str, Any]]]:
        """Return the public JWK set."""
        return {"keys": [self.key.public_jwk]}

    def sign(self, claims: dict[str, Any]) -> str:
        """Sign ``claims`` as an RS256 JWT carrying the key id header."""
        return jwt.encode(
            claims,
            self.key.private_pem,
            algorithm=SIGNING_ALGORITHM,
            headers={"kid": self.key.kid},
        )
