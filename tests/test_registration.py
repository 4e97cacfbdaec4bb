from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from exprsn_hub.core.errors import Conflict, NotFound, ValidationFailure
from exprsn_hub.core.settings import Settings
from exprsn_hub.hub import Hub
from exprsn_hub.models import SubdomainRegistration, User
from exprsn_hub.services.registration import (
    request_subdomain,
    validate_subdomain,
    verify_subdomain,
)
from tests.conftest import login

REGISTER = "http://register.example.io"


@pytest.mark.parametrize("name", ["ab", "-abc", "abc-", "a_b_c", "x" * 64, ""])
def test_malformed_subdomains(name: str) -> None:
    with pytest.raises(ValidationFailure):
        validate_subdomain(name)


@pytest.mark.parametrize("name", ["www", "api", "auth", "status", "register", "app", "admin"])
def test_reserved_subdomains(name: str) -> None:
    with pytest.raises(ValidationFailure):
        validate_subdomain(name)


def test_validate_normalizes() -> None:
    assert validate_subdomain("  My-Site ") == "my-site"


def test_request_and_verify(db: Any, bob: User, config: Settings) -> None:
    registration = request_subdomain(db, bob, "bobsite")
    assert registration.status == "pending"
    token = registration.verification_token
    assert token

    with pytest.raises(Conflict):
        request_subdomain(db, bob, "another")

    verified = verify_subdomain(db, token)
    assert verified.status == "verified"
    assert verified.verification_token is None
    db.refresh(bob)
    assert bob.subdomain == "bobsite"

    with pytest.raises(NotFound):
        verify_subdomain(db, token)
    with pytest.raises(Conflict):
        request_subdomain(db, bob, "third")


def test_taken_subdomains(db: Any, alice: User, bob: User, config: Settings) -> None:
    with pytest.raises(Conflict):
        request_subdomain(db, bob, "alice")

    (Path(config.sites_dir) / "handmade").mkdir(parents=True)
    with pytest.raises(Conflict):
        request_subdomain(db, bob, "handmade", sites_dir=Path(config.sites_dir))


def test_info_page(client: TestClient, bob: User) -> None:
    anonymous = client.get(f"{REGISTER}/").json()
    assert anonymous["user"] is None
    assert anonymous["loginUrl"] == "https://auth.example.io/login"
    assert "www" in anonymous["reserved"]

    login(client, "bob")
    signed_in = client.get(f"{REGISTER}/").json()
    assert signed_in["user"] == "bob"
    assert signed_in["subdomain"] is None


def test_register_requires_session(client: TestClient) -> None:
    response = client.post(f"{REGISTER}/register", json={"subdomain": "bobsite"})
    assert response.status_code == 401


def test_registration_flow(client: TestClient, hub: Hub, bob: User, db: Any) -> None:
    login(client, "bob")
    response = client.post(f"{REGISTER}/register", json={"subdomain": "BobSite"})
    assert response.status_code == 201, response.text
    body = response.json()
    assert body["subdomain"] == "bobsite"
    assert body["status"] == "pending"
    assert body["dnsVerification"] == "_exprsn-verify.bobsite.example.io"
    assert body["verifyUrl"] == f"/verify?token={body['verificationToken']}"

    conflict = client.post(f"{REGISTER}/register", json={"subdomain": "other"})
    assert conflict.status_code == 409
    assert conflict.json()["error"] == "conflict"

    verified = client.get(f"{REGISTER}{body['verifyUrl']}")
    assert verified.status_code == 302
    assert verified.headers["location"] == "https://bobsite.example.io/"

    assert hub.sites.is_active("bobsite")
    assert hub.sites.get("bobsite").owner_username == "bob"
    site_status = client.get("http://bobsite.example.io/status")
    assert site_status.status_code == 200

    row = db.query(SubdomainRegistration).one()
    assert row.status == "verified"

    reused = client.get(f"{REGISTER}{body['verifyUrl']}")
    assert reused.status_code == 404


def test_register_validation_errors(client: TestClient, bob: User) -> None:
    login(client, "bob")
    reserved = client.post(f"{REGISTER}/register", json={"subdomain": "admin"})
    assert reserved.status_code == 400
    assert reserved.json()["error"] == "validation_failed"

    missing = client.post(f"{REGISTER}/register", json={})
    assert missing.status_code == 400

    assert client.get(f"{REGISTER}/verify").status_code == 400
