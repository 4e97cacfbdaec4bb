"""HTML pages rendered for sign-in, consent, maintenance and profiles."""

from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient

from exprsn_hub.hub import Hub
from exprsn_hub.models import User
from exprsn_hub.services.templates import HTMLRenderer, TemplateNotFoundError
from tests.conftest import AUTH_URL, CLIENT_REDIRECT, login


@pytest.fixture()
def renderer() -> HTMLRenderer:
    return HTMLRenderer()


def test_login_page_without_error(renderer: HTMLRenderer) -> None:
    page = renderer.render("login", {"title": "Sign in", "next": "/authorize"}).decode()

    assert "<title>Sign in</title>" in page
    assert 'name="next" value="/authorize"' in page
    assert 'class="error"' not in page
    assert "$" not in page


def test_values_are_escaped(renderer: HTMLRenderer) -> None:
    page = renderer.render(
        "login", {"title": "Sign in", "error": "<script>alert(1)</script>"}
    ).decode()

    assert "<script>" not in page
    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in page


def test_consent_lists_each_scope(renderer: HTMLRenderer) -> None:
    page = renderer.render(
        "consent",
        {"client_name": "Reader", "username": "alice", "scope_items": ["read", "<b>"]},
    ).decode()

    assert "<h1>Authorize Reader</h1>" in page
    assert "<li>read</li>" in page
    assert "<li>&lt;b&gt;</li>" in page


def test_maintenance_and_default_title(renderer: HTMLRenderer) -> None:
    page = renderer.render("maintenance", {"site": "alice"}).decode()

    assert "<title>Maintenance</title>" in page
    assert "alice is under maintenance" in page


def test_unknown_template(renderer: HTMLRenderer) -> None:
    with pytest.raises(TemplateNotFoundError):
        renderer.render("missing", {})


def test_auth_login_page(client: TestClient) -> None:
    response = client.get(f"{AUTH_URL}/login")

    assert response.status_code == 200
    assert "Sign in" in response.text
    assert "$error" not in response.text
    assert 'class="error"' not in response.text


def test_failed_login_shows_error(client: TestClient, alice: User) -> None:
    response = login(client, "alice", "wrong-password")

    assert response.status_code == 401
    assert '<p class="error">Invalid username or password</p>' in response.text


def test_admin_login_page(client: TestClient) -> None:
    response = client.get("/login")

    assert response.status_code == 200
    assert "Exprsn Site Manager - Login" in response.text
    assert 'class="error"' not in response.text


def test_consent_page(
    client: TestClient, hub: Hub, db: Any, alice: User, bob: User
) -> None:
    third_party, _ = hub.tokens.register_client(
        db, name="Reader", redirect_uris=[CLIENT_REDIRECT], scope="read write", user_id=bob.id
    )
    login(client, "alice")
    client.get(
        f"{AUTH_URL}/authorize",
        params={
            "response_type": "code",
            "client_id": third_party.id,
            "redirect_uri": CLIENT_REDIRECT,
            "scope": "read write",
        },
    )

    page = client.get(f"{AUTH_URL}/consent")

    assert page.status_code == 200
    assert "Reader is requesting access to your account (alice)" in page.text
    assert "<li>read</li>" in page.text
    assert "<li>write</li>" in page.text


def test_maintenance_page(client: TestClient, hub: Hub, alice: User) -> None:
    client.portal.call(hub.sites.materialize, "alice")
    client.portal.call(hub.sites.update_config, "alice", {"maintenance": True})

    response = client.get("http://alice.example.io/", headers={"Accept": "text/html"})

    assert response.status_code == 503
    assert "<h1>alice is under maintenance</h1>" in response.text
