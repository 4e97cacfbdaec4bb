from __future__ import annotations

from pathlib import Path

import pytest

from exprsn_hub.core.settings import DEV_SECRET_PLACEHOLDER, Settings, parse_duration


@pytest.mark.parametrize(
    ("value", "seconds"),
    [("90", 90), ("30s", 30), ("15m", 900), ("2h", 7200), ("1d", 86_400), (" 7 d ", 604_800)],
)
def test_parse_duration(value: str, seconds: int) -> None:
    assert parse_duration(value) == seconds


@pytest.mark.parametrize("value", ["", "d", "1w", "-5m", "1.5h"])
def test_parse_duration_rejects(value: str) -> None:
    with pytest.raises(ValueError):
        parse_duration(value)


def test_environment_aliases(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BASE_DOMAIN", "hub.test")
    monkeypatch.setenv("FEDERATION_BLACKLIST", " Spam.test, ,evil.test ")
    monkeypatch.setenv("STATUS_POLLING_INTERVAL", "10")
    config = Settings()
    assert config.base_domain == "hub.test"
    assert config.federation_blacklist_hosts == frozenset({"spam.test", "evil.test"})
    assert config.federation_whitelist_hosts == frozenset()
    # Intervals below 50ms are clamped.
    assert config.status_polling_seconds == 0.05


def test_derived_values() -> None:
    config = Settings(base_domain="hub.test", db_path=Path("/tmp/hub.db"), jwt_expires_in="2h")
    assert config.effective_database_url == "sqlite:////tmp/hub.db"
    assert config.issuer == "https://auth.hub.test"
    assert config.jwt_expires_seconds == 7200
    assert config.session_cookie_domain == ".hub.test"

    custom = Settings(
        oauth_issuer="https://login.hub.test/",
        database_url="postgresql+psycopg://db/hub",
    )
    assert custom.issuer == "https://login.hub.test"
    assert custom.effective_database_url == "postgresql+psycopg://db/hub"


@pytest.mark.parametrize("domain", ["localhost", "intranet"])
def test_no_cookie_domain_for_single_label_hosts(domain: str) -> None:
    assert Settings(base_domain=domain).session_cookie_domain is None


def test_validate_for_startup() -> None:
    Settings(environment="development").validate_for_startup()

    production = {"environment": "production", "admin_password": "s3cret-admin"}
    with pytest.raises(ValueError, match="SESSION_SECRET"):
        Settings(**production).validate_for_startup()

    secrets = {"session_secret": "a" * 32, "jwt_secret": "b" * 32}
    with pytest.raises(ValueError, match="ADMIN_PASSWORD"):
        Settings(environment="production", admin_password="", **secrets).validate_for_startup()

    with pytest.raises(ValueError, match="Invalid duration"):
        Settings(**production, **secrets, jwt_expires_in="soon").validate_for_startup()

    ready = Settings(**production, **secrets)
    assert ready.is_production
    assert ready.session_secret != DEV_SECRET_PLACEHOLDER
    ready.validate_for_startup()
