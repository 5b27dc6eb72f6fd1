from __future__ import annotations

import pytest

from bookiobot.config import load_settings
from bookiobot.domain import ConfigurationError

_ENV_VARS = (
    "BOOKIO_ENV",
    "BOOKIO_BASE_URL",
    "BOOKIO_FACILITY",
    "DEMO_USERNAME",
    "DEMO_PASSWORD",
    "PROD_USERNAME",
    "PROD_PASSWORD",
    "HEADLESS",
    "AUTO_WORKER_POLICY",
    "REFRESH_BUFFER_MINUTES",
    "SLOT_MAX_RETRIES",
    "SCHEDULER_FAILURE_WINDOW",
    "SCHEDULER_FAILURE_THRESHOLD",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # A developer's own .env or shell must not leak into these tests.
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_load_settings_defaults_to_demo_environment(tmp_path) -> None:
    settings = load_settings(dotenv_path=str(tmp_path / "missing.env"))

    assert settings.environment == "Demo"
    assert settings.base_url == "https://services.bookio.com"
    assert settings.cookie_name == "bses-0"
    assert settings.cookie_max_age_seconds == 12 * 3600
    assert settings.refresh_interval_seconds == 11 * 3600
    assert settings.refresh_buffer_seconds == 3600
    assert settings.slot_max_months == 3
    assert settings.slot_max_retries == 2
    assert settings.scheduler_retry_delay_seconds == 300
    assert (settings.scheduler_failure_threshold, settings.scheduler_failure_window) == (3, 5)
    assert settings.auto_worker_policy == "first"
    assert settings.timezone == "Europe/Bratislava"


def test_load_settings_picks_credentials_by_environment_prefix(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("BOOKIO_ENV", "production")
    monkeypatch.setenv("DEMO_USERNAME", "demo@example.com")
    monkeypatch.setenv("DEMO_PASSWORD", "demo")
    monkeypatch.setenv("PROD_USERNAME", "prod@example.com")
    monkeypatch.setenv("PROD_PASSWORD", "prod")

    settings = load_settings(dotenv_path=str(tmp_path / "missing.env"))

    assert settings.environment == "Production"
    assert settings.credentials().username == "prod@example.com"
    assert settings.headless is True


def test_missing_credentials_fail_only_when_requested(tmp_path) -> None:
    settings = load_settings(dotenv_path=str(tmp_path / "missing.env"))

    with pytest.raises(ConfigurationError, match=r"DEMO_USERNAME and DEMO_PASSWORD"):
        settings.credentials()


def test_credentials_repr_hides_password(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("DEMO_USERNAME", "u")
    monkeypatch.setenv("DEMO_PASSWORD", "very-secret")

    creds = load_settings(dotenv_path=str(tmp_path / "missing.env")).credentials()
    assert "very-secret" not in repr(creds)


def test_load_settings_rejects_unknown_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("BOOKIO_ENV", "qa")

    with pytest.raises(ConfigurationError, match=r"Invalid BOOKIO_ENV"):
        load_settings(dotenv_path=str(tmp_path / "missing.env"))


def test_load_settings_rejects_non_integer_values(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("SLOT_MAX_RETRIES", "two")

    with pytest.raises(ConfigurationError, match=r"Invalid SLOT_MAX_RETRIES"):
        load_settings(dotenv_path=str(tmp_path / "missing.env"))


def test_load_settings_rejects_unknown_auto_worker_policy(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("AUTO_WORKER_POLICY", "random")

    with pytest.raises(ConfigurationError, match=r"AUTO_WORKER_POLICY"):
        load_settings(dotenv_path=str(tmp_path / "missing.env"))


def test_load_settings_rejects_threshold_above_window(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("SCHEDULER_FAILURE_WINDOW", "2")
    monkeypatch.setenv("SCHEDULER_FAILURE_THRESHOLD", "3")

    with pytest.raises(ConfigurationError, match=r"must not exceed"):
        load_settings(dotenv_path=str(tmp_path / "missing.env"))


def test_load_settings_strips_trailing_slash_and_converts_minutes(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("BOOKIO_BASE_URL", "https://bookio.test/")
    monkeypatch.setenv("REFRESH_BUFFER_MINUTES", "15")
    monkeypatch.setenv("HEADLESS", "false")

    settings = load_settings(dotenv_path=str(tmp_path / "missing.env"))

    assert settings.base_url == "https://bookio.test"
    assert settings.auth_url == "https://bookio.test/auth/login"
    assert settings.widget_api_url == "https://bookio.test/widget/api"
    assert settings.refresh_buffer_seconds == 15 * 60
    assert settings.headless is False


def test_load_settings_does_not_override_existing_env_with_dotenv(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    # load_dotenv(override=False) must leave already-set env vars alone.
    monkeypatch.setenv("BOOKIO_FACILITY", "from-shell")

    dotenv = tmp_path / ".env"
    dotenv.write_text("BOOKIO_FACILITY=from-dotenv\n")

    settings = load_settings(dotenv_path=str(dotenv))
    assert settings.facility == "from-shell"
