from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from bookiobot.domain import AccountCredentials, ConfigurationError

# Per-environment defaults. Credentials come from <PREFIX>_USERNAME / <PREFIX>_PASSWORD.
_ENVIRONMENTS = {
    "demo": {
        "name": "Demo",
        "base_url": "https://services.bookio.com",
        "facility": "ai-recepcia-zll65ixf",
        "credentials_prefix": "DEMO",
        "headless": False,
    },
    "production": {
        "name": "Production",
        "base_url": "https://services.bookio.com",
        "facility": "refresh-laserove-a-esteticke-studio",
        "credentials_prefix": "PROD",
        "headless": True,
    },
    "staging": {
        "name": "Staging",
        "base_url": "https://staging.bookio.com",
        "facility": "staging-facility-id",
        "credentials_prefix": "STAGING",
        "headless": True,
    },
}

AUTO_WORKER_POLICIES = ("first", "no-preference")


@dataclass(frozen=True)
class Settings:
    environment: str
    base_url: str
    facility: str

    username: str | None = None
    password: str | None = None
    credentials_prefix: str = "DEMO"

    cookie_name: str = "bses-0"
    cookie_max_age_seconds: float = 12 * 60 * 60
    refresh_interval_seconds: float = 11 * 60 * 60
    # A token closer than this to its expiry is treated as due for refresh.
    refresh_buffer_seconds: float = 60 * 60

    headless: bool = True
    login_wait_seconds: int = 30

    token_dir: str = "data/tokens"
    request_timeout_seconds: float = 20.0

    # Slot search tuning
    slot_max_months: int = 3
    slot_max_retries: int = 2
    retry_backoff_base_seconds: float = 1.0
    retry_backoff_max_seconds: float = 5.0
    auto_worker_policy: str = "first"
    timezone: str = "Europe/Bratislava"

    # Scheduler tuning
    scheduler_retry_delay_seconds: float = 5 * 60
    scheduler_retry_jitter_seconds: float = 0
    scheduler_failure_window: int = 5
    scheduler_failure_threshold: int = 3
    scheduler_history_size: int = 100

    @property
    def auth_url(self) -> str:
        return f"{self.base_url}/auth/login"

    @property
    def widget_api_url(self) -> str:
        return f"{self.base_url}/widget/api"

    @property
    def widget_url(self) -> str:
        return f"{self.base_url}/{self.facility}/widget?lang=sk"

    def credentials(self) -> AccountCredentials:
        if not self.username or not self.password:
            raise ConfigurationError(
                f"Missing credentials for {self.environment} environment. "
                f"Set {self.credentials_prefix}_USERNAME and {self.credentials_prefix}_PASSWORD in .env"
            )
        return AccountCredentials(username=self.username, password=self.password)


def _int_env(name: str, default: int, *, minimum: int | None = None) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid {name} value: {raw!r}. Expected integer.") from e
    if minimum is not None and value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}")
    return value


def _float_env(name: str, default: float, *, minimum: float | None = None) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid {name} value: {raw!r}. Expected number.") from e
    if minimum is not None and value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum:g}")
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in {"0", "false", "no"}


def load_settings(dotenv_path: str | None = None) -> Settings:
    # Prefer .env in repo root; dotenv_path allows overriding in tests.
    load_dotenv(dotenv_path=dotenv_path, override=False)

    env_key = os.getenv("BOOKIO_ENV", "demo").strip().lower()
    preset = _ENVIRONMENTS.get(env_key)
    if preset is None:
        raise ConfigurationError(
            f"Invalid BOOKIO_ENV: {env_key!r}. Must be one of: {', '.join(_ENVIRONMENTS)}"
        )

    prefix = preset["credentials_prefix"]

    auto_worker_policy = os.getenv("AUTO_WORKER_POLICY", "first").strip().lower()
    if auto_worker_policy not in AUTO_WORKER_POLICIES:
        raise ConfigurationError(
            f"Invalid AUTO_WORKER_POLICY: {auto_worker_policy!r}. Must be one of: {', '.join(AUTO_WORKER_POLICIES)}"
        )

    failure_window = _int_env("SCHEDULER_FAILURE_WINDOW", 5, minimum=1)
    failure_threshold = _int_env("SCHEDULER_FAILURE_THRESHOLD", 3, minimum=1)
    if failure_threshold > failure_window:
        raise ConfigurationError("SCHEDULER_FAILURE_THRESHOLD must not exceed SCHEDULER_FAILURE_WINDOW")

    backoff_base = _float_env("RETRY_BACKOFF_BASE_SECONDS", 1.0, minimum=0)
    backoff_max = _float_env("RETRY_BACKOFF_MAX_SECONDS", 5.0, minimum=0)

    return Settings(
        environment=preset["name"],
        base_url=os.getenv("BOOKIO_BASE_URL", preset["base_url"]).rstrip("/"),
        facility=os.getenv("BOOKIO_FACILITY", preset["facility"]),
        username=os.getenv(f"{prefix}_USERNAME") or None,
        password=os.getenv(f"{prefix}_PASSWORD") or None,
        credentials_prefix=prefix,
        cookie_name=os.getenv("BOOKIO_COOKIE_NAME", "bses-0"),
        cookie_max_age_seconds=_float_env("COOKIE_MAX_AGE_HOURS", 12, minimum=1) * 3600,
        refresh_interval_seconds=_int_env("REFRESH_INTERVAL_MINUTES", 11 * 60, minimum=1) * 60,
        refresh_buffer_seconds=_int_env("REFRESH_BUFFER_MINUTES", 60, minimum=0) * 60,
        headless=_bool_env("HEADLESS", preset["headless"]),
        login_wait_seconds=_int_env("LOGIN_WAIT_SECONDS", 30, minimum=1),
        token_dir=os.getenv("TOKEN_DIR", "data/tokens"),
        request_timeout_seconds=_float_env("REQUEST_TIMEOUT_SECONDS", 20.0, minimum=1),
        slot_max_months=_int_env("SLOT_MAX_MONTHS", 3, minimum=1),
        slot_max_retries=_int_env("SLOT_MAX_RETRIES", 2, minimum=0),
        retry_backoff_base_seconds=backoff_base,
        retry_backoff_max_seconds=backoff_max,
        auto_worker_policy=auto_worker_policy,
        timezone=os.getenv("BOOKIO_TIMEZONE", "Europe/Bratislava"),
        scheduler_retry_delay_seconds=_float_env("SCHEDULER_RETRY_DELAY_SECONDS", 300, minimum=1),
        scheduler_retry_jitter_seconds=_float_env("SCHEDULER_RETRY_JITTER_SECONDS", 0, minimum=0),
        scheduler_failure_window=failure_window,
        scheduler_failure_threshold=failure_threshold,
    )
