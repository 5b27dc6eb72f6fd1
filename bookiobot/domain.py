from __future__ import annotations

import datetime as dt
import re
from dataclasses import asdict, dataclass, field
from typing import Any

import httpx

# Widget API worker id meaning "Nezáleží" (no staff preference).
NO_PREFERENCE_WORKER_ID = -1
AUTO_WORKER = "auto"


def make_token_id(account_id: str, environment: str, facility_id: str) -> str:
    account = re.sub(r"[@.]", "_", account_id)
    facility = re.sub(r"[^a-zA-Z0-9-]", "_", facility_id)
    return f"{account}_{environment}_{facility}"


@dataclass(frozen=True)
class AccountCredentials:
    username: str
    password: str

    def __repr__(self) -> str:
        return f"AccountCredentials(username={self.username!r}, password='***')"


@dataclass(frozen=True)
class LoginResult:
    """What a browser login hands back: the session cookie and its lifetime."""

    token_value: str
    cookie_name: str
    observed_lifetime_seconds: float | None = None


@dataclass(frozen=True)
class CredentialRecord:
    account_id: str
    environment: str
    facility_id: str

    token_value: str
    cookie_name: str
    issued_at: float
    expires_at: float
    last_refreshed_at: float
    last_used_at: float
    use_count: int = 0
    is_active: bool = True

    @property
    def token_id(self) -> str:
        return make_token_id(self.account_id, self.environment, self.facility_id)

    def remaining_seconds(self, now: float) -> float:
        return self.expires_at - now


@dataclass(frozen=True)
class RefreshAttempt:
    timestamp: float
    success: bool
    duration_ms: int
    error: str | None = None
    trigger: str = "scheduled"


@dataclass(frozen=True)
class Worker:
    worker_id: int
    name: str

    @property
    def is_no_preference(self) -> bool:
        return self.worker_id == NO_PREFERENCE_WORKER_ID


@dataclass(frozen=True)
class SlotQuery:
    service_id: int
    worker_id: int | str
    start_date: dt.date
    max_months: int
    max_retries: int


@dataclass
class SlotResult:
    """Outcome of a soonest-slot search.

    found=False is a normal answer (nothing bookable in the searched window),
    not an error.
    """

    found: bool
    service_id: int
    worker_id: int | None = None
    date: dt.date | None = None
    time: str | None = None
    total_slots: int = 0
    alternatives: list[str] = field(default_factory=list)
    days_from_now: int | None = None

    months_searched: int = 0
    calls_made: int = 0
    elapsed_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["date"] = self.date.isoformat() if self.date else None
        return data


@dataclass(frozen=True)
class SlotCheck:
    service_id: int
    worker_id: int
    date: dt.date
    time: str
    available: bool
    total_slots: int = 0
    closest_times: tuple[str, ...] = ()


@dataclass(frozen=True)
class DaySlots:
    """Every offered time of one day, with the widget's morning/afternoon split."""

    service_id: int
    worker_id: int
    date: dt.date
    times: tuple[str, ...] = ()
    morning_times: tuple[str, ...] = ()
    afternoon_times: tuple[str, ...] = ()

    @property
    def total_slots(self) -> int:
        return len(self.times)


@dataclass(frozen=True)
class BookingRequest:
    service_id: int
    worker_id: int
    date: dt.date
    time: str  # HH:MM
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    country: str = "sk"
    duration_minutes: int = 40
    time_before_minutes: int = 10
    time_after_minutes: int = 10
    price: float = 0.0
    worker_name: str = "AI Recepcia"
    worker_color: str = "#26a69a"
    allow_marketing: bool = False


@dataclass
class BookingOutcome:
    success: bool
    booking_id: str | None = None
    error: str | None = None
    errors: dict[str, Any] = field(default_factory=dict)
    data: Any = None
    status_code: int | None = None


class BookioError(RuntimeError):
    """Base class for every error this package raises on purpose."""


class ConfigurationError(BookioError):
    """Missing or invalid configuration. Fix the environment and restart."""


class NoCredentialError(BookioError):
    pass


class LoginFailure(BookioError):
    """The browser login did not yield a session cookie."""


class AuthRejected(BookioError):
    """A privileged call was still rejected (401/403) after one forced refresh."""

    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"Request rejected with HTTP {response.status_code} after re-authentication")
        self.response = response


class TransientQueryFailure(BookioError):
    """A public widget query failed or timed out; safe to retry."""


class InvalidArgument(BookioError, ValueError):
    pass


class ServiceUnavailable(BookioError):
    """No worker can serve the requested service right now."""
