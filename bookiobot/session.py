"""Session credential lifecycle for privileged Bookio endpoints.

The manager is a cache over the TokenStore. It adopts a stored cookie when
one is still comfortably valid, otherwise it asks the login driver for a new
one. Only one login runs at a time: concurrent callers that need a refresh
wait on the in-flight attempt and share its result.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
import time
from concurrent.futures import Future
from typing import Any, Callable

from bookiobot.config import Settings
from bookiobot.domain import CredentialRecord, LoginFailure, NoCredentialError, make_token_id
from bookiobot.token_store import TokenStore

logger = logging.getLogger(__name__)


def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return dt.datetime.fromtimestamp(ts, tz=dt.timezone.utc).isoformat()


class SessionManager:
    def __init__(
        self,
        settings: Settings,
        store: TokenStore,
        driver: Any,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._store = store
        self._driver = driver
        self._clock = clock

        self._record: CredentialRecord | None = None
        self._initialized = False
        self._lock = threading.Lock()
        self._init_lock = threading.Lock()
        self._inflight: Future[CredentialRecord] | None = None

    @property
    def buffer_seconds(self) -> float:
        return self._settings.refresh_buffer_seconds

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def is_valid(self, record: CredentialRecord | None) -> bool:
        if record is None:
            return False
        return record.remaining_seconds(self._clock()) > self.buffer_seconds

    def _token_id(self, username: str) -> str:
        return make_token_id(username, self._settings.environment, self._settings.facility)

    def restore(self) -> CredentialRecord | None:
        """Adopt the stored cookie, if any, without logging in or counting a use."""
        if self._record is None and self._settings.username:
            stored = self._store.load(self._token_id(self._settings.username))
            if stored is not None and stored.is_active:
                self._record = stored
        return self._record

    def initialize(self) -> None:
        if self._initialized:
            return

        with self._init_lock:
            if self._initialized:
                return

            credentials = self._settings.credentials()
            logger.info("Initializing session manager (%s environment)", self._settings.environment)

            # No usage bump here: get_token() counts the use.
            cached = self._store.load(self._token_id(credentials.username))
            if cached is not None and cached.is_active and self.is_valid(cached):
                logger.info("Loaded valid cookie from token storage")
                self._record = cached
            else:
                logger.info("No valid cookie found, performing fresh login")
                self._refresh(stale=cached, force=True)

            self._initialized = True

    def get_token(self) -> str:
        self.initialize()

        record = self._record
        if not self.is_valid(record):
            logger.info("Cookie needs refresh")
            record = self._refresh(stale=record)

        if record is None or record.remaining_seconds(self._clock()) <= 0:
            raise NoCredentialError("No valid authentication cookie available")

        try:
            self._store.touch(record.token_id, record.token_value)
        except OSError:
            logger.warning("Failed to update token usage for %s", record.token_id, exc_info=True)

        return record.token_value

    def get_cookie_header(self) -> str:
        token = self.get_token()
        return f"{self.cookie_name}={token}"

    @property
    def cookie_name(self) -> str:
        record = self._record
        return record.cookie_name if record is not None else self._settings.cookie_name

    def force_refresh(self, stale_token: str | None = None) -> CredentialRecord:
        """Discard the current cookie and log in again.

        With stale_token given, a refresh that already replaced that token
        (and produced a valid one) is reused instead of logging in again.
        """
        logger.info("Forcing authentication refresh")
        return self._refresh(stale=self._record, force=True, stale_token=stale_token)

    def _refresh(
        self,
        *,
        stale: CredentialRecord | None,
        force: bool = False,
        stale_token: str | None = None,
    ) -> CredentialRecord:
        with self._lock:
            future = self._inflight
            current = self._record
            if future is None:
                if self.is_valid(current) and (
                    (stale_token is not None and current.token_value != stale_token)
                    or (not force and current is not stale)
                ):
                    if force:
                        logger.info("Cookie was already refreshed by another caller")
                    return current
                if force:
                    self._record = None
                future = self._inflight = Future()
                owner = True
            else:
                owner = False

        if not owner:
            logger.info("Refresh already in progress, waiting...")
            return future.result()

        try:
            record = self._login()
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(record)
            return record
        finally:
            with self._lock:
                self._inflight = None

    def _login(self) -> CredentialRecord:
        credentials = self._settings.credentials()

        started = time.monotonic()
        try:
            result = self._driver.login(credentials, self._settings.auth_url)
        except LoginFailure:
            raise
        except Exception as e:
            raise LoginFailure(f"Browser login failed: {type(e).__name__}: {e}") from e

        if not result.token_value:
            raise LoginFailure("Browser login returned an empty session token")

        lifetime = result.observed_lifetime_seconds
        if lifetime is None:
            lifetime = self._settings.cookie_max_age_seconds
        elif lifetime <= 0:
            raise LoginFailure("Session cookie already expired at login")
        if lifetime <= self.buffer_seconds:
            logger.warning(
                "Cookie lifetime %.0fs is within the %.0fs refresh buffer; every request will trigger a login",
                lifetime,
                self.buffer_seconds,
            )

        now = self._clock()
        record = CredentialRecord(
            account_id=credentials.username,
            environment=self._settings.environment,
            facility_id=self._settings.facility,
            token_value=result.token_value,
            cookie_name=result.cookie_name or self._settings.cookie_name,
            issued_at=now,
            expires_at=now + lifetime,
            last_refreshed_at=now,
            last_used_at=now,
        )

        # Persist before anyone can read the new cookie from memory.
        self._store.save(record)
        self._record = record

        logger.info("Cookie refreshed in %.1fs, valid until %s", time.monotonic() - started, _iso(record.expires_at))
        return record

    def get_status(self) -> dict[str, Any]:
        record = self._record
        return {
            "initialized": self._initialized,
            "has_token": record is not None,
            "token_valid": self.is_valid(record),
            "refreshing": self._inflight is not None,
            "last_refresh": _iso(record.last_refreshed_at) if record else None,
            "expires_at": _iso(record.expires_at) if record else None,
            "next_refresh": _iso(record.expires_at - self.buffer_seconds) if record else None,
            "environment": self._settings.environment,
            "cookie_name": self.cookie_name,
        }

    def next_refresh_at(self) -> float | None:
        record = self._record
        return record.expires_at - self.buffer_seconds if record else None

    def last_refresh_at(self) -> float | None:
        record = self._record
        return record.last_refreshed_at if record else None
