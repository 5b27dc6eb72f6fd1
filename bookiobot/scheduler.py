from __future__ import annotations

import datetime as dt
import logging
import random
import threading
import time
from collections import deque
from dataclasses import asdict
from typing import Any, Callable

from bookiobot.config import Settings
from bookiobot.domain import InvalidArgument, RefreshAttempt
from bookiobot.session import SessionManager

logger = logging.getLogger(__name__)

MIN_DELAY_SECONDS = 60.0

TimerFactory = Callable[[float, Callable[[], None]], Any]


def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return dt.datetime.fromtimestamp(ts, tz=dt.timezone.utc).isoformat()


def jitter_delay(base_seconds: float, variation_seconds: float) -> float:
    if variation_seconds <= 0:
        return float(base_seconds)
    return max(1.0, base_seconds + random.uniform(-variation_seconds, variation_seconds))


class RefreshScheduler:
    """Renews the session cookie ahead of expiry on a background timer.

    The timer is only a hint: SessionManager.get_token() refreshes lazily on
    its own. After too many recent failures the scheduler stops re-arming
    itself until force_refresh() succeeds.
    """

    def __init__(
        self,
        manager: SessionManager,
        settings: Settings,
        *,
        timer_factory: TimerFactory = threading.Timer,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._manager = manager
        self._settings = settings
        self._timer_factory = timer_factory
        self._clock = clock

        self._lock = threading.RLock()
        self._timer: Any = None
        self._running = False
        self._halted = False
        self._next_run_at: float | None = None
        self.refresh_interval_seconds = float(settings.refresh_interval_seconds)
        self.consecutive_failures = 0
        self.history: deque[RefreshAttempt] = deque(maxlen=settings.scheduler_history_size)

        self._stats: dict[str, Any] = {
            "total_refreshes": 0,
            "successful_refreshes": 0,
            "failed_refreshes": 0,
            "last_success": None,
            "last_failure": None,
            "start_time": None,
        }

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def auto_refresh_halted(self) -> bool:
        return self._halted

    @property
    def has_timer(self) -> bool:
        return self._timer is not None

    def start(self) -> bool:
        with self._lock:
            if self._running:
                logger.warning("Scheduler already running")
                return False

            logger.info(
                "Starting refresh scheduler (%s environment), interval %.0f minutes",
                self._settings.environment,
                self.refresh_interval_seconds / 60,
            )
            self._manager.initialize()

            self._running = True
            self._halted = False
            self._stats["start_time"] = self._clock()
            self._arm(self._next_delay())
            return True

    def stop(self) -> bool:
        with self._lock:
            if not self._running:
                logger.debug("Scheduler not running")
                return False

            logger.info("Stopping refresh scheduler")
            self._cancel_timer()
            self._running = False
            return True

    def set_refresh_interval(self, seconds: float) -> None:
        if seconds < MIN_DELAY_SECONDS:
            raise InvalidArgument("Refresh interval must be at least 1 minute")

        with self._lock:
            logger.info("Updating refresh interval to %.0f minutes", seconds / 60)
            self.refresh_interval_seconds = float(seconds)
            if self._running and not self._halted:
                self._arm(self._next_delay())

    def force_refresh(self) -> None:
        """Manual refresh; also the way out of a halted scheduler."""
        logger.info("Forcing immediate refresh")
        ok = self._attempt_refresh(trigger="manual", reraise=True)

        with self._lock:
            if ok:
                if self._halted:
                    logger.info("Automatic refresh resumed after manual refresh")
                self._halted = False
                if self._running:
                    self._arm(self._next_delay())

    # region timer
    def _next_delay(self) -> float:
        now = self._clock()
        candidates = []

        next_refresh = self._manager.next_refresh_at()
        if next_refresh is not None:
            candidates.append(next_refresh - now)

        last_refresh = self._manager.last_refresh_at()
        if last_refresh is not None:
            candidates.append(last_refresh + self.refresh_interval_seconds - now)

        delay = min(candidates) if candidates else self.refresh_interval_seconds
        return max(MIN_DELAY_SECONDS, delay)

    def _arm(self, delay: float) -> None:
        self._cancel_timer()
        self._next_run_at = self._clock() + delay
        logger.info("Next refresh scheduled in %.0f minutes", delay / 60)

        timer = self._timer_factory(delay, self._on_timer)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._next_run_at = None

    def _on_timer(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._timer = None
            self._next_run_at = None

        logger.info("Performing scheduled cookie refresh")
        ok = self._attempt_refresh(trigger="scheduled", reraise=False)

        with self._lock:
            if not self._running:
                return
            if ok:
                self._arm(self._next_delay())
            elif self._should_retry():
                delay = jitter_delay(
                    self._settings.scheduler_retry_delay_seconds,
                    self._settings.scheduler_retry_jitter_seconds,
                )
                logger.info("Scheduling retry in %.0f seconds", delay)
                self._arm(delay)
            else:
                self._halted = True
                logger.error(
                    "Scheduled refresh failed %d times in the last %d attempts; "
                    "automatic refresh halted until a manual refresh succeeds",
                    self._recent_failures(),
                    self._settings.scheduler_failure_window,
                )

    # endregion

    def _attempt_refresh(self, *, trigger: str, reraise: bool) -> bool:
        started = time.monotonic()
        try:
            self._manager.force_refresh()
        except Exception as e:
            self._record(False, started, trigger, f"{type(e).__name__}: {e}")
            logger.error("%s refresh failed (%s: %s)", trigger.capitalize(), type(e).__name__, e)
            if reraise:
                raise
            return False

        self._record(True, started, trigger, None)
        logger.info("%s refresh completed", trigger.capitalize())
        return True

    def _record(self, success: bool, started: float, trigger: str, error: str | None) -> None:
        now = self._clock()
        attempt = RefreshAttempt(
            timestamp=now,
            success=success,
            duration_ms=int((time.monotonic() - started) * 1000),
            error=error,
            trigger=trigger,
        )
        with self._lock:
            self.history.append(attempt)
            self._stats["total_refreshes"] += 1
            if success:
                self._stats["successful_refreshes"] += 1
                self._stats["last_success"] = now
                self.consecutive_failures = 0
            else:
                self._stats["failed_refreshes"] += 1
                self._stats["last_failure"] = now
                self.consecutive_failures += 1

    def _recent_failures(self) -> int:
        window = list(self.history)[-self._settings.scheduler_failure_window :]
        return sum(1 for attempt in window if not attempt.success)

    def _should_retry(self) -> bool:
        return self._recent_failures() < self._settings.scheduler_failure_threshold

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            recent = [asdict(a) | {"timestamp": _iso(a.timestamp)} for a in list(self.history)[-10:]]
            scheduler = {
                "running": self._running,
                "refresh_interval_seconds": self.refresh_interval_seconds,
                "auto_refresh_halted": self._halted,
                "consecutive_failures": self.consecutive_failures,
                "next_run_at": _iso(self._next_run_at),
                "stats": {
                    key: _iso(value) if key in ("last_success", "last_failure", "start_time") else value
                    for key, value in self._stats.items()
                },
                "recent_refreshes": recent,
            }
        return {"scheduler": scheduler, "auth": self._manager.get_status()}

    def get_statistics(self) -> dict[str, Any]:
        with self._lock:
            start_time = self._stats["start_time"]
            uptime = self._clock() - start_time if start_time is not None else 0
            total = self._stats["total_refreshes"]
            success_rate = self._stats["successful_refreshes"] / total * 100 if total else 0

            return {
                "uptime_minutes": round(uptime / 60),
                "total_refreshes": total,
                "successful_refreshes": self._stats["successful_refreshes"],
                "failed_refreshes": self._stats["failed_refreshes"],
                "success_rate": f"{success_rate:.2f}%",
                "last_success": _iso(self._stats["last_success"]),
                "last_failure": _iso(self._stats["last_failure"]),
                "environment": self._settings.environment,
            }
