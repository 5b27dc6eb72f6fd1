"""Soonest-slot search over the public widget API.

Scan order: months from the current one forward, days ascending within a
month, first day with any valid time wins. Each remote call is retried on its
own; a call that keeps failing only costs that day (or month), the search
goes on.
"""

from __future__ import annotations

import datetime as dt
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable
from zoneinfo import ZoneInfo

from tenacity import RetryCallState, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from bookiobot.config import Settings
from bookiobot.domain import (
    AUTO_WORKER,
    DaySlots,
    InvalidArgument,
    ServiceUnavailable,
    SlotCheck,
    SlotQuery,
    SlotResult,
    TransientQueryFailure,
)
from bookiobot.widget_api import WidgetClient

logger = logging.getLogger(__name__)

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def _short_exc(retry_state: RetryCallState) -> str | None:
    if retry_state.outcome is None or not retry_state.outcome.failed:
        return None
    exc = retry_state.outcome.exception()
    if exc is None:
        return None
    msg = str(exc).strip()
    return f"{type(exc).__name__}: {msg}" if msg else type(exc).__name__


def _log_before_sleep(retry_state: RetryCallState) -> None:
    sleep_seconds = getattr(retry_state.next_action, "sleep", None)
    logger.info(
        "Attempt %s failed (%s), retrying in %.1fs",
        retry_state.attempt_number,
        _short_exc(retry_state),
        sleep_seconds or 0,
    )


def _minutes(value: str) -> int | None:
    m = _TIME_RE.match(value.strip())
    if not m:
        return None
    return int(m.group(1)) * 60 + int(m.group(2))


def _time_key(value: str) -> tuple[int, int, str]:
    minutes = _minutes(value)
    if minutes is None:
        return (1, 0, value)
    return (0, minutes, value)


def _add_months(day: dt.date, months: int) -> dt.date:
    index = day.year * 12 + day.month - 1 + months
    return dt.date(index // 12, index % 12 + 1, 1)


def parse_allowed_days(data: dict[str, Any]) -> list[dt.date] | None:
    """Bookable dates from an allowedDays body, or None when the month is unusable."""
    if not data or data.get("cantReserve"):
        return None

    days = data.get("allowedDays")
    if not isinstance(days, list) or not days:
        return None

    try:
        year = int(data["year"])
        month = int(data["month"])
    except (KeyError, TypeError, ValueError):
        return None

    result: set[dt.date] = set()
    for day in days:
        try:
            result.add(dt.date(year, month, int(day)))
        except (TypeError, ValueError):
            logger.debug("Ignoring invalid allowed day %r for %d-%02d", day, year, month)
    return sorted(result)


def parse_times(data: dict[str, Any]) -> list[str] | None:
    """Time ids from an allowedTimes body, earliest first.

    None when the day has no slots or any entry is malformed; a half-broken
    list is not trusted.
    """
    times = data.get("times") if data else None
    entries = times.get("all") if isinstance(times, dict) else None
    if not isinstance(entries, list) or not entries:
        return None

    ids: list[str] = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("id"):
            logger.warning("Malformed time entry %r, ignoring the whole day", entry)
            return None
        ids.append(str(entry["id"]))

    return sorted(dict.fromkeys(ids), key=_time_key)


def parse_section_times(data: dict[str, Any], section: str) -> list[str]:
    """Time ids of one part of the day ("mornings" or "afternoon"), earliest first."""
    times = data.get("times") if data else None
    block = times.get(section) if isinstance(times, dict) else None
    entries = block.get("data") if isinstance(block, dict) else None
    if not isinstance(entries, list):
        return []
    ids = [str(e["id"]) for e in entries if isinstance(e, dict) and e.get("id")]
    return sorted(dict.fromkeys(ids), key=_time_key)


def _validate_service_id(value: Any) -> int:
    if isinstance(value, bool):
        raise InvalidArgument(f"Invalid service id: {value!r}")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value <= 0:
        raise InvalidArgument(f"Invalid service id: {value!r}. Expected a positive integer.")
    return value


def _validate_worker_id(value: Any) -> int | str:
    if value == AUTO_WORKER:
        return AUTO_WORKER
    if isinstance(value, bool):
        raise InvalidArgument(f"Invalid worker id: {value!r}")
    if isinstance(value, str) and re.fullmatch(r"-?\d+", value.strip()):
        value = int(value.strip())
    if not isinstance(value, int):
        raise InvalidArgument(f"Invalid worker id: {value!r}. Expected an integer or {AUTO_WORKER!r}.")
    return value


@dataclass
class _SearchStats:
    calls: int = 0
    months: int = 0


class SlotFinder:
    def __init__(
        self,
        widget: WidgetClient,
        settings: Settings,
        *,
        now: Callable[[], dt.datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._widget = widget
        self._settings = settings
        self._now = now or (lambda: dt.datetime.now(ZoneInfo(settings.timezone)))
        self._sleep = sleep

    def close(self) -> None:
        self._widget.close()

    def _call(self, stats: _SearchStats, max_retries: int, fn: Callable[..., Any], *args: Any) -> Any:
        def _attempt() -> Any:
            stats.calls += 1
            return fn(*args)

        decorated = retry(
            stop=stop_after_attempt(max_retries + 1),
            wait=wait_exponential(
                multiplier=self._settings.retry_backoff_base_seconds,
                max=self._settings.retry_backoff_max_seconds,
            ),
            retry=retry_if_exception_type(TransientQueryFailure),
            before_sleep=_log_before_sleep,
            sleep=self._sleep,
            reraise=True,
        )(_attempt)

        return decorated()

    def _resolve_worker(self, service_id: int, stats: _SearchStats, max_retries: int) -> int:
        try:
            workers = self._call(stats, max_retries, self._widget.get_workers, service_id)
        except TransientQueryFailure as e:
            raise ServiceUnavailable(f"Could not load workers for service {service_id}: {e}") from e

        if not workers:
            raise ServiceUnavailable(f"Service {service_id} has no workers available")

        no_preference = [w for w in workers if w.is_no_preference]
        real = [w for w in workers if not w.is_no_preference]

        if self._settings.auto_worker_policy == "no-preference" and no_preference:
            chosen = no_preference[0]
        else:
            chosen = (real or workers)[0]

        logger.info("Auto-selected worker %s (%s) for service %s", chosen.worker_id, chosen.name, service_id)
        return chosen.worker_id

    def find_soonest_slot(
        self,
        service_id: Any,
        worker_id: Any = AUTO_WORKER,
        max_months: int | None = None,
        max_retries: int | None = None,
    ) -> SlotResult:
        max_months = self._settings.slot_max_months if max_months is None else max_months
        max_retries = self._settings.slot_max_retries if max_retries is None else max_retries
        if not isinstance(max_months, int) or max_months < 1:
            raise InvalidArgument("max_months must be >= 1")
        if not isinstance(max_retries, int) or max_retries < 0:
            raise InvalidArgument("max_retries must be >= 0")

        now = self._now()
        query = SlotQuery(
            service_id=_validate_service_id(service_id),
            worker_id=_validate_worker_id(worker_id),
            start_date=now.date(),
            max_months=max_months,
            max_retries=max_retries,
        )
        return self._search(query, now)

    def _search(self, query: SlotQuery, now: dt.datetime) -> SlotResult:
        started = time.monotonic()
        stats = _SearchStats()
        today = query.start_date

        def _result(**kwargs: Any) -> SlotResult:
            return SlotResult(
                service_id=query.service_id,
                worker_id=worker_id,
                months_searched=stats.months,
                calls_made=stats.calls,
                elapsed_ms=int((time.monotonic() - started) * 1000),
                **kwargs,
            )

        if query.worker_id == AUTO_WORKER:
            worker_id = self._resolve_worker(query.service_id, stats, query.max_retries)
        else:
            worker_id = int(query.worker_id)

        seen_months: set[tuple[int, int]] = set()

        for month_offset in range(query.max_months):
            stats.months += 1
            month_start: dt.datetime | dt.date = now.replace(tzinfo=None) if month_offset == 0 else _add_months(today, month_offset)

            try:
                data = self._call(
                    stats, query.max_retries, self._widget.get_allowed_days, query.service_id, worker_id, month_start
                )
            except TransientQueryFailure as e:
                logger.warning("Allowed days for month +%d unavailable, skipping month (%s)", month_offset, e)
                continue

            days = parse_allowed_days(data)
            if days is None:
                logger.info("No reservable days in month +%d", month_offset)
                continue

            month_key = (days[0].year, days[0].month)
            if month_key in seen_months:
                logger.info("Month %d-%02d already scanned, skipping", *month_key)
                continue
            seen_months.add(month_key)

            for day in days:
                if day < today:
                    continue

                try:
                    times_data = self._call(
                        stats, query.max_retries, self._widget.get_allowed_times, query.service_id, worker_id, day
                    )
                except TransientQueryFailure as e:
                    logger.warning("Allowed times for %s unavailable, skipping day (%s)", day.isoformat(), e)
                    continue

                times = parse_times(times_data)
                if not times:
                    continue

                result = _result(
                    found=True,
                    date=day,
                    time=times[0],
                    total_slots=len(times),
                    alternatives=times[1:],
                    days_from_now=max(0, (day - today).days),
                )
                logger.info(
                    "Soonest slot for service %s: %s %s (worker %s, %d calls)",
                    query.service_id,
                    day.isoformat(),
                    times[0],
                    worker_id,
                    stats.calls,
                )
                return result

        logger.info(
            "No slots for service %s in %d months (%d calls)", query.service_id, stats.months, stats.calls
        )
        return _result(found=False)

    def get_day_slots(self, service_id: Any, worker_id: Any, day: dt.date, max_retries: int | None = None) -> DaySlots:
        """All offered times of one day, split into morning and afternoon as the widget does."""
        service_id = _validate_service_id(service_id)
        worker_id = _validate_worker_id(worker_id)
        max_retries = self._settings.slot_max_retries if max_retries is None else max_retries

        stats = _SearchStats()
        if worker_id == AUTO_WORKER:
            worker_id = self._resolve_worker(service_id, stats, max_retries)

        data = self._call(stats, max_retries, self._widget.get_allowed_times, service_id, worker_id, day)
        return DaySlots(
            service_id=service_id,
            worker_id=worker_id,
            date=day,
            times=tuple(parse_times(data) or ()),
            morning_times=tuple(parse_section_times(data, "mornings")),
            afternoon_times=tuple(parse_section_times(data, "afternoon")),
        )

    def check_slot(self, service_id: Any, worker_id: Any, day: dt.date, time_id: str, max_retries: int | None = None) -> SlotCheck:
        """Is time_id offered on day? If not, report the closest offered times."""
        service_id = _validate_service_id(service_id)
        worker_id = _validate_worker_id(worker_id)
        if worker_id == AUTO_WORKER:
            raise InvalidArgument("check_slot needs a concrete worker id")
        if _minutes(time_id) is None:
            raise InvalidArgument(f"Invalid time: {time_id!r}. Expected HH:MM.")
        max_retries = self._settings.slot_max_retries if max_retries is None else max_retries

        data = self._call(_SearchStats(), max_retries, self._widget.get_allowed_times, service_id, worker_id, day)
        times = parse_times(data) or []

        if time_id in times:
            return SlotCheck(service_id, worker_id, day, time_id, available=True, total_slots=len(times))

        wanted = _minutes(time_id)
        timed = [t for t in times if _minutes(t) is not None]
        closest = sorted(timed, key=lambda t: (abs(_minutes(t) - wanted), _minutes(t)))[:3]
        return SlotCheck(
            service_id,
            worker_id,
            day,
            time_id,
            available=False,
            total_slots=len(times),
            closest_times=tuple(closest),
        )
