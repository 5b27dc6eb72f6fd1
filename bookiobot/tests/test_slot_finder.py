from __future__ import annotations

import datetime as dt
from zoneinfo import ZoneInfo

import pytest

from bookiobot.config import Settings
from bookiobot.domain import InvalidArgument, ServiceUnavailable, TransientQueryFailure, Worker
from bookiobot.slot_finder import SlotFinder, parse_allowed_days, parse_times

NOW = dt.datetime(2025, 3, 10, 9, 30, tzinfo=ZoneInfo("Europe/Bratislava"))
TODAY = NOW.date()


class _FakeWidget:
    """Scripted widget API. failures maps a call key to how many times it fails first."""

    def __init__(self, *, workers=None, days=None, times=None, failures=None) -> None:
        self.workers = workers or []
        self.days = days or {}
        self.times = times or {}
        self.failures = dict(failures or {})
        self.calls: list[tuple] = []

    def _maybe_fail(self, key) -> None:
        if self.failures.get(key, 0) > 0:
            self.failures[key] -= 1
            raise TransientQueryFailure(f"{key} flaked")

    def get_workers(self, service_id: int) -> list[Worker]:
        self.calls.append(("workers", service_id))
        self._maybe_fail("workers")
        return list(self.workers)

    def get_allowed_days(self, service_id: int, worker_id: int, month_start) -> dict:
        key = (month_start.year, month_start.month)
        self.calls.append(("days", worker_id, key))
        self._maybe_fail(key)
        return self.days.get(key, {"cantReserve": True})

    def get_allowed_times(self, service_id: int, worker_id: int, day: dt.date) -> dict:
        self.calls.append(("times", worker_id, day))
        self._maybe_fail(day)
        return self.times.get(day, {"times": {"all": []}})


def _days(year: int, month: int, *days: int) -> dict:
    return {"allowedDays": list(days), "year": year, "month": month}


def _times(*ids: str) -> dict:
    return {"times": {"all": [{"id": i, "name": i} for i in ids]}}


def _settings(**overrides) -> Settings:
    values = dict(environment="Demo", base_url="https://bookio.test", facility="ai-recepcia")
    values.update(overrides)
    return Settings(**values)


def _finder(widget: _FakeWidget, sleeps: list[float] | None = None, **overrides) -> SlotFinder:
    sleeps = sleeps if sleeps is not None else []
    return SlotFinder(widget, _settings(**overrides), now=lambda: NOW, sleep=sleeps.append)


def test_returns_earliest_day_and_earliest_time() -> None:
    widget = _FakeWidget(
        days={(2025, 3): _days(2025, 3, 15, 10, 12)},
        times={
            dt.date(2025, 3, 10): _times(),
            dt.date(2025, 3, 12): _times("14:00", "09:30", "11:00"),
            dt.date(2025, 3, 15): _times("08:00"),
        },
    )

    result = _finder(widget).find_soonest_slot(101, 7)

    assert result.found
    assert result.date == dt.date(2025, 3, 12)
    assert result.time == "09:30"
    assert result.alternatives == ["11:00", "14:00"]
    assert result.total_slots == 3
    assert result.days_from_now == 2
    assert result.worker_id == 7
    # The 15th is never queried once the 12th has a slot.
    assert ("times", 7, dt.date(2025, 3, 15)) not in widget.calls


def test_first_month_query_uses_current_time() -> None:
    widget = _FakeWidget()
    seen: list = []
    widget.get_allowed_days = lambda service_id, worker_id, month_start: seen.append(month_start) or {"cantReserve": True}

    _finder(widget).find_soonest_slot(101, 7, max_months=2)

    assert seen == [dt.datetime(2025, 3, 10, 9, 30), dt.date(2025, 4, 1)]


def test_no_availability_is_not_an_error() -> None:
    widget = _FakeWidget()

    result = _finder(widget).find_soonest_slot(101, 7, max_months=3)

    assert result.found is False
    assert result.months_searched == 3
    assert result.date is None and result.time is None
    assert result.calls_made == 3
    assert [c[2] for c in widget.calls] == [(2025, 3), (2025, 4), (2025, 5)]


def test_retry_bound_per_call_with_exponential_backoff() -> None:
    widget = _FakeWidget(failures={(2025, 3): 99})
    sleeps: list[float] = []

    result = _finder(widget, sleeps).find_soonest_slot(101, 7, max_months=1, max_retries=2)

    assert result.found is False
    assert result.calls_made == 3
    assert sleeps == [1.0, 2.0]


def test_backoff_is_capped() -> None:
    widget = _FakeWidget(failures={(2025, 3): 99})
    sleeps: list[float] = []

    _finder(widget, sleeps).find_soonest_slot(101, 7, max_months=1, max_retries=4)

    assert sleeps == [1.0, 2.0, 4.0, 5.0]


def test_exhausted_month_is_skipped_and_search_continues() -> None:
    widget = _FakeWidget(
        days={(2025, 4): _days(2025, 4, 2)},
        times={dt.date(2025, 4, 2): _times("10:00")},
        failures={(2025, 3): 99},
    )

    result = _finder(widget).find_soonest_slot(101, 7, max_retries=1)

    assert result.found
    assert result.date == dt.date(2025, 4, 2)
    assert result.months_searched == 2
    assert result.calls_made == 2 + 1 + 1


def test_flaky_day_recovers_within_retry_budget() -> None:
    widget = _FakeWidget(
        days={(2025, 3): _days(2025, 3, 11)},
        times={dt.date(2025, 3, 11): _times("10:00")},
        failures={dt.date(2025, 3, 11): 1},
    )
    sleeps: list[float] = []

    result = _finder(widget, sleeps).find_soonest_slot(101, 7)

    assert result.found
    assert sleeps == [1.0]
    assert result.calls_made == 3


def test_days_before_today_are_dropped() -> None:
    widget = _FakeWidget(
        days={(2025, 3): _days(2025, 3, 3, 11)},
        times={dt.date(2025, 3, 3): _times("08:00"), dt.date(2025, 3, 11): _times("10:00")},
    )

    result = _finder(widget).find_soonest_slot(101, 7)

    assert result.date == dt.date(2025, 3, 11)
    assert ("times", 7, dt.date(2025, 3, 3)) not in widget.calls


def test_month_answered_twice_is_not_rescanned() -> None:
    widget = _FakeWidget()
    # The remote keeps answering with March whatever month is asked for.
    widget.get_allowed_days = lambda service_id, worker_id, month_start: _days(2025, 3, 20)

    result = _finder(widget).find_soonest_slot(101, 7, max_months=3)

    assert result.found is False
    assert result.months_searched == 3
    assert widget.calls == [("times", 7, dt.date(2025, 3, 20))]


def test_malformed_time_entry_skips_the_day() -> None:
    widget = _FakeWidget(
        days={(2025, 3): _days(2025, 3, 11, 12)},
        times={
            dt.date(2025, 3, 11): {"times": {"all": [{"id": "09:00"}, {"name": "no id"}]}},
            dt.date(2025, 3, 12): _times("13:00"),
        },
    )

    result = _finder(widget).find_soonest_slot(101, 7)

    assert result.date == dt.date(2025, 3, 12)
    assert result.time == "13:00"


def test_auto_worker_picks_first_real_worker() -> None:
    widget = _FakeWidget(
        workers=[Worker(-1, "Nezáleží"), Worker(7, "Eva"), Worker(9, "Jana")],
        days={(2025, 3): _days(2025, 3, 11)},
        times={dt.date(2025, 3, 11): _times("10:00")},
    )

    result = _finder(widget).find_soonest_slot("101")

    assert result.worker_id == 7
    assert result.calls_made == 3


def test_auto_worker_no_preference_policy_uses_sentinel() -> None:
    widget = _FakeWidget(workers=[Worker(7, "Eva"), Worker(-1, "Nezáleží")])

    result = _finder(widget, auto_worker_policy="no-preference").find_soonest_slot(101, max_months=1)

    assert result.worker_id == -1


def test_auto_worker_falls_back_to_sentinel_when_alone() -> None:
    widget = _FakeWidget(workers=[Worker(-1, "Nezáleží")])

    result = _finder(widget).find_soonest_slot(101, max_months=1)

    assert result.worker_id == -1


def test_auto_worker_without_workers_raises_service_unavailable() -> None:
    with pytest.raises(ServiceUnavailable):
        _finder(_FakeWidget(workers=[])).find_soonest_slot(101)


def test_auto_worker_fetch_exhausting_retries_raises_service_unavailable() -> None:
    widget = _FakeWidget(workers=[Worker(7, "Eva")], failures={"workers": 99})

    with pytest.raises(ServiceUnavailable):
        _finder(widget).find_soonest_slot(101, max_retries=1)
    assert len(widget.calls) == 2


@pytest.mark.parametrize(
    "kwargs",
    [
        {"service_id": 0},
        {"service_id": "abc"},
        {"service_id": True},
        {"service_id": 101, "worker_id": "eva"},
        {"service_id": 101, "max_months": 0},
        {"service_id": 101, "max_retries": -1},
    ],
)
def test_invalid_arguments_fail_fast(kwargs: dict) -> None:
    widget = _FakeWidget()

    with pytest.raises(InvalidArgument):
        _finder(widget).find_soonest_slot(**kwargs)
    assert widget.calls == []


def test_result_serializes_date_as_iso() -> None:
    widget = _FakeWidget(days={(2025, 3): _days(2025, 3, 11)}, times={dt.date(2025, 3, 11): _times("10:00")})

    data = _finder(widget).find_soonest_slot(101, 7).to_dict()

    assert data["date"] == "2025-03-11"
    assert data["found"] is True


def test_check_slot_available() -> None:
    widget = _FakeWidget(times={dt.date(2025, 3, 11): _times("09:00", "10:00")})

    check = _finder(widget).check_slot(101, 7, dt.date(2025, 3, 11), "10:00")

    assert check.available
    assert check.total_slots == 2


def test_check_slot_suggests_closest_times() -> None:
    widget = _FakeWidget(times={dt.date(2025, 3, 11): _times("09:00", "10:00", "11:30", "13:00")})

    check = _finder(widget).check_slot(101, 7, dt.date(2025, 3, 11), "10:30")

    assert not check.available
    assert check.closest_times == ("10:00", "11:30", "09:00")


def test_check_slot_needs_concrete_worker_and_valid_time() -> None:
    finder = _finder(_FakeWidget())

    with pytest.raises(InvalidArgument):
        finder.check_slot(101, "auto", dt.date(2025, 3, 11), "10:00")
    with pytest.raises(InvalidArgument):
        finder.check_slot(101, 7, dt.date(2025, 3, 11), "ten")


def test_parse_allowed_days_rejects_unusable_months() -> None:
    assert parse_allowed_days({"cantReserve": True, "allowedDays": [1]}) is None
    assert parse_allowed_days({"allowedDays": [], "year": 2025, "month": 3}) is None
    assert parse_allowed_days({"allowedDays": [1]}) is None
    assert parse_allowed_days(_days(2025, 2, 30, 28, 28)) == [dt.date(2025, 2, 28)]


def test_parse_times_sorts_by_clock_time() -> None:
    assert parse_times(_times("13:00", "9:15", "10:00", "10:00")) == ["9:15", "10:00", "13:00"]
    assert parse_times({"times": {"all": []}}) is None
    assert parse_times({}) is None


def _split_times(morning: list[str], afternoon: list[str]) -> dict:
    all_ids = morning + afternoon
    return {
        "times": {
            "all": [{"id": i} for i in all_ids],
            "mornings": {"data": [{"id": i} for i in morning]},
            "afternoon": {"data": [{"id": i} for i in afternoon]},
        }
    }


def test_get_day_slots_splits_morning_and_afternoon() -> None:
    day = dt.date(2025, 3, 11)
    widget = _FakeWidget(times={day: _split_times(["10:00", "08:30"], ["13:00", "15:30"])})

    slots = _finder(widget).get_day_slots(101, 7, day)

    assert slots.times == ("08:30", "10:00", "13:00", "15:30")
    assert slots.morning_times == ("08:30", "10:00")
    assert slots.afternoon_times == ("13:00", "15:30")
    assert slots.total_slots == 4
    assert slots.worker_id == 7


def test_get_day_slots_empty_day() -> None:
    slots = _finder(_FakeWidget()).get_day_slots(101, 7, dt.date(2025, 3, 11))

    assert slots.times == ()
    assert slots.morning_times == () and slots.afternoon_times == ()
    assert slots.total_slots == 0


def test_get_day_slots_resolves_auto_worker() -> None:
    day = dt.date(2025, 3, 11)
    widget = _FakeWidget(workers=[Worker(-1, "Nezáleží"), Worker(9, "Jana")], times={day: _times("09:00")})

    slots = _finder(widget).get_day_slots(101, "auto", day)

    assert slots.worker_id == 9
    assert widget.calls == [("workers", 101), ("times", 9, day)]


def test_get_day_slots_raises_after_exhausted_retries() -> None:
    day = dt.date(2025, 3, 11)
    widget = _FakeWidget(failures={day: 99})
    sleeps: list[float] = []

    with pytest.raises(TransientQueryFailure):
        _finder(widget, sleeps).get_day_slots(101, 7, day, max_retries=1)
    assert sleeps == [1.0]
