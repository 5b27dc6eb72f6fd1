from __future__ import annotations

import datetime as dt
import logging
from typing import Any

import httpx

from bookiobot.config import Settings
from bookiobot.domain import TransientQueryFailure, Worker

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/139.0 Safari/537.36"


def format_widget_date(moment: dt.datetime | dt.date) -> str:
    # The widget API wants "DD.MM.YYYY HH:MM" even for whole-day queries.
    if not isinstance(moment, dt.datetime):
        moment = dt.datetime.combine(moment, dt.time())
    return moment.strftime("%d.%m.%Y %H:%M")


class WidgetClient:
    """Unauthenticated queries against the public booking widget API.

    Every failure mode (timeout, transport error, non-2xx, non-JSON body)
    surfaces as TransientQueryFailure so callers can retry uniformly.
    """

    def __init__(self, settings: Settings, *, http: httpx.Client | None = None, lang: str = "sk") -> None:
        self._settings = settings
        self._lang = lang
        self._http = http or httpx.Client(
            timeout=settings.request_timeout_seconds,
            headers={
                "Accept": "application/json, text/plain, */*",
                "Origin": settings.base_url,
                "Referer": settings.widget_url,
                "User-Agent": USER_AGENT,
            },
        )

    def close(self) -> None:
        self._http.close()

    def _post(self, endpoint: str, payload: dict[str, Any]) -> Any:
        url = f"{self._settings.widget_api_url}/{endpoint}"
        try:
            r = self._http.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientQueryFailure(f"{endpoint} timed out") from e
        except httpx.HTTPError as e:
            raise TransientQueryFailure(f"{endpoint} failed: {type(e).__name__}: {e}") from e

        if r.status_code >= 400:
            raise TransientQueryFailure(f"{endpoint} returned HTTP {r.status_code}")

        try:
            body = r.json()
        except ValueError as e:
            raise TransientQueryFailure(f"{endpoint} returned a non-JSON body") from e

        if not isinstance(body, dict):
            raise TransientQueryFailure(f"{endpoint} returned an unexpected body")
        return body.get("data")

    def _slot_payload(self, service_id: int, worker_id: int, date: str) -> dict[str, Any]:
        return {
            "serviceId": int(service_id),
            "workerId": int(worker_id),
            "date": date,
            "addons": [],
            "count": 1,
            "participantsCount": 0,
            "lang": self._lang,
        }

    def get_workers(self, service_id: int) -> list[Worker]:
        data = self._post("workers", {"serviceId": int(service_id), "lang": self._lang})
        workers: list[Worker] = []
        for item in data or []:
            try:
                workers.append(Worker(worker_id=int(item["workerId"]), name=str(item.get("name", ""))))
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed worker entry: %r", item)
        return workers

    def get_allowed_days(self, service_id: int, worker_id: int, month_start: dt.datetime | dt.date) -> dict[str, Any]:
        data = self._post("allowedDays", self._slot_payload(service_id, worker_id, format_widget_date(month_start)))
        return data if isinstance(data, dict) else {}

    def get_allowed_times(self, service_id: int, worker_id: int, day: dt.date) -> dict[str, Any]:
        data = self._post("allowedTimes", self._slot_payload(service_id, worker_id, format_widget_date(day)))
        return data if isinstance(data, dict) else {}
