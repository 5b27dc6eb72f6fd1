from __future__ import annotations

import logging
import threading
from typing import Any

import httpx

from bookiobot.config import Settings
from bookiobot.domain import AuthRejected, BookingOutcome, BookingRequest, InvalidArgument
from bookiobot.session import SessionManager
from bookiobot.widget_api import USER_AGENT

logger = logging.getLogger(__name__)

AUTH_STATUSES = (401, 403)
ADMIN_PREFIX = "/client-admin/"

BOOKING_ENDPOINT = "/client-admin/api/schedule/event/save"
BOOKINGS_ENDPOINT = "/client-admin/api/bookings"
CUSTOMER_BOOKINGS_ENDPOINT = "/client-admin/api/customers/bookings"
AUTH_CHECK_ENDPOINTS = (
    ("User Profile", "/client-admin/api/user/profile"),
    ("Schedule Data", "/client-admin/api/schedule/data"),
    ("Reservations Count", "/client-admin/api/facility/reservations-count"),
)


def calculate_end_time(start_time: str, duration_minutes: int) -> str:
    hours, minutes = (int(part) for part in start_time.split(":"))
    end = hours * 60 + minutes + duration_minutes
    return f"{end // 60:02d}:{end % 60:02d}"


def build_booking_payload(request: BookingRequest, facility: str) -> dict[str, Any]:
    date = request.date.strftime("%d.%m.%Y")
    worker = {
        "id": f"u_{request.worker_id}",
        "value": int(request.worker_id),
        "label": request.worker_name,
        "title": request.worker_name,
        "color": request.worker_color,
        "capacity": 1,
    }
    return {
        "event": {
            "type": 0,
            "service": {"value": int(request.service_id)},
            "count": 0,
            "dateFrom": date,
            "dateTo": date,
            "timeFrom": request.time,
            "timeTo": calculate_end_time(request.time, request.duration_minutes),
            "repeat": {
                "repeatReservation": False,
                "repeatDays": [False] * 7,
                "selectedInterval": {"label": "Weekly", "value": 1},
                "selectedRepeatDateTo": None,
            },
            "duration": int(request.duration_minutes),
            "timeBefore": int(request.time_before_minutes),
            "timeAfter": int(request.time_after_minutes),
            "name": f"{request.first_name} {request.last_name}".strip(),
            "phone": request.phone,
            "selectedCountry": request.country,
            "email": request.email,
            "price": float(request.price),
            "resObjects": [worker],
            "autoConfirmCustomer": None,
            "width": 1920,
            "height": 1080,
            "allowedMarketing": request.allow_marketing,
        },
        "facility": facility,
    }


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _booking_path(booking_id: Any, suffix: str = "") -> str:
    booking_id = str(booking_id).strip()
    if not booking_id:
        raise InvalidArgument("Booking id must not be empty")
    return f"{BOOKINGS_ENDPOINT}/{booking_id}{suffix}"


def _plain_outcome(response: httpx.Response, booking_id: str | None = None) -> BookingOutcome:
    body = _response_body(response)
    if not response.is_success:
        return BookingOutcome(
            success=False,
            booking_id=booking_id,
            error=f"HTTP {response.status_code}",
            status_code=response.status_code,
            data=body,
        )
    return BookingOutcome(success=True, booking_id=booking_id, data=body, status_code=response.status_code)


class AuthenticatedClient:
    """HTTP client for /client-admin/ endpoints.

    Sends the session cookie with every call. A 401/403 triggers one forced
    re-login and one replay; a second rejection raises AuthRejected.
    """

    def __init__(self, manager: SessionManager, settings: Settings, *, http: httpx.Client | None = None) -> None:
        self._manager = manager
        self._settings = settings
        self._http = http or httpx.Client(
            base_url=settings.base_url,
            timeout=settings.request_timeout_seconds,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": USER_AGENT,
            },
        )
        self._stats_lock = threading.Lock()
        self._stats = {
            "total_requests": 0,
            "successful_requests": 0,
            "failed_requests": 0,
            "auth_refreshes": 0,
        }

    def close(self) -> None:
        self._http.close()

    def _bump(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def _headers(self, path: str, token: str) -> dict[str, str]:
        headers = {"Cookie": f"{self._manager.cookie_name}={token}"}
        if ADMIN_PREFIX in path:
            headers["Referer"] = self._settings.base_url
            headers["Origin"] = self._settings.base_url
        return headers

    def _send(self, method: str, path: str, token: str, **kwargs: Any) -> httpx.Response:
        logger.debug("Request to: %s %s", method.upper(), path)
        return self._http.request(method, path, headers=self._headers(path, token), **kwargs)

    def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        self._bump("total_requests")
        try:
            token = self._manager.get_token()
            response = self._send(method, path, token, json=json, params=params)

            if response.status_code in AUTH_STATUSES:
                logger.warning("Auth error %s from %s, refreshing cookie", response.status_code, path)
                self._bump("auth_refreshes")
                self._manager.force_refresh(stale_token=token)
                token = self._manager.get_token()
                response = self._send(method, path, token, json=json, params=params)

                if response.status_code in AUTH_STATUSES:
                    raise AuthRejected(response)
        except Exception:
            self._bump("failed_requests")
            raise

        if response.is_success:
            self._bump("successful_requests")
        else:
            self._bump("failed_requests")
            logger.error("Request failed: %s %s -> HTTP %s", method.upper(), path, response.status_code)
        return response

    def create_booking(self, booking: BookingRequest) -> BookingOutcome:
        logger.info("Creating booking via admin API (service %s, %s %s)", booking.service_id, booking.date, booking.time)
        payload = build_booking_payload(booking, self._settings.facility)
        response = self.request("POST", BOOKING_ENDPOINT, json=payload)

        body = _response_body(response)

        if not response.is_success:
            return BookingOutcome(
                success=False,
                error=f"HTTP {response.status_code}",
                status_code=response.status_code,
                data=body,
            )

        data = body.get("data") if isinstance(body, dict) else None
        if isinstance(data, dict) and data.get("success") is True:
            booking_id = data.get("eventId") or data.get("id")
            logger.info("Booking created: %s", booking_id)
            return BookingOutcome(
                success=True,
                booking_id=str(booking_id) if booking_id is not None else None,
                errors=data.get("errors") or {},
                data=data,
                status_code=response.status_code,
            )

        if isinstance(data, dict) and data.get("success") is False:
            logger.warning("Booking rejected by Bookio: %s", data.get("message") or data.get("errors"))
            return BookingOutcome(
                success=False,
                error=data.get("message") or "Booking validation failed",
                errors=data.get("errors") or {},
                data=data,
                status_code=response.status_code,
            )

        logger.warning("Unexpected booking response format")
        return BookingOutcome(
            success=False,
            error="Unexpected response format",
            data=body,
            status_code=response.status_code,
        )

    def get_booking(self, booking_id: Any) -> BookingOutcome:
        response = self.request("GET", _booking_path(booking_id))
        return _plain_outcome(response, str(booking_id))

    def cancel_booking(self, booking_id: Any, reason: str = "") -> BookingOutcome:
        logger.info("Cancelling booking %s", booking_id)
        response = self.request("POST", _booking_path(booking_id, "/cancel"), json={"reason": reason})
        outcome = _plain_outcome(response, str(booking_id))
        if not outcome.success:
            logger.warning("Cancel of booking %s failed: %s", booking_id, outcome.error)
        return outcome

    def update_booking(self, booking_id: Any, changes: dict[str, Any]) -> BookingOutcome:
        logger.info("Updating booking %s (%s)", booking_id, ", ".join(sorted(changes)))
        response = self.request("PUT", _booking_path(booking_id), json=changes)
        outcome = _plain_outcome(response, str(booking_id))
        if not outcome.success:
            logger.warning("Update of booking %s failed: %s", booking_id, outcome.error)
        return outcome

    def get_customer_bookings(self, email: str) -> BookingOutcome:
        """Bookings of one customer in this facility; data is {"bookings": [...], "customer": ...}."""
        if not email or "@" not in email:
            raise InvalidArgument(f"Invalid customer email: {email!r}")

        response = self.request(
            "GET",
            CUSTOMER_BOOKINGS_ENDPOINT,
            params={"email": email, "facility": self._settings.facility},
        )
        outcome = _plain_outcome(response)
        if outcome.success:
            body = outcome.data if isinstance(outcome.data, dict) else {}
            outcome.data = {"bookings": body.get("bookings") or [], "customer": body.get("customer")}
        return outcome

    def check_authentication(self) -> dict[str, Any]:
        for name, endpoint in AUTH_CHECK_ENDPOINTS:
            try:
                response = self.request("GET", endpoint)
            except (AuthRejected, httpx.HTTPError) as e:
                logger.info("%s check failed (%s)", name, type(e).__name__)
                continue
            if response.status_code == 200:
                return {"authenticated": True, "endpoint": name}
            logger.info("%s check returned HTTP %s", name, response.status_code)

        return {"authenticated": False, "endpoint": None}

    @property
    def statistics(self) -> dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._stats)
        total = stats["total_requests"]
        rate = stats["successful_requests"] / total * 100 if total else 0
        return {**stats, "success_rate": f"{rate:.2f}%", "environment": self._settings.environment}
