"""File-backed credential storage.

One JSON file per identity (account + environment + facility) plus an index
file used for listing. Every write goes through a temp file and os.replace,
so a reader never sees a half-written record.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import asdict, replace
from typing import Any, Callable

from bookiobot.domain import CredentialRecord, make_token_id

logger = logging.getLogger(__name__)

INDEX_FILE = "token-index.json"

_TIME_FIELDS = ("issued_at", "expires_at", "last_refreshed_at", "last_used_at")


def _to_iso(ts: float) -> str:
    return dt.datetime.fromtimestamp(ts, tz=dt.timezone.utc).isoformat()


def _from_iso(value: str) -> float:
    return dt.datetime.fromisoformat(value).timestamp()


def _record_to_json(record: CredentialRecord) -> dict[str, Any]:
    data = asdict(record)
    for name in _TIME_FIELDS:
        data[name] = _to_iso(data[name])
    data["id"] = record.token_id
    return data


def _record_from_json(raw: dict[str, Any]) -> CredentialRecord:
    return CredentialRecord(
        account_id=str(raw["account_id"]),
        environment=str(raw["environment"]),
        facility_id=str(raw["facility_id"]),
        token_value=str(raw["token_value"]),
        cookie_name=str(raw["cookie_name"]),
        issued_at=_from_iso(raw["issued_at"]),
        expires_at=_from_iso(raw["expires_at"]),
        last_refreshed_at=_from_iso(raw["last_refreshed_at"]),
        last_used_at=_from_iso(raw["last_used_at"]),
        use_count=int(raw.get("use_count", 0)),
        is_active=bool(raw.get("is_active", True)),
    )


def _atomic_write_json(path: str, data: Any) -> None:
    folder = os.path.dirname(os.path.abspath(path))
    os.makedirs(folder, exist_ok=True)

    with tempfile.NamedTemporaryFile("w", delete=False, encoding="utf-8", dir=folder, suffix=".tmp") as tf:
        json.dump(data, tf, ensure_ascii=False, indent=2)
        tmp_name = tf.name

    os.replace(tmp_name, path)


class TokenStore:
    def __init__(self, directory: str, *, clock: Callable[[], float] = time.time) -> None:
        self.directory = directory
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def index_path(self) -> str:
        return os.path.join(self.directory, INDEX_FILE)

    def _record_path(self, token_id: str) -> str:
        return os.path.join(self.directory, f"{token_id}.json")

    # region raw file access
    def _read_record(self, token_id: str) -> CredentialRecord | None:
        path = self._record_path(token_id)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return _record_from_json(json.load(f))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            # A corrupted record is as good as no record; the next login overwrites it.
            logger.warning("Ignoring unreadable token file %s", path)
            return None

    def _read_index(self) -> dict[str, dict[str, Any]]:
        if not os.path.exists(self.index_path):
            return {}
        try:
            with open(self.index_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except json.JSONDecodeError:
            logger.warning("Token index %s is corrupted, starting fresh", self.index_path)
            return {}
        return raw if isinstance(raw, dict) else {}

    def _write(self, record: CredentialRecord) -> None:
        data = _record_to_json(record)
        _atomic_write_json(self._record_path(record.token_id), data)

        index = self._read_index()
        index[record.token_id] = {
            key: data[key]
            for key in ("id", "account_id", "environment", "facility_id", "expires_at", "last_used_at", "is_active", "issued_at")
        }
        _atomic_write_json(self.index_path, index)

    def _unindexed_ids(self) -> list[str]:
        if not os.path.isdir(self.directory):
            return []
        with self._lock:
            indexed = set(self._read_index())
        return sorted(
            name[: -len(".json")]
            for name in os.listdir(self.directory)
            if name.endswith(".json") and name != INDEX_FILE and name[: -len(".json")] not in indexed
        )

    # endregion

    def save(self, record: CredentialRecord) -> str:
        """Store a record, replacing whatever was stored for the same identity."""
        with self._lock:
            self._write(record)
        logger.info("Token stored: %s (expires %s)", record.token_id, _to_iso(record.expires_at))
        return record.token_id

    def load(self, token_id: str) -> CredentialRecord | None:
        with self._lock:
            return self._read_record(token_id)

    def touch(self, token_id: str, token_value: str | None = None) -> CredentialRecord | None:
        """Bump last_used_at/use_count.

        With token_value given, a record that was superseded in the meantime is
        left alone.
        """
        with self._lock:
            record = self._read_record(token_id)
            if record is None:
                return None
            if token_value is not None and record.token_value != token_value:
                return record
            record = replace(record, last_used_at=self._clock(), use_count=record.use_count + 1)
            self._write(record)
            return record

    def get(self, account_id: str, environment: str, facility_id: str) -> CredentialRecord | None:
        token_id = make_token_id(account_id, environment, facility_id)
        record = self.touch(token_id)
        if record is None:
            logger.info("No token found for %s@%s:%s", account_id, environment, facility_id)
        else:
            logger.debug("Token retrieved: %s (used %d times)", token_id, record.use_count)
        return record

    def list_tokens(self) -> list[dict[str, Any]]:
        now = self._clock()
        with self._lock:
            index = self._read_index()

        tokens = []
        for entry in index.values():
            try:
                expires_at = _from_iso(entry["expires_at"])
            except (KeyError, TypeError, ValueError):
                continue
            tokens.append({**entry, "is_valid": expires_at > now})
        return tokens

    def find_tokens(
        self,
        *,
        environment: str | None = None,
        facility_id: str | None = None,
        account_id: str | None = None,
        is_valid: bool | None = None,
        is_active: bool | None = None,
    ) -> list[dict[str, Any]]:
        result = []
        for token in self.list_tokens():
            if environment is not None and token.get("environment") != environment:
                continue
            if facility_id is not None and token.get("facility_id") != facility_id:
                continue
            if account_id is not None and token.get("account_id") != account_id:
                continue
            if is_valid is not None and token["is_valid"] != is_valid:
                continue
            if is_active is not None and token.get("is_active") != is_active:
                continue
            result.append(token)
        return result

    def delete(self, token_id: str) -> bool:
        with self._lock:
            path = self._record_path(token_id)
            existed = os.path.exists(path)
            if existed:
                os.remove(path)

            index = self._read_index()
            if token_id in index:
                del index[token_id]
                _atomic_write_json(self.index_path, index)
                existed = True

        if existed:
            logger.info("Token deleted: %s", token_id)
        return existed

    def cleanup_expired(self, grace_seconds: float = 0) -> int:
        """Delete records whose expiry passed more than grace_seconds ago."""
        cutoff = self._clock() - grace_seconds
        cleaned = 0
        for token in self.list_tokens():
            if _from_iso(token["expires_at"]) < cutoff and self.delete(token["id"]):
                cleaned += 1

        # Record files the index lost track of (e.g. after a corrupted index was reset).
        for token_id in self._unindexed_ids():
            record = self.load(token_id)
            if record is not None and record.expires_at < cutoff and self.delete(token_id):
                cleaned += 1

        logger.info("Cleaned up %d expired tokens", cleaned)
        return cleaned

    def statistics(self) -> dict[str, Any]:
        tokens = self.list_tokens()

        def _count_by(key: str) -> dict[str, int]:
            counts: dict[str, int] = {}
            for token in tokens:
                value = str(token.get(key))
                counts[value] = counts.get(value, 0) + 1
            return counts

        return {
            "total": len(tokens),
            "active": sum(1 for t in tokens if t.get("is_active")),
            "valid": sum(1 for t in tokens if t["is_valid"]),
            "expired": sum(1 for t in tokens if not t["is_valid"]),
            "environments": _count_by("environment"),
            "facilities": _count_by("facility_id"),
            "accounts": _count_by("account_id"),
        }
