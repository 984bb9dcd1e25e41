from __future__ import annotations

import json
import logging
from typing import Any

import requests

from autoreg.models import LedgerConfig, LedgerRecord, ScanStatus

logger = logging.getLogger(__name__)


class LedgerError(RuntimeError):
    """The shared ledger could not be reached or answered with an error."""


def _count(payload: dict[str, Any], key: str, action: str, default: int = 0) -> int:
    try:
        return int(payload.get(key, default) or 0)
    except (TypeError, ValueError) as exc:
        raise LedgerError(f"{action} returned a malformed {key}: {payload.get(key)!r}") from exc


class LedgerClient:
    """Client for the shared registration ledger web app.

    Every call is a single HTTP request to ``config.url`` with an ``action``
    query parameter; the service answers with a JSON object, and an ``error``
    key in that object is a failure.
    """

    def __init__(self, config: LedgerConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def is_configured(self) -> bool:
        return self.config.is_configured()

    def _call(self, action: str, params: dict[str, Any] | None = None, *, post: bool = False) -> dict[str, Any]:
        if not self.is_configured():
            raise LedgerError("ledger is not configured")
        query = {"action": action}
        for key, value in (params or {}).items():
            if value is None or value == "":
                continue
            query[key] = value
        try:
            if post:
                response = self.session.post(self.config.url, params=query, timeout=self.config.timeout_seconds)
            else:
                response = self.session.get(self.config.url, params=query, timeout=self.config.timeout_seconds)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise LedgerError(f"{action} failed: {type(exc).__name__}: {exc}") from exc
        if not isinstance(payload, dict):
            raise LedgerError(f"{action} returned a non-object response")
        if payload.get("error"):
            raise LedgerError(f"{action} rejected: {payload['error']}")
        return payload

    def get_scan_status(self, email: str, calendar: str | None = None) -> ScanStatus:
        if not email:
            raise LedgerError("getScanStatus requires an email")
        payload = self._call("getScanStatus", {"email": email, "calendar": calendar})
        try:
            status = ScanStatus.from_response(payload)
        except (TypeError, ValueError, AttributeError) as exc:
            raise LedgerError(f"getScanStatus returned a malformed payload: {exc}") from exc
        logger.info(
            "ledger scan status: %d seen, %d mine (calendar=%s)",
            len(status.seen_events),
            len(status.my_registrations),
            calendar or "*",
        )
        return status

    def add_registration(self, record: LedgerRecord) -> dict[str, Any]:
        registration = {
            "event_url": record.event_url,
            "title": record.title,
            "event_date": record.event_date,
            "person_email": record.person_email,
            "person_name": record.person_name,
            "calendar": record.calendar,
        }
        payload = self._call(
            "addRegistration",
            {"registration": json.dumps(registration, ensure_ascii=False)},
            post=True,
        )
        result = {"added": bool(payload.get("added", False))}
        if payload.get("reason"):
            result["reason"] = str(payload["reason"])
        return result

    def record_seen_events(
        self, events: list[dict[str, Any]], calendar: str | None = None, scanned_by: str | None = None
    ) -> dict[str, Any]:
        cleaned = [
            {"url": item.get("url", ""), "title": item.get("title", ""), "date": item.get("date", "")}
            for item in events
            if item.get("url")
        ]
        if not cleaned:
            return {"recorded": 0, "newEvents": 0}
        payload = self._call(
            "recordSeenEvents",
            {
                "events": json.dumps(cleaned, ensure_ascii=False),
                "calendar": calendar,
                "scannedBy": scanned_by,
            },
            post=True,
        )
        return {
            "recorded": _count(payload, "recorded", "recordSeenEvents"),
            "newEvents": _count(payload, "newEvents", "recordSeenEvents"),
        }

    def get_all_data(self, calendar: str | None = None) -> tuple[list[LedgerRecord], int]:
        payload = self._call("getAllData", {"calendar": calendar})
        records = [LedgerRecord.from_dict(item) for item in payload.get("data", []) if isinstance(item, dict)]
        return records, _count(payload, "count", "getAllData", default=len(records))

    def get_calendars(self) -> list[str]:
        payload = self._call("getCalendars")
        calendars: list[str] = []
        for name in payload.get("calendars", []) or []:
            text = str(name or "").strip()
            if text and text not in calendars:
                calendars.append(text)
        return calendars

    def test_connectivity(self) -> tuple[bool, str]:
        if not self.is_configured():
            return False, "Ledger config incomplete: url required."
        try:
            calendars = self.get_calendars()
        except LedgerError as exc:
            return False, str(exc)
        return True, f"Connected. {len(calendars)} calendar tab(s)."
