from __future__ import annotations

import logging
import re
import threading
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

import caldav
from caldav.lib import error as dav_error
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from diarist.errors import (
    CalendarWriteError,
    CredentialRejectedError,
    DiaristError,
    DuplicateWriteConflict,
    RateLimitError,
)
from diarist.models import CalendarConfig, CalendarEntry, Credential, DiaryEvent, date_to_datetime

logger = logging.getLogger(__name__)

UID_SUFFIX = "@diarist"
PROP_FINGERPRINT = "X-DIARIST-FINGERPRINT"
PROP_SERVICE = "X-DIARIST-SERVICE"
PROP_EXTERNAL_ID = "X-DIARIST-EXTERNAL-ID"

_UNAUTHORIZED_PATTERN = re.compile(r"\b401\b|Unauthorized", re.IGNORECASE)
_RATE_LIMIT_PATTERN = re.compile(r"\b429\b|Too Many Requests|rateLimitExceeded|quotaExceeded", re.IGNORECASE)
_DUPLICATE_PATTERN = re.compile(
    r"\b409\b|\b412\b|Precondition Failed|Duplicate entry|already exists|no-uid-conflict|ConsistencyError",
    re.IGNORECASE,
)
_NOT_FOUND_PATTERN = re.compile(r"\b404\b|\b410\b|Not Found", re.IGNORECASE)
_RETRY_AFTER_PATTERN = re.compile(r"Retry-After\W+(\d+(?:\.\d+)?)", re.IGNORECASE)


class EntryNotFoundError(CalendarWriteError):
    pass


def entry_uid(fingerprint: str) -> str:
    return f"{fingerprint}{UID_SUFFIX}"


def classify_calendar_error(exc: BaseException, access_token: str = "") -> DiaristError:
    if isinstance(exc, DiaristError):
        return exc
    text = f"{type(exc).__name__}: {exc}"
    if isinstance(exc, dav_error.AuthorizationError) or _UNAUTHORIZED_PATTERN.search(text):
        return CredentialRejectedError(f"Calendar rejected the access token: {text}", access_token=access_token)
    if _RATE_LIMIT_PATTERN.search(text):
        retry_match = _RETRY_AFTER_PATTERN.search(text)
        retry_after = float(retry_match.group(1)) if retry_match else None
        return RateLimitError(f"Calendar rate limit hit: {text}", retry_after=retry_after)
    if _DUPLICATE_PATTERN.search(text):
        return DuplicateWriteConflict(f"Calendar entry already exists: {text}")
    if isinstance(exc, dav_error.NotFoundError) or _NOT_FOUND_PATTERN.search(text):
        return EntryNotFoundError(f"Calendar entry not found: {text}")
    return CalendarWriteError(f"Calendar request failed: {text}")


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _coerce_datetime(value: Any, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return date_to_datetime(value, is_end=is_end)
    return None


def build_ical(event: DiaryEvent) -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", "-//Diarist//Activity Diary//EN")
    calendar_obj.add("VERSION", "2.0")
    vevent = ICEvent()
    vevent.add("UID", entry_uid(event.fingerprint))
    vevent.add("DTSTAMP", datetime.now(timezone.utc))
    vevent.add("SUMMARY", event.title or "")
    vevent.add("DESCRIPTION", event.description or "")
    if event.all_day:
        start_day = event.start.date()
        end_day = max(event.end.date(), start_day) + timedelta(days=1)
        vevent.add("DTSTART", start_day)
        vevent.add("DTEND", end_day)
    else:
        vevent.add("DTSTART", event.start)
        vevent.add("DTEND", event.end)
    vevent.add(PROP_FINGERPRINT, event.fingerprint)
    vevent.add(PROP_SERVICE, event.service_id.value)
    vevent.add(PROP_EXTERNAL_ID, event.external_id)
    calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")


def parse_entry(entry_id: str, raw_data: Any) -> CalendarEntry | None:
    calendar_obj = ICalendar.from_ical(_decode_raw_ical(raw_data))
    vevent = _first_vevent(calendar_obj)
    if vevent is None:
        return None
    dtstart_raw = vevent.decoded("DTSTART") if vevent.get("DTSTART") is not None else None
    dtend_raw = vevent.decoded("DTEND") if vevent.get("DTEND") is not None else None
    return CalendarEntry(
        entry_id=entry_id,
        uid=str(vevent.get("UID", "")).strip(),
        summary=str(vevent.get("SUMMARY", "")).strip(),
        description=str(vevent.get("DESCRIPTION", "")).strip(),
        start=_coerce_datetime(dtstart_raw),
        end=_coerce_datetime(dtend_raw, is_end=True),
        service_id=str(vevent.get(PROP_SERVICE, "")).strip(),
        external_id=str(vevent.get(PROP_EXTERNAL_ID, "")).strip(),
        fingerprint=str(vevent.get(PROP_FINGERPRINT, "")).strip(),
    )


class CalDAVService:
    """Calendar transport: one CalDAV collection authorized with an OAuth bearer token."""

    def __init__(self, config: CalendarConfig, credential_provider: Callable[[], Credential]) -> None:
        self.config = config
        self.credential_provider = credential_provider
        self._lock = threading.Lock()
        self._calendar: Any = None
        self._token = ""

    def _connect(self) -> tuple[Any, str]:
        credential = self.credential_provider()
        with self._lock:
            if self._calendar is None or credential.access_token != self._token:
                client = caldav.DAVClient(
                    url=self.config.url,
                    headers={"Authorization": f"Bearer {credential.access_token}"},
                    timeout=self.config.timeout_seconds,
                )
                self._calendar = client.calendar(url=self.config.url)
                self._token = credential.access_token
            return self._calendar, self._token

    def list_entries(self, start: datetime, end: datetime) -> list[CalendarEntry]:
        calendar, token = self._connect()
        try:
            resources = calendar.search(start=start, end=end, event=True, expand=False)
        except Exception as exc:
            raise classify_calendar_error(exc, token) from exc
        entries: list[CalendarEntry] = []
        for resource in resources:
            entry_id = str(getattr(resource, "url", "") or "")
            try:
                entry = parse_entry(entry_id, resource.data)
            except ValueError as exc:
                logger.warning("Skipping unparsable calendar resource %s: %s", entry_id, exc)
                continue
            if entry is not None:
                entries.append(entry)
        return entries

    def find_entry(self, fingerprint: str) -> str | None:
        calendar, token = self._connect()
        try:
            resource = calendar.event_by_uid(entry_uid(fingerprint))
        except dav_error.NotFoundError:
            return None
        except Exception as exc:
            raise classify_calendar_error(exc, token) from exc
        if isinstance(resource, list):
            resource = resource[0] if resource else None
        if resource is None:
            return None
        return str(resource.url)

    def create_entry(self, event: DiaryEvent) -> str:
        calendar, token = self._connect()
        try:
            resource = calendar.save_event(build_ical(event), no_overwrite=True)
        except Exception as exc:
            raise classify_calendar_error(exc, token) from exc
        return str(resource.url)

    def update_entry(self, entry_id: str, event: DiaryEvent) -> str:
        calendar, token = self._connect()
        try:
            resource = calendar.event_by_url(entry_id)
            resource.data = build_ical(event)
            resource.save()
        except Exception as exc:
            raise classify_calendar_error(exc, token) from exc
        return str(resource.url)
