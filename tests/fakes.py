"""In-memory stand-ins for the calendar and the service adapters."""

from __future__ import annotations

from datetime import datetime
from typing import Callable

from diarist.caldav_client import EntryNotFoundError, entry_uid
from diarist.errors import CredentialRejectedError, DuplicateWriteConflict, TransientFetchError
from diarist.models import CalendarEntry, Credential, Deadline, DiaryEvent, FetchResult, RawRecord, ServiceId


class FakeCalendar:
    def __init__(self, credential_provider: Callable[[], Credential] | None = None) -> None:
        self.entries: dict[str, CalendarEntry] = {}
        self.errors: list[Exception] = []
        self.credential_provider = credential_provider
        self.accepted_tokens: set[str] | None = None
        self.create_calls = 0
        self.update_calls = 0
        self.list_calls = 0

    def _authorize(self) -> None:
        if self.credential_provider is None:
            return
        token = self.credential_provider().access_token
        if self.accepted_tokens is not None and token not in self.accepted_tokens:
            raise CredentialRejectedError("401 Unauthorized", access_token=token)

    def _raise_scripted(self) -> None:
        if self.errors:
            raise self.errors.pop(0)

    def _entry(self, entry_id: str, event: DiaryEvent) -> CalendarEntry:
        return CalendarEntry(
            entry_id=entry_id,
            uid=entry_uid(event.fingerprint),
            summary=event.title,
            description=event.description,
            start=event.start,
            end=event.end,
            service_id=event.service_id.value,
            external_id=event.external_id,
            fingerprint=event.fingerprint,
        )

    def list_entries(self, start: datetime, end: datetime) -> list[CalendarEntry]:
        self.list_calls += 1
        self._authorize()
        return [entry for entry in self.entries.values() if entry.start < end and entry.end >= start]

    def find_entry(self, fingerprint: str) -> str | None:
        self._authorize()
        for entry in self.entries.values():
            if entry.uid == entry_uid(fingerprint):
                return entry.entry_id
        return None

    def create_entry(self, event: DiaryEvent) -> str:
        self.create_calls += 1
        self._authorize()
        self._raise_scripted()
        if self.find_entry(event.fingerprint) is not None:
            raise DuplicateWriteConflict("412 Precondition Failed")
        entry_id = f"/calendars/diary/{event.fingerprint}.ics"
        self.entries[entry_id] = self._entry(entry_id, event)
        return entry_id

    def update_entry(self, entry_id: str, event: DiaryEvent) -> str:
        self.update_calls += 1
        self._authorize()
        self._raise_scripted()
        if entry_id not in self.entries:
            raise EntryNotFoundError(f"404 Not Found: {entry_id}")
        self.entries[entry_id] = self._entry(entry_id, event)
        return entry_id


class ListAdapter:
    """Serves a fixed list of (cursor, record) pairs the way a service would."""

    def __init__(self, service_id: ServiceId, items: list[tuple[int, RawRecord]] | None = None) -> None:
        self.service_id = service_id
        self.items = list(items or [])
        self.error: Exception | None = None
        self.calls: list[str | None] = []

    def cursor_key(self, cursor: str) -> float:
        return float(cursor)

    def fetch(self, cursor: str | None, *, deadline: Deadline | None = None) -> FetchResult:
        self.calls.append(cursor)
        if self.error is not None:
            raise self.error
        since = float(cursor) if cursor else float("-inf")
        fresh = sorted((item for item in self.items if item[0] > since), key=lambda item: item[0])
        new_cursor = str(fresh[-1][0]) if fresh else cursor
        return FetchResult(records=[record for _, record in fresh], cursor=new_cursor)

    def fail_with_timeout(self) -> None:
        self.error = TransientFetchError(self.service_id.value, "read timed out")
