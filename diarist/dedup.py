from __future__ import annotations

import logging
import re
import threading
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Protocol

from diarist.caldav_client import UID_SUFFIX
from diarist.config_manager import DEDUP_SOURCES
from diarist.errors import CredentialRejectedError
from diarist.models import CalendarEntry, DiaryEvent, ServiceId, compute_fingerprint
from diarist.state_store import StateStore

logger = logging.getLogger(__name__)

_HASH_LINE_PATTERN = re.compile(r"^\[hash\]\s*([0-9a-f]{40})\s*$", re.MULTILINE)


class EntryLister(Protocol):
    def list_entries(self, start: datetime, end: datetime) -> list[CalendarEntry]: ...


class TokenInvalidator(Protocol):
    def invalidate(self, access_token: str | None = None) -> None: ...


def fingerprint_of(entry: CalendarEntry) -> str | None:
    """Recover the fingerprint a calendar entry was written under, if it is one of ours."""
    if entry.service_id and entry.external_id:
        return compute_fingerprint(entry.service_id, entry.external_id)
    if entry.fingerprint:
        return entry.fingerprint
    if entry.uid.endswith(UID_SUFFIX):
        return entry.uid[: -len(UID_SUFFIX)] or None
    match = _HASH_LINE_PATTERN.search(entry.description or "")
    if match:
        return match.group(1)
    return None


def _utc_day(value: datetime) -> date:
    return value.astimezone(timezone.utc).date()


class DedupEngine:
    """Fingerprint index backed by sqlite, reconciled lazily against the calendar.

    In ``local`` mode the index is trusted unless it holds nothing for a service
    or the previous process did not shut down cleanly. In ``calendar`` mode
    every window is listed from the calendar before filtering.
    """

    def __init__(
        self,
        state_store: StateStore,
        calendar: EntryLister,
        *,
        source: str = "local",
        index_stale: bool = False,
        credentials: TokenInvalidator | None = None,
    ) -> None:
        if source not in DEDUP_SOURCES:
            raise ValueError(f"unknown dedup source {source!r}")
        self.state_store = state_store
        self.calendar = calendar
        self.credentials = credentials
        self.source = source
        self.index_stale = index_stale
        self._lock = threading.Lock()
        self._reconciled_days: set[date] = set()

    def needs_reconcile(self, service_id: ServiceId) -> bool:
        if self.source == "calendar" or self.index_stale:
            return True
        return self.state_store.count_dedup_entries(service_id.value) == 0

    def filter_new(self, events: Iterable[DiaryEvent]) -> list[DiaryEvent]:
        batch = list(events)
        if not batch:
            return []
        start = min(event.start for event in batch)
        end = max(event.end for event in batch)
        if self.source == "calendar":
            # The calendar decides; index rows for deleted entries do not count.
            known: set[str] | dict[str, str] = self.reconcile(start, end, force=True)
        else:
            if any(self.needs_reconcile(service_id) for service_id in {event.service_id for event in batch}):
                self.reconcile(start, end)
            known = self.state_store.known_fingerprints(event.fingerprint for event in batch)
        fresh: list[DiaryEvent] = []
        seen: set[str] = set()
        for event in batch:
            fingerprint = event.fingerprint
            if fingerprint in known or fingerprint in seen:
                continue
            seen.add(fingerprint)
            fresh.append(event)
        return fresh

    def reconcile(self, start: datetime, end: datetime, *, force: bool = False) -> set[str]:
        """Merge calendar entries between ``start`` and ``end`` into the index.

        The window is widened to whole UTC days and each day is listed at most
        once per process unless ``force`` is set. Returns the fingerprints found
        in the listed days.
        """
        first_day, last_day = _utc_day(start), _utc_day(max(start, end))
        days = [first_day + timedelta(days=offset) for offset in range((last_day - first_day).days + 1)]
        with self._lock:
            pending = days if force else [day for day in days if day not in self._reconciled_days]
            if not pending:
                return set()
            window_start = datetime.combine(pending[0], time.min, tzinfo=timezone.utc)
            window_end = datetime.combine(pending[-1] + timedelta(days=1), time.min, tzinfo=timezone.utc)
            entries = self._list(window_start, window_end)
            found: set[str] = set()
            for entry in entries:
                fingerprint = fingerprint_of(entry)
                if fingerprint is None:
                    continue
                self.state_store.upsert_dedup_entry(
                    fingerprint=fingerprint,
                    service_id=entry.service_id or "",
                    entry_id=entry.entry_id,
                    start=entry.start,
                    end=entry.end,
                )
                found.add(fingerprint)
            self._reconciled_days.update(pending)
        logger.info(
            "Reconciled %d calendar entr%s between %s and %s",
            len(found),
            "y" if len(found) == 1 else "ies",
            window_start.date().isoformat(),
            pending[-1].isoformat(),
        )
        return found

    def _list(self, start: datetime, end: datetime) -> list[CalendarEntry]:
        try:
            return self.calendar.list_entries(start, end)
        except CredentialRejectedError as exc:
            if self.credentials is None:
                raise
            self.credentials.invalidate(exc.access_token or None)
            logger.info("Listing the calendar again with a fresh access token.")
            return self.calendar.list_entries(start, end)

    def record(self, event: DiaryEvent, entry_id: str) -> None:
        self.state_store.upsert_dedup_entry(
            fingerprint=event.fingerprint,
            service_id=event.service_id.value,
            entry_id=entry_id,
            start=event.start,
            end=event.end,
        )

    def lookup(self, fingerprint: str) -> str | None:
        return self.state_store.get_dedup_entry(fingerprint)
