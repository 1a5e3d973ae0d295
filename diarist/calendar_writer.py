from __future__ import annotations

import logging
import random
import threading
import time
from typing import Any, Callable, Protocol

from diarist.caldav_client import EntryNotFoundError
from diarist.dedup import DedupEngine, TokenInvalidator
from diarist.errors import (
    CalendarWriteError,
    CredentialRejectedError,
    CycleTimeoutError,
    DuplicateWriteConflict,
    RateLimitError,
)
from diarist.models import CalendarConfig, Deadline, DiaryEvent

logger = logging.getLogger(__name__)


class CalendarTransport(Protocol):
    def find_entry(self, fingerprint: str) -> str | None: ...

    def create_entry(self, event: DiaryEvent) -> str: ...

    def update_entry(self, entry_id: str, event: DiaryEvent) -> str: ...


class TokenBucket:
    """Thread-safe token bucket shared by every caller of the calendar."""

    def __init__(
        self,
        rate_per_second: float,
        burst: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.rate = float(rate_per_second)
        self.capacity = max(1, int(burst))
        self.clock = clock
        self.sleep = sleep
        self._tokens = float(self.capacity)
        self._last_refill = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self.clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.rate)
        self._last_refill = now

    def acquire(self, deadline: Deadline | None = None) -> float:
        """Take one token, sleeping until one is available. Returns seconds waited."""
        waited = 0.0
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return waited
                wait = (1.0 - self._tokens) / self.rate
            if deadline is not None and wait >= deadline.remaining():
                raise CycleTimeoutError("deadline reached while waiting for the calendar throttle")
            self.sleep(wait)
            waited += wait


class CalendarWriter:
    """Idempotent upsert of diary events into the calendar."""

    def __init__(
        self,
        calendar: CalendarTransport,
        dedup: DedupEngine,
        credentials: TokenInvalidator,
        config: CalendarConfig,
        *,
        throttle: TokenBucket | None = None,
        sleep: Callable[[float], None] = time.sleep,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        self.calendar = calendar
        self.dedup = dedup
        self.credentials = credentials
        self.config = config
        self.throttle = throttle or TokenBucket(config.rate_per_second, config.burst)
        self.sleep = sleep
        self.jitter = jitter

    def upsert(self, event: DiaryEvent, *, deadline: Deadline | None = None) -> str:
        attempt = 0
        token_retried = False
        while True:
            try:
                return self._write(event, deadline)
            except CredentialRejectedError as exc:
                if token_retried:
                    raise
                token_retried = True
                self.credentials.invalidate(exc.access_token or None)
                logger.info("Retrying %s with a fresh access token.", event.fingerprint)
            except RateLimitError as exc:
                if attempt >= self.config.max_retries:
                    logger.error(
                        "Calendar still rate limiting %s after %d retries.", event.fingerprint, attempt
                    )
                    raise
                delay = self.backoff_delay(attempt, exc.retry_after)
                if deadline is not None and delay >= deadline.remaining():
                    raise CycleTimeoutError(
                        f"deadline reached while backing off from a calendar rate limit ({delay:.1f}s)"
                    ) from exc
                logger.warning(
                    "Calendar rate limited %s (attempt %d/%d); retrying in %.1f seconds.",
                    event.fingerprint,
                    attempt + 1,
                    self.config.max_retries,
                    delay,
                )
                self.sleep(delay)
                attempt += 1

    def backoff_delay(self, attempt: int, retry_after: float | None = None) -> float:
        if retry_after is not None:
            return max(0.0, float(retry_after))
        ceiling = min(self.config.backoff_max_seconds, self.config.backoff_base_seconds * (2**attempt))
        # Full jitter.
        return self.jitter() * ceiling

    def _call(self, deadline: Deadline | None, func: Callable[..., Any], *args: Any) -> Any:
        if deadline is not None and deadline.expired():
            raise CycleTimeoutError("deadline reached before calendar request")
        self.throttle.acquire(deadline)
        return func(*args)

    def _write(self, event: DiaryEvent, deadline: Deadline | None) -> str:
        fingerprint = event.fingerprint
        known_id = self.dedup.lookup(fingerprint)
        if known_id:
            try:
                entry_id = self._call(deadline, self.calendar.update_entry, known_id, event)
            except EntryNotFoundError:
                logger.info("Indexed entry for %s is gone from the calendar; recreating it.", fingerprint)
                entry_id = self._create(event, deadline)
        else:
            entry_id = self._create(event, deadline)
        self.dedup.record(event, entry_id)
        return entry_id

    def _create(self, event: DiaryEvent, deadline: Deadline | None) -> str:
        fingerprint = event.fingerprint
        try:
            return self._call(deadline, self.calendar.create_entry, event)
        except DuplicateWriteConflict as exc:
            entry_id = exc.entry_id or self._call(deadline, self.calendar.find_entry, fingerprint)
            if not entry_id:
                raise CalendarWriteError(
                    f"Calendar reported {fingerprint} as existing but it could not be found"
                ) from exc
            logger.info("Calendar already holds %s as %s.", fingerprint, entry_id)
            return entry_id
