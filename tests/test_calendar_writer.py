import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from diarist.calendar_writer import CalendarWriter, TokenBucket
from diarist.dedup import DedupEngine
from diarist.errors import (
    CalendarWriteError,
    CredentialRejectedError,
    CycleTimeoutError,
    DuplicateWriteConflict,
    RateLimitError,
)
from diarist.models import CalendarConfig, Deadline, DiaryEvent, ServiceId
from diarist.state_store import StateStore
from tests.fakes import FakeCalendar

START = datetime(2024, 5, 1, 12, tzinfo=timezone.utc)


def _event(external_id: str = "1714564800") -> DiaryEvent:
    return DiaryEvent(ServiceId.WAKATIME, external_id, START, START + timedelta(minutes=30), title="[Wakatime] p")


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class TokenBucketTests(unittest.TestCase):
    def test_burst_then_paced(self) -> None:
        clock = FakeClock()
        bucket = TokenBucket(2.0, 3, clock=clock, sleep=clock.sleep)

        for _ in range(3):
            self.assertEqual(bucket.acquire(), 0.0)
        waited = bucket.acquire()

        self.assertAlmostEqual(waited, 0.5)
        self.assertEqual(clock.sleeps, [0.5])

    def test_wait_beyond_deadline_raises(self) -> None:
        clock = FakeClock()
        bucket = TokenBucket(0.01, 1, clock=clock, sleep=clock.sleep)
        bucket.acquire()

        with self.assertRaises(CycleTimeoutError):
            bucket.acquire(Deadline(5))
        self.assertEqual(clock.sleeps, [])


class CalendarWriterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.calendar = FakeCalendar()
        self.dedup = DedupEngine(self.store, self.calendar)
        self.credentials = mock.Mock()
        self.sleeps: list[float] = []
        self.config = CalendarConfig(url="https://dav.example.com/cal/", max_retries=3, backoff_base_seconds=1.0)
        self.writer = CalendarWriter(
            self.calendar,
            self.dedup,
            self.credentials,
            self.config,
            throttle=TokenBucket(1000.0, 100),
            sleep=self.sleeps.append,
            jitter=lambda: 0.5,
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_create_then_update_same_fingerprint(self) -> None:
        event = _event()
        first = self.writer.upsert(event)
        second = self.writer.upsert(event)

        self.assertEqual(first, second)
        self.assertEqual(self.calendar.create_calls, 1)
        self.assertEqual(self.calendar.update_calls, 1)
        self.assertEqual(len(self.calendar.entries), 1)
        self.assertEqual(self.dedup.lookup(event.fingerprint), first)

    def test_duplicate_conflict_resolves_existing_entry(self) -> None:
        event = _event()
        existing_id = self.calendar.create_entry(event)

        entry_id = self.writer.upsert(event)

        self.assertEqual(entry_id, existing_id)
        self.assertEqual(len(self.calendar.entries), 1)
        self.assertEqual(self.store.get_dedup_entry(event.fingerprint), existing_id)

    def test_duplicate_conflict_that_cannot_be_resolved_fails(self) -> None:
        self.calendar.errors.append(DuplicateWriteConflict("409 Conflict"))
        with self.assertRaises(CalendarWriteError):
            self.writer.upsert(_event())

    def test_update_of_vanished_entry_recreates_it(self) -> None:
        event = _event()
        self.store.upsert_dedup_entry(fingerprint=event.fingerprint, service_id="wakatime", entry_id="/gone.ics")

        entry_id = self.writer.upsert(event)

        self.assertNotEqual(entry_id, "/gone.ics")
        self.assertEqual(self.store.get_dedup_entry(event.fingerprint), entry_id)

    def test_rate_limit_honours_retry_after(self) -> None:
        self.calendar.errors.extend([RateLimitError("429", retry_after=7), RateLimitError("429")])

        self.writer.upsert(_event())

        # Second delay is full jitter over base * 2**1.
        self.assertEqual(self.sleeps, [7.0, 1.0])
        self.assertEqual(len(self.calendar.entries), 1)

    def test_rate_limit_gives_up_after_max_retries(self) -> None:
        self.calendar.errors.extend([RateLimitError("429") for _ in range(4)])

        with self.assertRaises(RateLimitError):
            self.writer.upsert(_event())
        self.assertEqual(len(self.sleeps), 3)
        self.assertEqual(self.calendar.entries, {})

    def test_backoff_is_capped(self) -> None:
        self.config.backoff_max_seconds = 4.0
        self.assertEqual(self.writer.backoff_delay(10), 2.0)

    def test_rate_limit_backoff_respects_deadline(self) -> None:
        self.calendar.errors.append(RateLimitError("429", retry_after=120))
        with self.assertRaises(CycleTimeoutError):
            self.writer.upsert(_event(), deadline=Deadline(5))
        self.assertEqual(self.sleeps, [])

    def test_rejected_token_is_invalidated_and_retried_once(self) -> None:
        self.calendar.errors.append(CredentialRejectedError("401", access_token="stale"))

        self.writer.upsert(_event())

        self.credentials.invalidate.assert_called_once_with("stale")
        self.assertEqual(len(self.calendar.entries), 1)

    def test_second_rejection_is_raised(self) -> None:
        self.calendar.errors.extend(
            [CredentialRejectedError("401", access_token="a"), CredentialRejectedError("401", access_token="b")]
        )
        with self.assertRaises(CredentialRejectedError):
            self.writer.upsert(_event())


if __name__ == "__main__":
    unittest.main()
