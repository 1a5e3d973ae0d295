from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from diarist.errors import ConsentError
from diarist.models import ServiceId
from diarist.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs each enabled service on its own interval from a background thread.

    Due services are handed to a worker pool one by one, so a slow service
    never holds back the others. A service is rescheduled when its own run
    finishes, whatever the outcome. Only ``ConsentError`` stops the loop.
    """

    def __init__(self, orchestrator: Orchestrator, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.orchestrator = orchestrator
        self.clock = clock
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._manual_services: set[ServiceId] = set()
        self._manual_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._in_flight: set[ServiceId] = set()
        self._next_due: dict[ServiceId, float] = {}
        self.fatal_error: ConsentError | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(max_workers=len(ServiceId), thread_name_prefix="diarist-scheduled")
        self._thread = threading.Thread(target=self._loop, name="diarist-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def trigger_manual(self, service_id: ServiceId | None = None) -> None:
        with self._manual_lock:
            if service_id is None:
                self._manual_services.update(self.orchestrator.adapters)
            else:
                self._manual_services.add(service_id)
        self._wake_event.set()

    def due_services(self, now: float) -> list[ServiceId]:
        with self._state_lock:
            return [service_id for service_id, due in self._next_due.items() if due <= now]

    def seconds_until_next(self, now: float) -> float:
        with self._state_lock:
            if not self._next_due:
                return float(self.orchestrator.config.sync.interval_seconds)
            return max(0.0, min(self._next_due.values()) - now)

    def _schedule(self, services: list[ServiceId], now: float) -> None:
        for service_id in services:
            self._next_due[service_id] = now + self.orchestrator.config.interval_for(service_id)

    def _run(self, services: list[ServiceId], trigger: str) -> None:
        if not services:
            return
        try:
            self.orchestrator.run_cycle(trigger=trigger, services=services)
        except ConsentError as exc:
            self.fatal_error = exc
            logger.critical("Calendar authorization failed; the scheduler is stopping: %s", exc)
            self._stop_event.set()
        except Exception:
            logger.exception(
                "%s sync crashed; it stays scheduled.", ", ".join(service_id.value for service_id in services)
            )
        finally:
            with self._state_lock:
                self._in_flight.difference_update(services)
                if self.fatal_error is None:
                    self._schedule(services, self.clock())
            self._wake_event.set()

    def _dispatch(self, services: list[ServiceId], trigger: str) -> None:
        for service_id in services:
            with self._state_lock:
                if service_id in self._in_flight:
                    continue
                self._in_flight.add(service_id)
                self._next_due.pop(service_id, None)
            self._executor.submit(self._run, [service_id], trigger)

    def _take_manual(self) -> list[ServiceId]:
        # A service still running keeps its manual request until it finishes.
        with self._manual_lock:
            with self._state_lock:
                ready = {service_id for service_id in self._manual_services if service_id not in self._in_flight}
            self._manual_services -= ready
        return sorted(ready, key=lambda item: item.value)

    def _loop(self) -> None:
        try:
            # Run one sync at startup so state is initialized quickly.
            self._dispatch(list(self.orchestrator.adapters), "startup")
            while not self._stop_event.is_set():
                self._wake_event.wait(timeout=self.seconds_until_next(self.clock()))
                self._wake_event.clear()
                if self._stop_event.is_set():
                    break
                self._dispatch(self._take_manual(), "manual")
                self._dispatch(self.due_services(self.clock()), "scheduled")
        finally:
            self._executor.shutdown(wait=False, cancel_futures=True)
