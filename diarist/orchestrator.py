from __future__ import annotations

import logging
import threading
import time
import traceback
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Any, Callable, Iterable

from diarist.adapters import ServiceAdapter
from diarist.calendar_writer import CalendarWriter
from diarist.dedup import DedupEngine
from diarist.errors import CalendarWriteError, ConsentError, CycleTimeoutError, DataParseError, DiaristError
from diarist.models import AppConfig, Deadline, DiaryEvent, RawRecord, ServiceCycleResult, ServiceId
from diarist.normalizer import is_too_short, normalize
from diarist.state_store import StateStore

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "IDLE"
    FETCHING = "FETCHING"
    NORMALIZING = "NORMALIZING"
    DEDUPLICATING = "DEDUPLICATING"
    WRITING = "WRITING"
    ADVANCING = "ADVANCING"
    FAILED = "FAILED"


class Orchestrator:
    """Runs one fetch -> normalize -> dedup -> write -> advance pipeline per service.

    Pipelines are isolated: any failure inside one is recorded against that
    service and never reaches the others. ``ConsentError`` is the exception,
    it is recorded and then re-raised because no service can write without
    a credential.
    """

    def __init__(
        self,
        config: AppConfig,
        state_store: StateStore,
        adapters: dict[ServiceId, ServiceAdapter],
        dedup: DedupEngine,
        writer: CalendarWriter,
        *,
        normalizer: Callable[[ServiceId, RawRecord], DiaryEvent] = normalize,
    ) -> None:
        self.config = config
        self.state_store = state_store
        self.adapters = adapters
        self.dedup = dedup
        self.writer = writer
        self.normalizer = normalizer
        self._locks = {service_id: threading.Lock() for service_id in ServiceId}

    def run_cycle(
        self,
        trigger: str = "manual",
        services: Iterable[ServiceId] | None = None,
    ) -> list[ServiceCycleResult]:
        selected = list(services) if services is not None else list(self.adapters)
        if not selected:
            return []
        workers = max(1, min(self.config.sync.max_workers, len(selected)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="diarist-pipeline") as executor:
            futures = [executor.submit(self.run_service, service_id, trigger) for service_id in selected]
        results: list[ServiceCycleResult] = []
        consent_error: ConsentError | None = None
        for service_id, future in zip(selected, futures):
            try:
                results.append(future.result())
            except ConsentError as exc:
                consent_error = consent_error or exc
            except Exception as exc:
                logger.exception("%s: cycle aborted", service_id.value)
                results.append(
                    ServiceCycleResult(service_id=service_id, status="failed", message=f"{type(exc).__name__}: {exc}")
                )
        if consent_error is not None:
            raise consent_error
        return results

    def run_service(self, service_id: ServiceId, trigger: str = "manual") -> ServiceCycleResult:
        adapter = self.adapters.get(service_id)
        if adapter is None:
            return ServiceCycleResult(service_id=service_id, status="disabled", message="Service is not enabled.")
        lock = self._locks[service_id]
        if not lock.acquire(blocking=False):
            logger.info("%s: a cycle is already running; skipping %s trigger.", service_id.value, trigger)
            return ServiceCycleResult(service_id=service_id, status="busy", message="A cycle is already running.")
        try:
            return self._run_pipeline(service_id, adapter, trigger)
        finally:
            lock.release()

    def is_running(self, service_id: ServiceId) -> bool:
        return self._locks[service_id].locked()

    def status(self) -> list[dict[str, Any]]:
        output: list[dict[str, Any]] = []
        for service_id in ServiceId:
            last_runs = self.state_store.recent_sync_runs(limit=1, service_id=service_id.value)
            output.append(
                {
                    "service_id": service_id.value,
                    "enabled": service_id in self.adapters,
                    "running": self.is_running(service_id),
                    "interval_seconds": self.config.interval_for(service_id),
                    "watermark": self.state_store.get_watermark(service_id).to_dict(),
                    "last_run": last_runs[0] if last_runs else None,
                }
            )
        return output

    def _enter(self, result: ServiceCycleResult, state: PipelineState) -> None:
        result.states.append(state.value)
        logger.debug("%s: %s", result.service_id.value, state.value)

    def _check_deadline(self, service_id: ServiceId, deadline: Deadline) -> None:
        if deadline.expired():
            raise CycleTimeoutError(
                f"{service_id.value}: cycle deadline of {deadline.seconds:.0f}s exceeded"
            )

    def _run_pipeline(self, service_id: ServiceId, adapter: ServiceAdapter, trigger: str) -> ServiceCycleResult:
        started = time.monotonic()
        service_config = self.config.service(service_id)
        deadline = Deadline(self.config.deadline_for(service_id))
        result = ServiceCycleResult(service_id=service_id, status="success")
        audit: list[tuple[str, str, dict[str, Any]]] = []
        consent_error: ConsentError | None = None
        self._enter(result, PipelineState.IDLE)

        try:
            watermark = self.state_store.get_watermark(service_id)
            result.cursor_before = watermark.cursor
            result.cursor_after = watermark.cursor
            self._enter(result, PipelineState.FETCHING)
            fetched = adapter.fetch(watermark.cursor, deadline=deadline)
            result.fetched = len(fetched.records)
            self._check_deadline(service_id, deadline)

            self._enter(result, PipelineState.NORMALIZING)
            events: list[DiaryEvent] = []
            for record in fetched.records:
                try:
                    event = self.normalizer(service_id, record)
                except DataParseError as exc:
                    result.skipped += 1
                    logger.warning("%s: skipping malformed record: %s", service_id.value, exc)
                    audit.append((exc.external_id or record.external_id or "-", "parse_error", {"error": str(exc)}))
                    continue
                if is_too_short(event, service_config.min_duration_seconds):
                    result.skipped += 1
                    audit.append(
                        (
                            event.fingerprint,
                            "filtered_short",
                            {"duration_seconds": int(event.duration.total_seconds())},
                        )
                    )
                    continue
                events.append(event)
            self._check_deadline(service_id, deadline)

            self._enter(result, PipelineState.DEDUPLICATING)
            fresh = self.dedup.filter_new(events)
            result.skipped += len(events) - len(fresh)
            self._check_deadline(service_id, deadline)

            self._enter(result, PipelineState.WRITING)
            for event in fresh:
                self._check_deadline(service_id, deadline)
                try:
                    entry_id = self.writer.upsert(event, deadline=deadline)
                except (ConsentError, CycleTimeoutError):
                    raise
                except DiaristError as exc:
                    result.failed += 1
                    logger.error("%s: could not write %s: %s", service_id.value, event.fingerprint, exc)
                    audit.append(
                        (
                            event.fingerprint,
                            "write_failed",
                            {"external_id": event.external_id, "error": f"{type(exc).__name__}: {exc}"},
                        )
                    )
                    continue
                result.written += 1
                audit.append(
                    (
                        event.fingerprint,
                        "upserted",
                        {"external_id": event.external_id, "entry_id": entry_id, "title": event.title},
                    )
                )
            if result.failed:
                raise CalendarWriteError(f"{result.failed} of {len(fresh)} event(s) could not be written")

            self._enter(result, PipelineState.ADVANCING)
            new_cursor = fetched.cursor
            if new_cursor is not None and watermark.cursor is not None:
                if adapter.cursor_key(new_cursor) < adapter.cursor_key(watermark.cursor):
                    logger.warning(
                        "%s: adapter returned cursor %s behind watermark %s; keeping the watermark.",
                        service_id.value,
                        new_cursor,
                        watermark.cursor,
                    )
                    new_cursor = watermark.cursor
            if new_cursor is None:
                new_cursor = watermark.cursor
            self.state_store.advance_watermark(service_id, new_cursor)
            result.cursor_after = new_cursor
            self._enter(result, PipelineState.IDLE)
            result.message = (
                f"Fetched {result.fetched}, wrote {result.written}, skipped {result.skipped}."
            )
        except ConsentError as exc:
            consent_error = exc
            self._fail(result, exc)
        except DiaristError as exc:
            self._fail(result, exc)
        except Exception as exc:
            logger.exception("%s: unexpected pipeline failure", service_id.value)
            self._fail(result, exc)
            audit.append(("sync", "run_traceback", {"traceback": traceback.format_exc(limit=5)}))

        result.duration_ms = int((time.monotonic() - started) * 1000)
        try:
            self._record(result, trigger, audit)
        except Exception:
            logger.exception("%s: could not record the cycle outcome", service_id.value)
        if result.ok:
            logger.info("%s: %s", service_id.value, result.message)
        if consent_error is not None:
            raise consent_error
        return result

    def _record(
        self,
        result: ServiceCycleResult,
        trigger: str,
        audit: list[tuple[str, str, dict[str, Any]]],
    ) -> None:
        service_id = result.service_id
        run_id = self.state_store.record_sync_run(
            service_id=service_id.value,
            trigger=trigger,
            status=result.status,
            message=result.message,
            duration_ms=result.duration_ms,
            fetched=result.fetched,
            written=result.written,
            skipped=result.skipped,
            failed=result.failed,
            cursor_before=result.cursor_before,
            cursor_after=result.cursor_after,
        )
        for subject, action, details in audit:
            self.state_store.record_audit_event(
                service_id=service_id.value,
                subject=subject,
                action=action,
                details=details,
                run_id=run_id,
            )
        self.state_store.record_audit_event(
            service_id=service_id.value,
            subject="sync",
            action="run_success" if result.ok else "run_error",
            details={"trigger": trigger, "message": result.message, "states": list(result.states)},
            run_id=run_id,
        )

    def _fail(self, result: ServiceCycleResult, exc: BaseException) -> None:
        result.status = "failed"
        result.message = f"{type(exc).__name__}: {exc}"
        result.cursor_after = result.cursor_before
        self._enter(result, PipelineState.FAILED)
        self._enter(result, PipelineState.IDLE)
        logger.error("%s: cycle failed in %s: %s", result.service_id.value, result.states[-3], result.message)
