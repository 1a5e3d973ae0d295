from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from diarist.caldav_client import CalDAVService
from diarist.calendar_writer import CalendarWriter
from diarist.config_manager import ConfigManager
from diarist.credential_store import CredentialStore
from diarist.dedup import DedupEngine
from diarist.models import AppConfig, ServiceId
from diarist.orchestrator import Orchestrator
from diarist.registry import build_adapters
from diarist.scheduler import SyncScheduler
from diarist.state_store import StateStore

logger = logging.getLogger(__name__)


class SyncTriggerRequest(BaseModel):
    services: list[str] = Field(default_factory=list)


class AppContext:
    """Owns the single instance of every long-lived component of the process."""

    def __init__(self, config_path: str, state_path: str, *, config: AppConfig | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        self.config = config or self.config_manager.load_validated()
        self.state_store = StateStore(state_path)
        clean = self.state_store.begin_session()
        if not clean:
            logger.warning("Previous run did not shut down cleanly; the dedup index will be reconciled.")
        self.credential_store = CredentialStore(self.config.oauth)
        self.calendar = CalDAVService(self.config.calendar, self.credential_store.get_valid_credential)
        self.dedup = DedupEngine(
            self.state_store,
            self.calendar,
            source=self.config.dedup.source,
            index_stale=not clean,
            credentials=self.credential_store,
        )
        self.writer = CalendarWriter(self.calendar, self.dedup, self.credential_store, self.config.calendar)
        self.orchestrator = Orchestrator(
            self.config,
            self.state_store,
            build_adapters(self.config),
            self.dedup,
            self.writer,
        )
        self.scheduler = SyncScheduler(self.orchestrator)

    @classmethod
    def from_env(cls) -> "AppContext":
        config_path = os.getenv("DIARIST_CONFIG_PATH", "config.yaml")
        state_path = os.getenv("DIARIST_STATE_PATH", "data/state.db")
        return cls(config_path=config_path, state_path=state_path)

    def close(self) -> None:
        self.scheduler.stop()
        self.state_store.end_session()


def _service_or_404(service_id: str) -> ServiceId:
    try:
        return ServiceId(service_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=f"unknown service '{service_id}'") from exc


def _enabled_or_error(app: FastAPI, service_id: str) -> ServiceId:
    service = _service_or_404(service_id)
    if service not in app.state.context.orchestrator.adapters:
        raise HTTPException(status_code=409, detail=f"service '{service.value}' is not enabled")
    return service


def create_app(context: AppContext | None = None) -> FastAPI:
    context = context or AppContext.from_env()

    app = FastAPI(title="Diarist Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.close()

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        fatal = app.state.context.scheduler.fatal_error
        if fatal is not None:
            return {"status": "degraded", "error": str(fatal)}
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {
            "services": app.state.context.orchestrator.status(),
            "runs": app.state.context.state_store.recent_sync_runs(limit=limit),
        }

    @app.get("/api/sync/watermarks")
    def sync_watermarks() -> dict[str, Any]:
        watermarks = app.state.context.state_store.list_watermarks()
        return {"watermarks": [watermark.to_dict() for watermark in watermarks]}

    @app.post("/api/sync/run")
    def trigger_sync(request: SyncTriggerRequest | None = None) -> dict[str, Any]:
        requested = [_enabled_or_error(app, name) for name in (request.services if request else [])]
        if not requested:
            app.state.context.scheduler.trigger_manual()
            return {"message": "sync triggered", "services": []}
        for service in requested:
            app.state.context.scheduler.trigger_manual(service)
        return {"message": "sync triggered", "services": [service.value for service in requested]}

    @app.post("/api/sync/run/{service_id}")
    def trigger_service_sync(service_id: str) -> dict[str, str]:
        service = _enabled_or_error(app, service_id)
        app.state.context.scheduler.trigger_manual(service)
        return {"message": f"{service.value} sync triggered"}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, service_id: str | None = None) -> dict[str, Any]:
        if service_id is not None:
            service_id = _service_or_404(service_id).value
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, service_id=service_id)}

    return app
