from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from diarist.models import ServiceId, SyncWatermark, parse_iso_datetime, serialize_datetime

CLEAN_SHUTDOWN_KEY = "clean_shutdown"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            service_id TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            fetched INTEGER NOT NULL,
            written INTEGER NOT NULL,
            skipped INTEGER NOT NULL,
            failed INTEGER NOT NULL,
            cursor_before TEXT,
            cursor_after TEXT
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            service_id TEXT NOT NULL,
            subject TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS watermarks (
            service_id TEXT PRIMARY KEY,
            cursor TEXT,
            last_success_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS dedup_index (
            fingerprint TEXT PRIMARY KEY,
            service_id TEXT NOT NULL,
            entry_id TEXT NOT NULL,
            start_at TEXT,
            end_at TEXT,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS dedup_index_service ON dedup_index(service_id);

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def record_sync_run(
        self,
        *,
        service_id: str,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        fetched: int = 0,
        written: int = 0,
        skipped: int = 0,
        failed: int = 0,
        cursor_before: str | None = None,
        cursor_after: str | None = None,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(
                        run_at, service_id, trigger, status, message, duration_ms,
                        fetched, written, skipped, failed, cursor_before, cursor_after
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _utc_now(),
                        service_id,
                        trigger,
                        status,
                        message,
                        int(duration_ms),
                        int(fetched),
                        int(written),
                        int(skipped),
                        int(failed),
                        cursor_before,
                        cursor_after,
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def _select_recent(self, table: str, columns: str, limit: int, service_id: str | None) -> list[sqlite3.Row]:
        where, params = ("WHERE service_id = ?", [service_id]) if service_id is not None else ("", [])
        with self._lock:
            with self._connect() as conn:
                return conn.execute(
                    f"SELECT {columns} FROM {table} {where} ORDER BY id DESC LIMIT ?",  # nosec B608
                    (*params, max(1, limit)),
                ).fetchall()

    def recent_sync_runs(self, limit: int = 20, service_id: str | None = None) -> list[dict[str, Any]]:
        return [dict(row) for row in self._select_recent("sync_runs", "*", limit, service_id)]

    def record_audit_event(
        self,
        *,
        service_id: str,
        subject: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, service_id, subject, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), service_id, subject, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, service_id: str | None = None) -> list[dict[str, Any]]:
        rows = self._select_recent(
            "audit_events",
            "id, run_id, created_at, service_id, subject, action, details_json",
            limit,
            service_id,
        )
        events: list[dict[str, Any]] = []
        for row in rows:
            event = dict(row)
            event["details"] = json.loads(event.pop("details_json") or "{}")
            events.append(event)
        return events

    def get_watermark(self, service_id: ServiceId) -> SyncWatermark:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT cursor, last_success_at FROM watermarks WHERE service_id = ?",
                    (service_id.value,),
                ).fetchone()
        if row is None:
            return SyncWatermark(service_id=service_id)
        return SyncWatermark(
            service_id=service_id,
            cursor=row["cursor"],
            last_success_at=parse_iso_datetime(row["last_success_at"]),
        )

    def advance_watermark(self, service_id: ServiceId, cursor: str | None) -> SyncWatermark:
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO watermarks(service_id, cursor, last_success_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(service_id) DO UPDATE SET
                        cursor = excluded.cursor,
                        last_success_at = excluded.last_success_at
                    """,
                    (service_id.value, cursor, now),
                )
                conn.commit()
        return SyncWatermark(service_id=service_id, cursor=cursor, last_success_at=parse_iso_datetime(now))

    def list_watermarks(self) -> list[SyncWatermark]:
        return [self.get_watermark(service_id) for service_id in ServiceId]

    def upsert_dedup_entry(
        self,
        *,
        fingerprint: str,
        service_id: str,
        entry_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO dedup_index(fingerprint, service_id, entry_id, start_at, end_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(fingerprint) DO UPDATE SET
                        entry_id = excluded.entry_id,
                        start_at = COALESCE(excluded.start_at, dedup_index.start_at),
                        end_at = COALESCE(excluded.end_at, dedup_index.end_at),
                        updated_at = excluded.updated_at
                    """,
                    (
                        fingerprint,
                        service_id,
                        entry_id,
                        serialize_datetime(start),
                        serialize_datetime(end),
                        _utc_now(),
                    ),
                )
                conn.commit()

    def get_dedup_entry(self, fingerprint: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT entry_id FROM dedup_index WHERE fingerprint = ?",
                    (fingerprint,),
                ).fetchone()
        if row is None:
            return None
        return str(row["entry_id"])

    def known_fingerprints(self, fingerprints: Iterable[str]) -> dict[str, str]:
        wanted = list(dict.fromkeys(fingerprints))
        found: dict[str, str] = {}
        if not wanted:
            return found
        with self._lock:
            with self._connect() as conn:
                # Stay well under SQLite's bound-parameter limit.
                for offset in range(0, len(wanted), 500):
                    chunk = wanted[offset : offset + 500]
                    placeholders = ",".join("?" for _ in chunk)
                    rows = conn.execute(
                        f"SELECT fingerprint, entry_id FROM dedup_index WHERE fingerprint IN ({placeholders})",  # nosec B608
                        chunk,
                    ).fetchall()
                    for row in rows:
                        found[str(row["fingerprint"])] = str(row["entry_id"])
        return found

    def count_dedup_entries(self, service_id: str | None = None) -> int:
        with self._lock:
            with self._connect() as conn:
                if service_id is None:
                    row = conn.execute("SELECT COUNT(*) AS total FROM dedup_index").fetchone()
                else:
                    row = conn.execute(
                        "SELECT COUNT(*) AS total FROM dedup_index WHERE service_id = ?",
                        (service_id,),
                    ).fetchone()
        return int(row["total"])

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), _utc_now()),
                )
                conn.commit()

    def get_meta(self, key: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT value
                    FROM app_meta
                    WHERE key = ?
                    """,
                    (str(key),),
                ).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def begin_session(self) -> bool:
        """Mark the store as in use and report whether the previous session ended cleanly."""
        previous = self.get_meta(CLEAN_SHUTDOWN_KEY)
        self.set_meta(CLEAN_SHUTDOWN_KEY, "0")
        # A brand-new store has nothing to distrust.
        return previous != "0"

    def end_session(self) -> None:
        self.set_meta(CLEAN_SHUTDOWN_KEY, "1")
