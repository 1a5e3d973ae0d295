from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from time import monotonic
from typing import Any


class ServiceId(str, Enum):
    BILIBILI = "bilibili"
    LEAGUE_OF_LEGENDS = "league_of_legends"
    NETFLIX = "netflix"
    WAKATIME = "wakatime"
    YOUTUBE = "youtube"

    @property
    def label(self) -> str:
        return SERVICE_LABELS[self]


SERVICE_LABELS = {
    ServiceId.BILIBILI: "Bilibili",
    ServiceId.LEAGUE_OF_LEGENDS: "League of Legends",
    ServiceId.NETFLIX: "Netflix",
    ServiceId.WAKATIME: "Wakatime",
    ServiceId.YOUTUBE: "Youtube",
}

DEFAULT_SERVICE_URLS = {
    ServiceId.BILIBILI: "https://api.bilibili.com/x/v2/history?pn=1&ps=100",
    ServiceId.LEAGUE_OF_LEGENDS: "",
    ServiceId.NETFLIX: "https://www.netflix.com/viewingactivity",
    ServiceId.WAKATIME: "https://wakatime.com/api/v1/users/current/durations?date={date}",
    ServiceId.YOUTUBE: "https://myactivity.google.com/product/youtube",
}

# Bilibili history entries are often short clips worth keeping.
DEFAULT_MIN_DURATION_SECONDS = {
    ServiceId.BILIBILI: 0,
}

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
DEFAULT_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if is_end:
        return datetime.combine(value, time.max, tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def compute_fingerprint(service_id: ServiceId | str, external_id: str) -> str:
    service = service_id.value if isinstance(service_id, ServiceId) else str(service_id)
    return hashlib.sha1(f"{service}|{external_id}".encode("utf-8")).hexdigest()  # nosec B324


@dataclass
class CalendarConfig:
    url: str = ""
    timeout_seconds: int = 30
    rate_per_second: float = 2.0
    burst: int = 5
    max_retries: int = 5
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 60.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarConfig":
        data = data or {}
        return cls(
            url=str(data.get("url", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            rate_per_second=max(0.01, float(data.get("rate_per_second", 2.0))),
            burst=max(1, int(data.get("burst", 5))),
            max_retries=max(0, int(data.get("max_retries", 5))),
            backoff_base_seconds=max(0.0, float(data.get("backoff_base_seconds", 1.0))),
            backoff_max_seconds=max(0.0, float(data.get("backoff_max_seconds", 60.0))),
        )


@dataclass
class OAuthConfig:
    client_id: str = ""
    client_secret: str = ""
    auth_uri: str = GOOGLE_AUTH_URI
    token_uri: str = GOOGLE_TOKEN_URI
    redirect_uri: str = "http://localhost"
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    credential_path: str = "data/credential.json"
    refresh_skew_seconds: int = 60

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "OAuthConfig":
        data = data or {}
        scopes = [str(x).strip() for x in data.get("scopes", DEFAULT_SCOPES) or [] if str(x).strip()]
        return cls(
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            auth_uri=str(data.get("auth_uri", GOOGLE_AUTH_URI)).strip() or GOOGLE_AUTH_URI,
            token_uri=str(data.get("token_uri", GOOGLE_TOKEN_URI)).strip() or GOOGLE_TOKEN_URI,
            redirect_uri=str(data.get("redirect_uri", "http://localhost")).strip() or "http://localhost",
            scopes=scopes or list(DEFAULT_SCOPES),
            credential_path=str(data.get("credential_path", "data/credential.json")).strip()
            or "data/credential.json",
            refresh_skew_seconds=max(0, int(data.get("refresh_skew_seconds", 60))),
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 3600
    cycle_deadline_seconds: int = 600
    http_timeout_seconds: int = 30
    max_workers: int = 4

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=max(30, int(data.get("interval_seconds", 3600))),
            cycle_deadline_seconds=max(10, int(data.get("cycle_deadline_seconds", 600))),
            http_timeout_seconds=max(1, int(data.get("http_timeout_seconds", 30))),
            max_workers=max(1, int(data.get("max_workers", 4))),
        )


@dataclass
class DedupConfig:
    source: str = "local"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DedupConfig":
        data = data or {}
        return cls(source=str(data.get("source", "local")).strip().lower() or "local")


@dataclass
class ServiceConfig:
    enabled: bool = False
    url: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    interval_seconds: int | None = None
    cycle_deadline_seconds: int | None = None
    min_duration_seconds: int = 300
    settle_seconds: int = 3600
    backfill_days: int = 1

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, service_id: ServiceId | None = None) -> "ServiceConfig":
        data = data or {}
        raw_headers = data.get("headers", {})
        headers: dict[str, str] = {}
        if isinstance(raw_headers, dict):
            for key, value in raw_headers.items():
                name = str(key).strip()
                if name:
                    headers[name] = str(value)
        interval = data.get("interval_seconds")
        deadline = data.get("cycle_deadline_seconds")
        default_url = DEFAULT_SERVICE_URLS.get(service_id, "") if service_id else ""
        default_min = DEFAULT_MIN_DURATION_SECONDS.get(service_id, 300) if service_id else 300
        return cls(
            enabled=bool(data.get("enabled", False)),
            url=str(data.get("url", default_url) or "").strip(),
            headers=headers,
            interval_seconds=max(30, int(interval)) if interval is not None else None,
            cycle_deadline_seconds=max(10, int(deadline)) if deadline is not None else None,
            min_duration_seconds=max(0, int(data.get("min_duration_seconds", default_min))),
            settle_seconds=max(0, int(data.get("settle_seconds", 3600))),
            backfill_days=max(1, int(data.get("backfill_days", 1))),
        )


@dataclass
class AppConfig:
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    services: dict[str, ServiceConfig] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        raw_services = data.get("services", {})
        services: dict[str, ServiceConfig] = {}
        if isinstance(raw_services, dict):
            for key, value in raw_services.items():
                name = str(key).strip().lower()
                if not name:
                    continue
                try:
                    service_id: ServiceId | None = ServiceId(name)
                except ValueError:
                    service_id = None
                services[name] = ServiceConfig.from_dict(value if isinstance(value, dict) else {}, service_id)
        return cls(
            calendar=CalendarConfig.from_dict(data.get("calendar")),
            oauth=OAuthConfig.from_dict(data.get("oauth")),
            sync=SyncConfig.from_dict(data.get("sync")),
            dedup=DedupConfig.from_dict(data.get("dedup")),
            services=services,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def enabled_services(self) -> list[ServiceId]:
        enabled: list[ServiceId] = []
        for service_id in ServiceId:
            service = self.services.get(service_id.value)
            if service is not None and service.enabled:
                enabled.append(service_id)
        return enabled

    def service(self, service_id: ServiceId) -> ServiceConfig:
        return self.services.get(service_id.value) or ServiceConfig.from_dict({}, service_id)

    def interval_for(self, service_id: ServiceId) -> int:
        return self.service(service_id).interval_seconds or self.sync.interval_seconds

    def deadline_for(self, service_id: ServiceId) -> int:
        return self.service(service_id).cycle_deadline_seconds or self.sync.cycle_deadline_seconds


def default_app_config() -> AppConfig:
    return AppConfig(
        services={service_id.value: ServiceConfig.from_dict({}, service_id) for service_id in ServiceId}
    )


@dataclass
class RawRecord:
    service_id: ServiceId
    external_id: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class FetchResult:
    records: list[RawRecord]
    cursor: str | None


@dataclass
class DiaryEvent:
    service_id: ServiceId
    external_id: str
    start: datetime
    end: datetime
    title: str = ""
    description: str = ""
    all_day: bool = False

    @property
    def fingerprint(self) -> str:
        return compute_fingerprint(self.service_id, self.external_id)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id.value,
            "external_id": self.external_id,
            "fingerprint": self.fingerprint,
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "title": self.title,
            "description": self.description,
            "all_day": self.all_day,
        }


@dataclass
class CalendarEntry:
    entry_id: str
    uid: str = ""
    summary: str = ""
    description: str = ""
    start: datetime | None = None
    end: datetime | None = None
    service_id: str = ""
    external_id: str = ""
    fingerprint: str = ""


@dataclass
class SyncWatermark:
    service_id: ServiceId
    cursor: str | None = None
    last_success_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id.value,
            "cursor": self.cursor,
            "last_success_at": serialize_datetime(self.last_success_at),
        }


@dataclass
class Credential:
    access_token: str
    refresh_token: str = ""
    expiry: datetime | None = None
    scope: str = ""

    def expires_within(self, seconds: float, now: datetime | None = None) -> bool:
        if not self.access_token:
            return True
        if self.expiry is None:
            return False
        current = _ensure_tz(now) if now is not None else utc_now()
        return self.expiry - timedelta(seconds=seconds) <= current

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expiry": serialize_datetime(self.expiry),
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Credential":
        return cls(
            access_token=str(data.get("access_token", "") or ""),
            refresh_token=str(data.get("refresh_token", "") or ""),
            expiry=parse_iso_datetime(data.get("expiry")),
            scope=str(data.get("scope", "") or ""),
        )


class Deadline:
    def __init__(self, seconds: float) -> None:
        self.seconds = float(seconds)
        self._expires_at = monotonic() + self.seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - monotonic())

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def clip(self, timeout: float) -> float:
        # requests rejects a zero timeout, keep a small floor.
        return max(0.1, min(float(timeout), self.remaining()))


@dataclass
class ServiceCycleResult:
    service_id: ServiceId
    status: str
    message: str = ""
    fetched: int = 0
    written: int = 0
    skipped: int = 0
    failed: int = 0
    cursor_before: str | None = None
    cursor_after: str | None = None
    states: list[str] = field(default_factory=list)
    duration_ms: int = 0
    run_at: datetime = field(default_factory=utc_now)

    @property
    def ok(self) -> bool:
        return self.status in {"success", "disabled"}

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id.value,
            "status": self.status,
            "message": self.message,
            "fetched": self.fetched,
            "written": self.written,
            "skipped": self.skipped,
            "failed": self.failed,
            "cursor_before": self.cursor_before,
            "cursor_after": self.cursor_after,
            "states": list(self.states),
            "duration_ms": self.duration_ms,
            "run_at": serialize_datetime(self.run_at),
        }
