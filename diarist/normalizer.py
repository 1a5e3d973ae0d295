from __future__ import annotations

import math
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

from diarist.errors import DataParseError
from diarist.models import DiaryEvent, RawRecord, ServiceId, compute_fingerprint, parse_iso_datetime

EventFields = tuple[datetime, datetime, str, list[str], bool]


def _epoch(seconds: Any) -> datetime:
    return datetime.fromtimestamp(math.floor(float(seconds)), tz=timezone.utc)


def _seconds(value: Any) -> int:
    number = math.floor(float(value))
    if number < 0:
        raise ValueError(f"negative duration {value!r}")
    return number


def _text(payload: dict[str, Any], key: str) -> str:
    value = payload[key]
    if value is None:
        raise ValueError(f"{key} is empty")
    return str(value).strip()


def _bilibili(payload: dict[str, Any]) -> EventFields:
    start = _epoch(payload["view_at"])
    progress = int(payload.get("progress", -1))
    # progress -1 means the page was watched to the end.
    watched = _seconds(payload["page_duration"]) if progress < 0 else _seconds(progress)
    lines = [f"[link] {_text(payload, 'redirect_link')}", f"[bvid] {_text(payload, 'bvid')}"]
    part = str(payload.get("part") or "").strip()
    title = _text(payload, "title")
    if part and part != title:
        lines.append(f"[part] {part}")
    return start, start + timedelta(seconds=watched), title, lines, False


def _league_of_legends(payload: dict[str, Any]) -> EventFields:
    start = _epoch(int(payload["game_creation"]) / 1000)
    end = start + timedelta(seconds=_seconds(payload["game_duration"]))
    platform = _text(payload, "platform_id")
    link = (
        "https://matchhistory.na.leagueoflegends.com/en/#match-details/"
        f"{platform}/{_text(payload, 'game_id')}/{_text(payload, 'account_id')}"
    )
    mode = _text(payload, "game_mode")
    lines = [f"[link] {link}", f"[mode] {mode} {str(payload.get('game_type') or '').strip()}".rstrip()]
    return start, end, mode, lines, False


def _netflix(payload: dict[str, Any]) -> EventFields:
    day = date.fromisoformat(_text(payload, "date"))
    start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    lines = [f"[link] https://www.netflix.com{_text(payload, 'link')}"]
    return start, start, _text(payload, "title"), lines, True


def _wakatime(payload: dict[str, Any]) -> EventFields:
    start = _epoch(payload["time"])
    end = start + timedelta(seconds=_seconds(payload["duration"]))
    project = _text(payload, "project")
    lines = [f"[link] https://wakatime.com/projects/{project}"]
    return start, end, project, lines, False


def _youtube(payload: dict[str, Any]) -> EventFields:
    start = parse_iso_datetime(_text(payload, "start"))
    if start is None:
        raise ValueError("start is empty")
    start = start.astimezone(timezone.utc)
    end = start + timedelta(seconds=_seconds(payload["watched_seconds"]))
    lines = [f"[link] {_text(payload, 'link')}", f"[author] {_text(payload, 'author')}"]
    return start, end, _text(payload, "title"), lines, False


NORMALIZERS: dict[ServiceId, Callable[[dict[str, Any]], EventFields]] = {
    ServiceId.BILIBILI: _bilibili,
    ServiceId.LEAGUE_OF_LEGENDS: _league_of_legends,
    ServiceId.NETFLIX: _netflix,
    ServiceId.WAKATIME: _wakatime,
    ServiceId.YOUTUBE: _youtube,
}


def normalize(service_id: ServiceId, record: RawRecord) -> DiaryEvent:
    external_id = str(record.external_id or "").strip()
    if not external_id:
        raise DataParseError(f"{service_id.value} record has no external id")
    if record.service_id != service_id:
        raise DataParseError(
            f"record from {record.service_id.value} handed to the {service_id.value} normalizer",
            external_id=external_id,
        )
    mapper = NORMALIZERS[service_id]
    try:
        start, end, title, lines, all_day = mapper(record.payload)
    except (KeyError, TypeError, ValueError, OverflowError) as exc:
        raise DataParseError(
            f"malformed {service_id.value} record {external_id}: {type(exc).__name__}: {exc}",
            external_id=external_id,
        ) from exc
    if end < start:
        raise DataParseError(f"{service_id.value} record {external_id} ends before it starts", external_id=external_id)
    if not title:
        raise DataParseError(f"{service_id.value} record {external_id} has no title", external_id=external_id)
    lines.append(f"[hash] {compute_fingerprint(service_id, external_id)}")
    return DiaryEvent(
        service_id=service_id,
        external_id=external_id,
        start=start,
        end=end,
        title=f"[{service_id.label}] {title}",
        description="\n".join(lines),
        all_day=all_day,
    )


def is_too_short(event: DiaryEvent, min_duration_seconds: int) -> bool:
    if event.all_day or min_duration_seconds <= 0:
        return False
    return event.duration.total_seconds() < min_duration_seconds
