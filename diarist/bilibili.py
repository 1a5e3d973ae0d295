from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from diarist.adapters import Candidate, ServiceAdapter
from diarist.errors import TransientFetchError
from diarist.models import Deadline, FetchResult, RawRecord, ServiceId

logger = logging.getLogger(__name__)


def _history_items(payload: Any) -> list[dict[str, Any]]:
    data = payload.get("data")
    # The cursor-style history endpoint nests the items under data.list.
    if isinstance(data, dict):
        data = data.get("list")
    if data is None:
        return []
    if not isinstance(data, list):
        raise ValueError("history data is not a list")
    return [item for item in data if isinstance(item, dict)]


class BilibiliAdapter(ServiceAdapter):
    service_id = ServiceId.BILIBILI

    def fetch(self, cursor: str | None, *, deadline: Deadline | None = None) -> FetchResult:
        payload = self._get_json(self.config.url, deadline=deadline)
        if not isinstance(payload, dict):
            raise TransientFetchError(self.service_id.value, "history response is not an object")
        code = payload.get("code", 0)
        if code not in (0, "0"):
            raise TransientFetchError(
                self.service_id.value, f"history API returned code {code}: {payload.get('message', '')}"
            )
        try:
            items = _history_items(payload)
        except ValueError as exc:
            raise TransientFetchError(self.service_id.value, str(exc)) from exc

        since_key = self.cursor_key(cursor) if cursor else self._since().timestamp()
        candidates: list[Candidate] = []
        for item in items:
            try:
                view_at = int(item["view_at"])
            except (KeyError, TypeError, ValueError):
                logger.warning("bilibili: dropping history item without view_at: %s", item.get("bvid"))
                continue
            page = item.get("page") if isinstance(item.get("page"), dict) else {}
            page_number = page.get("page", 1)
            bvid = str(item.get("bvid") or "").strip()
            progress = item.get("progress", -1)
            watched = page.get("duration", 0) if progress in (-1, "-1", None) else progress
            try:
                ends_at = datetime.fromtimestamp(view_at + max(0, int(watched)), tz=timezone.utc)
            except (TypeError, ValueError):
                ends_at = datetime.fromtimestamp(view_at, tz=timezone.utc)
            record = RawRecord(
                service_id=self.service_id,
                external_id=f"{bvid}|{page_number}|{view_at}" if bvid else "",
                payload={
                    "bvid": bvid,
                    "page": page_number,
                    "part": page.get("part", ""),
                    "page_duration": page.get("duration"),
                    "progress": progress,
                    "title": item.get("title"),
                    "view_at": view_at,
                    "redirect_link": item.get("redirect_link") or f"https://www.bilibili.com/video/{bvid}",
                },
            )
            candidates.append(Candidate(key=float(view_at), cursor=str(view_at), ends_at=ends_at, record=record))
        return self._collect(candidates, cursor, since_key)
