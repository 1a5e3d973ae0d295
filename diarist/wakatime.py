from __future__ import annotations

import logging
import math
from datetime import date, datetime, timedelta, timezone

from diarist.adapters import Candidate, ServiceAdapter
from diarist.errors import TransientFetchError
from diarist.models import Deadline, FetchResult, RawRecord, ServiceId

logger = logging.getLogger(__name__)


class WakatimeAdapter(ServiceAdapter):
    """Coding durations, one request per UTC day from the cursor's day up to today."""

    service_id = ServiceId.WAKATIME
    min_request_interval = 0.5

    def _days(self, since: datetime) -> list[date]:
        today = self.clock().astimezone(timezone.utc).date()
        day = since.astimezone(timezone.utc).date()
        days: list[date] = []
        while day <= today:
            days.append(day)
            day += timedelta(days=1)
        return days

    def _url_for(self, day: date) -> str:
        return self.config.url.replace("{date}", day.isoformat())

    def fetch(self, cursor: str | None, *, deadline: Deadline | None = None) -> FetchResult:
        if cursor:
            since_key = self.cursor_key(cursor)
            since = datetime.fromtimestamp(since_key, tz=timezone.utc)
        else:
            since = self._since()
            since_key = since.timestamp()
        days = self._days(since) if "{date}" in self.config.url else [None]

        candidates: list[Candidate] = []
        for day in days:
            url = self._url_for(day) if day is not None else self.config.url
            payload = self._get_json(url, deadline=deadline)
            items = payload.get("data") if isinstance(payload, dict) else None
            if not isinstance(items, list):
                raise TransientFetchError(self.service_id.value, f"{url} response has no data list")
            for item in items:
                if not isinstance(item, dict):
                    continue
                try:
                    started = float(item["time"])
                except (KeyError, TypeError, ValueError):
                    logger.warning("wakatime: dropping duration without time: %s", item.get("project"))
                    continue
                try:
                    duration = max(0.0, float(item.get("duration", 0)))
                except (TypeError, ValueError):
                    duration = 0.0
                cursor_value = repr(started)
                record = RawRecord(
                    service_id=self.service_id,
                    external_id=str(math.floor(started)),
                    payload={
                        "project": item.get("project"),
                        "time": started,
                        "duration": item.get("duration"),
                    },
                )
                ends_at = datetime.fromtimestamp(started + duration, tz=timezone.utc)
                candidates.append(Candidate(key=started, cursor=cursor_value, ends_at=ends_at, record=record))
        return self._collect(candidates, cursor, since_key)
