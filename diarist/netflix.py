from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta, timezone

from bs4 import BeautifulSoup

from diarist.adapters import Candidate, ServiceAdapter
from diarist.models import Deadline, FetchResult, RawRecord, ServiceId

logger = logging.getLogger(__name__)

_TITLE_ID_PATTERN = re.compile(r"/title/(\d+)")
_DATE_PATTERN = re.compile(r"^\s*(\d{1,2})/(\d{1,2})/(\d{2,4})\s*$")


def parse_viewing_date(text: str) -> date:
    """Parse the ``M/D/YY`` dates of the viewing activity page."""
    match = _DATE_PATTERN.match(text or "")
    if not match:
        raise ValueError(f"unrecognized viewing date {text!r}")
    month, day, year = (int(part) for part in match.groups())
    if year < 100:
        year += 2000
    return date(year, month, day)


class NetflixAdapter(ServiceAdapter):
    """Viewing activity scraped from the account page.

    The page only carries a date per row, so cursors are ISO dates and a day
    is handed on only after it has ended.
    """

    service_id = ServiceId.NETFLIX

    def cursor_key(self, cursor: str) -> str:
        return cursor

    def fetch(self, cursor: str | None, *, deadline: Deadline | None = None) -> FetchResult:
        response = self._get(self.config.url, deadline=deadline)
        soup = BeautifulSoup(response.text, "html.parser")
        # Without a cursor the first backfilled day itself is wanted.
        since_key = cursor if cursor else (self._since().date() - timedelta(days=1)).isoformat()

        candidates: list[Candidate] = []
        for row in soup.select("li.retableRow"):
            link = row.select_one("div.title a")
            date_node = row.select_one("div.date")
            if link is None or date_node is None:
                logger.warning("netflix: dropping viewing row without title link or date")
                continue
            try:
                day = parse_viewing_date(date_node.get_text(strip=True))
            except ValueError as exc:
                logger.warning("netflix: dropping viewing row: %s", exc)
                continue
            href = str(link.get("href") or "")
            match = _TITLE_ID_PATTERN.search(href)
            iso_day = day.isoformat()
            record = RawRecord(
                service_id=self.service_id,
                external_id=f"{match.group(1)}|{iso_day}" if match else "",
                payload={"title": link.get_text(strip=True), "link": href, "date": iso_day},
            )
            next_midnight = datetime(day.year, day.month, day.day, tzinfo=timezone.utc) + timedelta(days=1)
            candidates.append(Candidate(key=iso_day, cursor=iso_day, ends_at=next_midnight, record=record))
        return self._collect(candidates, cursor, since_key)
