from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any
from urllib.parse import parse_qs, urlparse

from bs4 import BeautifulSoup
from bs4.element import Tag

from diarist.adapters import Candidate, ServiceAdapter
from diarist.errors import TransientFetchError
from diarist.models import Deadline, FetchResult, RawRecord, ServiceId

logger = logging.getLogger(__name__)

_CN_TIME_PATTERN = re.compile(r"(上午|下午)\s*(\d{1,2}):(\d{2})")
_EN_TIME_PATTERN = re.compile(r"(\d{1,2}):(\d{2})\s*([AaPp])\.?\s*[Mm]\.?")
_LENGTH_PATTERN = re.compile(r"^(?:(\d+):)?(\d{1,2}):(\d{2})$")
_PERCENT_PATTERN = re.compile(r"width:\s*(\d+(?:\.\d+)?)%")
_CN_FULL_DATE_PATTERN = re.compile(r"(\d{4})年(\d{1,2})月(\d{1,2})日")
_CN_SHORT_DATE_PATTERN = re.compile(r"(\d{1,2})月(\d{1,2})日")
_EN_DATE_FORMATS = ("%b %d, %Y", "%B %d, %Y", "%b %d", "%B %d")

CURSOR_FORMAT = "%Y-%m-%dT%H:%MZ"
ID_TIME_FORMAT = "%Y-%m-%d %H:%M"


def parse_start_time(text: str) -> tuple[int, int] | None:
    match = _CN_TIME_PATTERN.search(text)
    if match:
        hour, minute = int(match.group(2)) % 12, int(match.group(3))
        return (hour + 12 if match.group(1) == "下午" else hour), minute
    match = _EN_TIME_PATTERN.search(text)
    if match:
        hour, minute = int(match.group(1)) % 12, int(match.group(2))
        return (hour + 12 if match.group(3).lower() == "p" else hour), minute
    return None


def parse_length(text: str) -> int | None:
    match = _LENGTH_PATTERN.match(text.strip())
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours or 0) * 3600 + int(minutes) * 60 + int(seconds)


def parse_header_date(text: str, today: date) -> date | None:
    text = text.strip()
    if text in {"今天", "Today"}:
        return today
    if text in {"昨天", "Yesterday"}:
        return today - timedelta(days=1)
    match = _CN_FULL_DATE_PATTERN.search(text)
    if match:
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    match = _CN_SHORT_DATE_PATTERN.search(text)
    if match:
        return date(today.year, int(match.group(1)), int(match.group(2)))
    for fmt in _EN_DATE_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        if "%Y" not in fmt:
            return date(today.year, parsed.month, parsed.day)
        return parsed.date()
    return None


def video_id(link: str) -> str:
    values = parse_qs(urlparse(link).query).get("v") or []
    return values[0] if values else ""


def _parse_card(card: Tag) -> dict[str, Any] | None:
    links = card.find_all("a", href=True)
    title_link = next((anchor for anchor in links if "watch?v=" in anchor["href"]), None)
    if title_link is None:
        return None
    author_link = next(
        (anchor for anchor in links if anchor is not title_link and "watch?v=" not in anchor["href"]),
        None,
    )
    start: tuple[int, int] | None = None
    length: int | None = None
    for text in card.stripped_strings:
        if start is None:
            start = parse_start_time(text)
            if start is not None:
                continue
        if length is None:
            length = parse_length(text)
    if start is None:
        return None
    percent: float | None = None
    for node in card.find_all(style=True):
        match = _PERCENT_PATTERN.search(node["style"])
        if match:
            percent = float(match.group(1))
            break
    total = length or 0
    watched = int(total * percent / 100) if percent is not None else total
    return {
        "link": title_link["href"],
        "title": title_link.get_text(strip=True),
        "author": author_link.get_text(strip=True) if author_link is not None else "",
        "start": start,
        "watched_seconds": watched,
    }


class YoutubeAdapter(ServiceAdapter):
    """Watch history scraped from the activity page.

    The page groups cards under local-date headers and shows local start
    times to the minute, so cursors are UTC minutes.
    """

    service_id = ServiceId.YOUTUBE

    def cursor_key(self, cursor: str) -> str:
        return cursor

    def _local_zone(self) -> tzinfo:
        return self.clock().astimezone().tzinfo or timezone.utc

    def fetch(self, cursor: str | None, *, deadline: Deadline | None = None) -> FetchResult:
        response = self._get(self.config.url, deadline=deadline)
        soup = BeautifulSoup(response.text, "html.parser")
        since_key = cursor if cursor else self._since().astimezone(timezone.utc).strftime(CURSOR_FORMAT)
        first_card = soup.select_one("c-wiz[data-token]")
        if first_card is None or first_card.parent is None:
            return self._collect([], cursor, since_key)

        local_zone = self._local_zone()
        today = self.clock().astimezone(local_zone).date()
        current_day = today
        candidates: list[Candidate] = []
        for node in first_card.parent.find_all(recursive=False):
            if node.name == "div":
                header = node.find("h2")
                if header is None:
                    continue
                parsed_day = parse_header_date(header.get_text(strip=True), today)
                if parsed_day is None:
                    raise TransientFetchError(
                        self.service_id.value, f"unrecognized date header {header.get_text(strip=True)!r}"
                    )
                current_day = parsed_day
                continue
            if node.name != "c-wiz":
                continue
            card = _parse_card(node)
            if card is None:
                logger.warning("youtube: dropping history card without a video link or start time")
                continue
            hour, minute = card.pop("start")
            started = datetime(
                current_day.year, current_day.month, current_day.day, hour, minute, tzinfo=local_zone
            ).astimezone(timezone.utc)
            vid = video_id(card["link"])
            record = RawRecord(
                service_id=self.service_id,
                external_id=f"{vid}|{started.strftime(ID_TIME_FORMAT)}" if vid else "",
                payload={**card, "start": started.isoformat()},
            )
            key = started.strftime(CURSOR_FORMAT)
            ends_at = started + timedelta(seconds=card["watched_seconds"])
            candidates.append(Candidate(key=key, cursor=key, ends_at=ends_at, record=record))
        return self._collect(candidates, cursor, since_key)
