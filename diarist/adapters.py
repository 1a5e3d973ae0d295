from __future__ import annotations

import abc
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

import requests

from diarist.errors import CycleTimeoutError, TransientFetchError
from diarist.models import Deadline, FetchResult, RawRecord, ServiceConfig, ServiceId, utc_now

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36"


@dataclass
class Candidate:
    key: Any
    cursor: str
    ends_at: datetime
    record: RawRecord


class ServiceAdapter(abc.ABC):
    """Fetches one service's activity strictly after a cursor.

    Cursors are opaque strings to the rest of the engine; ``cursor_key`` turns
    one into a value that orders the same way the service's activity does.
    """

    service_id: ServiceId
    min_request_interval: float = 0.0

    def __init__(
        self,
        config: ServiceConfig,
        *,
        timeout_seconds: int = 30,
        session: requests.Session | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.clock = clock or utc_now
        self._last_request_at = 0.0

    @abc.abstractmethod
    def fetch(self, cursor: str | None, *, deadline: Deadline | None = None) -> FetchResult:
        raise NotImplementedError

    def cursor_key(self, cursor: str) -> Any:
        return float(cursor)

    def _headers(self) -> dict[str, str]:
        headers = {"User-Agent": DEFAULT_USER_AGENT}
        headers.update(self.config.headers)
        return headers

    def _pace(self, deadline: Deadline | None) -> None:
        if self.min_request_interval <= 0:
            return
        wait = self._last_request_at + self.min_request_interval - time.monotonic()
        if wait <= 0:
            return
        if deadline is not None and wait >= deadline.remaining():
            raise CycleTimeoutError(f"{self.service_id.value}: deadline reached while pacing requests")
        time.sleep(wait)

    def _get(self, url: str, *, deadline: Deadline | None = None) -> requests.Response:
        if deadline is not None and deadline.expired():
            raise CycleTimeoutError(f"{self.service_id.value}: deadline reached before request")
        self._pace(deadline)
        timeout = deadline.clip(self.timeout_seconds) if deadline is not None else self.timeout_seconds
        try:
            response = self.session.get(url, headers=self._headers(), timeout=timeout)
        except requests.RequestException as exc:
            raise TransientFetchError(self.service_id.value, f"request to {url} failed: {exc}") from exc
        finally:
            self._last_request_at = time.monotonic()
        if not response.ok:
            raise TransientFetchError(
                self.service_id.value,
                f"{url} answered HTTP {response.status_code}: {(response.text or '')[:200]}",
            )
        return response

    def _get_json(self, url: str, *, deadline: Deadline | None = None) -> Any:
        response = self._get(url, deadline=deadline)
        try:
            return response.json()
        except ValueError as exc:
            raise TransientFetchError(self.service_id.value, f"{url} returned invalid JSON") from exc

    def _since(self) -> datetime:
        return self.clock() - timedelta(days=self.config.backfill_days)

    def _settled_before(self) -> datetime:
        return self.clock() - timedelta(seconds=self.config.settle_seconds)

    def _collect(self, candidates: list[Candidate], cursor: str | None, since_key: Any) -> FetchResult:
        """Order candidates, keep those after the cursor and stop at the first unsettled one.

        Stopping instead of skipping keeps the returned cursor below every
        held-back record, so nothing is lost once it settles.
        """
        settled_before = self._settled_before()
        accepted: list[Candidate] = []
        held_back = 0
        ordered = sorted(candidates, key=lambda item: item.key)
        for index, candidate in enumerate(ordered):
            if candidate.key <= since_key:
                continue
            if candidate.ends_at > settled_before:
                held_back = len(ordered) - index
                # Records sharing the held-back key must wait with it.
                while accepted and accepted[-1].key == candidate.key:
                    accepted.pop()
                    held_back += 1
                break
            accepted.append(candidate)
        if held_back:
            logger.debug("%s: holding back %d record(s) still in progress", self.service_id.value, held_back)
        new_cursor = accepted[-1].cursor if accepted else cursor
        return FetchResult(records=[item.record for item in accepted], cursor=new_cursor)
