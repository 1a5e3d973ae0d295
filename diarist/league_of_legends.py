from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from diarist.adapters import Candidate, ServiceAdapter
from diarist.errors import TransientFetchError
from diarist.models import Deadline, FetchResult, RawRecord, ServiceId

logger = logging.getLogger(__name__)


def _participant_account(game: dict[str, Any]) -> str:
    identities = game.get("participantIdentities") or []
    if not identities or not isinstance(identities[0], dict):
        return ""
    player = identities[0].get("player") or {}
    return str(player.get("accountId", "") or "")


class LeagueOfLegendsAdapter(ServiceAdapter):
    """Match history from the legacy match-history endpoint.

    Cursors are ``gameCreation`` in epoch milliseconds.
    """

    service_id = ServiceId.LEAGUE_OF_LEGENDS

    def fetch(self, cursor: str | None, *, deadline: Deadline | None = None) -> FetchResult:
        payload = self._get_json(self.config.url, deadline=deadline)
        try:
            games = payload["games"]["games"]
        except (KeyError, TypeError) as exc:
            raise TransientFetchError(self.service_id.value, "match history response has no games list") from exc
        if not isinstance(games, list):
            raise TransientFetchError(self.service_id.value, "match history games is not a list")
        account_id = str(payload.get("accountId", "") or "")
        default_platform = str(payload.get("platformId", "") or "")

        since_key = self.cursor_key(cursor) if cursor else self._since().timestamp() * 1000
        candidates: list[Candidate] = []
        for game in games:
            if not isinstance(game, dict):
                continue
            try:
                created_ms = int(game["gameCreation"])
            except (KeyError, TypeError, ValueError):
                logger.warning("league_of_legends: dropping game without gameCreation: %s", game.get("gameId"))
                continue
            game_id = str(game.get("gameId", "") or "")
            platform = str(game.get("platformId") or default_platform)
            account = account_id or _participant_account(game)
            try:
                duration = max(0, int(game.get("gameDuration", 0)))
            except (TypeError, ValueError):
                duration = 0
            ends_at = datetime.fromtimestamp(created_ms // 1000, tz=timezone.utc) + timedelta(seconds=duration)
            record = RawRecord(
                service_id=self.service_id,
                external_id=f"{platform}|{game_id}|{account}" if game_id else "",
                payload={
                    "game_id": game_id,
                    "platform_id": platform,
                    "account_id": account,
                    "game_creation": created_ms,
                    "game_duration": game.get("gameDuration"),
                    "game_mode": game.get("gameMode"),
                    "game_type": game.get("gameType"),
                },
            )
            candidates.append(Candidate(key=float(created_ms), cursor=str(created_ms), ends_at=ends_at, record=record))
        return self._collect(candidates, cursor, since_key)
