import logging
from datetime import datetime
from typing import Any

from contest_engine.config import settings
from contest_engine.errors import ExternalServiceError
from contest_engine.models.game import GameSnapshot, GameStatus
from contest_engine.providers.base import SportsDataProvider
from contest_engine.providers.http_client import ResilientClient, decode_json
from contest_engine.utils import ensure_utc

logger = logging.getLogger("contest_engine.sports_data")

# Provider status vocabulary -> cache status
_STATUS_MAP = {
    "scheduled": GameStatus.scheduled,
    "pre": GameStatus.scheduled,
    "pregame": GameStatus.scheduled,
    "postponed": GameStatus.scheduled,
    "live": GameStatus.live,
    "in_progress": GameStatus.live,
    "in": GameStatus.live,
    "halftime": GameStatus.live,
    "final": GameStatus.final,
    "post": GameStatus.final,
    "completed": GameStatus.final,
    "final_ot": GameStatus.final,
}


def normalize_game_payload(data: dict[str, Any]) -> GameSnapshot:
    """Map a provider game payload onto a GameSnapshot.

    Unknown status strings and non-numeric scores raise ExternalServiceError
    so the poller counts them as fetch failures.
    """
    raw_status = str(data.get("status") or "").strip().lower()
    status = _STATUS_MAP.get(raw_status)
    if status is None:
        raise ExternalServiceError(f"unknown game status {raw_status!r}", provider="sports_data")

    score = data.get("final_score") or data.get("score")
    final_score = None
    if isinstance(score, dict) and score.get("home") is not None and score.get("away") is not None:
        try:
            final_score = {"home": int(score["home"]), "away": int(score["away"])}
        except (TypeError, ValueError):
            raise ExternalServiceError(f"non-numeric score {score!r}", provider="sports_data")

    raw_stats = data.get("stats_snapshot") or data.get("stats") or {}
    if not isinstance(raw_stats, dict):
        raise ExternalServiceError("stats payload is not an object", provider="sports_data")
    stats: dict[str, dict[str, Any]] = {}
    for subject, values in raw_stats.items():
        if isinstance(values, dict):
            stats[str(subject)] = {str(k): v for k, v in values.items()}

    return GameSnapshot(status=status, final_score=final_score, stats_snapshot=stats)


def _normalize_schedule_entry(game: dict[str, Any]) -> dict[str, Any]:
    entry = dict(game)
    entry["game_id"] = str(game["game_id"])
    start = game.get("start_time")
    if isinstance(start, str):
        try:
            entry["start_time"] = ensure_utc(datetime.fromisoformat(start.replace("Z", "+00:00")))
        except ValueError:
            logger.warning("Unparseable start_time %r for game %s", start, game["game_id"])
            entry["start_time"] = None
    return entry


class HttpSportsDataProvider(SportsDataProvider):
    """REST client for the sports data collaborator."""

    def __init__(self, base_url: str | None = None, **client_kwargs):
        headers = {"X-Api-Key": settings.SPORTS_DATA_API_KEY} if settings.SPORTS_DATA_API_KEY else None
        self._client = ResilientClient(
            "sports_data",
            base_url=base_url or settings.SPORTS_DATA_BASE_URL,
            headers=headers,
            **client_kwargs,
        )

    async def get_game_status(self, game_id: str) -> GameSnapshot:
        resp = await self._client.get(f"/games/{game_id}")
        if resp.status_code != 200:
            raise ExternalServiceError(
                f"sports data returned HTTP {resp.status_code} for game {game_id}",
                provider="sports_data",
            )
        return normalize_game_payload(decode_json(resp, "sports_data"))

    async def get_scheduled_games(self, week: int) -> list[dict[str, Any]]:
        resp = await self._client.get("/schedule", params={"week": week})
        if resp.status_code != 200:
            raise ExternalServiceError(
                f"sports data returned HTTP {resp.status_code} for week {week}",
                provider="sports_data",
            )
        games = [
            _normalize_schedule_entry(g)
            for g in decode_json(resp, "sports_data").get("games") or []
            if isinstance(g, dict) and g.get("game_id")
        ]
        logger.info("Sports data: %d scheduled games for week %d", len(games), week)
        return games

    @property
    def circuit_open(self) -> bool:
        return self._client.circuit.is_open

    async def aclose(self) -> None:
        await self._client.aclose()


sports_data_provider: SportsDataProvider = HttpSportsDataProvider()
