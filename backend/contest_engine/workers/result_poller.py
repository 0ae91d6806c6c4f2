"""
backend/contest_engine/workers/result_poller.py

Purpose:
    Game result poller. One scheduler job per polling tier (scheduled, live,
    final) fetches due games from the sports data provider and maintains the
    game_results cache.

    A game is confirmed final only after the same final result is observed
    on two consecutive polls; only then is ``game.finalized`` published.
    Confirmed games stay on the final tier until the dispute window closes;
    a changed result inside the window sends the game to operator review and
    never rescores automatically. Fetch failures back off exponentially and
    keep the last cached status; repeated failures send the game to review.

Dependencies:
    - contest_engine.providers.sports_data
    - contest_engine.services.game_result_repository
    - contest_engine.services.event_bus
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any

from contest_engine.config import settings
from contest_engine.errors import ExternalServiceError, NotFound
from contest_engine.models.game import GameSnapshot, GameStatus, PollTier
from contest_engine.providers.sports_data import sports_data_provider
from contest_engine.services.contest_repository import ContestRepository
from contest_engine.services.event_bus import event_bus
from contest_engine.services.event_models import GameFinalizedEvent, GameReviewRequiredEvent
from contest_engine.services.game_result_repository import GameResultRepository
from contest_engine.services.prediction_repository import PredictionRepository
from contest_engine.utils import ensure_utc, utcnow
from contest_engine.workers._state import set_synced

logger = logging.getLogger("contest_engine.result_poller")

games = GameResultRepository()
contests = ContestRepository()
predictions = PredictionRepository()


def tier_interval(tier: PollTier) -> timedelta:
    seconds = {
        PollTier.scheduled: settings.POLL_SCHEDULED_INTERVAL_SECONDS,
        PollTier.live: settings.POLL_LIVE_INTERVAL_SECONDS,
        PollTier.final: settings.POLL_FINAL_INTERVAL_SECONDS,
    }[tier]
    return timedelta(seconds=seconds)


def backoff_delay(failures: int) -> timedelta:
    """base * 2^(failures-1), capped."""
    seconds = settings.POLL_BACKOFF_BASE_SECONDS * (2 ** max(0, failures - 1))
    return timedelta(seconds=min(seconds, settings.POLL_BACKOFF_MAX_SECONDS))


def _publish(event) -> None:
    if not settings.EVENT_BUS_ENABLED:
        return
    try:
        event_bus.publish(event)
    except Exception:
        logger.warning("Failed to publish %s", event.event_type, exc_info=True)


def _cached_snapshot(game: dict[str, Any]) -> GameSnapshot:
    return GameSnapshot(
        status=game.get("status") or GameStatus.scheduled.value,
        final_score=game.get("final_score"),
        stats_snapshot=game.get("stats_snapshot") or {},
    )


def _result_doc(snapshot: GameSnapshot) -> dict[str, Any]:
    return {"final_score": snapshot.final_score, "stats_snapshot": snapshot.stats_snapshot}


async def sync_tracked_games() -> int:
    """Make sure every game referenced by an active contest is tracked."""
    contest_ids = [str(c["_id"]) for c in await contests.find_active()]
    game_ids = await predictions.game_ids_for_contests(contest_ids)
    for game_id in game_ids:
        await games.track(game_id)
    return len(game_ids)


async def poll_tier(tier: PollTier) -> dict[str, int]:
    """Poll every due game of one tier. A failing game never stalls the batch."""
    if tier == PollTier.scheduled:
        await sync_tracked_games()

    now = utcnow()
    due = await games.due_in_tier(tier, now, settings.POLL_BATCH_SIZE)
    counts: dict[str, int] = {}
    for game in due:
        try:
            outcome = await poll_game(game)
        except Exception as exc:
            logger.error("Polling game %s failed unexpectedly: %s", game.get("game_id"), exc, exc_info=True)
            outcome = "error"
        counts[outcome] = counts.get(outcome, 0) + 1

    if due:
        logger.info("Polled %s tier: %d games %s", tier.value, len(due), counts)
    await set_synced(f"result_poller:{tier.value}", metrics={"polled": len(due), **counts})
    return counts


async def poll_game(game: dict[str, Any]) -> str:
    """Fetch and apply one observation. Returns a short outcome label."""
    game_id = game["game_id"]
    try:
        snapshot = await asyncio.wait_for(
            sports_data_provider.get_game_status(game_id),
            timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
        )
    except (ExternalServiceError, asyncio.TimeoutError) as exc:
        return await _record_failure(game, str(exc) or exc.__class__.__name__)

    now = utcnow()
    if game.get("confirmed_final_at") is not None:
        return await _recheck_confirmed(game, snapshot, now)

    changes: dict[str, Any] = {
        "status": snapshot.status.value,
        "final_score": snapshot.final_score,
        "stats_snapshot": snapshot.stats_snapshot,
        "last_polled_at": now,
        "consecutive_failures": 0,
    }

    if snapshot.status != GameStatus.final:
        tier = PollTier.live if snapshot.status == GameStatus.live else PollTier.scheduled
        changes.update({
            "tier": tier.value,
            "candidate_final": None,
            "next_poll_at": now + tier_interval(tier),
        })
        await games.update(game_id, changes)
        return snapshot.status.value

    candidate = game.get("candidate_final")
    if candidate is not None and _matches(candidate, snapshot):
        changes.update({
            "tier": PollTier.final.value,
            "candidate_final": None,
            "confirmed_final_at": now,
            "next_poll_at": now + tier_interval(PollTier.final),
        })
        await games.update(game_id, changes)
        logger.info("Game %s confirmed final %s", game_id, snapshot.final_score)
        _publish(GameFinalizedEvent(
            source="result_poller",
            game_id=game_id,
            final_score=snapshot.final_score or {},
        ))
        return "confirmed"

    # First sighting of this final result; confirm on the next final-tier poll.
    changes.update({
        "tier": PollTier.final.value,
        "candidate_final": _result_doc(snapshot),
        "next_poll_at": now + tier_interval(PollTier.final),
    })
    await games.update(game_id, changes)
    return "candidate"


def _matches(candidate: dict[str, Any], snapshot: GameSnapshot) -> bool:
    previous = GameSnapshot(
        status=GameStatus.final,
        final_score=candidate.get("final_score"),
        stats_snapshot=candidate.get("stats_snapshot") or {},
    )
    return previous.result_key() == snapshot.result_key()


async def _recheck_confirmed(game: dict[str, Any], snapshot: GameSnapshot, now: datetime) -> str:
    game_id = game["game_id"]
    if snapshot.result_key() != _cached_snapshot(game).result_key():
        reason = (
            f"result changed after confirmation: {game.get('final_score')} -> {snapshot.final_score}"
        )
        await games.update(game_id, {
            "last_polled_at": now,
            "consecutive_failures": 0,
            "candidate_final": _result_doc(snapshot),
        })
        if await games.flag_for_review(game_id, reason):
            logger.warning("Game %s disputed: %s", game_id, reason)
            _publish(GameReviewRequiredEvent(source="result_poller", game_id=game_id, reason=reason))
        return "disputed"

    window_end = ensure_utc(game["confirmed_final_at"]) + timedelta(hours=settings.DISPUTE_WINDOW_HOURS)
    changes: dict[str, Any] = {"last_polled_at": now, "consecutive_failures": 0}
    if now >= window_end:
        changes["tier"] = PollTier.done.value
        changes["next_poll_at"] = None
        await games.update(game_id, changes)
        logger.info("Game %s dispute window closed", game_id)
        return "closed"
    changes["next_poll_at"] = min(now + tier_interval(PollTier.final), window_end)
    await games.update(game_id, changes)
    return "unchanged"


async def _record_failure(game: dict[str, Any], error: str) -> str:
    game_id = game["game_id"]
    failures = int(game.get("consecutive_failures", 0)) + 1
    now = utcnow()
    confirmed_at = game.get("confirmed_final_at")
    if confirmed_at is not None:
        # Cached result stays authoritative; only the dispute re-check is lost.
        window_end = ensure_utc(confirmed_at) + timedelta(hours=settings.DISPUTE_WINDOW_HOURS)
        if now >= window_end:
            await games.update(game_id, {"tier": PollTier.done.value, "next_poll_at": None, "last_error": error[:500]})
            return "closed"
    delay = backoff_delay(failures)
    await games.update(game_id, {
        "consecutive_failures": failures,
        "last_error": error[:500],
        "next_poll_at": now + delay,
    })
    if failures >= settings.POLL_MAX_FAILURES:
        reason = f"{failures} consecutive provider failures: {error}"
        if await games.flag_for_review(game_id, reason):
            logger.error("Game %s flagged for review after %d failed polls", game_id, failures)
            _publish(GameReviewRequiredEvent(source="result_poller", game_id=game_id, reason=reason))
        return "review"
    logger.warning(
        "Poll failed for game %s (%d/%d), retry in %ds: %s",
        game_id, failures, settings.POLL_MAX_FAILURES, int(delay.total_seconds()), error,
    )
    return "failed"


async def resolve_review(game_id: str, operator: str, *, accept_provider_result: bool = False) -> dict[str, Any]:
    """Operator clears a game from the review queue.

    ``accept_provider_result`` replaces the cached result with the disputed
    provider observation. Already awarded points are never recomputed; the
    game is re-published so submissions still open on it get evaluated.
    """
    game = await games.get(game_id)
    if game is None:
        raise NotFound(f"game {game_id} not tracked")

    candidate = game.get("candidate_final")
    if accept_provider_result and candidate is not None:
        await games.update(game_id, {
            "final_score": candidate.get("final_score"),
            "stats_snapshot": candidate.get("stats_snapshot") or {},
        })
    cleared = await games.clear_review(game_id, operator)
    logger.info("Review for game %s cleared by %s (accept=%s)", game_id, operator, accept_provider_result)

    refreshed = await games.get(game_id) or game
    if refreshed.get("confirmed_final_at") is not None:
        _publish(GameFinalizedEvent(
            source="operator_review",
            game_id=game_id,
            final_score=refreshed.get("final_score") or {},
        ))
    return {"game_id": game_id, "cleared": cleared, "accepted_provider_result": bool(accept_provider_result and candidate)}


async def poll_scheduled_games() -> None:
    await poll_tier(PollTier.scheduled)


async def poll_live_games() -> None:
    await poll_tier(PollTier.live)


async def poll_final_games() -> None:
    await poll_tier(PollTier.final)
