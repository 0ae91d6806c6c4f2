"""
backend/contest_engine/services/evaluation_service.py

Purpose:
    Evaluation engine. Resolves every unresolved submission that references a
    confirmed-final game, scores it with the contest's scoring config and
    commits the result onto the participant aggregate exactly once.

    Contests sharing a game are evaluated concurrently. Writes to a single
    participant are serialized by an in-process lock and, across processes,
    by the participant version guard in ParticipantRepository.apply_resolution.
    The participant's ``resolutions`` map is the commit log: a crash between
    the aggregate commit and the submission flag is repaired on replay.
    Cancellation closes open submissions under the same participant lock and
    finishes any whose points are already in the commit log.

Dependencies:
    - contest_engine.services.outcome_rules
    - contest_engine.services.scoring
    - contest_engine.services.contest_repository
    - contest_engine.services.prediction_repository
    - contest_engine.services.game_result_repository
    - contest_engine.providers.oracle
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any

from contest_engine.config import settings
from contest_engine.errors import (
    ConcurrencyConflict,
    ContestNotActive,
    ExternalServiceError,
    UnresolvedDataError,
)
from contest_engine.models.contest import ContestStatus, ScoringConfig
from contest_engine.models.game import GameStatus
from contest_engine.models.prediction import SubmissionStatus
from contest_engine.providers.oracle import oracle_provider
from contest_engine.services.contest_repository import ContestRepository, ParticipantRepository
from contest_engine.services.event_bus import event_bus
from contest_engine.services.event_models import ContestScoredEvent, GameReviewRequiredEvent
from contest_engine.services.game_result_repository import GameResultRepository
from contest_engine.services.outcome_rules import derive_outcome
from contest_engine.services.prediction_repository import PredictionRepository
from contest_engine.services.scoring import score_submission
from contest_engine.utils import KeyedLocks

logger = logging.getLogger("contest_engine.evaluation")

contests = ContestRepository()
participants = ParticipantRepository()
predictions = PredictionRepository()
games = GameResultRepository()

_participant_locks = KeyedLocks()


def _participant_lock(contest_id: str, user_id: str):
    return _participant_locks.hold((contest_id, user_id))


def _publish(event) -> None:
    if not settings.EVENT_BUS_ENABLED:
        return
    try:
        event_bus.publish(event)
    except Exception:
        logger.warning("Failed to publish %s", event.event_type, exc_info=True)


def _is_confirmed_final(game: dict[str, Any] | None) -> bool:
    return bool(
        game
        and game.get("status") == GameStatus.final.value
        and game.get("confirmed_final_at") is not None
        and not game.get("needs_review")
    )


async def evaluate_game(
    game_id: str,
    *,
    contest_ids: set[str] | None = None,
    publish: bool = True,
) -> dict[str, int]:
    """Resolve all pending submissions on one confirmed-final game.

    Returns {contest_id: submissions resolved in this run}. Re-running on an
    already evaluated game is a no-op.
    """
    game = await games.get(game_id)
    if not _is_confirmed_final(game):
        logger.debug("Skipping evaluation of game %s: not confirmed final", game_id)
        return {}

    definitions = await predictions.definitions_for_game(game_id)
    by_contest: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for definition in definitions:
        if contest_ids is None or definition["contest_id"] in contest_ids:
            by_contest[definition["contest_id"]].append(definition)
    if not by_contest:
        return {}

    # Validate every definition against the result before touching any score.
    try:
        for definition in definitions:
            derive_outcome(definition, game)
    except UnresolvedDataError as exc:
        await _route_to_review(game_id, exc.message)
        return {}

    contest_order = sorted(by_contest)
    results = await asyncio.gather(
        *(_evaluate_contest(cid, by_contest[cid], game) for cid in contest_order),
        return_exceptions=True,
    )

    summary: dict[str, int] = {}
    for contest_id, result in zip(contest_order, results):
        if isinstance(result, UnresolvedDataError):
            await _route_to_review(game_id, result.message)
            continue
        if isinstance(result, BaseException):
            logger.error(
                "Evaluation failed game=%s contest=%s: %s", game_id, contest_id, result,
                exc_info=(type(result), result, result.__traceback__),
            )
            continue
        summary[contest_id] = result
        if publish and result:
            _publish(ContestScoredEvent(source="evaluation", contest_id=contest_id, resolved=result))

    logger.info("Evaluated game %s: %s", game_id, summary)
    return summary


async def _route_to_review(game_id: str, reason: str) -> None:
    flagged = await games.flag_for_review(game_id, reason)
    logger.warning("Game %s routed to operator review: %s", game_id, reason)
    if flagged:
        _publish(GameReviewRequiredEvent(source="evaluation", game_id=game_id, reason=reason))


async def _evaluate_contest(
    contest_id: str, definitions: list[dict[str, Any]], game: dict[str, Any],
) -> int:
    contest = await contests.get(contest_id)
    if not contest or contest.get("status") != ContestStatus.active.value:
        logger.info(
            "Contest %s is %s; skipping game %s",
            contest_id, (contest or {}).get("status", "missing"), game["game_id"],
        )
        return 0
    config = ScoringConfig(**(contest.get("scoring") or {}))

    resolved = 0
    for definition in definitions:
        pending = await predictions.unresolved_for_prediction(str(definition["_id"]))
        if not pending:
            continue
        oracle_choice = await _oracle_choice(definition)
        for submission in pending:
            # Cancellation halts scoring mid-run.
            if await contests.status_of(contest_id) != ContestStatus.active:
                logger.warning("Contest %s left active state; halting evaluation", contest_id)
                return resolved
            if await _resolve_submission(config, definition, submission, game, oracle_choice):
                resolved += 1
    return resolved


async def _resolve_submission(
    config: ScoringConfig,
    definition: dict[str, Any],
    submission: dict[str, Any],
    game: dict[str, Any],
    oracle_choice: int | None,
) -> bool:
    """Resolve one submission. True if it counts as resolved in this run."""
    contest_id = submission["contest_id"]
    user_id = submission["user_id"]
    submission_id = str(submission["_id"])

    correct_choice = derive_outcome(definition, game, submission.get("line_at_submission"))
    if correct_choice is None:
        voided = await predictions.mark_resolved(submission["_id"], SubmissionStatus.void, 0)
        if voided:
            logger.info("Submission %s voided (push on game %s)", submission_id, game["game_id"])
        return False

    async with _participant_lock(contest_id, user_id):
        if await contests.status_of(contest_id) != ContestStatus.active:
            return False
        fresh = await predictions.get_submission_by_id(submission["_id"])
        if fresh is None or fresh.get("resolved"):
            return False
        for attempt in range(2):
            participant = await participants.get(contest_id, user_id)
            if participant is None:
                logger.error("Submission %s has no participant %s/%s", submission_id, contest_id, user_id)
                return False

            status = (
                SubmissionStatus.correct
                if submission["choice"] == correct_choice
                else SubmissionStatus.incorrect
            )
            log = participant.get("resolutions") or {}
            if submission_id in log:
                # Aggregate already committed; finish the interrupted resolution.
                return await _finish(submission["_id"], status, int(log[submission_id]))

            result = score_submission(
                config,
                prediction_type=definition["type"],
                difficulty=definition.get("difficulty", "medium"),
                category=definition.get("category"),
                confidence=int(submission["confidence"]),
                choice=int(submission["choice"]),
                correct_choice=correct_choice,
                current_streak=int(participant.get("current_streak", 0)),
                oracle_choice=oracle_choice,
            )
            inc = {"resolved_count": 1}
            if result.correct:
                inc["correct_count"] = 1
            if result.beat_oracle:
                inc["oracle_beats"] = 1
            aggregates = {
                "$inc": inc,
                "$set": {
                    "current_streak": result.new_streak,
                    "longest_streak": max(int(participant.get("longest_streak", 0)), result.new_streak),
                },
            }
            try:
                updated = await participants.apply_resolution(participant, submission_id, result.points, aggregates)
            except ConcurrencyConflict:
                if attempt == 0:
                    logger.info("Participant %s/%s changed concurrently; retrying", contest_id, user_id)
                    continue
                raise
            points = result.points
            if updated is None:
                current = await participants.get(contest_id, user_id)
                points = int(((current or {}).get("resolutions") or {}).get(submission_id, result.points))
            return await _finish(submission["_id"], status, points)
    return False


async def _finish(submission_id, status: SubmissionStatus, points: int) -> bool:
    if await predictions.mark_resolved(submission_id, status, points):
        return True
    # Voided by a cancellation in another process after the commit.
    return await predictions.restore_committed(submission_id, status, points)


async def void_open_submissions(contest_id: str) -> int:
    """Close every open submission of a cancelled contest. Returns the number voided.

    Submissions whose points already sit in the participant's commit log are
    finished with those points instead, so total_score keeps matching the
    sum of points_earned.
    """
    voided = 0
    for submission in await predictions.unresolved_for_contest(contest_id):
        submission_id = str(submission["_id"])
        async with _participant_lock(contest_id, submission["user_id"]):
            participant = await participants.get(contest_id, submission["user_id"])
            log = (participant or {}).get("resolutions") or {}
            if submission_id in log:
                points = int(log[submission_id])
                status = await _committed_status(submission, points)
                if await predictions.mark_resolved(submission["_id"], status, points):
                    logger.info("Submission %s finished from commit log on cancellation", submission_id)
            elif await predictions.mark_resolved(submission["_id"], SubmissionStatus.void, 0):
                voided += 1
    return voided


async def _committed_status(submission: dict[str, Any], points: int) -> SubmissionStatus:
    definition = await predictions.get_definition(submission["prediction_id"])
    game = await games.get(submission["game_id"])
    if definition and _is_confirmed_final(game):
        try:
            correct_choice = derive_outcome(definition, game, submission.get("line_at_submission"))
        except UnresolvedDataError:
            correct_choice = None
        if correct_choice is not None:
            return SubmissionStatus.correct if submission["choice"] == correct_choice else SubmissionStatus.incorrect
    return SubmissionStatus.correct if points > 0 else SubmissionStatus.incorrect


async def _oracle_choice(definition: dict[str, Any]) -> int | None:
    """Cached Oracle baseline for a definition, fetched once on first evaluation."""
    if definition.get("oracle_choice") is not None:
        return int(definition["oracle_choice"])
    prediction_id = str(definition["_id"])
    try:
        baseline = await asyncio.wait_for(
            oracle_provider.get_baseline_choice(prediction_id),
            timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
        )
    except (ExternalServiceError, asyncio.TimeoutError) as exc:
        logger.warning("Oracle baseline unavailable for %s; no beat bonus: %s", prediction_id, exc)
        return None
    if not baseline or baseline.get("choice") is None:
        return None
    choice = int(baseline["choice"])
    if not 0 <= choice < len(definition.get("options") or []):
        logger.warning("Oracle baseline for %s has invalid choice %s", prediction_id, choice)
        return None
    await predictions.set_oracle_baseline(
        definition["_id"], choice, float(baseline.get("confidence") or 0.0),
    )
    definition["oracle_choice"] = choice
    return choice


async def evaluate_pending_games(contest_id: str) -> dict[str, Any]:
    """Evaluate every confirmed-final game the contest still has open submissions on."""
    game_ids = await predictions.game_ids_for_contest(contest_id)
    confirmed = await games.confirmed_final_games(game_ids)
    resolved = 0
    evaluated = 0
    for game in sorted(confirmed, key=lambda g: g["game_id"]):
        summary = await evaluate_game(game["game_id"], contest_ids={contest_id}, publish=False)
        evaluated += 1
        resolved += summary.get(contest_id, 0)
    return {"games_evaluated": evaluated, "resolved": resolved}


async def force_evaluate(contest_id: str) -> dict[str, Any]:
    """Admin/test entry point: evaluate, recompute leaderboard, try completion."""
    from contest_engine.services import contest_service, leaderboard_service

    contest = await contests.require(contest_id)
    if contest["status"] != ContestStatus.active.value:
        raise ContestNotActive(f"contest is {contest['status']}", contest_id=contest_id)

    outcome = await evaluate_pending_games(contest_id)
    snapshot = await leaderboard_service.recompute(contest_id)
    completed = await contest_service.complete_contest(contest_id)
    logger.info("Force-evaluated contest %s: %s completed=%s", contest_id, outcome, completed)
    return {
        "contest_id": contest_id,
        **outcome,
        "leaderboard_version": snapshot["version"],
        "completed": completed,
    }
