"""
backend/contest_engine/services/contest_service.py

Purpose:
    Contest manager. Owns the contest lifecycle (pending -> active ->
    completed, pending/active -> cancelled), participant registration and
    the prediction definitions attached to a contest.

    Transitions are compare-and-set on the stored status, so a contest is
    activated, completed or cancelled exactly once even when the scheduler
    and an operator race.

Dependencies:
    - contest_engine.services.contest_repository
    - contest_engine.services.prediction_repository
    - contest_engine.services.game_result_repository
    - contest_engine.services.evaluation_service
    - contest_engine.providers.sports_data
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Optional

import pydantic

from contest_engine.config import settings
from contest_engine.errors import (
    AlreadyRegistered,
    ContestClosed,
    ContestFull,
    StateError,
    ValidationError,
)
from contest_engine.models.contest import (
    CONTEST_TRANSITIONS,
    ContestCreate,
    ContestInDB,
    ContestStatus,
    PayoutStatus,
)
from contest_engine.models.participant import ParticipantInDB
from contest_engine.models.prediction import (
    PredictionDefinitionCreate,
    PredictionDefinitionInDB,
    PredictionType,
)
from contest_engine.providers.sports_data import sports_data_provider
from contest_engine.services import evaluation_service
from contest_engine.services.contest_repository import ContestRepository, ParticipantRepository
from contest_engine.services.event_bus import event_bus
from contest_engine.services.event_models import (
    ContestActivatedEvent,
    ContestCancelledEvent,
    ContestCompletedEvent,
)
from contest_engine.services.game_result_repository import GameResultRepository
from contest_engine.services.prediction_repository import PredictionRepository
from contest_engine.utils import ensure_utc, utcnow
from contest_engine.workers._state import all_worker_states

logger = logging.getLogger("contest_engine.contests")

contests = ContestRepository()
participants = ParticipantRepository()
predictions = PredictionRepository()
games = GameResultRepository()


def _sources(target: ContestStatus) -> set[ContestStatus]:
    return {status for status, targets in CONTEST_TRANSITIONS.items() if target in targets}


_OPEN_STATUSES = _sources(ContestStatus.cancelled)


def _parse(model, data):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ValidationError(str(exc))


def serialize_contest(doc: dict[str, Any]) -> dict[str, Any]:
    out = {k: v for k, v in doc.items() if k != "_id"}
    out["id"] = str(doc["_id"])
    return out


def serialize_definition(doc: dict[str, Any]) -> dict[str, Any]:
    out = {k: v for k, v in doc.items() if k not in ("_id", "oracle_choice", "oracle_confidence")}
    out["id"] = str(doc["_id"])
    return out


# ---------- Creation & registration ----------

async def create_contest(data: ContestCreate | dict) -> dict[str, Any]:
    """Validate and store a new contest in pending state."""
    spec = _parse(ContestCreate, data)
    now = utcnow()
    doc = ContestInDB(**spec.model_dump(), created_at=now, updated_at=now).model_dump()
    doc["start_date"] = ensure_utc(spec.start_date)
    doc["end_date"] = ensure_utc(spec.end_date)
    doc = await contests.insert(doc)
    logger.info("Created contest %s (%s, %s)", doc["_id"], spec.name, spec.type.value)
    return doc


async def register_participant(
    contest_id: str,
    user_id: str,
    username: str,
    payment_ref: Optional[str] = None,
) -> dict[str, Any]:
    contest = await contests.require(contest_id)
    if ContestStatus(contest["status"]) not in _OPEN_STATUSES:
        raise ContestClosed(f"contest is {contest['status']}", contest_id=contest_id)
    if await participants.get(contest_id, user_id):
        raise AlreadyRegistered("user already registered for this contest", contest_id=contest_id)

    if not await contests.reserve_seat(contest_id, int(contest["max_participants"])):
        current = await contests.status_of(contest_id)
        if current not in _OPEN_STATUSES:
            raise ContestClosed(f"contest is {current.value if current else 'missing'}", contest_id=contest_id)
        raise ContestFull("contest is full", contest_id=contest_id)

    doc = ParticipantInDB(
        contest_id=contest_id,
        user_id=user_id,
        username=username,
        entry_time=utcnow(),
        payment_ref=payment_ref,
    ).model_dump()
    try:
        doc = await participants.insert(doc)
    except AlreadyRegistered:
        await contests.release_seat(contest_id)
        raise
    logger.info("Registered user %s in contest %s", user_id, contest_id)
    return doc


# ---------- Prediction definitions ----------

async def add_prediction_definition(
    contest_id: str, data: PredictionDefinitionCreate | dict,
) -> dict[str, Any]:
    contest = await contests.require(contest_id)
    if ContestStatus(contest["status"]) not in _OPEN_STATUSES:
        raise ContestClosed(f"contest is {contest['status']}", contest_id=contest_id)
    spec = _parse(PredictionDefinitionCreate, data)
    deadline = ensure_utc(spec.deadline)
    if deadline > ensure_utc(contest["end_date"]):
        raise ValidationError("prediction deadline is after the contest end date")

    doc = PredictionDefinitionInDB(
        **spec.model_dump(), contest_id=contest_id, created_at=utcnow(),
    ).model_dump()
    doc["deadline"] = deadline
    doc = await predictions.insert_definition(doc)
    await games.track(spec.game_id)
    return doc


async def generate_weekly_predictions(contest_id: str) -> list[dict[str, Any]]:
    """Create a spread and a total question for every scheduled game of the contest week.

    Games that already have a question of that type are skipped, so the call
    can be repeated when the schedule feed fills in lines late.
    """
    contest = await contests.require(contest_id)
    week = contest.get("week")
    if week is None:
        raise ValidationError("contest has no week to generate predictions for")

    scheduled = await sports_data_provider.get_scheduled_games(int(week))
    existing = {
        (d["game_id"], d["type"]) for d in await predictions.definitions_for_contest(contest_id)
    }
    now = utcnow()
    end_date = ensure_utc(contest["end_date"])
    created: list[dict[str, Any]] = []

    for game in scheduled:
        game_id = str(game.get("game_id") or "")
        start_time = game.get("start_time")
        if not game_id or start_time is None:
            continue
        start_time = ensure_utc(start_time)
        if start_time <= now or start_time > end_date:
            continue
        home = game.get("home_team", "Home")
        away = game.get("away_team", "Away")

        candidates = []
        if game.get("spread_line") is not None:
            candidates.append({
                "type": PredictionType.spread,
                "question": f"{away} @ {home}: who covers {home} {float(game['spread_line']):+g}?",
                "options": [f"{home} covers", f"{away} covers"],
                "line": float(game["spread_line"]),
                "difficulty": "medium",
            })
        if game.get("total_line") is not None:
            candidates.append({
                "type": PredictionType.total,
                "question": f"{away} @ {home}: total points over/under {float(game['total_line']):g}?",
                "options": ["Over", "Under"],
                "line": float(game["total_line"]),
                "difficulty": "medium",
            })
        for candidate in candidates:
            if (game_id, candidate["type"].value) in existing:
                continue
            doc = await add_prediction_definition(
                contest_id, {**candidate, "game_id": game_id, "deadline": start_time},
            )
            created.append(doc)

    logger.info("Generated %d predictions for contest %s week %s", len(created), contest_id, week)
    return created


# ---------- Lifecycle ----------

def _publish(event) -> None:
    try:
        event_bus.publish(event)
    except Exception:
        logger.warning("Failed to publish %s", event.event_type, exc_info=True)


async def activate_contest(contest_id: str) -> bool:
    """pending -> active once the start date is reached. False if not due yet."""
    contest = await contests.require(contest_id)
    if contest["status"] != ContestStatus.pending.value:
        raise StateError(f"cannot activate a {contest['status']} contest", contest_id=contest_id)
    now = utcnow()
    if ensure_utc(contest["start_date"]) > now:
        return False

    updated = await contests.transition(
        contest_id, _sources(ContestStatus.active), ContestStatus.active, {"activated_at": now},
    )
    if updated is None:
        return False
    for game_id in await predictions.game_ids_for_contest(contest_id):
        await games.track(game_id)
    logger.info("Contest %s activated", contest_id)
    if settings.EVENT_BUS_ENABLED:
        _publish(ContestActivatedEvent(source="contest_manager", contest_id=contest_id))
    return True


async def completion_blockers(contest: dict[str, Any]) -> list[str]:
    """Reasons the contest cannot complete yet (empty when it can)."""
    contest_id = str(contest["_id"])
    now = utcnow()
    blockers: list[str] = []
    if ensure_utc(contest["end_date"]) > now:
        blockers.append("end date not reached")
    unresolved = await predictions.count_for_contest(contest_id, resolved=False)
    if unresolved:
        blockers.append(f"{unresolved} submissions unresolved")

    submitted_games = sorted({s["game_id"] for s in await _submission_games(contest_id)})
    window = timedelta(hours=settings.DISPUTE_WINDOW_HOURS)
    for game in await games.for_games(submitted_games):
        if game.get("needs_review"):
            blockers.append(f"game {game['game_id']} under review")
        elif game.get("confirmed_final_at") is None:
            blockers.append(f"game {game['game_id']} not confirmed")
        elif ensure_utc(game["confirmed_final_at"]) + window > now:
            blockers.append(f"game {game['game_id']} in dispute window")
    return blockers


async def _submission_games(contest_id: str) -> list[dict[str, Any]]:
    definitions = await predictions.definitions_for_contest(contest_id)
    submitted = {s["prediction_id"] for s in await predictions.for_contest(contest_id)}
    return [d for d in definitions if str(d["_id"]) in submitted]


async def complete_contest(contest_id: str) -> bool:
    """active -> completed once every completion condition holds. False otherwise."""
    contest = await contests.require(contest_id)
    if contest["status"] != ContestStatus.active.value:
        return False
    blockers = await completion_blockers(contest)
    if blockers:
        logger.debug("Contest %s not completable: %s", contest_id, "; ".join(blockers))
        return False

    updated = await contests.transition(
        contest_id, _sources(ContestStatus.completed), ContestStatus.completed, {"completed_at": utcnow()},
    )
    if updated is None:
        return False
    logger.info("Contest %s completed", contest_id)
    if settings.EVENT_BUS_ENABLED:
        _publish(ContestCompletedEvent(source="contest_manager", contest_id=contest_id))
    else:
        from contest_engine.services import payout_service
        await payout_service.run_payouts(contest_id)
    return True


async def cancel_contest(contest_id: str, reason: str) -> dict[str, Any]:
    """Irreversibly cancel a pending or active contest and void open submissions."""
    contest = await contests.require(contest_id)
    if ContestStatus(contest["status"]) not in _OPEN_STATUSES:
        raise StateError(f"cannot cancel a {contest['status']} contest", contest_id=contest_id)

    updated = await contests.transition(
        contest_id,
        _OPEN_STATUSES,
        ContestStatus.cancelled,
        {"cancel_reason": reason, "cancelled_at": utcnow()},
    )
    if updated is None:
        current = await contests.status_of(contest_id)
        raise StateError(f"cannot cancel a {current.value if current else 'missing'} contest", contest_id=contest_id)

    voided = await evaluation_service.void_open_submissions(contest_id)
    logger.warning("Contest %s cancelled (%s); voided %d submissions", contest_id, reason, voided)
    if settings.EVENT_BUS_ENABLED:
        _publish(ContestCancelledEvent(source="contest_manager", contest_id=contest_id, reason=reason))
    else:
        from contest_engine.services import payout_service
        await payout_service.issue_refunds(contest_id)
    return updated


# ---------- Read models ----------

async def get_contest_status(contest_id: str) -> dict[str, Any]:
    contest = await contests.require(contest_id)
    definitions = await predictions.definitions_for_contest(contest_id)
    return {
        "id": contest_id,
        "name": contest["name"],
        "status": contest["status"],
        "participant_count": int(contest.get("participant_count", 0)),
        "max_participants": int(contest["max_participants"]),
        "predictions_total": len(definitions),
        "submissions_total": await predictions.count_for_contest(contest_id),
        "submissions_resolved": await predictions.count_for_contest(contest_id, resolved=True),
        "payout_status": contest.get("payout_status", PayoutStatus.not_started.value),
        "start_date": contest["start_date"],
        "end_date": contest["end_date"],
    }


async def get_service_status() -> dict[str, Any]:
    bus = event_bus.stats()
    return {
        "contests": {
            status.value: await contests.count_by_status(status) for status in ContestStatus
        },
        "tracked_games": await games.count(),
        "open_reviews": len(await games.open_reviews()),
        "workers": {
            state["_id"]: {"synced_at": state.get("synced_at"), "metrics": state.get("metrics") or {}}
            for state in await all_worker_states()
        },
        "event_bus": {
            "enabled": bus["enabled"],
            "running": bus["running"],
            "ingress_queue_depth": bus["ingress_queue_depth"],
            "dropped_total": bus["dropped_total"],
            "failed_total": bus["failed_total"],
        },
    }
