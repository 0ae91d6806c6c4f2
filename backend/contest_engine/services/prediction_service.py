"""Prediction store: deadline-gated submission upserts with optimistic versioning."""

import logging
from typing import Optional

from contest_engine.errors import (
    ConcurrencyConflict,
    ContestNotActive,
    DeadlinePassed,
    InvalidChoice,
    NotFound,
    NotRegistered,
    ValidationError,
)
from contest_engine.models.contest import ContestStatus
from contest_engine.models.prediction import PredictionType, SubmissionInDB
from contest_engine.services.contest_repository import ContestRepository, ParticipantRepository
from contest_engine.services.prediction_repository import PredictionRepository
from contest_engine.utils import ensure_utc, utcnow

logger = logging.getLogger("contest_engine.predictions")

contests = ContestRepository()
participants = ParticipantRepository()
predictions = PredictionRepository()

MIN_CONFIDENCE = 1
MAX_CONFIDENCE = 100


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


async def submit_prediction(
    contest_id: str,
    user_id: str,
    prediction_id: str,
    choice: int,
    confidence: int,
    reasoning: Optional[str] = None,
) -> str:
    """Create or overwrite the user's submission for one prediction.

    Returns the submission id. The submission can be revised any number of
    times strictly before the deadline; a concurrent write is retried once.
    """
    contest = await contests.require(contest_id)
    if contest["status"] != ContestStatus.active.value:
        raise ContestNotActive(f"contest is {contest['status']}", contest_id=contest_id)

    if not await participants.get(contest_id, user_id):
        raise NotRegistered("user is not registered for this contest", contest_id=contest_id, user_id=user_id)

    definition = await predictions.get_definition(prediction_id)
    if not definition or definition["contest_id"] != contest_id:
        raise NotFound(f"prediction {prediction_id} not found in contest", contest_id=contest_id)

    now = utcnow()
    if now >= ensure_utc(definition["deadline"]):
        raise DeadlinePassed("prediction deadline has passed", prediction_id=prediction_id)

    if not _is_int(confidence) or not MIN_CONFIDENCE <= confidence <= MAX_CONFIDENCE:
        raise ValidationError(
            f"confidence must be between {MIN_CONFIDENCE} and {MAX_CONFIDENCE}", confidence=confidence,
        )
    options = definition.get("options") or []
    if not _is_int(choice) or not 0 <= choice < len(options):
        raise InvalidChoice(f"choice must be one of 0..{len(options) - 1}", choice=choice)

    fields = {
        "choice": choice,
        "confidence": confidence,
        "reasoning": reasoning,
        "line_at_submission": (
            definition.get("line") if definition["type"] == PredictionType.spread.value else None
        ),
        "submitted_at": now,
    }

    try:
        return await _upsert(contest_id, user_id, definition, fields)
    except ConcurrencyConflict:
        logger.info("Submission conflict user=%s prediction=%s; retrying once", user_id, prediction_id)
        return await _upsert(contest_id, user_id, definition, fields)


async def _upsert(contest_id: str, user_id: str, definition: dict, fields: dict) -> str:
    prediction_id = str(definition["_id"])
    existing = await predictions.get_submission(user_id, prediction_id)
    if existing is None:
        doc = await predictions.insert_submission(SubmissionInDB(
            contest_id=contest_id,
            user_id=user_id,
            prediction_id=prediction_id,
            game_id=definition["game_id"],
            **fields,
        ).model_dump())
        return str(doc["_id"])

    if existing.get("resolved"):
        raise DeadlinePassed("prediction already resolved", prediction_id=prediction_id)
    updated = await predictions.update_submission(existing, fields)
    return str(updated["_id"])
