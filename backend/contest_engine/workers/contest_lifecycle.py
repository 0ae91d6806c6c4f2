"""Contest lifecycle job: activation, evaluation sweep and completion."""

import logging

from contest_engine.errors import ContestEngineError
from contest_engine.services import contest_service, evaluation_service, leaderboard_service
from contest_engine.services.contest_repository import ContestRepository
from contest_engine.utils import ensure_utc, utcnow
from contest_engine.workers._state import set_synced

logger = logging.getLogger("contest_engine.contest_lifecycle")

contests = ContestRepository()


async def run_contest_lifecycle() -> dict[str, int]:
    """Periodic pass over open contests.

    - pending contests past their start date are activated
    - active contests get an evaluation sweep over confirmed-final games,
      which also recovers game.finalized events dropped by the event bus
    - active contests past their end date are completed once resolvable
    """
    now = utcnow()
    counts = {"activated": 0, "resolved": 0, "completed": 0}

    for contest in await contests.find_due_for_activation(now):
        contest_id = str(contest["_id"])
        try:
            if await contest_service.activate_contest(contest_id):
                counts["activated"] += 1
        except ContestEngineError as exc:
            logger.warning("Activation of contest %s skipped: %s", contest_id, exc.message)

    for contest in await contests.find_active():
        contest_id = str(contest["_id"])
        try:
            swept = await evaluation_service.evaluate_pending_games(contest_id)
            if swept["resolved"]:
                counts["resolved"] += swept["resolved"]
                await leaderboard_service.request_recompute(contest_id)
            if ensure_utc(contest["end_date"]) <= now and await contest_service.complete_contest(contest_id):
                counts["completed"] += 1
        except ContestEngineError as exc:
            logger.warning("Lifecycle pass for contest %s failed: %s", contest_id, exc.message)

    if any(counts.values()):
        logger.info("Contest lifecycle: %s", counts)
    await set_synced("contest_lifecycle", metrics=counts)
    return counts
