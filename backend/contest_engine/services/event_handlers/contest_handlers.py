"""
backend/contest_engine/services/event_handlers/contest_handlers.py

Purpose:
    Subscriber logic for contest-domain events: leaderboard refresh after
    scoring, payouts on completion and refunds on cancellation.

Dependencies:
    - contest_engine.services.leaderboard_service
    - contest_engine.services.payout_service
"""

from __future__ import annotations

import logging

from contest_engine.services import leaderboard_service, payout_service
from contest_engine.services.event_models import BaseEvent

logger = logging.getLogger("contest_engine.event_handlers.contest")


def _contest_id(event: BaseEvent) -> str:
    return str(getattr(event, "contest_id", "") or "")


async def handle_contest_scored(event: BaseEvent) -> None:
    contest_id = _contest_id(event)
    if contest_id:
        await leaderboard_service.request_recompute(contest_id)


async def handle_contest_activated(event: BaseEvent) -> None:
    contest_id = _contest_id(event)
    if contest_id:
        await leaderboard_service.recompute(contest_id)


async def handle_contest_completed(event: BaseEvent) -> None:
    contest_id = _contest_id(event)
    if not contest_id:
        return
    result = await payout_service.run_payouts(contest_id)
    logger.info("Processed contest.completed contest_id=%s payouts=%s", contest_id, result)


async def handle_contest_cancelled(event: BaseEvent) -> None:
    contest_id = _contest_id(event)
    if not contest_id:
        return
    result = await payout_service.issue_refunds(contest_id)
    logger.info("Processed contest.cancelled contest_id=%s refunds=%s", contest_id, result)
