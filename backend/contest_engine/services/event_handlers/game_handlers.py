"""
backend/contest_engine/services/event_handlers/game_handlers.py

Purpose:
    Subscriber logic for game-domain events. A finalized game triggers the
    evaluation engine; evaluation is idempotent, so duplicate or replayed
    events are harmless.

Dependencies:
    - contest_engine.services.evaluation_service
"""

from __future__ import annotations

import logging

from contest_engine.services.evaluation_service import evaluate_game
from contest_engine.services.event_models import BaseEvent

logger = logging.getLogger("contest_engine.event_handlers.game")


async def handle_game_finalized(event: BaseEvent) -> None:
    game_id = str(getattr(event, "game_id", "") or "")
    if not game_id:
        return
    summary = await evaluate_game(game_id)
    logger.info(
        "Processed game.finalized game_id=%s contests=%d resolved=%d",
        game_id, len(summary), sum(summary.values()),
    )


async def handle_game_review_required(event: BaseEvent) -> None:
    logger.warning(
        "Game %s awaiting operator review: %s",
        getattr(event, "game_id", "?"), getattr(event, "reason", ""),
    )
