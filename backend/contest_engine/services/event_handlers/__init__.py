"""
backend/contest_engine/services/event_handlers/__init__.py

Purpose:
    Central registration entrypoint for event bus subscribers.

Dependencies:
    - contest_engine.services.event_bus
    - contest_engine.services.event_handlers.game_handlers
    - contest_engine.services.event_handlers.contest_handlers
"""

from __future__ import annotations

from contest_engine.config import settings
from contest_engine.services.event_bus import InMemoryEventBus
from contest_engine.services.event_handlers.contest_handlers import (
    handle_contest_activated,
    handle_contest_cancelled,
    handle_contest_completed,
    handle_contest_scored,
)
from contest_engine.services.event_handlers.game_handlers import (
    handle_game_finalized,
    handle_game_review_required,
)


def register_event_handlers(bus: InMemoryEventBus) -> None:
    bus.subscribe(
        "game.finalized",
        handle_game_finalized,
        handler_name="evaluation",
        concurrency=settings.EVALUATION_WORKERS,
    )
    bus.subscribe("game.review_required", handle_game_review_required, handler_name="review_log", concurrency=1)
    bus.subscribe("contest.scored", handle_contest_scored, handler_name="leaderboard", concurrency=2)
    bus.subscribe("contest.activated", handle_contest_activated, handler_name="leaderboard_init", concurrency=1)
    bus.subscribe("contest.completed", handle_contest_completed, handler_name="payouts", concurrency=1)
    bus.subscribe("contest.cancelled", handle_contest_cancelled, handler_name="refunds", concurrency=1)
