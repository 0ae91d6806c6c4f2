"""
backend/contest_engine/services/event_models.py

Purpose:
    Domain event contracts for in-process reactive workflows. Events carry IDs
    only; subscribers re-read state from the repositories, so replaying an
    event is safe.

Dependencies:
    - pydantic
    - contest_engine.utils
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from contest_engine.utils import ensure_utc, utcnow

EventType = Literal[
    "game.finalized",
    "game.review_required",
    "contest.activated",
    "contest.scored",
    "contest.completed",
    "contest.cancelled",
]


def make_event_id() -> str:
    return str(uuid.uuid4())


def make_correlation_id() -> str:
    return str(uuid.uuid4())


class BaseEvent(BaseModel):
    event_id: str = Field(default_factory=make_event_id)
    event_type: EventType
    occurred_at: datetime = Field(default_factory=utcnow)
    correlation_id: str = Field(default_factory=make_correlation_id)
    source: str


class GameFinalizedEvent(BaseEvent):
    event_type: Literal["game.finalized"] = "game.finalized"
    game_id: str
    final_score: dict[str, int | None] = Field(default_factory=dict)


class GameReviewRequiredEvent(BaseEvent):
    event_type: Literal["game.review_required"] = "game.review_required"
    game_id: str
    reason: str


class ContestActivatedEvent(BaseEvent):
    event_type: Literal["contest.activated"] = "contest.activated"
    contest_id: str


class ContestScoredEvent(BaseEvent):
    """A batch of resolutions touched this contest; leaderboard is stale."""
    event_type: Literal["contest.scored"] = "contest.scored"
    contest_id: str
    resolved: int = 0


class ContestCompletedEvent(BaseEvent):
    event_type: Literal["contest.completed"] = "contest.completed"
    contest_id: str


class ContestCancelledEvent(BaseEvent):
    event_type: Literal["contest.cancelled"] = "contest.cancelled"
    contest_id: str
    reason: str


def normalize_event_time(event: BaseEvent) -> BaseEvent:
    event.occurred_at = ensure_utc(event.occurred_at)
    return event
