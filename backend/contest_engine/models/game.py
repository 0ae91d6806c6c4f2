"""Game result cache models: written only by the result poller."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class GameStatus(str, Enum):
    scheduled = "scheduled"
    live = "live"
    final = "final"


class PollTier(str, Enum):
    """Polling cadence bucket; one scheduler job per tier."""
    scheduled = "scheduled"
    live = "live"
    final = "final"
    done = "done"  # confirmed and past the dispute window


class GameSnapshot(BaseModel):
    """Normalized provider payload for one game."""
    status: GameStatus
    final_score: Optional[dict[str, int]] = None  # {"home": int, "away": int}
    stats_snapshot: dict[str, dict[str, Any]] = Field(default_factory=dict)

    def result_key(self) -> tuple:
        """Comparable identity of a final result (used for two-poll confirmation)."""
        score = self.final_score or {}
        return (
            self.status.value,
            score.get("home"),
            score.get("away"),
            tuple(sorted(
                (subject, tuple(sorted(stats.items())))
                for subject, stats in self.stats_snapshot.items()
            )),
        )


class GameResultInDB(BaseModel):
    model_config = {"use_enum_values": True, "validate_default": True}

    game_id: str
    status: GameStatus = GameStatus.scheduled
    final_score: Optional[dict[str, int]] = None
    stats_snapshot: dict[str, dict[str, Any]] = Field(default_factory=dict)
    tier: PollTier = PollTier.scheduled
    candidate_final: Optional[dict[str, Any]] = None
    last_polled_at: Optional[datetime] = None
    next_poll_at: Optional[datetime] = None
    confirmed_final_at: Optional[datetime] = None
    consecutive_failures: int = 0
    needs_review: bool = False
    review_reason: Optional[str] = None


class ReviewClear(BaseModel):
    """Operator decision on a game in the review queue."""
    operator: str = Field(..., min_length=1, max_length=80)
    accept_provider_result: bool = False
