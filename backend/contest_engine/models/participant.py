"""Participant models: one registration per user per contest."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ParticipantRegister(BaseModel):
    """Request body for registering a user in a contest."""
    user_id: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1, max_length=60)
    payment_ref: Optional[str] = None


class ParticipantInDB(BaseModel):
    """Aggregates are mutated only by the evaluation engine.

    ``resolutions`` maps submission id -> points and is the commit log that
    makes score application idempotent.
    """
    contest_id: str
    user_id: str
    username: str
    entry_time: datetime
    payment_ref: Optional[str] = None
    total_score: int = 0
    resolved_count: int = 0
    correct_count: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    oracle_beats: int = 0
    resolutions: dict[str, int] = Field(default_factory=dict)
    version: int = 1
