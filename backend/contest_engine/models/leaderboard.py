"""Leaderboard snapshot models."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class Trend(str, Enum):
    up = "up"
    down = "down"
    same = "same"
    new = "new"


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: str
    username: str
    total_score: int
    accuracy: float  # 0..1, correct / resolved
    correct_count: int
    resolved_count: int
    current_streak: int
    longest_streak: int
    oracle_beats: int
    avg_submitted_at: Optional[datetime] = None
    previous_rank: Optional[int] = None
    trend: Trend = Trend.new
    potential_payout: float = 0.0


class LeaderboardStats(BaseModel):
    total_participants: int = 0
    average_score: float = 0.0
    average_accuracy: float = 0.0
    highest_score: int = 0
    resolved_predictions: int = 0
    total_predictions: int = 0

