"""Contest models: lifecycle, scoring configuration and prize tables."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class ContestType(str, Enum):
    weekly = "weekly"
    season = "season"
    playoff = "playoff"


class ContestStatus(str, Enum):
    pending = "pending"
    active = "active"
    completed = "completed"
    cancelled = "cancelled"


# Allowed lifecycle transitions. Completed and cancelled are terminal.
CONTEST_TRANSITIONS: dict[ContestStatus, set[ContestStatus]] = {
    ContestStatus.pending: {ContestStatus.active, ContestStatus.cancelled},
    ContestStatus.active: {ContestStatus.completed, ContestStatus.cancelled},
    ContestStatus.completed: set(),
    ContestStatus.cancelled: set(),
}


class PayoutStatus(str, Enum):
    not_started = "not_started"
    in_progress = "in_progress"
    settled = "settled"
    needs_attention = "needs_attention"


# ---------- Scoring ----------

class StreakBonusConfig(BaseModel):
    enabled: bool = True
    min_streak: int = Field(3, ge=1)
    bonus_per_correct: int = Field(5, ge=0)
    max_bonus: int = Field(50, ge=0)


class NegativeScoringConfig(BaseModel):
    enabled: bool = False
    penalty_ratio: float = Field(0.5, ge=0, le=1)


class ScoringConfig(BaseModel):
    """Multi-factor scoring formula parameters, fixed per contest."""
    base_points: dict[str, float] = Field(
        default_factory=lambda: {
            "spread": 100,
            "total": 100,
            "moneyline": 100,
            "player_prop": 100,
            "team_stat": 100,
        }
    )
    confidence_multiplier: bool = True
    difficulty_multipliers: dict[str, float] = Field(
        default_factory=lambda: {"easy": 1.0, "medium": 1.2, "hard": 1.5, "expert": 2.0}
    )
    category_weights: dict[str, float] = Field(
        default_factory=lambda: {"Game Lines": 1.0, "Player Props": 1.2, "Team Stats": 1.1}
    )
    streak_bonus: StreakBonusConfig = Field(default_factory=StreakBonusConfig)
    oracle_beat_bonus: int = Field(25, ge=0)
    negative_scoring: NegativeScoringConfig = Field(default_factory=NegativeScoringConfig)

    @field_validator("base_points", "difficulty_multipliers", "category_weights")
    @classmethod
    def _positive_values(cls, value: dict[str, float]) -> dict[str, float]:
        for key, factor in value.items():
            if factor is None or factor <= 0:
                raise ValueError(f"factor for {key!r} must be positive")
        return value

    @field_validator("difficulty_multipliers")
    @classmethod
    def _all_difficulties(cls, value: dict[str, float]) -> dict[str, float]:
        missing = {"easy", "medium", "hard", "expert"} - set(value)
        if missing:
            raise ValueError(f"missing difficulty multipliers: {sorted(missing)}")
        return value


# ---------- Prize pool ----------

class PrizeTier(BaseModel):
    rank: int = Field(..., ge=1)
    percentage: Optional[float] = Field(None, gt=0, le=100)
    amount: Optional[float] = Field(None, gt=0)
    description: str = ""

    @model_validator(mode="after")
    def _percentage_or_amount(self) -> "PrizeTier":
        if (self.percentage is None) == (self.amount is None):
            raise ValueError("prize tier needs exactly one of percentage or amount")
        return self


class PrizePool(BaseModel):
    total_prize: float = Field(0.0, ge=0)
    currency: str = "USD"
    distribution: list[PrizeTier] = Field(default_factory=list)
    guaranteed: bool = True

    @model_validator(mode="after")
    def _consistent_table(self) -> "PrizePool":
        ranks = [tier.rank for tier in self.distribution]
        if sorted(ranks) != list(range(1, len(ranks) + 1)):
            raise ValueError("prize distribution ranks must be unique and contiguous from 1")
        pct_total = sum(t.percentage or 0.0 for t in self.distribution)
        fixed_total = sum(t.amount or 0.0 for t in self.distribution)
        if pct_total > 100.0 + 1e-9:
            raise ValueError("prize distribution percentages exceed 100")
        if fixed_total > self.total_prize + 1e-9:
            raise ValueError("fixed prize amounts exceed the total prize")
        if pct_total and fixed_total:
            pct_amount = self.total_prize * pct_total / 100.0
            if pct_amount + fixed_total > self.total_prize + 1e-6:
                raise ValueError("prize distribution exceeds the total prize")
        return self


# ---------- Contest ----------

class ContestCreate(BaseModel):
    """Operator request body for creating a contest."""
    name: str = Field(..., min_length=1, max_length=120)
    type: ContestType = ContestType.weekly
    description: str = ""
    season: int = Field(..., ge=1900)
    week: Optional[int] = Field(None, ge=0, le=30)
    start_date: datetime
    end_date: datetime
    entry_fee: float = Field(0.0, ge=0)
    max_participants: int = Field(100, ge=1)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    prize_pool: PrizePool = Field(default_factory=PrizePool)

    @model_validator(mode="after")
    def _date_order(self) -> "ContestCreate":
        if self.start_date >= self.end_date:
            raise ValueError("start_date must be before end_date")
        if self.type == ContestType.weekly and self.week is None:
            raise ValueError("weekly contests need a week")
        return self


class ContestInDB(ContestCreate):
    model_config = {"use_enum_values": True, "validate_default": True}

    status: ContestStatus = ContestStatus.pending
    participant_count: int = 0
    payout_status: PayoutStatus = PayoutStatus.not_started
    cancel_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ContestCancel(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class ContestStatusResponse(BaseModel):
    id: str
    name: str
    status: ContestStatus
    participant_count: int
    max_participants: int
    predictions_total: int
    submissions_total: int
    submissions_resolved: int
    payout_status: PayoutStatus
    start_date: datetime
    end_date: datetime
