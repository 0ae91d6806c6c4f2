"""Prediction models: definitions (questions) and user submissions."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, StrictInt, model_validator


class PredictionType(str, Enum):
    spread = "spread"
    total = "total"
    moneyline = "moneyline"
    player_prop = "player_prop"
    team_stat = "team_stat"


class Difficulty(str, Enum):
    easy = "easy"
    medium = "medium"
    hard = "hard"
    expert = "expert"


class SubmissionStatus(str, Enum):
    pending = "pending"
    correct = "correct"
    incorrect = "incorrect"
    void = "void"


# Default category per type (category weights are keyed by category name).
DEFAULT_CATEGORIES: dict[PredictionType, str] = {
    PredictionType.spread: "Game Lines",
    PredictionType.total: "Game Lines",
    PredictionType.moneyline: "Game Lines",
    PredictionType.player_prop: "Player Props",
    PredictionType.team_stat: "Team Stats",
}


class PredictionDefinitionCreate(BaseModel):
    """A question tied to one game.

    Option index conventions used by outcome derivation:
    - spread: 0 = home covers, 1 = away covers (``line`` is the home line, e.g. -3.5)
    - total / player_prop / team_stat: 0 = over, 1 = under
    - moneyline: 0 = home wins, 1 = away wins (optional 2 = tie)
    """
    game_id: str = Field(..., min_length=1)
    type: PredictionType
    question: str = ""
    options: list[str] = Field(..., min_length=2)
    line: Optional[float] = None
    subject: Optional[str] = None  # stats_snapshot key: team or player id
    stat_key: Optional[str] = None
    category: Optional[str] = None
    difficulty: Difficulty = Difficulty.medium
    deadline: datetime

    @model_validator(mode="after")
    def _type_fields(self) -> "PredictionDefinitionCreate":
        kind = PredictionType(self.type)
        needs_line = kind in (
            PredictionType.spread,
            PredictionType.total,
            PredictionType.player_prop,
            PredictionType.team_stat,
        )
        if needs_line and self.line is None:
            raise ValueError(f"{kind.value} predictions need a line")
        if kind in (PredictionType.player_prop, PredictionType.team_stat):
            if not self.subject or not self.stat_key:
                raise ValueError(f"{kind.value} predictions need subject and stat_key")
        if kind == PredictionType.moneyline:
            if len(self.options) not in (2, 3):
                raise ValueError("moneyline predictions have 2 or 3 options")
        elif len(self.options) != 2:
            raise ValueError(f"{kind.value} predictions have exactly 2 options")
        if self.category is None:
            self.category = DEFAULT_CATEGORIES[kind]
        return self


class PredictionDefinitionInDB(PredictionDefinitionCreate):
    model_config = {"use_enum_values": True, "validate_default": True}

    contest_id: str
    oracle_choice: Optional[int] = None
    oracle_confidence: Optional[float] = None
    created_at: datetime


class SubmissionCreate(BaseModel):
    """Request body for submitting (or revising) a prediction."""
    user_id: str = Field(..., min_length=1)
    prediction_id: str = Field(..., min_length=1)
    choice: StrictInt = Field(..., ge=0)
    confidence: StrictInt
    reasoning: Optional[str] = Field(None, max_length=1000)


class SubmissionInDB(BaseModel):
    """Unique per (user_id, prediction_id)."""
    model_config = {"use_enum_values": True, "validate_default": True}

    contest_id: str
    user_id: str
    prediction_id: str
    game_id: str
    choice: int
    confidence: int
    reasoning: Optional[str] = None
    line_at_submission: Optional[float] = None
    submitted_at: datetime
    version: int = 1
    resolved: bool = False
    status: SubmissionStatus = SubmissionStatus.pending
    points_earned: Optional[int] = None
    resolved_at: Optional[datetime] = None
