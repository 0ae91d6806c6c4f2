"""Multi-factor scoring: pure functions over a contest's ScoringConfig."""

from dataclasses import dataclass
from typing import Optional

from contest_engine.models.contest import ScoringConfig


@dataclass(frozen=True)
class ScoreResult:
    """Points for one resolved submission and the participant aggregate deltas."""
    correct: bool
    points: int
    base: float
    streak_bonus: int
    oracle_bonus: int
    new_streak: int
    beat_oracle: bool


def base_points(
    config: ScoringConfig,
    prediction_type: str,
    difficulty: str,
    category: Optional[str],
    confidence: int,
) -> float:
    """Unrounded base value of a prediction.

    base = base_points[type] × confidence factor × difficulty multiplier × category weight
    Unknown categories weigh 1.0.
    """
    value = float(config.base_points.get(prediction_type, 100))
    if config.confidence_multiplier:
        value *= confidence / 100.0
    value *= float(config.difficulty_multipliers.get(difficulty, 1.0))
    value *= float(config.category_weights.get(category or "", 1.0))
    return value


def streak_bonus(config: ScoringConfig, current_streak: int) -> int:
    """Bonus for extending ``current_streak`` by one more correct pick.

    With min_streak=3 and 5 per correct: 3rd in a row earns 5, 4th 10, 5th 15.
    """
    cfg = config.streak_bonus
    if not cfg.enabled:
        return 0
    streak = current_streak + 1
    if streak < cfg.min_streak:
        return 0
    return min(cfg.max_bonus, (streak - cfg.min_streak + 1) * cfg.bonus_per_correct)


def beats_oracle(choice: int, correct_choice: int, oracle_choice: Optional[int]) -> bool:
    if oracle_choice is None:
        return False
    return choice == correct_choice and oracle_choice != choice and oracle_choice != correct_choice


def score_submission(
    config: ScoringConfig,
    *,
    prediction_type: str,
    difficulty: str,
    category: Optional[str],
    confidence: int,
    choice: int,
    correct_choice: int,
    current_streak: int,
    oracle_choice: Optional[int] = None,
) -> ScoreResult:
    base = base_points(config, prediction_type, difficulty, category, confidence)

    if choice != correct_choice:
        penalty = 0
        if config.negative_scoring.enabled:
            penalty = -int(round(base * config.negative_scoring.penalty_ratio))
        return ScoreResult(
            correct=False,
            points=penalty,
            base=base,
            streak_bonus=0,
            oracle_bonus=0,
            new_streak=0,
            beat_oracle=False,
        )

    bonus = streak_bonus(config, current_streak)
    beat = beats_oracle(choice, correct_choice, oracle_choice)
    oracle_bonus = config.oracle_beat_bonus if beat else 0
    return ScoreResult(
        correct=True,
        points=int(round(base)) + bonus + oracle_bonus,
        base=base,
        streak_bonus=bonus,
        oracle_bonus=oracle_bonus,
        new_streak=current_streak + 1,
        beat_oracle=beat,
    )
