"""
backend/contest_engine/services/outcome_rules.py

Purpose:
    Outcome derivation per prediction type. Each type has one rule class that
    turns a confirmed game result into the winning option index; the registry
    maps PredictionType to its rule so no other module branches on type.

    A rule returns None for a push (result lands exactly on the line), which
    voids the submission. Missing or malformed result data raises
    UnresolvedDataError, which blocks only the affected game.

Dependencies:
    - contest_engine.models.prediction
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from contest_engine.errors import UnresolvedDataError
from contest_engine.models.prediction import PredictionType

HOME, AWAY, TIE = 0, 1, 2
OVER, UNDER = 0, 1


def _score(game: dict[str, Any]) -> tuple[int, int]:
    score = game.get("final_score") or {}
    home, away = score.get("home"), score.get("away")
    if home is None or away is None:
        raise UnresolvedDataError(f"game {game.get('game_id')} has no final score", game_id=game.get("game_id"))
    return int(home), int(away)


def _over_under(value: float, line: float) -> Optional[int]:
    if value > line:
        return OVER
    if value < line:
        return UNDER
    return None


class OutcomeRule(ABC):
    type: PredictionType

    @abstractmethod
    def winning_choice(
        self, definition: dict[str, Any], game: dict[str, Any], line: Optional[float],
    ) -> Optional[int]:
        """Index of the correct option, or None for a push."""
        ...


class SpreadRule(OutcomeRule):
    """Line is the home handicap (-3.5 = home favored by 3.5)."""
    type = PredictionType.spread

    def winning_choice(self, definition, game, line):
        if line is None:
            raise UnresolvedDataError("spread prediction without a line", prediction_id=str(definition.get("_id")))
        home, away = _score(game)
        adjusted = home + float(line) - away
        if adjusted > 0:
            return HOME
        if adjusted < 0:
            return AWAY
        return None


class TotalRule(OutcomeRule):
    type = PredictionType.total

    def winning_choice(self, definition, game, line):
        if line is None:
            raise UnresolvedDataError("total prediction without a line", prediction_id=str(definition.get("_id")))
        home, away = _score(game)
        return _over_under(home + away, float(line))


class MoneylineRule(OutcomeRule):
    type = PredictionType.moneyline

    def winning_choice(self, definition, game, line):
        home, away = _score(game)
        if home > away:
            return HOME
        if away > home:
            return AWAY
        # A tie is an outcome only when the question offers it.
        if len(definition.get("options") or []) > TIE:
            return TIE
        return None


class StatLineRule(OutcomeRule):
    """Over/under on one statistic of a team or player from the stats snapshot."""

    def winning_choice(self, definition, game, line):
        subject = definition.get("subject")
        stat_key = definition.get("stat_key")
        stats = (game.get("stats_snapshot") or {}).get(str(subject)) or {}
        value = stats.get(str(stat_key))
        if value is None:
            raise UnresolvedDataError(
                f"stat {stat_key!r} for {subject!r} missing in game {game.get('game_id')}",
                game_id=game.get("game_id"),
            )
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise UnresolvedDataError(
                f"stat {stat_key!r} for {subject!r} is not numeric: {value!r}",
                game_id=game.get("game_id"),
            )
        if line is None:
            raise UnresolvedDataError("stat prediction without a line", prediction_id=str(definition.get("_id")))
        return _over_under(value, float(line))


class PlayerPropRule(StatLineRule):
    type = PredictionType.player_prop


class TeamStatRule(StatLineRule):
    type = PredictionType.team_stat


OUTCOME_RULES: dict[PredictionType, OutcomeRule] = {
    rule.type: rule
    for rule in (SpreadRule(), TotalRule(), MoneylineRule(), PlayerPropRule(), TeamStatRule())
}


def derive_outcome(
    definition: dict[str, Any], game: dict[str, Any], line: Optional[float] = None,
) -> Optional[int]:
    """Winning option for ``definition`` given a confirmed final ``game``.

    ``line`` overrides the definition's line (spread submissions are graded
    against the line recorded when they were submitted).
    """
    rule = OUTCOME_RULES[PredictionType(definition["type"])]
    effective_line = line if line is not None else definition.get("line")
    return rule.winning_choice(definition, game, effective_line)
