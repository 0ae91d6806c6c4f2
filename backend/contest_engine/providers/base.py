from abc import ABC, abstractmethod
from typing import Any

from contest_engine.models.game import GameSnapshot


class SportsDataProvider(ABC):
    """Source of live game state."""

    @abstractmethod
    async def get_game_status(self, game_id: str) -> GameSnapshot:
        """Fetch the current status of one game.

        Returns a GameSnapshot with:
        - status: scheduled | live | final
        - final_score: {"home": int, "away": int} once the game has a score
        - stats_snapshot: {subject_id: {stat_key: number}} for teams and players

        Raises ExternalServiceError when the provider is unavailable.
        """
        ...

    @abstractmethod
    async def get_scheduled_games(self, week: int) -> list[dict[str, Any]]:
        """List the games of a week.

        Returns dicts with at least game_id, home_team, away_team, start_time
        and, when available, spread_line and total_line.
        """
        ...


class OracleBaselineProvider(ABC):
    """AI-generated reference predictions used for beat-the-baseline bonuses."""

    @abstractmethod
    async def get_baseline_choice(self, prediction_id: str) -> dict[str, Any] | None:
        """Return {"choice": int, "confidence": float} or None if no baseline exists."""
        ...


class PaymentGateway(ABC):
    """Executes monetary transfers. Never called on the evaluation path."""

    @abstractmethod
    async def request_payout(self, user_id: str, amount: float, contest_id: str) -> str:
        """Request a prize transfer; returns the gateway payment reference."""
        ...

    @abstractmethod
    async def request_refund(self, user_id: str, amount: float, contest_id: str) -> str:
        """Request an entry-fee refund; returns the gateway payment reference."""
        ...
