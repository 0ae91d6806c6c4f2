"""Game result cache and operator review queue.

Only the result poller writes game_results; the evaluation engine reads it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import contest_engine.database as _db
from contest_engine.models.game import GameResultInDB, GameStatus, PollTier
from contest_engine.utils import utcnow


class GameResultRepository:
    async def get(self, game_id: str) -> dict[str, Any] | None:
        return await _db.db.game_results.find_one({"game_id": game_id})

    async def track(self, game_id: str) -> None:
        """Start tracking a game (no-op when already tracked)."""
        now = utcnow()
        await _db.db.game_results.update_one(
            {"game_id": game_id},
            {
                "$setOnInsert": {
                    **GameResultInDB(game_id=game_id, next_poll_at=now).model_dump(),
                    "created_at": now,
                },
            },
            upsert=True,
        )

    async def due_in_tier(self, tier: PollTier, now: datetime, limit: int) -> list[dict[str, Any]]:
        return await (
            _db.db.game_results.find({
                "tier": tier.value,
                "needs_review": False,
                "next_poll_at": {"$lte": now},
            })
            .sort("next_poll_at", 1)
            .to_list(length=limit)
        )

    async def update(self, game_id: str, changes: dict[str, Any]) -> None:
        await _db.db.game_results.update_one({"game_id": game_id}, {"$set": changes})

    async def confirmed_final_games(self, game_ids: list[str]) -> list[dict[str, Any]]:
        if not game_ids:
            return []
        return await _db.db.game_results.find({
            "game_id": {"$in": game_ids},
            "status": GameStatus.final.value,
            "confirmed_final_at": {"$ne": None},
            "needs_review": False,
        }).to_list(length=len(game_ids))

    async def for_games(self, game_ids: list[str]) -> list[dict[str, Any]]:
        if not game_ids:
            return []
        return await _db.db.game_results.find({"game_id": {"$in": game_ids}}).to_list(length=len(game_ids))

    async def count(self) -> int:
        return await _db.db.game_results.count_documents({})

    # ---------- Operator review ----------

    async def flag_for_review(self, game_id: str, reason: str) -> bool:
        """Flag a game and open a review item. False if already flagged."""
        now = utcnow()
        result = await _db.db.game_results.update_one(
            {"game_id": game_id, "needs_review": False},
            {"$set": {"needs_review": True, "review_reason": reason, "updated_at": now}},
        )
        if result.modified_count == 0:
            return False
        await _db.db.review_queue.insert_one({
            "game_id": game_id,
            "reason": reason,
            "created_at": now,
            "resolved_at": None,
            "resolved_by": None,
        })
        return True

    async def open_reviews(self) -> list[dict[str, Any]]:
        return await (
            _db.db.review_queue.find({"resolved_at": None})
            .sort("created_at", 1)
            .to_list(length=1000)
        )

    async def clear_review(self, game_id: str, operator: str) -> bool:
        now = utcnow()
        result = await _db.db.review_queue.update_many(
            {"game_id": game_id, "resolved_at": None},
            {"$set": {"resolved_at": now, "resolved_by": operator}},
        )
        await _db.db.game_results.update_one(
            {"game_id": game_id},
            {
                "$set": {
                    "needs_review": False,
                    "review_reason": None,
                    "consecutive_failures": 0,
                    "candidate_final": None,
                    "next_poll_at": now,
                },
            },
        )
        return result.modified_count > 0
