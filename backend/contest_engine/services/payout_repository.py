"""Payout and refund record persistence (insert-once, status updates only)."""

from __future__ import annotations

from typing import Any

from pymongo import UpdateOne

import contest_engine.database as _db
from contest_engine.models.payout import PayoutKind, PayoutRecordStatus
from contest_engine.utils import utcnow


class PayoutRepository:
    async def create_many(self, records: list[dict[str, Any]]) -> int:
        """Insert records that do not exist yet; existing ones are left untouched."""
        if not records:
            return 0
        ops = [
            UpdateOne(
                {"contest_id": r["contest_id"], "user_id": r["user_id"], "kind": r["kind"]},
                {"$setOnInsert": r},
                upsert=True,
            )
            for r in records
        ]
        result = await _db.db.payout_records.bulk_write(ops, ordered=False)
        return result.upserted_count

    async def for_contest(self, contest_id: str, kind: PayoutKind | None = None) -> list[dict[str, Any]]:
        query: dict[str, Any] = {"contest_id": contest_id}
        if kind is not None:
            query["kind"] = kind.value
        return await (
            _db.db.payout_records.find(query)
            .sort([("rank", 1), ("user_id", 1)])
            .to_list(length=100_000)
        )

    async def retryable(self, max_attempts: int, limit: int = 500) -> list[dict[str, Any]]:
        return await (
            _db.db.payout_records.find({
                "status": PayoutRecordStatus.pending.value,
                "attempts": {"$lt": max_attempts},
            })
            .sort("created_at", 1)
            .to_list(length=limit)
        )

    async def mark_sent(self, record: dict[str, Any], payment_ref: str) -> None:
        await _db.db.payout_records.update_one(
            {"_id": record["_id"], "status": PayoutRecordStatus.pending.value},
            {
                "$set": {
                    "status": PayoutRecordStatus.sent.value,
                    "payment_ref": payment_ref,
                    "last_error": None,
                    "updated_at": utcnow(),
                },
                "$inc": {"attempts": 1},
            },
        )

    async def record_failure(self, record: dict[str, Any], error: str, max_attempts: int) -> bool:
        """Count a failed attempt. Returns True if the retry budget is now exhausted."""
        attempts = int(record.get("attempts", 0)) + 1
        exhausted = attempts >= max_attempts
        changes: dict[str, Any] = {"last_error": error[:500], "updated_at": utcnow()}
        if exhausted:
            changes["status"] = PayoutRecordStatus.failed.value
            changes["needs_manual_review"] = True
        await _db.db.payout_records.update_one(
            {"_id": record["_id"], "status": PayoutRecordStatus.pending.value},
            {"$set": changes, "$inc": {"attempts": 1}},
        )
        return exhausted

    async def needing_review(self) -> list[dict[str, Any]]:
        return await _db.db.payout_records.find({"needs_manual_review": True}).to_list(length=1000)
