"""
backend/contest_engine/services/prediction_repository.py

Purpose:
    Persistence access layer for prediction definitions and submissions.
    Submission writes use optimistic versioning: inserts race on the unique
    (user_id, prediction_id) index and updates are compare-and-set on
    ``version`` with ``resolved == False``.

Dependencies:
    - contest_engine.database
"""

from __future__ import annotations

from typing import Any

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import contest_engine.database as _db
from contest_engine.errors import ConcurrencyConflict, NotFound
from contest_engine.models.prediction import SubmissionStatus
from contest_engine.services.contest_repository import to_object_id
from contest_engine.utils import utcnow


class PredictionRepository:
    # ---------- Definitions ----------

    async def insert_definition(self, doc: dict[str, Any]) -> dict[str, Any]:
        result = await _db.db.prediction_definitions.insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc

    async def get_definition(self, prediction_id: str) -> dict[str, Any] | None:
        try:
            oid = to_object_id(prediction_id, kind="prediction")
        except NotFound:
            return None
        return await _db.db.prediction_definitions.find_one({"_id": oid})

    async def definitions_for_contest(self, contest_id: str) -> list[dict[str, Any]]:
        return await (
            _db.db.prediction_definitions.find({"contest_id": contest_id})
            .sort("deadline", 1)
            .to_list(length=5000)
        )

    async def definitions_for_game(self, game_id: str) -> list[dict[str, Any]]:
        return await (
            _db.db.prediction_definitions.find({"game_id": game_id})
            .sort([("deadline", 1), ("_id", 1)])
            .to_list(length=5000)
        )

    async def game_ids_for_contest(self, contest_id: str) -> list[str]:
        definitions = await _db.db.prediction_definitions.find(
            {"contest_id": contest_id}, {"game_id": 1},
        ).to_list(length=5000)
        return sorted({d["game_id"] for d in definitions})

    async def game_ids_for_contests(self, contest_ids: list[str]) -> list[str]:
        if not contest_ids:
            return []
        definitions = await _db.db.prediction_definitions.find(
            {"contest_id": {"$in": contest_ids}}, {"game_id": 1},
        ).to_list(length=50_000)
        return sorted({d["game_id"] for d in definitions})

    async def set_oracle_baseline(self, prediction_id: ObjectId, choice: int, confidence: float) -> None:
        """Write-once cache of the Oracle baseline for a definition."""
        await _db.db.prediction_definitions.update_one(
            {"_id": prediction_id, "oracle_choice": None},
            {"$set": {"oracle_choice": int(choice), "oracle_confidence": float(confidence)}},
        )

    # ---------- Submissions ----------

    async def get_submission(self, user_id: str, prediction_id: str) -> dict[str, Any] | None:
        return await _db.db.prediction_submissions.find_one(
            {"user_id": user_id, "prediction_id": prediction_id}
        )

    async def insert_submission(self, doc: dict[str, Any]) -> dict[str, Any]:
        try:
            result = await _db.db.prediction_submissions.insert_one(doc)
        except DuplicateKeyError:
            raise ConcurrencyConflict("submission created concurrently", prediction_id=doc.get("prediction_id"))
        doc["_id"] = result.inserted_id
        return doc

    async def update_submission(self, existing: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
        updated = await _db.db.prediction_submissions.find_one_and_update(
            {"_id": existing["_id"], "version": existing["version"], "resolved": False},
            {"$set": changes, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ConcurrencyConflict("submission changed concurrently", submission_id=str(existing["_id"]))
        return updated

    async def unresolved_for_prediction(self, prediction_id: str) -> list[dict[str, Any]]:
        return await (
            _db.db.prediction_submissions.find({"prediction_id": prediction_id, "resolved": False})
            .sort([("submitted_at", 1), ("_id", 1)])
            .to_list(length=100_000)
        )

    async def for_contest(self, contest_id: str) -> list[dict[str, Any]]:
        return await _db.db.prediction_submissions.find(
            {"contest_id": contest_id},
            {"user_id": 1, "submitted_at": 1, "resolved": 1, "status": 1, "points_earned": 1, "prediction_id": 1},
        ).to_list(length=500_000)

    async def count_for_contest(self, contest_id: str, *, resolved: bool | None = None) -> int:
        query: dict[str, Any] = {"contest_id": contest_id}
        if resolved is not None:
            query["resolved"] = resolved
        return await _db.db.prediction_submissions.count_documents(query)

    async def mark_resolved(
        self, submission_id: ObjectId, status: SubmissionStatus, points: int,
    ) -> bool:
        """Flip an unresolved submission to resolved. False if it already was."""
        result = await _db.db.prediction_submissions.update_one(
            {"_id": submission_id, "resolved": False},
            {
                "$set": {
                    "resolved": True,
                    "status": status.value,
                    "points_earned": int(points),
                    "resolved_at": utcnow(),
                },
                "$inc": {"version": 1},
            },
        )
        return result.modified_count == 1

    async def unresolved_for_contest(self, contest_id: str) -> list[dict[str, Any]]:
        return await (
            _db.db.prediction_submissions.find({"contest_id": contest_id, "resolved": False})
            .sort([("submitted_at", 1), ("_id", 1)])
            .to_list(length=500_000)
        )

    async def get_submission_by_id(self, submission_id: ObjectId) -> dict[str, Any] | None:
        return await _db.db.prediction_submissions.find_one({"_id": submission_id})

    async def restore_committed(
        self, submission_id: ObjectId, status: SubmissionStatus, points: int,
    ) -> bool:
        """Replace a void written over a submission whose points were already committed."""
        result = await _db.db.prediction_submissions.update_one(
            {"_id": submission_id, "status": SubmissionStatus.void.value},
            {"$set": {"status": status.value, "points_earned": int(points)}, "$inc": {"version": 1}},
        )
        return result.modified_count == 1
