"""
backend/contest_engine/services/contest_repository.py

Purpose:
    Persistence access layer for contests and participants. Lifecycle
    transitions are compare-and-set on the current status; participant
    aggregate updates are compare-and-set on the participant version and
    guarded by the per-submission commit log.

Dependencies:
    - contest_engine.database
    - contest_engine.models.contest
"""

from __future__ import annotations

from typing import Any

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import contest_engine.database as _db
from contest_engine.errors import AlreadyRegistered, ConcurrencyConflict, NotFound
from contest_engine.models.contest import ContestStatus, PayoutStatus
from contest_engine.utils import utcnow


def to_object_id(value: str | ObjectId, *, kind: str = "contest") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFound(f"{kind} {value} not found")


class ContestRepository:
    async def insert(self, doc: dict[str, Any]) -> dict[str, Any]:
        result = await _db.db.contests.insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc

    async def get(self, contest_id: str) -> dict[str, Any] | None:
        try:
            oid = to_object_id(contest_id)
        except NotFound:
            return None
        return await _db.db.contests.find_one({"_id": oid})

    async def require(self, contest_id: str) -> dict[str, Any]:
        contest = await self.get(contest_id)
        if not contest:
            raise NotFound(f"contest {contest_id} not found")
        return contest

    async def status_of(self, contest_id: str) -> ContestStatus | None:
        doc = await _db.db.contests.find_one({"_id": to_object_id(contest_id)}, {"status": 1})
        return ContestStatus(doc["status"]) if doc else None

    async def transition(
        self,
        contest_id: str,
        from_statuses: set[ContestStatus],
        to_status: ContestStatus,
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Move a contest to ``to_status`` iff its current status is one of ``from_statuses``."""
        now = utcnow()
        update = {"status": to_status.value, "updated_at": now}
        update.update(extra or {})
        return await _db.db.contests.find_one_and_update(
            {"_id": to_object_id(contest_id), "status": {"$in": [s.value for s in from_statuses]}},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )

    async def set_payout_status(self, contest_id: str, payout_status: str) -> None:
        await _db.db.contests.update_one(
            {"_id": to_object_id(contest_id)},
            {"$set": {"payout_status": payout_status, "updated_at": utcnow()}},
        )

    async def reserve_seat(self, contest_id: str, max_participants: int) -> bool:
        """Atomically take one seat; False when the contest is full or closed."""
        doc = await _db.db.contests.find_one_and_update(
            {
                "_id": to_object_id(contest_id),
                "status": {"$in": [ContestStatus.pending.value, ContestStatus.active.value]},
                "participant_count": {"$lt": max_participants},
            },
            {"$inc": {"participant_count": 1}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return doc is not None

    async def release_seat(self, contest_id: str) -> None:
        await _db.db.contests.update_one(
            {"_id": to_object_id(contest_id), "participant_count": {"$gt": 0}},
            {"$inc": {"participant_count": -1}},
        )

    async def find_due_for_activation(self, now) -> list[dict[str, Any]]:
        return await _db.db.contests.find(
            {"status": ContestStatus.pending.value, "start_date": {"$lte": now}},
        ).to_list(length=500)

    async def find_unsettled(self, before) -> list[dict[str, Any]]:
        """Terminal contests whose payouts or refunds never started."""
        return await _db.db.contests.find({
            "status": {"$in": [ContestStatus.completed.value, ContestStatus.cancelled.value]},
            "payout_status": PayoutStatus.not_started.value,
            "updated_at": {"$lte": before},
        }).to_list(length=500)

    async def find_active(self) -> list[dict[str, Any]]:
        return await _db.db.contests.find(
            {"status": ContestStatus.active.value},
        ).to_list(length=1000)

    async def count_by_status(self, status: ContestStatus) -> int:
        return await _db.db.contests.count_documents({"status": status.value})


class ParticipantRepository:
    async def insert(self, doc: dict[str, Any]) -> dict[str, Any]:
        try:
            result = await _db.db.participants.insert_one(doc)
        except DuplicateKeyError:
            raise AlreadyRegistered("user already registered for this contest")
        doc["_id"] = result.inserted_id
        return doc

    async def get(self, contest_id: str, user_id: str) -> dict[str, Any] | None:
        return await _db.db.participants.find_one({"contest_id": contest_id, "user_id": user_id})

    async def list_for_contest(self, contest_id: str) -> list[dict[str, Any]]:
        return await _db.db.participants.find({"contest_id": contest_id}).to_list(length=100_000)

    async def apply_resolution(
        self,
        participant: dict[str, Any],
        submission_id: str,
        points: int,
        aggregates: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Commit one scored submission onto the participant aggregate.

        Guarded by the participant version (lost-update protection) and by the
        submission id being absent from the commit log (idempotence). Returns
        the updated participant, or None if the submission was already applied.
        Raises ConcurrencyConflict if another writer moved the version.
        """
        log_key = f"resolutions.{submission_id}"
        updated = await _db.db.participants.find_one_and_update(
            {
                "_id": participant["_id"],
                "version": participant.get("version", 1),
                log_key: {"$exists": False},
            },
            {
                "$inc": {"total_score": points, "version": 1, **aggregates.get("$inc", {})},
                "$set": {log_key: points, "updated_at": utcnow(), **aggregates.get("$set", {})},
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated is not None:
            return updated

        current = await _db.db.participants.find_one({"_id": participant["_id"]})
        if current and submission_id in (current.get("resolutions") or {}):
            return None
        raise ConcurrencyConflict(
            "participant aggregate changed concurrently",
            contest_id=participant.get("contest_id"),
            user_id=participant.get("user_id"),
        )
