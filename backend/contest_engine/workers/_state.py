"""Persistent worker state: last run timestamp and metrics per worker.

Stored in the ``worker_state`` collection so the status endpoint can show
when each periodic job last completed, across restarts.
"""

from datetime import datetime, timedelta
from typing import Any

import contest_engine.database as _db
from contest_engine.utils import ensure_utc, utcnow


async def get_synced_at(worker_id: str) -> datetime | None:
    doc = await _db.db.worker_state.find_one({"_id": worker_id})
    return doc["synced_at"] if doc else None


async def set_synced(worker_id: str, metrics: dict[str, Any] | None = None) -> None:
    changes: dict[str, Any] = {"synced_at": utcnow()}
    if metrics is not None:
        changes["metrics"] = metrics
    await _db.db.worker_state.update_one(
        {"_id": worker_id},
        {"$set": changes},
        upsert=True,
    )


async def recently_synced(worker_id: str, max_age: timedelta) -> bool:
    """Check if a worker completed within the given time window."""
    last = await get_synced_at(worker_id)
    if not last:
        return False
    return (utcnow() - ensure_utc(last)) < max_age


async def all_worker_states() -> list[dict[str, Any]]:
    return await _db.db.worker_state.find({}).to_list(length=100)
