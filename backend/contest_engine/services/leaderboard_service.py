"""
backend/contest_engine/services/leaderboard_service.py

Purpose:
    Leaderboard aggregator. Materializes a ranked snapshot per contest from
    the participant aggregates into the ``leaderboards`` collection.

    Ordering is a total order: total score desc, accuracy desc, oracle beats
    desc, average submission time asc, then user id asc. There is one writer
    per contest at a time; recompute requests that arrive while a recompute
    is running are coalesced into a single follow-up run. Reads serve the
    last committed snapshot.

Dependencies:
    - contest_engine.database
    - contest_engine.services.contest_repository
    - contest_engine.services.prediction_repository
    - contest_engine.services.prize_allocation
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any

import contest_engine.database as _db
from contest_engine.config import settings
from contest_engine.models.contest import ContestStatus, PrizePool
from contest_engine.models.leaderboard import LeaderboardEntry, LeaderboardStats, Trend
from contest_engine.services.contest_repository import ContestRepository, ParticipantRepository
from contest_engine.services.prediction_repository import PredictionRepository
from contest_engine.services.prize_allocation import allocate
from contest_engine.utils import KeyedLocks, ensure_utc, from_cents, utcnow

logger = logging.getLogger("contest_engine.leaderboard")

contests = ContestRepository()
participants = ParticipantRepository()
predictions = PredictionRepository()

_locks = KeyedLocks()
_dirty: set[str] = set()


def ranking_key(row: dict[str, Any]) -> tuple:
    """Sort key excluding the user id; equal keys are exact ties."""
    avg = row.get("avg_submitted_at")
    avg_ts = ensure_utc(avg).timestamp() if avg else float("inf")
    return (-int(row["total_score"]), -float(row["accuracy"]), -int(row["oracle_beats"]), avg_ts)


def rank_participants(
    participant_docs: list[dict[str, Any]],
    submitted_at: dict[str, list[datetime]],
) -> list[dict[str, Any]]:
    """Order participants deterministically and assign ranks 1..n."""
    rows = []
    for p in participant_docs:
        resolved = int(p.get("resolved_count", 0))
        correct = int(p.get("correct_count", 0))
        times = submitted_at.get(p["user_id"]) or []
        avg = None
        if times:
            mean_ts = sum(ensure_utc(t).timestamp() for t in times) / len(times)
            avg = datetime.fromtimestamp(mean_ts, tz=timezone.utc)
        rows.append({
            "user_id": p["user_id"],
            "username": p.get("username", ""),
            "total_score": int(p.get("total_score", 0)),
            "accuracy": (correct / resolved) if resolved else 0.0,
            "correct_count": correct,
            "resolved_count": resolved,
            "current_streak": int(p.get("current_streak", 0)),
            "longest_streak": int(p.get("longest_streak", 0)),
            "oracle_beats": int(p.get("oracle_beats", 0)),
            "avg_submitted_at": avg,
        })
    rows.sort(key=lambda r: (ranking_key(r), r["user_id"]))
    for idx, row in enumerate(rows, start=1):
        row["rank"] = idx
        row["tie_key"] = ranking_key(row)
    return rows


def _trend(rank: int, previous: int | None) -> Trend:
    if previous is None:
        return Trend.new
    if rank < previous:
        return Trend.up
    if rank > previous:
        return Trend.down
    return Trend.same


async def recompute(contest_id: str) -> dict[str, Any]:
    """Rebuild and persist the contest snapshot. Returns the stored snapshot."""
    async with _locks.hold(contest_id):
        _dirty.discard(contest_id)
        return await _recompute_locked(contest_id)


async def request_recompute(contest_id: str) -> None:
    """Coalescing trigger used by event handlers.

    If a recompute is already running for the contest, mark it dirty and
    return; the running writer picks the change up before releasing.
    """
    _dirty.add(contest_id)
    if _locks.locked(contest_id):
        return
    async with _locks.hold(contest_id):
        while contest_id in _dirty:
            _dirty.discard(contest_id)
            await _recompute_locked(contest_id)


async def _recompute_locked(contest_id: str) -> dict[str, Any]:
    contest = await contests.require(contest_id)
    participant_docs = await participants.list_for_contest(contest_id)
    submissions = await predictions.for_contest(contest_id)

    submitted_at: dict[str, list[datetime]] = defaultdict(list)
    for sub in submissions:
        if sub.get("submitted_at") is not None:
            submitted_at[sub["user_id"]].append(sub["submitted_at"])

    rows = rank_participants(participant_docs, submitted_at)

    prize_pool = PrizePool(**(contest.get("prize_pool") or {}))
    potential = {a["user_id"]: a["cents"] for a in allocate(prize_pool, rows)}

    previous = await _db.db.leaderboards.find_one({"contest_id": contest_id})
    previous_ranks = {
        e["user_id"]: e["rank"] for e in ((previous or {}).get("rankings") or [])
    }

    entries = []
    for row in rows:
        prev_rank = previous_ranks.get(row["user_id"])
        entries.append(LeaderboardEntry(
            **{k: v for k, v in row.items() if k != "tie_key"},
            previous_rank=prev_rank,
            trend=_trend(row["rank"], prev_rank),
            potential_payout=from_cents(potential.get(row["user_id"], 0)),
        ).model_dump(mode="python"))
    for entry in entries:
        entry["trend"] = entry["trend"].value if isinstance(entry["trend"], Trend) else entry["trend"]

    stats = LeaderboardStats(
        total_participants=len(rows),
        average_score=round(sum(r["total_score"] for r in rows) / len(rows), 2) if rows else 0.0,
        average_accuracy=round(sum(r["accuracy"] for r in rows) / len(rows), 4) if rows else 0.0,
        highest_score=max((r["total_score"] for r in rows), default=0),
        resolved_predictions=sum(1 for s in submissions if s.get("resolved")),
        total_predictions=len(submissions),
    ).model_dump()

    version = int((previous or {}).get("version", 0)) + 1
    snapshot = {
        "contest_id": contest_id,
        "version": version,
        "computed_at": utcnow(),
        "rankings": entries,
        "stats": stats,
    }
    await _db.db.leaderboards.update_one(
        {"contest_id": contest_id},
        {"$set": snapshot},
        upsert=True,
    )
    logger.info("Leaderboard recomputed contest=%s version=%d entries=%d", contest_id, version, len(entries))
    return snapshot


async def get_leaderboard(contest_id: str) -> dict[str, Any]:
    """Last committed snapshot; computed on read only if none exists yet.

    A snapshot older than the staleness bound with a coalesced recompute
    still pending is refreshed before being served.
    """
    snapshot = await _db.db.leaderboards.find_one({"contest_id": contest_id})
    if snapshot is None:
        await contests.require(contest_id)
        return await recompute(contest_id)

    age = (utcnow() - ensure_utc(snapshot["computed_at"])).total_seconds()
    if contest_id in _dirty and age > settings.LEADERBOARD_MAX_STALENESS_SECONDS:
        status = await contests.status_of(contest_id)
        if status == ContestStatus.active:
            return await recompute(contest_id)
    snapshot.pop("_id", None)
    return snapshot
