"""
backend/contest_engine/services/payout_service.py

Purpose:
    Payout calculator. Turns the final leaderboard and the prize table into
    one PayoutRecord per paid participant, requests the transfers from the
    payment gateway and tracks them to settlement. Cancelled contests get
    entry-fee refunds through the same record/retry machinery.

    Records are insert-once (unique per contest, user and kind), so running
    the payout twice never pays twice. Gateway failures never roll back a
    completed contest; the record stays pending for the reconciler until its
    retry budget is spent, then it is flagged for manual review.

Dependencies:
    - contest_engine.services.payout_repository
    - contest_engine.services.leaderboard_service
    - contest_engine.services.prize_allocation
    - contest_engine.providers.payments
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

from contest_engine.config import settings
from contest_engine.errors import ExternalServiceError, StateError
from contest_engine.models.contest import ContestStatus, PayoutStatus, PrizePool
from contest_engine.models.payout import PayoutKind, PayoutRecordInDB, PayoutRecordResponse, PayoutRecordStatus
from contest_engine.providers.payments import payment_gateway
from contest_engine.services import leaderboard_service
from contest_engine.services.contest_repository import ContestRepository, ParticipantRepository
from contest_engine.services.payout_repository import PayoutRepository
from contest_engine.services.prize_allocation import allocate
from contest_engine.utils import from_cents, to_cents, utcnow

logger = logging.getLogger("contest_engine.payouts")

contests = ContestRepository()
participants = ParticipantRepository()
payouts = PayoutRepository()


def _record(contest: dict[str, Any], user_id: str, kind: PayoutKind, amount: float, rank: int | None) -> dict[str, Any]:
    now = utcnow()
    return PayoutRecordInDB(
        contest_id=str(contest["_id"]),
        user_id=user_id,
        kind=kind,
        rank=rank,
        amount=amount,
        currency=(contest.get("prize_pool") or {}).get("currency", "USD"),
        created_at=now,
        updated_at=now,
    ).model_dump()


async def run_payouts(contest_id: str) -> dict[str, Any]:
    """Create and send prize payouts for a completed contest."""
    contest = await contests.require(contest_id)
    if contest["status"] != ContestStatus.completed.value:
        raise StateError(f"cannot pay out a {contest['status']} contest", contest_id=contest_id)

    snapshot = await leaderboard_service.recompute(contest_id)
    ranked = [
        {"user_id": e["user_id"], "rank": e["rank"], "tie_key": leaderboard_service.ranking_key(e)}
        for e in snapshot["rankings"]
    ]
    prize_pool = PrizePool(**(contest.get("prize_pool") or {}))
    allocations = allocate(prize_pool, ranked)

    records = [
        _record(contest, a["user_id"], PayoutKind.prize, from_cents(a["cents"]), a["rank"])
        for a in allocations
    ]
    created = await payouts.create_many(records)
    total = sum(a["cents"] for a in allocations)
    logger.info(
        "Payout records for contest %s: %d new, %d total, %.2f %s",
        contest_id, created, len(records), from_cents(total), prize_pool.currency,
    )
    return await _send_pending(contest_id, PayoutKind.prize)


async def issue_refunds(contest_id: str) -> dict[str, Any]:
    """Refund the entry fee of every participant of a cancelled contest."""
    contest = await contests.require(contest_id)
    if contest["status"] != ContestStatus.cancelled.value:
        raise StateError(f"cannot refund a {contest['status']} contest", contest_id=contest_id)

    fee = float(contest.get("entry_fee") or 0.0)
    if to_cents(fee) <= 0:
        await contests.set_payout_status(contest_id, PayoutStatus.settled.value)
        return {"contest_id": contest_id, "sent": 0, "pending": 0, "failed": 0}

    records = [
        _record(contest, p["user_id"], PayoutKind.refund, from_cents(to_cents(fee)), None)
        for p in await participants.list_for_contest(contest_id)
    ]
    created = await payouts.create_many(records)
    logger.info("Refund records for contest %s: %d new, %d total", contest_id, created, len(records))
    return await _send_pending(contest_id, PayoutKind.refund)


async def _send_pending(contest_id: str, kind: PayoutKind) -> dict[str, Any]:
    for record in await payouts.for_contest(contest_id, kind):
        if record["status"] == PayoutRecordStatus.pending.value:
            await _attempt(record)
    return await refresh_payout_status(contest_id)


async def _attempt(record: dict[str, Any]) -> bool:
    """One transfer attempt. True if the gateway accepted it."""
    if record["kind"] == PayoutKind.refund.value:
        call = payment_gateway.request_refund
    else:
        call = payment_gateway.request_payout
    try:
        payment_ref = await asyncio.wait_for(
            call(record["user_id"], float(record["amount"]), record["contest_id"]),
            timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
        )
    except (ExternalServiceError, asyncio.TimeoutError) as exc:
        error = str(exc) or exc.__class__.__name__
        exhausted = await payouts.record_failure(record, error, settings.PAYOUT_MAX_ATTEMPTS)
        if exhausted:
            logger.error(
                "Payout %s %s/%s exhausted %d attempts; needs manual review: %s",
                record["kind"], record["contest_id"], record["user_id"], settings.PAYOUT_MAX_ATTEMPTS, error,
            )
        else:
            logger.warning(
                "Payout %s %s/%s failed (attempt %d): %s",
                record["kind"], record["contest_id"], record["user_id"], int(record.get("attempts", 0)) + 1, error,
            )
        return False
    await payouts.mark_sent(record, payment_ref)
    return True


async def refresh_payout_status(contest_id: str) -> dict[str, Any]:
    records = await payouts.for_contest(contest_id)
    counts = {status.value: 0 for status in PayoutRecordStatus}
    for record in records:
        counts[record["status"]] = counts.get(record["status"], 0) + 1

    if counts[PayoutRecordStatus.failed.value]:
        payout_status = PayoutStatus.needs_attention
    elif counts[PayoutRecordStatus.pending.value]:
        payout_status = PayoutStatus.in_progress
    else:
        payout_status = PayoutStatus.settled
    await contests.set_payout_status(contest_id, payout_status.value)
    return {"contest_id": contest_id, "payout_status": payout_status.value, **counts}


async def recover_unsettled_contests() -> int:
    """Start payouts or refunds for terminal contests that never got them.

    Covers a lost contest.completed / contest.cancelled event or a handler
    that failed before writing any record. The grace period leaves contests
    whose event is still queued to the event handlers.
    """
    before = utcnow() - timedelta(seconds=settings.PAYOUT_RECOVERY_GRACE_SECONDS)
    recovered = 0
    for contest in await contests.find_unsettled(before):
        contest_id = str(contest["_id"])
        try:
            if contest["status"] == ContestStatus.completed.value:
                await run_payouts(contest_id)
            else:
                await issue_refunds(contest_id)
        except StateError as exc:
            logger.warning("Payout recovery for contest %s skipped: %s", contest_id, exc.message)
            continue
        recovered += 1
        logger.warning("Recovered unsettled %s contest %s", contest["status"], contest_id)
    return recovered


async def reconcile_payouts() -> dict[str, int]:
    """Retry every pending record that still has attempts left."""
    pending = await payouts.retryable(settings.PAYOUT_MAX_ATTEMPTS)
    sent = 0
    touched: set[str] = set()
    for record in pending:
        if await _attempt(record):
            sent += 1
        touched.add(record["contest_id"])
    for contest_id in sorted(touched):
        await refresh_payout_status(contest_id)
    if pending:
        logger.info("Payout reconciliation: %d attempted, %d sent", len(pending), sent)
    return {"attempted": len(pending), "sent": sent, "failed": len(pending) - sent}


async def get_contest_results(contest_id: str) -> dict[str, Any]:
    """Final standings, payouts, stats and top performers of a contest."""
    contest = await contests.require(contest_id)
    snapshot = await leaderboard_service.get_leaderboard(contest_id)
    rankings = snapshot.get("rankings") or []
    records = await payouts.for_contest(contest_id)

    experienced = [e for e in rankings if e["resolved_count"] > 0]
    top_performers = {
        "top_scorers": rankings[:3],
        "most_accurate": (
            max(experienced, key=lambda e: (e["accuracy"], e["resolved_count"], -e["rank"])) if experienced else None
        ),
        "longest_streak": (
            max(rankings, key=lambda e: (e["longest_streak"], -e["rank"])) if rankings else None
        ),
        "oracle_beater": (
            max(rankings, key=lambda e: (e["oracle_beats"], -e["rank"])) if rankings else None
        ),
    }
    return {
        "contest_id": contest_id,
        "name": contest["name"],
        "status": contest["status"],
        "payout_status": contest.get("payout_status", PayoutStatus.not_started.value),
        "final": contest["status"] == ContestStatus.completed.value,
        "rankings": rankings,
        "payouts": [PayoutRecordResponse(**r).model_dump(mode="json") for r in records],
        "total_paid": from_cents(sum(
            to_cents(r["amount"]) for r in records if r["status"] == PayoutRecordStatus.sent.value
        )),
        "stats": snapshot.get("stats") or {},
        "top_performers": top_performers,
    }
