"""Operator endpoints: cancellation, forced evaluation, review queue, payouts."""

from fastapi import APIRouter

from contest_engine.models.contest import ContestCancel
from contest_engine.models.game import ReviewClear
from contest_engine.services import contest_service, evaluation_service, payout_service
from contest_engine.services.event_bus import event_bus
from contest_engine.services.game_result_repository import GameResultRepository
from contest_engine.services.payout_repository import PayoutRepository
from contest_engine.workers import result_poller

router = APIRouter(prefix="/api/admin", tags=["admin"])


def _strip_id(doc: dict) -> dict:
    out = {k: v for k, v in doc.items() if k != "_id"}
    out["id"] = str(doc["_id"])
    return out


@router.post("/contests/{contest_id}/cancel")
async def cancel_contest(contest_id: str, body: ContestCancel):
    """Cancel a pending or active contest. Irreversible; refunds entry fees."""
    doc = await contest_service.cancel_contest(contest_id, body.reason)
    return contest_service.serialize_contest(doc)


@router.post("/contests/{contest_id}/evaluate")
async def force_evaluate(contest_id: str):
    return await evaluation_service.force_evaluate(contest_id)


@router.post("/contests/{contest_id}/generate-predictions")
async def generate_predictions(contest_id: str):
    created = await contest_service.generate_weekly_predictions(contest_id)
    return {"created": len(created), "predictions": [contest_service.serialize_definition(d) for d in created]}


@router.get("/review-queue")
async def review_queue():
    items = await GameResultRepository().open_reviews()
    return [_strip_id(item) for item in items]


@router.post("/review-queue/{game_id}/clear")
async def clear_review(game_id: str, body: ReviewClear):
    return await result_poller.resolve_review(
        game_id, body.operator, accept_provider_result=body.accept_provider_result,
    )


@router.post("/payouts/reconcile")
async def reconcile_payouts():
    return await payout_service.reconcile_payouts()


@router.get("/payouts/manual-review")
async def payouts_needing_review():
    records = await PayoutRepository().needing_review()
    return [_strip_id(r) for r in records]


@router.get("/event-bus")
async def event_bus_stats():
    return event_bus.stats()
