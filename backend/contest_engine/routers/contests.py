"""Contest endpoints: creation, registration, predictions, standings."""

from fastapi import APIRouter, status

from contest_engine.models.contest import ContestCreate, ContestStatusResponse
from contest_engine.models.participant import ParticipantRegister
from contest_engine.models.prediction import PredictionDefinitionCreate, SubmissionCreate
from contest_engine.services import (
    contest_service,
    leaderboard_service,
    payout_service,
    prediction_service,
)
from contest_engine.services.prediction_repository import PredictionRepository

router = APIRouter(prefix="/api/contests", tags=["contests"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_contest(body: ContestCreate):
    doc = await contest_service.create_contest(body)
    return contest_service.serialize_contest(doc)


@router.post("/{contest_id}/register", status_code=status.HTTP_201_CREATED)
async def register(contest_id: str, body: ParticipantRegister):
    doc = await contest_service.register_participant(
        contest_id, body.user_id, body.username, body.payment_ref,
    )
    return {
        "contest_id": contest_id,
        "user_id": doc["user_id"],
        "username": doc["username"],
        "entry_time": doc["entry_time"],
    }


@router.post("/{contest_id}/predictions", status_code=status.HTTP_201_CREATED)
async def add_prediction(contest_id: str, body: PredictionDefinitionCreate):
    doc = await contest_service.add_prediction_definition(contest_id, body)
    return contest_service.serialize_definition(doc)


@router.get("/{contest_id}/predictions")
async def list_predictions(contest_id: str):
    """Prediction questions of a contest, ordered by deadline."""
    definitions = await PredictionRepository().definitions_for_contest(contest_id)
    return [contest_service.serialize_definition(d) for d in definitions]


@router.post("/{contest_id}/submissions", status_code=status.HTTP_201_CREATED)
async def submit(contest_id: str, body: SubmissionCreate):
    """Submit or revise a prediction before its deadline."""
    submission_id = await prediction_service.submit_prediction(
        contest_id,
        body.user_id,
        body.prediction_id,
        body.choice,
        body.confidence,
        body.reasoning,
    )
    return {"submission_id": submission_id}


@router.get("/{contest_id}/leaderboard")
async def get_leaderboard(contest_id: str):
    return await leaderboard_service.get_leaderboard(contest_id)


@router.get("/{contest_id}/status", response_model=ContestStatusResponse)
async def get_status(contest_id: str):
    return await contest_service.get_contest_status(contest_id)


@router.get("/{contest_id}/results")
async def get_results(contest_id: str):
    return await payout_service.get_contest_results(contest_id)
