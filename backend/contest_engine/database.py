"""
backend/contest_engine/database.py

Purpose:
    MongoDB connection bootstrap and index management for contest, participant,
    prediction, game result and payout collections. Unique indexes carry the
    identity constraints the services rely on (one registration per user and
    contest, one submission per user and prediction, one payout per user,
    contest and kind).

Dependencies:
    - motor.motor_asyncio
    - pymongo
    - contest_engine.config
"""

import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import OperationFailure

from contest_engine.config import settings

client: AsyncIOMotorClient = None
db: AsyncIOMotorDatabase = None

logger = logging.getLogger("contest_engine.database")


async def connect_db() -> None:
    global client, db
    client = AsyncIOMotorClient(
        settings.MONGO_URI,
        maxPoolSize=25,
        minPoolSize=5,
        serverSelectionTimeoutMS=int(settings.EXTERNAL_CALL_TIMEOUT_SECONDS * 1000),
    )
    db = client[settings.MONGO_DB]
    await _ensure_indexes()


async def close_db() -> None:
    global client
    if client:
        client.close()


async def _ensure_indexes() -> None:
    """Create indexes on startup. Idempotent, safe to run repeatedly."""

    # ---- Contests ----
    await db.contests.create_index([("status", 1), ("start_date", 1)])
    await db.contests.create_index([("status", 1), ("end_date", 1)])
    await db.contests.create_index([("season", 1), ("week", 1)])

    # ---- Participants ----
    await db.participants.create_index([("contest_id", 1), ("user_id", 1)], unique=True)
    await db.participants.create_index([("contest_id", 1), ("total_score", -1)])

    # ---- Prediction definitions ----
    await db.prediction_definitions.create_index([("contest_id", 1), ("deadline", 1)])
    await db.prediction_definitions.create_index("game_id")

    # ---- Submissions ----
    await db.prediction_submissions.create_index(
        [("user_id", 1), ("prediction_id", 1)], unique=True,
    )
    await db.prediction_submissions.create_index(
        [("prediction_id", 1), ("resolved", 1)]
    )
    await db.prediction_submissions.create_index(
        [("contest_id", 1), ("user_id", 1), ("submitted_at", 1)]
    )

    # ---- Game result cache ----
    try:
        await db.game_results.create_index("game_id", unique=True)
    except OperationFailure as exc:
        logger.warning("Skipped unique game_results index: %s", exc)
        await db.game_results.create_index("game_id", name="game_id_lookup")
    await db.game_results.create_index([("tier", 1), ("next_poll_at", 1)])
    await db.game_results.create_index("needs_review", sparse=True)

    # ---- Leaderboards ----
    await db.leaderboards.create_index("contest_id", unique=True)

    # ---- Payouts / refunds ----
    await db.payout_records.create_index(
        [("contest_id", 1), ("user_id", 1), ("kind", 1)], unique=True,
    )
    await db.payout_records.create_index([("status", 1), ("attempts", 1)])

    # ---- Operator review queue ----
    await db.review_queue.create_index([("game_id", 1), ("resolved_at", 1)])

    logger.info("MongoDB indexes ensured")
