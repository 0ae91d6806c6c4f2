"""
backend/tests/test_routers.py

Purpose:
    Router-level tests for contest and admin endpoints, plus the domain
    error mapping of the application.
"""

from __future__ import annotations

import sys
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, "backend")

from contest_engine.models.contest import ContestCancel
from contest_engine.models.game import ReviewClear
from contest_engine.models.participant import ParticipantRegister
from contest_engine.models.prediction import SubmissionCreate
from contest_engine.routers import admin as admin_router
from contest_engine.routers import contests as contests_router
from contest_engine.services.game_result_repository import GameResultRepository
from contest_engine.utils import utcnow


@pytest.mark.asyncio
async def test_register_and_submit_through_router(fake_db, contest_factory):
    built = await contest_factory(users=())
    cid = built["contest_id"]
    pid = str(built["definitions"][0]["_id"])

    registered = await contests_router.register(cid, ParticipantRegister(user_id="dana", username="Dana"))
    assert registered["user_id"] == "dana"

    result = await contests_router.submit(
        cid, SubmissionCreate(user_id="dana", prediction_id=pid, choice=1, confidence=65),
    )
    assert result["submission_id"] == str(fake_db.prediction_submissions.docs[0]["_id"])

    status = await contests_router.get_status(cid)
    assert status["submissions_total"] == 1

    listed = await contests_router.list_predictions(cid)
    assert [p["id"] for p in listed] == [pid]
    assert "oracle_choice" not in listed[0]


@pytest.mark.asyncio
async def test_leaderboard_and_results_endpoints(fake_db, contest_factory):
    built = await contest_factory(users=("alice", "bob"))
    cid = built["contest_id"]

    board = await contests_router.get_leaderboard(cid)
    results = await contests_router.get_results(cid)

    assert [e["user_id"] for e in board["rankings"]] == ["alice", "bob"]
    assert results["final"] is False
    assert results["payouts"] == []


@pytest.mark.asyncio
async def test_admin_cancel_and_review_queue(fake_db, contest_factory, finalize_game):
    built = await contest_factory()
    cid = built["contest_id"]

    cancelled = await admin_router.cancel_contest(cid, ContestCancel(reason="stadium closed"))
    assert cancelled["status"] == "cancelled"
    assert cancelled["id"] == cid

    await finalize_game("g1", 24, 17)
    await GameResultRepository().flag_for_review("g1", "stat feed disagrees")

    queue = await admin_router.review_queue()
    assert [item["game_id"] for item in queue] == ["g1"]

    cleared = await admin_router.clear_review("g1", ReviewClear(operator="ops-jane"))
    assert cleared["cleared"] is True
    assert await admin_router.review_queue() == []


@pytest.mark.asyncio
async def test_admin_event_bus_stats():
    stats = await admin_router.event_bus_stats()
    assert "per_handler" in stats
    assert "dropped_total" in stats


@pytest.mark.asyncio
async def test_admin_manual_review_payouts(fake_db):
    await fake_db.payout_records.insert_one({
        "contest_id": "c1", "user_id": "alice", "kind": "prize", "status": "failed", "needs_manual_review": True,
    })
    records = await admin_router.payouts_needing_review()
    assert records[0]["user_id"] == "alice"
    assert "id" in records[0]


def _client() -> TestClient:
    from contest_engine.main import app
    return TestClient(app, raise_server_exceptions=False)


def test_http_create_contest_and_error_mapping(fake_db):
    client = _client()
    now = utcnow()
    payload = {
        "name": "Week 6",
        "type": "weekly",
        "season": 2025,
        "week": 6,
        "start_date": (now + timedelta(days=1)).isoformat(),
        "end_date": (now + timedelta(days=8)).isoformat(),
        "max_participants": 1,
    }

    created = client.post("/api/contests", json=payload)
    assert created.status_code == 201
    cid = created.json()["id"]

    first = client.post(f"/api/contests/{cid}/register", json={"user_id": "u1", "username": "U1"})
    full = client.post(f"/api/contests/{cid}/register", json={"user_id": "u2", "username": "U2"})
    assert first.status_code == 201
    assert full.status_code == 409
    assert full.json()["error"] == "ContestFull"

    missing = client.get("/api/contests/000000000000000000000000/status")
    assert missing.status_code == 404

    cancelled = client.post(f"/api/admin/contests/{cid}/cancel", json={"reason": "no quorum"})
    assert cancelled.status_code == 200
    again = client.post(f"/api/admin/contests/{cid}/cancel", json={"reason": "no quorum"})
    assert again.status_code == 409
    assert again.json()["error"] == "StateError"


def test_http_validation_errors_are_flattened(fake_db):
    client = _client()
    response = client.post("/api/contests", json={"name": "", "season": 2025})
    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "ValidationError"
    assert {e["field"] for e in body["errors"]} >= {"name", "start_date", "end_date"}


def test_health_reports_database_and_providers(fake_db):
    response = _client().get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert set(body["providers"]) == {"sports_data", "oracle", "payments"}
    assert body["service"]["contests"]["pending"] == 0
