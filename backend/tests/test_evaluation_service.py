"""
backend/tests/test_evaluation_service.py

Purpose:
    Evaluation engine: exactly-once scoring, oracle baselines, pushes,
    unresolved data routing, cancellation and commit-log replay.
"""

from __future__ import annotations

import asyncio
import sys

import pytest

sys.path.insert(0, "backend")

from contest_engine.errors import ContestNotActive
from contest_engine.services import contest_service, evaluation_service, prediction_service
from contest_engine.services.event_models import ContestScoredEvent, GameReviewRequiredEvent

_FLAT_SCORING = {
    "difficulty_multipliers": {"easy": 1.0, "medium": 1.0, "hard": 1.0, "expert": 1.0},
    "category_weights": {"Game Lines": 1.0},
    "streak_bonus": {"enabled": False},
    "oracle_beat_bonus": 25,
}


async def _participant(fake_db, contest_id, user_id):
    return await fake_db.participants.find_one({"contest_id": contest_id, "user_id": user_id})


@pytest.mark.asyncio
async def test_scores_submissions_and_updates_aggregates(fake_db, contest_factory, finalize_game, oracle, published_events):
    built = await contest_factory(users=("a", "b", "c"), scoring=_FLAT_SCORING)
    cid = built["contest_id"]
    pid = str(built["definitions"][0]["_id"])
    await prediction_service.submit_prediction(cid, "a", pid, choice=0, confidence=80)
    await prediction_service.submit_prediction(cid, "b", pid, choice=0, confidence=50)
    await prediction_service.submit_prediction(cid, "c", pid, choice=1, confidence=90)
    await finalize_game("g1", 24, 17)

    summary = await evaluation_service.evaluate_game("g1")

    assert summary == {cid: 3}
    a, b, c = [await _participant(fake_db, cid, u) for u in ("a", "b", "c")]
    assert (a["total_score"], b["total_score"], c["total_score"]) == (80, 50, 0)
    assert (a["correct_count"], c["correct_count"]) == (1, 0)
    assert a["resolved_count"] == 1 and c["resolved_count"] == 1
    assert a["current_streak"] == 1 and c["current_streak"] == 0
    statuses = {s["user_id"]: (s["status"], s["points_earned"]) for s in fake_db.prediction_submissions.docs}
    assert statuses == {"a": ("correct", 80), "b": ("correct", 50), "c": ("incorrect", 0)}
    assert any(isinstance(e, ContestScoredEvent) and e.resolved == 3 for e in published_events)


@pytest.mark.asyncio
async def test_reevaluation_is_a_no_op(fake_db, contest_factory, finalize_game, oracle):
    built = await contest_factory(scoring=_FLAT_SCORING)
    cid = built["contest_id"]
    await prediction_service.submit_prediction(cid, "alice", str(built["definitions"][0]["_id"]), 0, 80)
    await finalize_game("g1", 24, 17)

    await evaluation_service.evaluate_game("g1")
    second = await evaluation_service.evaluate_game("g1")

    assert second == {cid: 0}
    alice = await _participant(fake_db, cid, "alice")
    assert alice["total_score"] == 80
    assert alice["resolved_count"] == 1
    assert fake_db.prediction_submissions.docs[0]["points_earned"] == 80


@pytest.mark.asyncio
async def test_oracle_beat_bonus_applied_once(fake_db, contest_factory, finalize_game, oracle):
    built = await contest_factory(
        users=("alice",),
        questions=[{"type": "moneyline", "game_id": "g1"}],
        scoring=_FLAT_SCORING,
    )
    cid = built["contest_id"]
    pid = str(built["definitions"][0]["_id"])
    oracle.baselines[pid] = {"choice": 0, "confidence": 0.7}
    await prediction_service.submit_prediction(cid, "alice", pid, choice=1, confidence=100)
    await finalize_game("g1", 10, 21)

    await evaluation_service.evaluate_game("g1")
    await evaluation_service.evaluate_game("g1")

    alice = await _participant(fake_db, cid, "alice")
    assert alice["oracle_beats"] == 1
    assert alice["total_score"] == 125
    definition = await fake_db.prediction_definitions.find_one({})
    assert definition["oracle_choice"] == 0
    assert oracle.calls == [pid]


@pytest.mark.asyncio
async def test_oracle_outage_means_no_bonus(fake_db, contest_factory, finalize_game, oracle):
    oracle.fail = True
    built = await contest_factory(users=("alice",), questions=[{"type": "moneyline", "game_id": "g1"}], scoring=_FLAT_SCORING)
    cid = built["contest_id"]
    await prediction_service.submit_prediction(cid, "alice", str(built["definitions"][0]["_id"]), 1, 100)
    await finalize_game("g1", 10, 21)

    await evaluation_service.evaluate_game("g1")

    alice = await _participant(fake_db, cid, "alice")
    assert alice["total_score"] == 100
    assert alice["oracle_beats"] == 0


@pytest.mark.asyncio
async def test_push_voids_without_counting(fake_db, contest_factory, finalize_game, oracle):
    built = await contest_factory(users=("alice",), questions=[{"type": "spread", "game_id": "g1", "line": -3.0}])
    cid = built["contest_id"]
    await prediction_service.submit_prediction(cid, "alice", str(built["definitions"][0]["_id"]), 0, 80)
    await finalize_game("g1", 20, 17)

    summary = await evaluation_service.evaluate_game("g1")

    assert summary == {cid: 0}
    submission = fake_db.prediction_submissions.docs[0]
    assert (submission["resolved"], submission["status"], submission["points_earned"]) == (True, "void", 0)
    alice = await _participant(fake_db, cid, "alice")
    assert alice["resolved_count"] == 0


@pytest.mark.asyncio
async def test_missing_stats_route_game_to_review(fake_db, contest_factory, finalize_game, oracle, published_events):
    built = await contest_factory(
        users=("alice",),
        questions=[
            {"type": "spread", "game_id": "g1", "line": -3.5},
            {
                "type": "player_prop",
                "game_id": "g1",
                "line": 250.5,
                "subject": "qb-12",
                "stat_key": "passing_yards",
                "options": ["Over", "Under"],
            },
        ],
    )
    cid = built["contest_id"]
    for definition in built["definitions"]:
        await prediction_service.submit_prediction(cid, "alice", str(definition["_id"]), 0, 50)
    await finalize_game("g1", 24, 17, stats={})

    summary = await evaluation_service.evaluate_game("g1")

    assert summary == {}
    assert all(not s["resolved"] for s in fake_db.prediction_submissions.docs)
    game = await fake_db.game_results.find_one({"game_id": "g1"})
    assert game["needs_review"] is True
    assert len(fake_db.review_queue.docs) == 1
    assert any(isinstance(e, GameReviewRequiredEvent) for e in published_events)


@pytest.mark.asyncio
async def test_unconfirmed_game_not_evaluated(fake_db, contest_factory, oracle):
    built = await contest_factory(users=("alice",))
    await prediction_service.submit_prediction(built["contest_id"], "alice", str(built["definitions"][0]["_id"]), 0, 50)
    await fake_db.game_results.update_one(
        {"game_id": "g1"}, {"$set": {"status": "final", "final_score": {"home": 1, "away": 0}}},
    )

    assert await evaluation_service.evaluate_game("g1") == {}
    assert fake_db.prediction_submissions.docs[0]["resolved"] is False


@pytest.mark.asyncio
async def test_cancelled_contest_is_not_scored(fake_db, contest_factory, finalize_game, oracle, gateway):
    built = await contest_factory(users=("alice",))
    cid = built["contest_id"]
    await prediction_service.submit_prediction(cid, "alice", str(built["definitions"][0]["_id"]), 0, 50)
    await contest_service.cancel_contest(cid, "venue flooded")
    await finalize_game("g1", 24, 17)

    summary = await evaluation_service.evaluate_game("g1")

    assert summary == {cid: 0}
    alice = await _participant(fake_db, cid, "alice")
    assert alice["total_score"] == 0
    assert fake_db.prediction_submissions.docs[0]["status"] == "void"


@pytest.mark.asyncio
async def test_cancellation_mid_run_halts_scoring(fake_db, contest_factory, finalize_game, oracle, monkeypatch):
    built = await contest_factory(users=("a", "b", "c"))
    cid = built["contest_id"]
    pid = str(built["definitions"][0]["_id"])
    for user in ("a", "b", "c"):
        await prediction_service.submit_prediction(cid, user, pid, 0, 50)
    await finalize_game("g1", 24, 17)

    original = evaluation_service._resolve_submission
    resolved_users: list[str] = []

    async def _resolve_then_cancel(config, definition, submission, game, oracle_choice):
        result = await original(config, definition, submission, game, oracle_choice)
        resolved_users.append(submission["user_id"])
        if len(resolved_users) == 1:
            await fake_db.contests.update_one({}, {"$set": {"status": "cancelled"}})
        return result

    monkeypatch.setattr(evaluation_service, "_resolve_submission", _resolve_then_cancel)
    summary = await evaluation_service.evaluate_game("g1")

    assert summary == {cid: 1}
    assert len(resolved_users) == 1


@pytest.mark.asyncio
async def test_replay_finishes_interrupted_resolution(fake_db, contest_factory, finalize_game, oracle, monkeypatch):
    built = await contest_factory(users=("alice",), scoring=_FLAT_SCORING)
    cid = built["contest_id"]
    await prediction_service.submit_prediction(cid, "alice", str(built["definitions"][0]["_id"]), 0, 80)
    await finalize_game("g1", 24, 17)

    async def _crash(*_args, **_kwargs):
        raise RuntimeError("process died")

    original = evaluation_service.predictions.mark_resolved
    monkeypatch.setattr(evaluation_service.predictions, "mark_resolved", _crash)
    assert await evaluation_service.evaluate_game("g1") == {}
    alice = await _participant(fake_db, cid, "alice")
    assert alice["total_score"] == 80
    assert fake_db.prediction_submissions.docs[0]["resolved"] is False

    monkeypatch.setattr(evaluation_service.predictions, "mark_resolved", original)
    await evaluation_service.evaluate_game("g1")

    alice = await _participant(fake_db, cid, "alice")
    assert alice["total_score"] == 80
    assert alice["resolved_count"] == 1
    submission = fake_db.prediction_submissions.docs[0]
    assert (submission["resolved"], submission["points_earned"]) == (True, 80)


@pytest.mark.asyncio
async def test_shared_game_scored_for_every_contest(fake_db, contest_factory, finalize_game, oracle):
    first = await contest_factory(users=("alice",), scoring=_FLAT_SCORING)
    second = await contest_factory(users=("alice",), scoring=_FLAT_SCORING, name="Parallel contest")
    for built in (first, second):
        await prediction_service.submit_prediction(
            built["contest_id"], "alice", str(built["definitions"][0]["_id"]), 0, 60,
        )
    await finalize_game("g1", 24, 17)

    summary = await evaluation_service.evaluate_game("g1")

    assert summary == {first["contest_id"]: 1, second["contest_id"]: 1}
    for built in (first, second):
        alice = await _participant(fake_db, built["contest_id"], "alice")
        assert alice["total_score"] == 60


@pytest.mark.asyncio
async def test_force_evaluate_requires_active_contest(fake_db, contest_factory):
    built = await contest_factory(activate=False)
    with pytest.raises(ContestNotActive):
        await evaluation_service.force_evaluate(built["contest_id"])


@pytest.mark.asyncio
async def test_force_evaluate_resolves_and_recomputes(fake_db, contest_factory, finalize_game, oracle):
    built = await contest_factory(users=("alice", "bob"), scoring=_FLAT_SCORING)
    cid = built["contest_id"]
    pid = str(built["definitions"][0]["_id"])
    await prediction_service.submit_prediction(cid, "alice", pid, 0, 80)
    await prediction_service.submit_prediction(cid, "bob", pid, 1, 80)
    await finalize_game("g1", 24, 17)

    result = await evaluation_service.force_evaluate(cid)

    assert result["games_evaluated"] == 1
    assert result["resolved"] == 2
    assert result["leaderboard_version"] == 1
    assert result["completed"] is False
    board = await fake_db.leaderboards.find_one({"contest_id": cid})
    assert [e["user_id"] for e in board["rankings"]] == ["alice", "bob"]


def _submissions(fake_db, contest_id):
    return [s for s in fake_db.prediction_submissions.docs if s["contest_id"] == contest_id]


@pytest.mark.asyncio
async def test_cancellation_right_after_commit_keeps_score_consistent(
    fake_db, contest_factory, finalize_game, oracle, monkeypatch,
):
    built = await contest_factory(users=("alice",), scoring=_FLAT_SCORING)
    cid = built["contest_id"]
    await prediction_service.submit_prediction(cid, "alice", str(built["definitions"][0]["_id"]), 0, 80)
    await finalize_game("g1", 24, 17)

    original = evaluation_service.participants.apply_resolution
    cancellations: list[asyncio.Future] = []

    async def _commit_then_cancel(*args, **kwargs):
        updated = await original(*args, **kwargs)
        cancellations.append(asyncio.ensure_future(contest_service.cancel_contest(cid, "league suspended")))
        await asyncio.sleep(0)
        return updated

    monkeypatch.setattr(evaluation_service.participants, "apply_resolution", _commit_then_cancel)
    await evaluation_service.evaluate_game("g1")
    await asyncio.gather(*cancellations)

    alice = await _participant(fake_db, cid, "alice")
    submissions = _submissions(fake_db, cid)
    assert alice["total_score"] == sum(s["points_earned"] for s in submissions) == 80
    assert [s["status"] for s in submissions] == ["correct"]
    contest = await fake_db.contests.find_one({})
    assert contest["status"] == "cancelled"


@pytest.mark.asyncio
async def test_void_written_over_committed_submission_is_restored(
    fake_db, contest_factory, finalize_game, oracle, monkeypatch,
):
    built = await contest_factory(users=("alice",), scoring=_FLAT_SCORING)
    cid = built["contest_id"]
    await prediction_service.submit_prediction(cid, "alice", str(built["definitions"][0]["_id"]), 0, 80)
    await finalize_game("g1", 24, 17)

    original = evaluation_service.participants.apply_resolution

    async def _commit_then_foreign_void(participant, submission_id, points, aggregates):
        updated = await original(participant, submission_id, points, aggregates)
        await fake_db.prediction_submissions.update_one(
            {"contest_id": cid},
            {"$set": {"resolved": True, "status": "void", "points_earned": 0}},
        )
        return updated

    monkeypatch.setattr(evaluation_service.participants, "apply_resolution", _commit_then_foreign_void)
    await evaluation_service.evaluate_game("g1")

    alice = await _participant(fake_db, cid, "alice")
    submission = _submissions(fake_db, cid)[0]
    assert (submission["status"], submission["points_earned"]) == ("correct", 80)
    assert alice["total_score"] == 80


@pytest.mark.asyncio
async def test_cancellation_finishes_committed_but_unmarked_submission(
    fake_db, contest_factory, finalize_game, oracle, monkeypatch,
):
    built = await contest_factory(users=("alice", "bob"), scoring=_FLAT_SCORING)
    cid = built["contest_id"]
    pid = str(built["definitions"][0]["_id"])
    await prediction_service.submit_prediction(cid, "alice", pid, 0, 80)
    await prediction_service.submit_prediction(cid, "bob", pid, 1, 70)
    await finalize_game("g1", 24, 17)

    async def _crash(*_args, **_kwargs):
        raise RuntimeError("process died")

    original = evaluation_service.predictions.mark_resolved
    monkeypatch.setattr(evaluation_service.predictions, "mark_resolved", _crash)
    await evaluation_service.evaluate_game("g1")
    monkeypatch.setattr(evaluation_service.predictions, "mark_resolved", original)

    await contest_service.cancel_contest(cid, "league suspended")

    by_user = {s["user_id"]: s for s in _submissions(fake_db, cid)}
    assert (by_user["alice"]["status"], by_user["alice"]["points_earned"]) == ("correct", 80)
    assert (by_user["bob"]["status"], by_user["bob"]["points_earned"]) == ("void", 0)
    alice = await _participant(fake_db, cid, "alice")
    bob = await _participant(fake_db, cid, "bob")
    assert (alice["total_score"], alice["resolved_count"]) == (80, 1)
    assert (bob["total_score"], bob["resolved_count"]) == (0, 0)


@pytest.mark.asyncio
async def test_two_games_for_one_participant_resolve_concurrently(
    fake_db, contest_factory, finalize_game, oracle, monkeypatch,
):
    built = await contest_factory(
        users=("alice",),
        scoring=_FLAT_SCORING,
        questions=[
            {"type": "spread", "game_id": "g1", "line": -3.5},
            {"type": "spread", "game_id": "g2", "line": 2.5},
        ],
    )
    cid = built["contest_id"]
    first, second = (str(d["_id"]) for d in built["definitions"])
    await prediction_service.submit_prediction(cid, "alice", first, 0, 80)
    await prediction_service.submit_prediction(cid, "alice", second, 0, 60)
    await finalize_game("g1", 24, 17)
    await finalize_game("g2", 20, 21)

    original_get = evaluation_service.participants.get

    async def _yielding_get(contest_id, user_id):
        await asyncio.sleep(0)
        return await original_get(contest_id, user_id)

    monkeypatch.setattr(evaluation_service.participants, "get", _yielding_get)
    summaries = await asyncio.gather(
        evaluation_service.evaluate_game("g1"),
        evaluation_service.evaluate_game("g2"),
    )

    assert summaries == [{cid: 1}, {cid: 1}]
    alice = await _participant(fake_db, cid, "alice")
    submissions = _submissions(fake_db, cid)
    assert alice["total_score"] == sum(s["points_earned"] for s in submissions) == 140
    assert (alice["resolved_count"], alice["correct_count"], alice["current_streak"]) == (2, 2, 2)
    assert alice["version"] == 3
    assert len(evaluation_service._participant_locks) == 0


@pytest.mark.asyncio
async def test_version_conflict_is_retried_once(fake_db, contest_factory, finalize_game, oracle, monkeypatch):
    built = await contest_factory(users=("alice",), scoring=_FLAT_SCORING)
    cid = built["contest_id"]
    await prediction_service.submit_prediction(cid, "alice", str(built["definitions"][0]["_id"]), 0, 80)
    await finalize_game("g1", 24, 17)

    original = evaluation_service.participants.apply_resolution
    calls = {"n": 0}

    async def _concurrent_writer_first(participant, submission_id, points, aggregates):
        calls["n"] += 1
        if calls["n"] == 1:
            await fake_db.participants.update_one({"_id": participant["_id"]}, {"$inc": {"version": 1}})
        return await original(participant, submission_id, points, aggregates)

    monkeypatch.setattr(evaluation_service.participants, "apply_resolution", _concurrent_writer_first)
    summary = await evaluation_service.evaluate_game("g1")

    assert summary == {cid: 1}
    assert calls["n"] == 2
    alice = await _participant(fake_db, cid, "alice")
    assert (alice["total_score"], alice["resolved_count"]) == (80, 1)
    assert _submissions(fake_db, cid)[0]["points_earned"] == 80


@pytest.mark.asyncio
async def test_second_version_conflict_leaves_submission_open(
    fake_db, contest_factory, finalize_game, oracle, monkeypatch,
):
    built = await contest_factory(users=("alice",), scoring=_FLAT_SCORING)
    cid = built["contest_id"]
    await prediction_service.submit_prediction(cid, "alice", str(built["definitions"][0]["_id"]), 0, 80)
    await finalize_game("g1", 24, 17)

    original = evaluation_service.participants.apply_resolution

    async def _always_raced(participant, submission_id, points, aggregates):
        await fake_db.participants.update_one({"_id": participant["_id"]}, {"$inc": {"version": 1}})
        return await original(participant, submission_id, points, aggregates)

    monkeypatch.setattr(evaluation_service.participants, "apply_resolution", _always_raced)
    summary = await evaluation_service.evaluate_game("g1")

    assert summary == {}
    alice = await _participant(fake_db, cid, "alice")
    assert alice["total_score"] == 0
    assert _submissions(fake_db, cid)[0]["resolved"] is False
