"""
backend/tests/conftest.py

Purpose:
    Shared pytest bootstrap: import paths, an in-memory stand-in for the
    motor database handle, fake external collaborators and factories that
    build contests through the real services.
"""

from __future__ import annotations

import copy
import sys
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

_THIS_FILE = Path(__file__).resolve()
_BACKEND_DIR = _THIS_FILE.parents[1]
_REPO_ROOT = _THIS_FILE.parents[2]

for candidate in (str(_BACKEND_DIR), str(_REPO_ROOT)):
    if candidate not in sys.path:
        sys.path.insert(0, candidate)

import contest_engine.database as _db  # noqa: E402
from contest_engine.errors import ExternalServiceError  # noqa: E402
from contest_engine.models.game import GameSnapshot  # noqa: E402
from contest_engine.services import (  # noqa: E402
    contest_service,
    evaluation_service,
    payout_service,
)
from contest_engine.services.event_bus import event_bus  # noqa: E402
from contest_engine.utils import utcnow  # noqa: E402
from contest_engine.workers import result_poller  # noqa: E402


# ---------- In-memory collections ----------

_MISSING = object()


def _get(doc: dict, dotted: str):
    cur: Any = doc
    for part in dotted.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return _MISSING
        cur = cur[part]
    return cur


def _set(doc: dict, dotted: str, value) -> None:
    parts = dotted.split(".")
    cur = doc
    for key in parts[:-1]:
        if not isinstance(cur.get(key), dict):
            cur[key] = {}
        cur = cur[key]
    cur[parts[-1]] = value


def _unset(doc: dict, dotted: str) -> None:
    parts = dotted.split(".")
    cur = doc
    for key in parts[:-1]:
        cur = cur.get(key)
        if not isinstance(cur, dict):
            return
    cur.pop(parts[-1], None)


def _compare(op: str, value, arg) -> bool:
    present = None if value is _MISSING else value
    if op == "$in":
        if isinstance(present, list):
            return any(v in arg for v in present)
        return present in arg
    if op == "$nin":
        return present not in arg
    if op == "$ne":
        return present != arg
    if op == "$exists":
        return (value is not _MISSING) == bool(arg)
    if present is None:
        return False
    if op == "$lt":
        return present < arg
    if op == "$lte":
        return present <= arg
    if op == "$gt":
        return present > arg
    if op == "$gte":
        return present >= arg
    raise NotImplementedError(op)


def _matches(doc: dict, query: dict | None) -> bool:
    for key, cond in (query or {}).items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in cond):
                return False
            continue
        if key == "$and":
            if not all(_matches(doc, sub) for sub in cond):
                return False
            continue
        value = _get(doc, key)
        if isinstance(cond, dict) and cond and all(str(k).startswith("$") for k in cond):
            if not all(_compare(op, value, arg) for op, arg in cond.items()):
                return False
            continue
        present = None if value is _MISSING else value
        if isinstance(present, list) and not isinstance(cond, list):
            if cond not in present:
                return False
        elif present != cond:
            return False
    return True


def _sort_key(value):
    if value is _MISSING or value is None:
        return (0, 0)
    return (1, value)


def _apply_update(doc: dict, update: dict) -> None:
    for dotted, value in update.get("$set", {}).items():
        _set(doc, dotted, copy.deepcopy(value))
    for dotted, amount in update.get("$inc", {}).items():
        current = _get(doc, dotted)
        _set(doc, dotted, (0 if current is _MISSING or current is None else current) + amount)
    for dotted in update.get("$unset", {}):
        _unset(doc, dotted)
    for dotted, value in update.get("$push", {}).items():
        current = _get(doc, dotted)
        items = [] if current is _MISSING or current is None else list(current)
        items.append(copy.deepcopy(value))
        _set(doc, dotted, items)


class FakeCursor:
    def __init__(self, docs: list[dict]):
        self._docs = docs

    def sort(self, key, direction=None):
        keys = [(key, direction or 1)] if isinstance(key, str) else list(key)
        for field, dirn in reversed(keys):
            self._docs.sort(key=lambda d: _sort_key(_get(d, field)), reverse=dirn == -1)
        return self

    def limit(self, n: int):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        docs = self._docs if length is None else self._docs[:length]
        return [copy.deepcopy(d) for d in docs]


class FakeCollection:
    def __init__(self, name: str, unique: list[tuple[str, ...]] | None = None):
        self.name = name
        self.docs: list[dict] = []
        self._unique = unique or []

    # ----- helpers -----

    def _check_unique(self, candidate: dict) -> None:
        for fields in self._unique:
            key = tuple(_get(candidate, f) for f in fields)
            for doc in self.docs:
                if doc is candidate:
                    continue
                if tuple(_get(doc, f) for f in fields) == key:
                    raise DuplicateKeyError(f"E11000 duplicate key {self.name} {fields}")

    def _insert(self, doc: dict) -> dict:
        stored = copy.deepcopy(doc)
        stored.setdefault("_id", ObjectId())
        self._check_unique(stored)
        self.docs.append(stored)
        return stored

    def _upsert_doc(self, query: dict, update: dict) -> dict:
        seed: dict = {}
        for key, cond in query.items():
            if key.startswith("$"):
                continue
            if isinstance(cond, dict) and cond and all(str(k).startswith("$") for k in cond):
                continue
            _set(seed, key, copy.deepcopy(cond))
        for dotted, value in update.get("$setOnInsert", {}).items():
            _set(seed, dotted, copy.deepcopy(value))
        _apply_update(seed, update)
        return self._insert(seed)

    # ----- motor-like API -----

    async def find_one(self, query=None, projection=None, sort=None):
        for doc in self.docs:
            if _matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query=None, projection=None):
        return FakeCursor([d for d in self.docs if _matches(d, query)])

    async def insert_one(self, doc: dict):
        stored = self._insert(doc)
        return SimpleNamespace(inserted_id=stored["_id"])

    async def insert_many(self, docs: list[dict], ordered: bool = True):
        ids = [self._insert(doc)["_id"] for doc in docs]
        return SimpleNamespace(inserted_ids=ids)

    async def update_one(self, query, update, upsert: bool = False):
        for doc in self.docs:
            if _matches(doc, query):
                before = copy.deepcopy(doc)
                _apply_update(doc, update)
                self._check_unique(doc)
                return SimpleNamespace(
                    matched_count=1, modified_count=int(before != doc), upserted_id=None,
                )
        if upsert:
            stored = self._upsert_doc(query, update)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=stored["_id"])
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def update_many(self, query, update, upsert: bool = False):
        matched = [doc for doc in self.docs if _matches(doc, query)]
        modified = 0
        for doc in matched:
            before = copy.deepcopy(doc)
            _apply_update(doc, update)
            modified += int(before != doc)
        return SimpleNamespace(matched_count=len(matched), modified_count=modified, upserted_id=None)

    async def find_one_and_update(
        self, query, update, projection=None, return_document=ReturnDocument.BEFORE, upsert: bool = False,
    ):
        for doc in self.docs:
            if _matches(doc, query):
                before = copy.deepcopy(doc)
                _apply_update(doc, update)
                return copy.deepcopy(doc) if return_document == ReturnDocument.AFTER else before
        if upsert:
            stored = self._upsert_doc(query, update)
            return copy.deepcopy(stored) if return_document == ReturnDocument.AFTER else None
        return None

    async def count_documents(self, query=None):
        return sum(1 for doc in self.docs if _matches(doc, query))

    async def delete_many(self, query=None):
        keep = [doc for doc in self.docs if not _matches(doc, query)]
        deleted = len(self.docs) - len(keep)
        self.docs = keep
        return SimpleNamespace(deleted_count=deleted)

    async def bulk_write(self, ops, ordered: bool = True):
        upserted = 0
        modified = 0
        for op in ops:
            result = await self.update_one(op._filter, op._doc, upsert=op._upsert)
            upserted += int(result.upserted_id is not None)
            modified += result.modified_count
        return SimpleNamespace(upserted_count=upserted, modified_count=modified)

    async def create_index(self, keys, unique: bool = False, **_kwargs):
        if unique:
            fields = (keys,) if isinstance(keys, str) else tuple(k for k, _ in keys)
            if fields not in self._unique:
                self._unique.append(fields)
        return "idx"


_UNIQUE_INDEXES = {
    "participants": [("contest_id", "user_id")],
    "prediction_submissions": [("user_id", "prediction_id")],
    "game_results": [("game_id",)],
    "leaderboards": [("contest_id",)],
    "payout_records": [("contest_id", "user_id", "kind")],
}


class FakeDatabase:
    def __init__(self):
        self._collections: dict[str, FakeCollection] = {}

    def __getattr__(self, name: str) -> FakeCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._collections:
            self._collections[name] = FakeCollection(name, list(_UNIQUE_INDEXES.get(name, [])))
        return self._collections[name]

    async def command(self, name: str):
        return {"ok": 1.0}


# ---------- Fake collaborators ----------

class FakeSportsData:
    def __init__(self):
        self.snapshots: dict[str, list] = {}
        self.schedule: list[dict] = []
        self.calls: list[str] = []

    def queue(self, game_id: str, *results) -> None:
        """Each poll pops the next result; the last one repeats."""
        self.snapshots.setdefault(game_id, []).extend(results)

    async def get_game_status(self, game_id: str) -> GameSnapshot:
        self.calls.append(game_id)
        results = self.snapshots.get(game_id) or [ExternalServiceError("no data")]
        result = results.pop(0) if len(results) > 1 else results[0]
        if isinstance(result, Exception):
            raise result
        return result

    async def get_scheduled_games(self, week: int) -> list[dict]:
        return list(self.schedule)


class FakeOracle:
    def __init__(self, baselines: dict[str, dict] | None = None, fail: bool = False):
        self.baselines = baselines or {}
        self.fail = fail
        self.calls: list[str] = []

    async def get_baseline_choice(self, prediction_id: str):
        self.calls.append(prediction_id)
        if self.fail:
            raise ExternalServiceError("oracle down")
        return self.baselines.get(prediction_id)


class FakeGateway:
    def __init__(self, fail_users: set[str] | None = None):
        self.fail_users = set(fail_users or set())
        self.payouts: list[tuple[str, float, str]] = []
        self.refunds: list[tuple[str, float, str]] = []

    async def request_payout(self, user_id: str, amount: float, contest_id: str) -> str:
        if user_id in self.fail_users:
            raise ExternalServiceError("gateway unavailable")
        self.payouts.append((user_id, amount, contest_id))
        return f"pay-{user_id}"

    async def request_refund(self, user_id: str, amount: float, contest_id: str) -> str:
        if user_id in self.fail_users:
            raise ExternalServiceError("gateway unavailable")
        self.refunds.append((user_id, amount, contest_id))
        return f"ref-{user_id}"


# ---------- Fixtures ----------

@pytest.fixture
def fake_db(monkeypatch):
    db = FakeDatabase()
    monkeypatch.setattr(_db, "db", db, raising=False)
    return db


@pytest.fixture(autouse=True)
def published_events(monkeypatch):
    """Capture events instead of queueing them on the process-wide bus."""
    events: list = []
    monkeypatch.setattr(event_bus, "publish", events.append)
    return events


@pytest.fixture
def sports_data(monkeypatch):
    fake = FakeSportsData()
    monkeypatch.setattr(result_poller, "sports_data_provider", fake)
    monkeypatch.setattr(contest_service, "sports_data_provider", fake)
    return fake


@pytest.fixture
def oracle(monkeypatch):
    fake = FakeOracle()
    monkeypatch.setattr(evaluation_service, "oracle_provider", fake)
    return fake


@pytest.fixture
def gateway(monkeypatch):
    fake = FakeGateway()
    monkeypatch.setattr(payout_service, "payment_gateway", fake)
    return fake


@pytest.fixture
def contest_factory(fake_db):
    """Build an active contest with registered users and one question per spec."""

    async def _build(*, users=("alice", "bob"), questions=None, activate=True, **overrides) -> dict:
        now = utcnow()
        spec = {
            "name": "Week 5 Pick'em",
            "type": "weekly",
            "season": 2025,
            "week": 5,
            "start_date": now - timedelta(hours=1),
            "end_date": now + timedelta(days=7),
            "entry_fee": 10.0,
            "max_participants": 10,
            "prize_pool": {
                "total_prize": 100.0,
                "distribution": [
                    {"rank": 1, "percentage": 50},
                    {"rank": 2, "percentage": 30},
                    {"rank": 3, "percentage": 20},
                ],
            },
        }
        spec.update(overrides)
        contest = await contest_service.create_contest(spec)
        contest_id = str(contest["_id"])
        for user_id in users:
            await contest_service.register_participant(contest_id, user_id, user_id.title())

        definitions = []
        if questions is None:
            questions = [{"type": "spread", "game_id": "g1", "line": -3.5}]
        for question in questions:
            payload = {
                "options": ["Home", "Away"],
                "deadline": now + timedelta(days=1),
                **question,
            }
            definitions.append(await contest_service.add_prediction_definition(contest_id, payload))

        if activate:
            await contest_service.activate_contest(contest_id)
        return {"contest_id": contest_id, "definitions": definitions}

    return _build


@pytest.fixture
def finalize_game(fake_db):
    """Write a confirmed-final result straight into the cache."""

    async def _finalize(game_id: str, home: int, away: int, stats: dict | None = None, *, confirmed_ago=None):
        confirmed_at = utcnow() - (confirmed_ago or timedelta(minutes=1))
        await fake_db.game_results.update_one(
            {"game_id": game_id},
            {
                "$set": {
                    "status": "final",
                    "final_score": {"home": home, "away": away},
                    "stats_snapshot": stats or {},
                    "confirmed_final_at": confirmed_at,
                    "needs_review": False,
                    "tier": "final",
                },
            },
            upsert=True,
        )

    return _finalize
