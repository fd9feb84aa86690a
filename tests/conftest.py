"""
Test configuration for voterchat

Everything here runs in memory: the fakes stand in for PostgreSQL, the
embedding models and the tokenizer so the suite needs no services.
"""

import asyncio
import hashlib
import json
import os
from collections import Counter
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Dict, List

import pytest

from voterchat.errors import IndexMaintenanceError, MissingReferenceError
from voterchat.models.schemas import CategoryScore
from voterchat.services.bulk_embedding import ClaimedRow
from voterchat.services.embedding_service import EmbeddingBackend, EmbeddingService


def hash_vector(text: str, dimension: int) -> List[float]:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [digest[i % len(digest)] / 255.0 for i in range(dimension)]


class HashBackend(EmbeddingBackend):
    """Deterministic embeddings derived from a hash of the text"""

    name = "hash"

    def __init__(self, dimension: int = 8, delay: float = 0):
        self.dimension = dimension
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def embed_texts(self, texts):
        self.calls.append(list(texts))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            return [hash_vector(t, self.dimension) for t in texts]
        finally:
            self.in_flight -= 1


class FakeTracker:
    """In-memory process tracker with the same completed-is-final rule"""

    def __init__(self):
        self.rows: Dict[str, dict] = {}
        self.history = []

    async def check_completed(self, path):
        return self.rows.get(path, {}).get("status") == "completed"

    async def upsert_status(self, path, category, region, session, status):
        self.history.append((path, status))
        row = self.rows.get(path)
        if row and row["status"] == "completed":
            return
        self.rows[path] = {
            "file_type": category,
            "state": region,
            "session": session,
            "status": status,
            "table_name": row.get("table_name") if row else None,
        }

    async def table_for(self, path):
        return self.rows.get(path, {}).get("table_name")

    async def record_table(self, path, table_name):
        row = self.rows.get(path)
        if row and row["status"] != "completed":
            row["table_name"] = table_name

    def status_of(self, path):
        return self.rows[path]["status"]


class FakeStore:
    """In-memory legislative store enforcing the foreign keys"""

    def __init__(self):
        self.sponsors = {}
        self.bills = {}
        self.bill_sponsors = set()
        self.roll_calls = {}
        self.votes = {}

    async def upsert_sponsor(self, sponsor):
        self.sponsors[sponsor.sponsor_id] = sponsor

    async def upsert_bill(self, bill):
        self.bills[bill.bill_id] = bill

    async def link_bill_sponsor(self, bill_id, sponsor_id):
        if sponsor_id not in self.sponsors:
            raise MissingReferenceError(f"sponsor {sponsor_id} not found", table="sponsors")
        self.bill_sponsors.add((bill_id, sponsor_id))

    async def upsert_roll_call(self, roll_call):
        if roll_call.bill_id is not None and roll_call.bill_id not in self.bills:
            raise MissingReferenceError(f"bill {roll_call.bill_id} not found", table="bills")
        self.roll_calls[roll_call.roll_call_id] = roll_call

    async def upsert_roll_call_vote(self, vote):
        if vote.sponsor_id not in self.sponsors:
            raise MissingReferenceError(f"sponsor {vote.sponsor_id} not found", table="sponsors")
        self.votes[(vote.roll_call_id, vote.sponsor_id)] = vote.vote.value


class FakeClassifier:
    def __init__(self):
        self.calls = []

    async def classify_bill(self, title, description):
        self.calls.append((title, description))
        return [CategoryScore(category="Education", score=0.9)]


class FakeBatch:
    def __init__(self, rows, fail=False):
        self.rows = rows
        self.fail = fail
        self.pending = []

    async def write(self, updates):
        if self.fail:
            raise RuntimeError("connection lost")
        self.pending.extend(updates)


class FakeEmbeddingTarget:
    """Claims rows the way FOR UPDATE SKIP LOCKED does: locked rows are invisible"""

    def __init__(self, texts: Dict[int, str], rebuild_failures: int = 0, fail_write_on=()):
        self.name = "fake"
        self.texts = dict(texts)
        self.vectors = {}
        self.locked = set()
        self.writes = Counter()
        self.dropped = 0
        self.rebuild_calls = 0
        self.rebuild_failures = rebuild_failures
        self.fail_write_on = set(fail_write_on)
        self.vectors_at_rebuild = None

    async def drop_index(self):
        self.dropped += 1

    async def rebuild_index(self):
        self.rebuild_calls += 1
        self.vectors_at_rebuild = len(self.vectors)
        if self.rebuild_failures:
            self.rebuild_failures -= 1
            raise IndexMaintenanceError("could not create index")

    @asynccontextmanager
    async def claim(self, limit, skip=()):
        skip = set(skip)
        keys = [
            key for key in sorted(self.texts)
            if key not in self.vectors and key not in self.locked and key not in skip
        ][:limit]
        self.locked.update(keys)
        batch = FakeBatch(
            [ClaimedRow(key, self.texts[key]) for key in keys],
            fail=bool(self.fail_write_on.intersection(keys)),
        )
        try:
            yield batch
            # commit
            for key, vector in batch.pending:
                self.vectors[key] = vector
                self.writes[key] += 1
        finally:
            self.locked.difference_update(keys)


class FakeExecutor:
    """Returns canned rows per statement and records what was executed"""

    def __init__(self, rows=None, error=None):
        self.rows = rows if rows is not None else [{"n": 1}]
        self.error = error
        self.executed = []

    async def fetch_all(self, statement):
        self.executed.append(statement)
        if self.error:
            raise self.error
        return self.rows


class CharEncoding:
    """One token per character"""

    def encode(self, text):
        return list(text)


class FakeResult:
    def __init__(self, rows=None, scalar=None):
        self._rows = rows or []
        self._scalar = scalar

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)

    def scalar_one(self):
        return self._scalar


class FakeConnection:
    def __init__(self, engine):
        self.engine = engine

    async def execute(self, statement, params=None):
        self.engine.statements.append((str(statement), params))
        return self.engine.next_result()

    async def exec_driver_sql(self, statement, params=None):
        return await self.execute(statement, params)

    async def commit(self):
        return None

    async def rollback(self):
        return None


class RecordingEngine:
    """Stands in for an AsyncEngine; hands out scripted results in order"""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.statements = []

    def next_result(self):
        return self.results.pop(0) if self.results else FakeResult()

    @asynccontextmanager
    async def begin(self):
        yield FakeConnection(self)

    @asynccontextmanager
    async def connect(self):
        yield FakeConnection(self)


def row(**fields):
    return SimpleNamespace(_mapping=dict(fields), **fields)


def write_json(path, payload):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f)
    return path


@pytest.fixture
def tracker():
    return FakeTracker()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def classifier():
    return FakeClassifier()


@pytest.fixture
def backend():
    return HashBackend(dimension=8)


@pytest.fixture
def embedder(backend):
    return EmbeddingService(backend, dimension=8, chunk_size=100, chunk_overlap=10, max_concurrency=4)


@pytest.fixture
def corpus(tmp_path):
    """Builds <root>/<region>/<session>/<category>/<name>.json files"""
    root = tmp_path / "corpus"
    root.mkdir()

    def add(region, session, category, name, payload):
        return write_json(str(root / region / session / category / f"{name}.json"), payload)

    add.root = str(root)
    return add
