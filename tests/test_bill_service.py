"""
Test cases for bill similarity and category search
"""

import json
from datetime import datetime

import pytest

from voterchat.errors import BillNotFoundError
from voterchat.models.schemas import SimilaritySearch
from voterchat.services.bill_service import BillService

from tests.conftest import FakeResult, RecordingEngine, row


def bill_row(bill_id, similarity=None):
    fields = dict(
        bill_id=bill_id,
        bill_number=f"HB{bill_id}",
        title="School lunch funding",
        description="Funds school lunches",
        subjects=[{"subject_name": "Education"}],
        inferred_categories=[{"category": "Education", "score": 0.9}],
        committee_name="Education",
        last_action="Passed House",
        last_action_date=datetime(2023, 2, 1),
    )
    if similarity is not None:
        fields["similarity"] = similarity
    return row(**fields)


@pytest.mark.asyncio
async def test_find_similar_bills(embedder):
    engine = RecordingEngine([FakeResult([bill_row(1, 0.93), bill_row(2, 0.85)])])

    matches = await BillService(engine, embedder).find_similar_bills("school meals", threshold=0.8, limit=2)

    assert [m.bill_id for m in matches] == [1, 2]
    assert matches[0].similarity == 0.93
    sql, params = engine.statements[0]
    assert "<=> CAST(:query_embedding AS vector)" in sql
    assert params["threshold"] == 0.8
    assert params["limit"] == 2
    assert params["query_embedding"].startswith("[")


@pytest.mark.asyncio
@pytest.mark.parametrize("query,limit", [("", 10), ("   ", 10), ("schools", 0)])
async def test_find_similar_bills_validates_input(embedder, backend, query, limit):
    with pytest.raises(ValueError):
        await BillService(RecordingEngine(), embedder).find_similar_bills(query, limit=limit)
    assert backend.calls == []


@pytest.mark.asyncio
async def test_find_bills_similar_to_unknown_bill(embedder):
    engine = RecordingEngine([FakeResult()])

    with pytest.raises(BillNotFoundError):
        await BillService(engine, embedder).find_bills_similar_to(404)


@pytest.mark.asyncio
async def test_find_bills_similar_to_unembedded_bill(embedder):
    engine = RecordingEngine([FakeResult([row(has_embedding=False)])])

    with pytest.raises(BillNotFoundError):
        await BillService(engine, embedder).find_bills_similar_to(1)
    assert len(engine.statements) == 1


@pytest.mark.asyncio
async def test_find_bills_similar_to_excludes_itself(embedder):
    engine = RecordingEngine([FakeResult([row(has_embedding=True)]), FakeResult([bill_row(2, 0.7)])])

    matches = await BillService(engine, embedder).find_bills_similar_to(1, limit=3)

    assert [m.bill_id for m in matches] == [2]
    sql, params = engine.statements[1]
    assert "b.bill_id <> :bill_id" in sql
    assert params == {"bill_id": 1, "limit": 3}


@pytest.mark.asyncio
async def test_find_bills_by_category(embedder):
    engine = RecordingEngine([FakeResult([bill_row(1)])])

    matches = await BillService(engine, embedder).find_bills_by_category("Education", limit=5)

    assert matches[0].similarity is None
    _, params = engine.statements[0]
    assert json.loads(params["category_filter"]) == [{"category": "Education"}]
    assert json.loads(params["subject_filter"]) == [{"subject_name": "Education"}]
    assert params["limit"] == 5


@pytest.mark.asyncio
async def test_default_threshold_keeps_bills_within_cosine_distance_0_8(embedder):
    engine = RecordingEngine([FakeResult([bill_row(1, 0.25)])])

    matches = await BillService(engine, embedder).find_similar_bills("school meals")

    assert [m.bill_id for m in matches] == [1]
    sql, params = engine.statements[0]
    assert "1 - (b.embedding <=> CAST(:query_embedding AS vector)) > :threshold" in sql
    assert params["threshold"] == 0.2
    assert SimilaritySearch(query="school meals").threshold == 0.2


@pytest.mark.asyncio
@pytest.mark.parametrize("category,limit", [("", 10), ("Education", 0), ("Education", -1)])
async def test_find_bills_by_category_validates_input(embedder, category, limit):
    engine = RecordingEngine()

    with pytest.raises(ValueError):
        await BillService(engine, embedder).find_bills_by_category(category, limit)
    assert engine.statements == []
