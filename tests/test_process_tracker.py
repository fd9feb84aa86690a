"""
Test cases for the process tracker
"""

import pytest

from voterchat.services.process_tracker import ProcessTracker

from tests.conftest import FakeResult, RecordingEngine, row


@pytest.mark.asyncio
async def test_check_completed():
    engine = RecordingEngine([
        FakeResult([row(status="completed")]),
        FakeResult([row(status="failed")]),
        FakeResult(),
    ])
    tracker = ProcessTracker(engine)

    assert await tracker.check_completed("/data/a.json") is True
    assert await tracker.check_completed("/data/b.json") is False
    assert await tracker.check_completed("/data/c.json") is False
    assert engine.statements[0][1] == {"path": "/data/a.json"}


@pytest.mark.asyncio
async def test_upsert_never_reopens_completed_rows():
    engine = RecordingEngine()

    await ProcessTracker(engine).upsert_status("/data/a.json", "bill", "TX", "2023", "processing")

    sql, params = engine.statements[0]
    assert "ON CONFLICT (absolute_path) DO UPDATE" in sql
    assert "WHERE process_tracker.status <> 'completed'" in sql
    assert params == {
        "path": "/data/a.json",
        "file_type": "bill",
        "state": "TX",
        "session": "2023",
        "status": "processing",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize("category,status", [("bill", "done"), ("memo", "completed")])
async def test_upsert_rejects_unknown_values(category, status):
    engine = RecordingEngine()

    with pytest.raises(ValueError):
        await ProcessTracker(engine).upsert_status("/data/a.json", category, "TX", "2023", status)
    assert engine.statements == []


@pytest.mark.asyncio
async def test_status_counts_include_zeroes():
    engine = RecordingEngine([FakeResult([row(status="completed", total=3), row(status="failed", total=1)])])

    counts = await ProcessTracker(engine).status_counts("vote")

    assert counts == {"pending": 0, "processing": 0, "completed": 3, "failed": 1}
    assert engine.statements[0][1] == {"file_type": "vote"}


@pytest.mark.asyncio
async def test_list_paths():
    engine = RecordingEngine([FakeResult([row(absolute_path="/data/a.json"), row(absolute_path="/data/b.json")])])

    paths = await ProcessTracker(engine).list_paths("failed")

    assert paths == ["/data/a.json", "/data/b.json"]
    assert engine.statements[0][1] == {"status": "failed"}


@pytest.mark.asyncio
async def test_upsert_refreshes_source_keys():
    engine = RecordingEngine()

    await ProcessTracker(engine).upsert_status("/data/a.json", "vote", "GA", "2024", "pending")

    sql, _ = engine.statements[0]
    for assignment in ("file_type = EXCLUDED.file_type", "state = EXCLUDED.state", "session = EXCLUDED.session"):
        assert assignment in sql


@pytest.mark.asyncio
async def test_table_ownership():
    engine = RecordingEngine([FakeResult([row(table_name="voter_new_records")]), FakeResult()])
    tracker = ProcessTracker(engine)

    assert await tracker.table_for("/data/a.csv") == "voter_new_records"
    assert await tracker.table_for("/data/b.csv") is None
    await tracker.record_table("/data/b.csv", "voter_new_records_2")

    sql, params = engine.statements[2]
    assert sql.strip().startswith("UPDATE process_tracker")
    assert "status <> 'completed'" in sql
    assert params == {"path": "/data/b.csv", "table_name": "voter_new_records_2"}
