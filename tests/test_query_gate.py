"""
Test cases for the read-only query gate
"""

import json
from datetime import date
from decimal import Decimal

import pytest

from voterchat.errors import ReadOnlyViolationError
from voterchat.services.query_gate import (
    GENERIC_ERROR_MESSAGE,
    NOT_SELECT_MESSAGE,
    QueryGate,
    StatementType,
    classify_statement,
    validate_read_only,
)

from tests.conftest import CharEncoding, FakeExecutor, RecordingEngine


def make_gate(executor, token_limit=10000):
    return QueryGate(executor, token_limit=token_limit, encoding=CharEncoding())


@pytest.mark.parametrize("sql,expected", [
    ("SELECT * FROM bills", StatementType.SELECT),
    ("  select count(*) from voters.voter_active", StatementType.SELECT),
    ("WITH recent AS (SELECT * FROM bills) SELECT * FROM recent", StatementType.SELECT),
    ("INSERT INTO bills (bill_id) VALUES (1)", StatementType.INSERT),
    ("UPDATE bills SET title = 'x'", StatementType.UPDATE),
    ("DELETE FROM bills", StatementType.DELETE),
    ("DROP TABLE bills", StatementType.OTHER),
    ("SELECT 1; SELECT 2", StatementType.OTHER),
])
def test_classify_statement(sql, expected):
    assert classify_statement(sql) is expected


@pytest.mark.parametrize("sql", [
    "SELECT * FROM bills",
    "SELECT update_date, created_by FROM voters.voter_active WHERE county = 'Fulton';",
    "WITH recent AS (SELECT bill_id FROM bills) SELECT COUNT(*) FROM recent",
])
def test_plain_selects_pass(sql):
    validate_read_only([sql])


@pytest.mark.parametrize("sql", [
    "INSERT INTO bills (bill_id) VALUES (1)",
    "DROP TABLE bills",
    "",
    "SELECT 1; DROP TABLE bills",
    "WITH gone AS (DELETE FROM bills RETURNING *) SELECT * FROM gone",
    "WITH changed AS (UPDATE bills SET title = 'x' RETURNING *) SELECT * FROM changed",
    "SELECT * INTO bills_copy FROM bills",
])
def test_writes_are_rejected(sql):
    with pytest.raises(ReadOnlyViolationError):
        validate_read_only([sql])


@pytest.mark.asyncio
async def test_non_select_rejects_whole_list_and_executes_nothing():
    executor = FakeExecutor()
    gate = make_gate(executor)

    result = await gate.execute_read_only_queries(["SELECT 1", "DELETE FROM bills"])

    assert result == {"error": NOT_SELECT_MESSAGE}
    assert executor.executed == []


@pytest.mark.asyncio
async def test_results_are_serialised_json():
    executor = FakeExecutor(rows=[{"day": date(2024, 1, 2), "total": Decimal("1.5")}])
    gate = make_gate(executor)

    result = await gate.execute_read_only_queries(["SELECT day, total FROM t", "SELECT day, total FROM t"])

    assert len(result["results"]) == 2
    assert json.loads(result["results"][0]) == [{"day": "2024-01-02", "total": 1.5}]
    assert executor.executed == ["SELECT day, total FROM t", "SELECT day, total FROM t"]


@pytest.mark.asyncio
async def test_token_budget_counts_across_statements():
    rows = [{"name": "x" * 30}]
    one_result = len(json.dumps(rows))
    gate = make_gate(FakeExecutor(rows=rows), token_limit=one_result + 5)

    assert "results" in await gate.execute_read_only_queries(["SELECT name FROM t"])

    result = await gate.execute_read_only_queries(["SELECT name FROM t", "SELECT name FROM t"])

    assert result == {
        "error": f"The result set is too large to process (exceeds {one_result + 5} tokens). "
                 "Please refine your query."
    }


@pytest.mark.asyncio
async def test_execution_error_returns_generic_message():
    gate = make_gate(FakeExecutor(error=RuntimeError("relation does not exist")))

    result = await gate.execute_read_only_queries(["SELECT * FROM missing"])

    assert result == {"error": GENERIC_ERROR_MESSAGE}


@pytest.mark.asyncio
async def test_empty_list_returns_no_results():
    assert await make_gate(FakeExecutor()).execute_read_only_queries([]) == {"results": []}


@pytest.mark.asyncio
async def test_sql_executor_runs_in_read_only_transaction():
    from voterchat.services.query_gate import SqlExecutor
    from tests.conftest import FakeResult, row

    engine = RecordingEngine([FakeResult(), FakeResult([row(n=1)])])

    rows = await SqlExecutor(engine).fetch_all("SELECT 1 AS n")

    assert rows == [{"n": 1}]
    assert engine.statements[0][0] == "SET TRANSACTION READ ONLY"
    assert engine.statements[1][0] == "SELECT 1 AS n"
