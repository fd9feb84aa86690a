"""
Test cases for the HTTP tool endpoints
"""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from voterchat.errors import BillNotFoundError, TableNameExtractionError
from voterchat.main import app
from voterchat.models.schemas import BillMatch
from voterchat.services.bill_service import BillService
from voterchat.services.bills_query import FAILED_MESSAGE

from tests.conftest import RecordingEngine

SERVICES = ["bill_service", "bills_gate", "bills_query", "schema_retriever", "voter_gate"]


@pytest.fixture
def client():
    # No lifespan: services are installed on app.state by each test
    yield TestClient(app)
    for name in SERVICES:
        if hasattr(app.state, name):
            delattr(app.state, name)


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_unconfigured_service_is_503(client):
    response = client.post("/api/v1/tools/execute-selects", json={"selects": ["SELECT 1"]})

    assert response.status_code == 503


def test_execute_selects(client):
    gate = AsyncMock()
    gate.execute_read_only_queries.return_value = {"results": ['[{"n": 1}]']}
    app.state.voter_gate = gate

    response = client.post("/api/v1/tools/execute-selects", json={"selects": ["SELECT 1 AS n"]})

    assert response.json() == {"results": ['[{"n": 1}]']}
    gate.execute_read_only_queries.assert_awaited_once_with(["SELECT 1 AS n"])


def test_execute_sql_uses_bills_gate(client):
    gate = AsyncMock()
    gate.execute_read_only_queries.return_value = {"error": "Only SELECT statements are allowed."}
    app.state.bills_gate = gate

    response = client.post("/api/v1/tools/execute-sql", json={"queries": ["DELETE FROM bills"]})

    assert response.json() == {"error": "Only SELECT statements are allowed."}


def test_schema_candidates(client):
    retriever = AsyncMock()
    retriever.fetch_schema_candidates.return_value = [{"ddl": "CREATE TABLE t (a VARCHAR);", "possibleColumnValues": []}]
    app.state.schema_retriever = retriever

    response = client.post("/api/v1/tools/schema-candidates", json={"userInput": "active voters", "topK": 1})

    assert response.json() == {"candidates": [{"ddl": "CREATE TABLE t (a VARCHAR);", "possibleColumnValues": []}]}
    retriever.fetch_schema_candidates.assert_awaited_once_with("active voters", 1)


def test_similar_values_reports_bad_ddl(client):
    retriever = AsyncMock()
    retriever.find_possible_similar_values.side_effect = TableNameExtractionError(
        "Failed to extract the table name from the table DDL."
    )
    app.state.schema_retriever = retriever

    response = client.post("/api/v1/tools/similar-values", json={"userInput": "x", "tableDdl": "nonsense"})

    assert response.json() == {"error": "Failed to extract the table name from the table DDL."}


def test_similar_values_hides_unexpected_errors(client):
    retriever = AsyncMock()
    retriever.find_possible_similar_values.side_effect = RuntimeError("connection refused")
    app.state.schema_retriever = retriever

    response = client.post("/api/v1/tools/similar-values", json={"userInput": "x", "tableDdl": "CREATE TABLE t"})

    assert response.json() == {"error": "Something went wrong, so I could not process your request."}


def test_lookup_endpoints(client):
    assert "gender" in client.get("/api/v1/tools/lookup-keys").json()

    response = client.post("/api/v1/tools/lookup-values", json={"keys": ["voter_status", "unknown"]})

    assert response.json() == [{"Active": "A", "Inactive": "I"}, None]


def test_similar_bills(client):
    service = AsyncMock()
    service.find_similar_bills.return_value = [BillMatch(bill_id=1, title="School lunch", similarity=0.9)]
    app.state.bill_service = service

    response = client.post("/api/v1/bills/search/similar", json={"query": "school meals"})

    assert response.status_code == 200
    assert response.json()[0]["bill_id"] == 1
    service.find_similar_bills.assert_awaited_once_with("school meals", 0.2, 10)


def test_similar_to_missing_bill_is_404(client):
    service = AsyncMock()
    service.find_bills_similar_to.side_effect = BillNotFoundError("Bill 404 not found")
    app.state.bill_service = service

    response = client.get("/api/v1/bills/404/similar")

    assert response.status_code == 404
    assert response.json()["detail"] == "Bill 404 not found"


@pytest.mark.parametrize("limit", [0, -3])
def test_category_search_rejects_non_positive_limit(client, limit):
    app.state.bill_service = BillService(RecordingEngine(), embedding_service=None)

    response = client.get(f"/api/v1/bills/category/Education?limit={limit}")

    assert response.status_code == 422
    assert response.json()["detail"] == "limit must be positive"


def test_bills_query(client):
    service = AsyncMock()
    service.answer.return_value = {"query": "SELECT 1", "explanation": "one", "transformations": {}, "results": [{"n": 1}]}
    app.state.bills_query = service

    response = client.post("/api/v1/tools/bills-query", json={"query": "how many bills?"})

    assert response.json()["results"] == [{"n": 1}]
    service.answer.assert_awaited_once_with("how many bills?")


def test_bills_query_hides_unexpected_errors(client):
    service = AsyncMock()
    service.answer.side_effect = RuntimeError("model timed out")
    app.state.bills_query = service

    response = client.post("/api/v1/tools/bills-query", json={"query": "how many bills?"})

    assert response.json() == {"error": FAILED_MESSAGE}
