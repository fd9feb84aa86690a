"""Read-only SQL execution for model-generated queries.

Statements are validated before anything runs: each must be a single plain
SELECT (optionally behind a CTE) with no data-modifying or DDL keyword
anywhere in its token stream. Validated statements still execute inside a
READ ONLY transaction. Results are serialised to JSON and the combined token
count is capped so an oversized result set never reaches the model.
"""

import json
import logging
import re
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List
from uuid import UUID

import sqlparse
import tiktoken
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlparse import tokens as T

from voterchat.errors import ReadOnlyViolationError, TokenBudgetExceededError

logger = logging.getLogger(__name__)

SELECT_PREFIX_RE = re.compile(r"^\s*(WITH[\s\S]*?SELECT|SELECT)\s+", re.IGNORECASE)

FORBIDDEN_KEYWORDS = {
    "INSERT", "UPDATE", "DELETE", "MERGE",
    "CREATE", "DROP", "ALTER", "TRUNCATE",
    "GRANT", "REVOKE", "COPY", "CALL", "DO",
    "LOCK", "VACUUM", "REINDEX", "INTO",
}

NOT_SELECT_MESSAGE = "Only SELECT statements are allowed."
GENERIC_ERROR_MESSAGE = "Something went wrong, so I could not process your request."


class StatementType(str, Enum):
    SELECT = "SELECT"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    OTHER = "OTHER"


def _statements(sql: str) -> List[sqlparse.sql.Statement]:
    return [
        statement for statement in sqlparse.parse(sql or "")
        if statement.token_first(skip_ws=True, skip_cm=True) is not None
    ]


def classify_statement(sql: str) -> StatementType:
    statements = _statements(sql)
    if len(statements) != 1:
        return StatementType.OTHER
    statement_type = statements[0].get_type()
    try:
        return StatementType(statement_type)
    except ValueError:
        return StatementType.OTHER


def _forbidden_keyword(statement: sqlparse.sql.Statement):
    for token in statement.flatten():
        if token.ttype in T.Keyword and token.normalized in FORBIDDEN_KEYWORDS:
            return token.normalized
        if token.ttype in (T.Keyword.DML, T.Keyword.DDL) and token.normalized != "SELECT":
            return token.normalized
    return None


def validate_read_only(statements: List[str]) -> None:
    """Raise ReadOnlyViolationError unless every statement is a plain SELECT"""
    for sql in statements:
        if not isinstance(sql, str) or not SELECT_PREFIX_RE.match(sql.strip()):
            raise ReadOnlyViolationError(f"Not a SELECT statement: {sql!r}")
        parsed = _statements(sql)
        if len(parsed) != 1:
            raise ReadOnlyViolationError(f"Expected exactly one statement, got {len(parsed)}")
        if classify_statement(sql) is not StatementType.SELECT:
            raise ReadOnlyViolationError(f"Not a SELECT statement: {sql!r}")
        keyword = _forbidden_keyword(parsed[0])
        if keyword:
            raise ReadOnlyViolationError(f"{keyword} is not allowed in a read-only query")


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return str(value)


class SqlExecutor:
    """Runs one statement in a READ ONLY transaction and returns its rows"""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def fetch_all(self, statement: str) -> List[Dict[str, Any]]:
        async with self.engine.connect() as conn:
            try:
                await conn.execute(text("SET TRANSACTION READ ONLY"))
                result = await conn.exec_driver_sql(statement)
                return [dict(row._mapping) for row in result.fetchall()]
            finally:
                await conn.rollback()


class QueryGate:
    """Runs validated SELECT statements under a shared token limit"""

    def __init__(self, executor, token_limit: int = 10000, tokenizer_model: str = "gpt-4",
                 encoding=None, name: str = "sql"):
        self.executor = executor
        self.token_limit = token_limit
        self.tokenizer_model = tokenizer_model
        self.encoding = encoding
        self.name = name

    def _get_encoding(self):
        if self.encoding is None:
            self.encoding = tiktoken.encoding_for_model(self.tokenizer_model)
        return self.encoding

    async def execute_read_only_queries(self, statements: List[str]) -> Dict[str, Any]:
        """{"results": [json, ...]} or {"error": message}"""
        logger.info("Called %s gate with %d statement(s)", self.name, len(statements))
        try:
            validate_read_only(statements)
        except ReadOnlyViolationError as e:
            logger.warning("Rejected statements: %s", e)
            return {"error": NOT_SELECT_MESSAGE}

        try:
            encoding = self._get_encoding()
            results = []
            total_tokens = 0
            for statement in statements:
                rows = await self.executor.fetch_all(statement)
                serialized = json.dumps(rows, default=_json_default)
                total_tokens += len(encoding.encode(serialized))
                if total_tokens > self.token_limit:
                    raise TokenBudgetExceededError(self.token_limit, total_tokens)
                results.append(serialized)
            return {"results": results}
        except TokenBudgetExceededError as e:
            logger.error("Token limit exceeded: %d tokens.", e.total)
            return {
                "error": f"The result set is too large to process (exceeds {self.token_limit} tokens). "
                         "Please refine your query."
            }
        except Exception as e:
            logger.error("Error executing select statements: %s", e)
            return {"error": GENERIC_ERROR_MESSAGE}
