"""Natural-language questions about bills, answered with one generated SELECT.

The chat model sees the DDL of the legislative tables and returns a JSON object
with the SQL and a short explanation. The SQL only ever runs through the
read-only query gate of the bills database.
"""

import json
import logging
from typing import Any, Dict, Optional

import openai
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.dialects import postgresql
from sqlalchemy.schema import CreateTable

from voterchat.errors import QueryGenerationError
from voterchat.models.models import Bill, BillSponsor, RollCall, RollCallVote, Sponsor
from voterchat.services.table_summary import strip_fences

logger = logging.getLogger(__name__)

QUERY_TABLES = [model.__table__ for model in (Bill, Sponsor, BillSponsor, RollCall, RollCallVote)]

SYSTEM_PROMPT = """
You are a PostgreSQL expert answering questions about state legislation.
Write ONE read-only SELECT statement against the tables below.

{table_ddl}

Rules:
- Only SELECT (optionally with WITH). Never modify data.
- Never select the embedding column.
- inferred_categories is a JSONB array of {{"category": name, "score": number}};
  subjects is a JSONB array of {{"subject_id": id, "subject_name": name}}.
- Match names and text with ILIKE, because user spelling varies.
- roll_call_votes.vote is one of 'Yea', 'Nay', 'NV', 'Absent'.
- Add LIMIT 50 unless the question asks for a count or an aggregate.

Respond with ONLY a JSON object, no Markdown:
{{"sql": "the query", "explanation": "what the query does", "transformations": {{"user value": "value used in the query"}}}}
"""

FAILED_MESSAGE = (
    "Failed to process bills query. Please try rephrasing your question "
    "or providing more specific criteria."
)


def bills_table_ddl() -> str:
    """CREATE TABLE statements of the queryable legislative tables"""
    dialect = postgresql.dialect()
    return "\n\n".join(
        str(CreateTable(table).compile(dialect=dialect)).strip() + ";"
        for table in QUERY_TABLES
    )


class GeneratedQuery(BaseModel):
    sql: str
    explanation: str = ""
    transformations: Dict[str, Any] = Field(default_factory=dict)


def parse_generated_query(content: str) -> GeneratedQuery:
    try:
        generated = GeneratedQuery.model_validate(json.loads(strip_fences(content)))
    except (ValueError, ValidationError) as e:
        raise QueryGenerationError(f"Model response is not a valid query object: {e}") from e
    if not generated.sql.strip():
        raise QueryGenerationError("Model returned an empty query")
    return generated


class BillsQueryService:
    """Turns a question into SQL with a chat model and runs it through a QueryGate"""

    def __init__(self, gate, api_key: Optional[str] = None, model: str = "gpt-4o-mini",
                 base_url: Optional[str] = None, client=None):
        self.gate = gate
        self.model = model
        self.client = client or openai.AsyncOpenAI(api_key=api_key, base_url=base_url)
        self.system_prompt = SYSTEM_PROMPT.format(table_ddl=bills_table_ddl())

    async def generate_query(self, question: str) -> GeneratedQuery:
        response = await self.client.chat.completions.create(
            model=self.model,
            temperature=0,
            messages=[
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": f"User Query: {question}"},
            ],
        )
        return parse_generated_query(response.choices[0].message.content or "")

    async def answer(self, question: str) -> Dict[str, Any]:
        """{query, explanation, transformations, results} or {error, ...}"""
        if not question or not question.strip():
            raise ValueError("query must not be empty")

        generated = await self.generate_query(question)
        logger.info("Generated bills query: %s", generated.sql)

        result = await self.gate.execute_read_only_queries([generated.sql])
        if "error" in result:
            return {
                "error": result["error"],
                "query": generated.sql,
                "explanation": generated.explanation,
            }
        return {
            "query": generated.sql,
            "explanation": generated.explanation,
            "transformations": generated.transformations,
            "results": json.loads(result["results"][0]),
        }
