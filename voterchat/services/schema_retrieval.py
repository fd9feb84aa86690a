import logging
import re
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from voterchat.errors import TableNameExtractionError
from voterchat.services.embedding_service import to_pgvector
from voterchat.services.voter_schema import DDL_CHUNK_TABLE, DDL_TABLE, validate_identifier

logger = logging.getLogger(__name__)

TABLE_NAME_RE = re.compile(r"CREATE\s+TABLE\s+(IF\s+NOT\s+EXISTS\s+)?(\S+)", re.IGNORECASE)

# Chunks fetched per requested table before de-duplicating by parent
CHUNK_FANOUT = 10


def extract_table_name(table_ddl: str) -> str:
    """Bare table name from a CREATE TABLE statement, schema prefix dropped"""
    match = TABLE_NAME_RE.search(table_ddl or "")
    if not match:
        raise TableNameExtractionError("Failed to extract the table name from the table DDL.")
    name = match.group(2).rstrip("(;").strip('"')
    return validate_identifier(name.split(".")[-1].strip('"'))


def dedupe_by_parent(rows: List[Dict[str, Any]], top_k: int) -> List[Dict[str, Any]]:
    """Keep the best-scoring chunk per parent document, in score order"""
    seen = set()
    unique = []
    for row in rows:
        if row["parent_id"] in seen:
            continue
        seen.add(row["parent_id"])
        unique.append(row)
        if len(unique) >= top_k:
            break
    return unique


class SchemaRetriever:
    """Finds table DDLs and sample rows relevant to a natural-language question"""

    def __init__(self, engine: AsyncEngine, schema: str, embedding_service):
        self.engine = engine
        self.schema = validate_identifier(schema)
        self.embedding_service = embedding_service

    async def _search_chunks(self, embedding: List[float], threshold: float, limit: int) -> List[Dict[str, Any]]:
        query = text(f"""
            SELECT vte.parent_id, vtd.table_name, vtd.table_ddl,
                   1 - (vte.chunk_embedding <=> CAST(:embedding AS vector)) AS similarity
            FROM {self.schema}.{DDL_CHUNK_TABLE} AS vte
            INNER JOIN {self.schema}.{DDL_TABLE} AS vtd ON vte.parent_id = vtd.primary_key
            WHERE 1 - (vte.chunk_embedding <=> CAST(:embedding AS vector)) > :threshold
            ORDER BY vte.chunk_embedding <=> CAST(:embedding AS vector)
            LIMIT :limit
        """)
        async with self.engine.connect() as conn:
            result = await conn.execute(query, {
                "embedding": to_pgvector(embedding),
                "threshold": threshold,
                "limit": limit,
            })
            return [dict(row._mapping) for row in result.fetchall()]

    async def _search_values(self, table_name: str, embedding: List[float], threshold: float,
                             limit: int) -> List[str]:
        query = text(f"""
            SELECT json_string
            FROM {self.schema}.{table_name}_embedding
            WHERE embedding IS NOT NULL
            AND 1 - (embedding <=> CAST(:embedding AS vector)) > :threshold
            ORDER BY embedding <=> CAST(:embedding AS vector)
            LIMIT :limit
        """)
        async with self.engine.connect() as conn:
            result = await conn.execute(query, {
                "embedding": to_pgvector(embedding),
                "threshold": threshold,
                "limit": limit,
            })
            return [row.json_string for row in result.fetchall()]

    async def fetch_schema_candidates(self, user_input: str, top_k: int = 2, threshold: float = 0.15,
                                      include_values: bool = True) -> List[Dict[str, Any]]:
        """Up to top_k distinct table DDLs whose chunks match user_input"""
        if not user_input:
            raise ValueError("userInput must not be empty.")
        if top_k <= 0:
            raise ValueError("topK must be greater than 0.")

        embedding = await self.embedding_service.embed(user_input)
        rows = await self._search_chunks(embedding, threshold, top_k * CHUNK_FANOUT)

        candidates = []
        for row in dedupe_by_parent(rows, top_k):
            values: List[str] = []
            if include_values:
                values = await self._values_or_empty(user_input, row["table_ddl"], embedding)
            candidates.append({"ddl": row["table_ddl"], "possibleColumnValues": values})
        return candidates

    async def _values_or_empty(self, user_input: str, table_ddl: str, embedding: List[float]) -> List[str]:
        try:
            return await self.find_possible_similar_values(user_input, table_ddl, embedding=embedding)
        except Exception as e:
            logger.warning("Could not fetch sample values for candidate table: %s", e)
            return []

    async def find_possible_similar_values(self, user_input: str, table_ddl: str, top_k: int = 3,
                                           threshold: float = 0.5,
                                           embedding: Optional[List[float]] = None) -> List[str]:
        """Stored row snapshots of the DDL's table that resemble user_input"""
        if not user_input:
            raise ValueError("userInput must not be empty.")
        if top_k <= 0:
            raise ValueError("topK must be greater than 0.")

        table_name = extract_table_name(table_ddl)
        if embedding is None:
            embedding = await self.embedding_service.embed(user_input)
        return await self._search_values(table_name, embedding, threshold, top_k)
