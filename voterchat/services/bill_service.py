import json
import logging
from typing import List

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from voterchat.errors import BillNotFoundError
from voterchat.models.schemas import BillMatch
from voterchat.services.embedding_service import to_pgvector

logger = logging.getLogger(__name__)

BILL_COLUMNS = """
    b.bill_id, b.bill_number, b.title, b.description, b.subjects,
    b.inferred_categories, b.committee_name, b.last_action, b.last_action_date
"""


def _to_match(row) -> BillMatch:
    return BillMatch(
        bill_id=row.bill_id,
        bill_number=row.bill_number,
        title=row.title,
        description=row.description,
        subjects=row.subjects,
        inferred_categories=row.inferred_categories,
        committee_name=row.committee_name,
        last_action=row.last_action,
        last_action_date=row.last_action_date,
        similarity=getattr(row, "similarity", None),
    )


class BillService:
    """Vector and category search over imported bills"""

    def __init__(self, engine: AsyncEngine, embedding_service):
        self.engine = engine
        self.embedding_service = embedding_service

    async def find_similar_bills(self, query_text: str, threshold: float = 0.2, limit: int = 10) -> List[BillMatch]:
        """Find bills similar to the query text"""
        if not query_text or not query_text.strip():
            raise ValueError("query_text must not be empty")
        if limit <= 0:
            raise ValueError("limit must be positive")

        query_embedding = to_pgvector(await self.embedding_service.embed(query_text))

        sql_query = text(f"""
            SELECT {BILL_COLUMNS},
                   1 - (b.embedding <=> CAST(:query_embedding AS vector)) AS similarity
            FROM bills b
            WHERE b.embedding IS NOT NULL
            AND 1 - (b.embedding <=> CAST(:query_embedding AS vector)) > :threshold
            ORDER BY b.embedding <=> CAST(:query_embedding AS vector)
            LIMIT :limit
        """)

        async with self.engine.connect() as conn:
            result = await conn.execute(sql_query, {
                "query_embedding": query_embedding,
                "threshold": threshold,
                "limit": limit,
            })
            return [_to_match(row) for row in result.fetchall()]

    async def find_bills_similar_to(self, bill_id: int, limit: int = 5) -> List[BillMatch]:
        """Bills nearest to an already-embedded bill, excluding itself"""
        if limit <= 0:
            raise ValueError("limit must be positive")

        async with self.engine.connect() as conn:
            result = await conn.execute(
                text("SELECT embedding IS NOT NULL AS has_embedding FROM bills WHERE bill_id = :bill_id"),
                {"bill_id": bill_id},
            )
            row = result.fetchone()
            if row is None:
                raise BillNotFoundError(f"Bill {bill_id} not found")
            if not row.has_embedding:
                raise BillNotFoundError(f"Bill {bill_id} has no embedding yet")

            result = await conn.execute(
                text(f"""
                    SELECT {BILL_COLUMNS},
                           1 - (b.embedding <=> target.embedding) AS similarity
                    FROM bills b, (SELECT embedding FROM bills WHERE bill_id = :bill_id) AS target
                    WHERE b.bill_id <> :bill_id AND b.embedding IS NOT NULL
                    ORDER BY b.embedding <=> target.embedding
                    LIMIT :limit
                """),
                {"bill_id": bill_id, "limit": limit},
            )
            return [_to_match(row) for row in result.fetchall()]

    async def find_bills_by_category(self, category: str, limit: int = 10) -> List[BillMatch]:
        """Bills whose inferred categories or subjects include category"""
        if not category:
            raise ValueError("category must not be empty")
        if limit <= 0:
            raise ValueError("limit must be positive")

        sql_query = text(f"""
            SELECT {BILL_COLUMNS}
            FROM bills b
            WHERE b.inferred_categories @> CAST(:category_filter AS JSONB)
            OR b.subjects @> CAST(:subject_filter AS JSONB)
            ORDER BY b.last_action_date DESC NULLS LAST
            LIMIT :limit
        """)

        async with self.engine.connect() as conn:
            result = await conn.execute(sql_query, {
                "category_filter": json.dumps([{"category": category}]),
                "subject_filter": json.dumps([{"subject_name": category}]),
                "limit": limit,
            })
            return [_to_match(row) for row in result.fetchall()]
