"""Backfills NULL embedding columns in batches and rebuilds the ANN index.

Each batch is claimed inside its own transaction with
``SELECT ... FOR UPDATE SKIP LOCKED``, embedded, written back with a single
``UPDATE ... FROM (VALUES ...)`` and committed. Rows locked by another worker
are skipped rather than waited on, so any number of workers (in this process
or others) can drain the same table and each row is written exactly once.

The HNSW index is dropped before the backfill and rebuilt afterwards, which is
much faster than maintaining it row by row.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Iterable, List, Optional, Set, Tuple

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from tqdm import tqdm

from voterchat.errors import EmbeddingError, IndexMaintenanceError
from voterchat.models.models import BILL_EMBEDDING_DIM
from voterchat.services.embedding_service import to_pgvector
from voterchat.services.voter_schema import DDL_CHUNK_TABLE, VOTER_EMBEDDING_DIM, validate_identifier

logger = logging.getLogger(__name__)

INDEX_MAINTENANCE_MEM = "1GB"
REBUILD_ATTEMPTS = 2


@dataclass
class ClaimedRow:
    key: int
    text: str


@dataclass
class BulkRunReport:
    target: str
    rows_embedded: int = 0
    rows_skipped: int = 0
    batches: int = 0
    index_rebuilt: bool = False
    errors: List[str] = field(default_factory=list)


class ClaimedBatch:
    """Rows locked by one claim; written back on the claiming connection"""

    def __init__(self, conn: Optional[AsyncConnection], target: "SqlEmbeddingTarget", rows: List[ClaimedRow]):
        self.conn = conn
        self.target = target
        self.rows = rows

    async def write(self, updates: List[Tuple[int, List[float]]]) -> None:
        if not updates:
            return
        target = self.target
        values = []
        params = {}
        for index, (key, embedding) in enumerate(updates):
            values.append(f"(CAST(:key_{index} AS INTEGER), CAST(:embedding_{index} AS vector({target.dimension})))")
            params[f"key_{index}"] = key
            params[f"embedding_{index}"] = to_pgvector(embedding)

        await self.conn.execute(
            text(f"""
                UPDATE {target.table} AS t
                SET {target.vector_column} = v.embedding
                FROM (VALUES {", ".join(values)}) AS v(key, embedding)
                WHERE t.{target.key_column} = v.key
            """),
            params,
        )


class SqlEmbeddingTarget:
    """A table whose vector column is backfilled from a text expression"""

    def __init__(self, engine: AsyncEngine, name: str, table: str, key_column: str, text_expression: str,
                 vector_column: str, index_name: str, dimension: int):
        self.engine = engine
        self.name = name
        self.table = table
        self.key_column = key_column
        self.text_expression = text_expression
        self.vector_column = vector_column
        self.index_name = index_name
        self.dimension = dimension

    def _index_reference(self) -> str:
        if "." in self.table:
            return self.table.split(".", 1)[0] + "." + self.index_name
        return self.index_name

    async def drop_index(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.execute(text(f"DROP INDEX IF EXISTS {self._index_reference()}"))
        except DBAPIError as e:
            raise IndexMaintenanceError(f"Could not drop {self.index_name}: {e}") from e
        logger.info("Dropped index %s", self.index_name)

    async def rebuild_index(self) -> None:
        try:
            async with self.engine.begin() as conn:
                # SET LOCAL reverts to the server default when the transaction ends
                await conn.execute(text(f"SET LOCAL maintenance_work_mem TO '{INDEX_MAINTENANCE_MEM}'"))
                await conn.execute(text(f"""
                    CREATE INDEX IF NOT EXISTS {self.index_name}
                    ON {self.table} USING hnsw ({self.vector_column} vector_cosine_ops)
                    WITH (m = 8, ef_construction = 32)
                """))
        except DBAPIError as e:
            raise IndexMaintenanceError(f"Could not rebuild {self.index_name}: {e}") from e
        logger.info("Rebuilt index %s", self.index_name)

    @asynccontextmanager
    async def claim(self, limit: int, skip: Iterable[int] = ()) -> AsyncIterator[ClaimedBatch]:
        """Lock up to limit unembedded rows, other than skip, for the duration of the block"""
        params = {"limit": limit}
        skip_clause = ""
        skip = list(skip)
        if skip:
            skip_clause = f"AND NOT ({self.key_column} = ANY(CAST(:skip AS INTEGER[])))"
            params["skip"] = skip

        async with self.engine.begin() as conn:
            result = await conn.execute(
                text(f"""
                    SELECT {self.key_column} AS key, {self.text_expression} AS text
                    FROM {self.table}
                    WHERE {self.vector_column} IS NULL
                    AND NULLIF(btrim({self.text_expression}), '') IS NOT NULL
                    {skip_clause}
                    ORDER BY {self.key_column}
                    LIMIT :limit
                    FOR UPDATE SKIP LOCKED
                """),
                params,
            )
            rows = [ClaimedRow(row.key, row.text) for row in result.fetchall()]
            yield ClaimedBatch(conn, self, rows)


class BillEmbeddingTarget(SqlEmbeddingTarget):
    def __init__(self, engine: AsyncEngine):
        super().__init__(
            engine,
            name="bills",
            table="bills",
            key_column="bill_id",
            text_expression="title || ' ' || COALESCE(description, '')",
            vector_column="embedding",
            index_name="idx_bills_embedding",
            dimension=BILL_EMBEDDING_DIM,
        )


class VoterRowEmbeddingTarget(SqlEmbeddingTarget):
    def __init__(self, engine: AsyncEngine, schema: str, table: str, dimension: int = VOTER_EMBEDDING_DIM):
        schema = validate_identifier(schema)
        table = validate_identifier(table)
        super().__init__(
            engine,
            name=f"{schema}.{table}",
            table=f"{schema}.{table}",
            key_column="pid",
            text_expression="json_string",
            vector_column="embedding",
            index_name=f"{table}_embedding_idx",
            dimension=dimension,
        )


async def discover_voter_embedding_tables(engine: AsyncEngine, schema: str) -> List[str]:
    """Names of the per-table _embedding companions in the voter schema"""
    query = text("""
        SELECT table_name
        FROM information_schema.tables
        WHERE table_schema = :schema
        AND table_name LIKE '%\\_embedding'
        AND table_name <> :chunk_table
        ORDER BY table_name
    """)
    async with engine.connect() as conn:
        result = await conn.execute(query, {"schema": schema, "chunk_table": DDL_CHUNK_TABLE})
        return [row.table_name for row in result.fetchall()]


class BulkEmbeddingProcessor:
    """Drains one embedding target with one or more concurrent claim loops.

    A row whose text cannot be embedded is logged and skipped for the rest of
    the run, so one bad row never stalls the backfill. Any other failure stops
    every worker before the index is rebuilt and is then re-raised.
    """

    def __init__(self, target, embedder, batch_size: int = 50, workers: int = 1):
        self.target = target
        self.embedder = embedder
        self.batch_size = batch_size
        self.workers = workers

    async def _embed_rows(self, rows: List[ClaimedRow], report: BulkRunReport,
                          skipped: Set[int]) -> List[Tuple[int, List[float]]]:
        try:
            vectors = await self.embedder.embed_many([row.text for row in rows])
            return [(row.key, vector) for row, vector in zip(rows, vectors)]
        except EmbeddingError as e:
            logger.warning("%s: batch of %d rows failed (%s), embedding rows one at a time",
                           self.target.name, len(rows), e)

        updates = []
        for row in rows:
            try:
                updates.append((row.key, await self.embedder.embed(row.text)))
            except EmbeddingError as e:
                skipped.add(row.key)
                report.rows_skipped += 1
                report.errors.append(f"row {row.key}: {e}")
                logger.warning("%s: skipping row %s: %s", self.target.name, row.key, e)
        return updates

    async def _worker(self, report: BulkRunReport, skipped: Set[int], progress) -> None:
        while True:
            async with self.target.claim(self.batch_size, skip=sorted(skipped)) as batch:
                if not batch.rows:
                    return
                updates = await self._embed_rows(batch.rows, report, skipped)
                await batch.write(updates)
            report.rows_embedded += len(updates)
            report.batches += 1
            progress.update(len(batch.rows))
            logger.info("%s: embedded %d rows so far", self.target.name, report.rows_embedded)

    async def _run_workers(self, report: BulkRunReport, skipped: Set[int], progress) -> None:
        tasks = [
            asyncio.ensure_future(self._worker(report, skipped, progress))
            for _ in range(self.workers)
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            # No worker may still be claiming or writing once this returns
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in tasks:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

    async def _rebuild_index(self, report: BulkRunReport) -> bool:
        for attempt in range(1, REBUILD_ATTEMPTS + 1):
            try:
                await self.target.rebuild_index()
                return True
            except IndexMaintenanceError as e:
                logger.warning("Index rebuild attempt %d for %s failed: %s", attempt, self.target.name, e)
                report.errors.append(str(e))
        logger.error("Index for %s was not rebuilt; run the embed command again to retry", self.target.name)
        return False

    async def run(self) -> BulkRunReport:
        report = BulkRunReport(self.target.name)
        skipped: Set[int] = set()
        await self.target.drop_index()
        progress = tqdm(desc=f"embedding {self.target.name}", unit="row")
        try:
            await self._run_workers(report, skipped, progress)
        finally:
            progress.close()
            report.index_rebuilt = await self._rebuild_index(report)
        logger.info(
            "%s: finished, %d rows in %d batches, %d skipped, index rebuilt: %s",
            self.target.name, report.rows_embedded, report.batches, report.rows_skipped, report.index_rebuilt,
        )
        return report
