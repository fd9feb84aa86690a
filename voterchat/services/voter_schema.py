"""Generated voter tables: identifier checks, DDL and schema-document indexing.

Table and column names in the voter schema are produced by an LLM from CSV
headers, so every identifier and column type that ends up in SQL text passes
through the allow-list checks in this module first.
"""

import logging
import re
from datetime import datetime, timezone
from typing import List

from langchain_text_splitters import RecursiveCharacterTextSplitter
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from voterchat.errors import InvalidIdentifierError
from voterchat.models.schemas import TableInfo
from voterchat.services.embedding_service import to_pgvector

logger = logging.getLogger(__name__)

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")
COLUMN_TYPE_RE = re.compile(
    r"^(VARCHAR|CHARACTER VARYING|TEXT|TIMESTAMP|INTEGER|BIGINT|NUMERIC|BOOLEAN|DATE)"
    r"(\s*\(\s*\d+(\s*,\s*\d+)?\s*\))?$",
    re.IGNORECASE,
)

DDL_TABLE = "voter_table_ddl"
DDL_CHUNK_TABLE = "voter_table_ddl_embeddings"
VOTER_EMBEDDING_DIM = 1536


def validate_identifier(name: str) -> str:
    """Return name unchanged if it is a safe unquoted SQL identifier"""
    if not isinstance(name, str) or not IDENTIFIER_RE.match(name):
        raise InvalidIdentifierError(f"Invalid SQL identifier: {name!r}")
    return name


def sanitize_identifier(name: str) -> str:
    """Collapse non-word characters to underscores, then validate"""
    sanitized = re.sub(r"\W+", "_", (name or "").strip()).lower()
    if sanitized[:1].isdigit():
        sanitized = "_" + sanitized
    return validate_identifier(sanitized)


def unique_table_name(name: str, taken) -> str:
    """name, or name_2, name_3 ... if name is already taken"""
    candidate, suffix = validate_identifier(name), 2
    while candidate in taken:
        tail = f"_{suffix}"
        candidate = validate_identifier(name[:63 - len(tail)] + tail)
        suffix += 1
    return candidate


def validate_column_type(column_type: str) -> str:
    normalized = " ".join((column_type or "").split()).upper()
    if not COLUMN_TYPE_RE.match(normalized):
        raise InvalidIdentifierError(f"Column type not allowed: {column_type!r}")
    return normalized


def quote_literal(value: str) -> str:
    return "'" + (value or "").replace("'", "''") + "'"


def qualified(schema: str, table: str) -> str:
    return f"{validate_identifier(schema)}.{validate_identifier(table)}"


def table_ddl_statements(schema: str, table_info: TableInfo) -> List[str]:
    """CREATE TABLE plus table and column comments, one statement each"""
    table_name = qualified(schema, sanitize_identifier(table_info.table_name))
    if not table_info.columns:
        raise InvalidIdentifierError(f"Table {table_name} has no columns")

    column_lines = []
    comments = [f"COMMENT ON TABLE {table_name} IS {quote_literal(table_info.summary)};"]
    for column_name, column in table_info.columns.items():
        name = sanitize_identifier(column_name)
        column_lines.append(f"    {name} {validate_column_type(column.type)}")
        comments.append(
            f"COMMENT ON COLUMN {table_name}.{name} IS {quote_literal(column.description)};"
        )

    create = f"CREATE TABLE {table_name}\n(\n" + ",\n".join(column_lines) + "\n);"
    return [create] + comments


def build_table_ddl(schema: str, table_info: TableInfo) -> str:
    """The DDL document stored and indexed for schema retrieval"""
    return "\n".join(table_ddl_statements(schema, table_info))


def embedding_table_ddl(schema: str, table_name: str, dimension: int = VOTER_EMBEDDING_DIM) -> str:
    name = qualified(schema, sanitize_identifier(table_name) + "_embedding")
    return f"""
        CREATE TABLE {name}
        (
            pid         SERIAL PRIMARY KEY,
            json_string TEXT,
            embedding   VECTOR({int(dimension)})
        )
    """


def drop_all_objects_sql(schema: str) -> str:
    schema = validate_identifier(schema)
    return f"""
DO
$$
DECLARE
    obj RECORD;
    fk RECORD;
BEGIN
    FOR fk IN
        SELECT conname, conrelid::regclass AS tablename
        FROM pg_constraint
        WHERE contype = 'f' AND connamespace = '{schema}'::regnamespace
    LOOP
        EXECUTE 'ALTER TABLE ' || fk.tablename || ' DROP CONSTRAINT IF EXISTS "' || fk.conname || '"';
    END LOOP;

    FOR obj IN (SELECT tablename AS object_name FROM pg_tables WHERE schemaname = '{schema}') LOOP
        EXECUTE 'DROP TABLE IF EXISTS "{schema}"."' || obj.object_name || '" CASCADE';
    END LOOP;
END;
$$;
"""


class VoterSchema:
    """Creates, recreates and drops objects in the voter schema"""

    def __init__(self, engine: AsyncEngine, schema: str, dimension: int = VOTER_EMBEDDING_DIM):
        self.engine = engine
        self.schema = validate_identifier(schema)
        self.dimension = dimension

    async def ensure_ddl_tables(self) -> None:
        """Create the schema-document tables and their HNSW index if missing"""
        statements = [
            "CREATE EXTENSION IF NOT EXISTS vector",
            f"CREATE SCHEMA IF NOT EXISTS {self.schema}",
            f"""
            CREATE TABLE IF NOT EXISTS {self.schema}.{DDL_TABLE} (
                primary_key SERIAL PRIMARY KEY,
                table_name  VARCHAR(255) NOT NULL,
                table_ddl   TEXT NOT NULL,
                updated     TIMESTAMPTZ DEFAULT NOW() NOT NULL
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {self.schema}.{DDL_CHUNK_TABLE} (
                id              SERIAL PRIMARY KEY,
                parent_id       INTEGER NOT NULL REFERENCES {self.schema}.{DDL_TABLE}(primary_key) ON DELETE CASCADE,
                chunk_index     INTEGER NOT NULL,
                chunk_embedding VECTOR({int(self.dimension)})
            )
            """,
            f"""
            CREATE INDEX IF NOT EXISTS idx_voter_table_ddl_embeddings
            ON {self.schema}.{DDL_CHUNK_TABLE}
            USING hnsw (chunk_embedding vector_cosine_ops) WITH (m = 8, ef_construction = 32)
            """,
        ]
        async with self.engine.begin() as conn:
            for statement in statements:
                await conn.exec_driver_sql(statement)

    async def existing_tables(self) -> List[str]:
        """Generated tables already in the schema, without their _embedding companions"""
        query = text("""
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = :schema
            AND table_name NOT LIKE '%\\_embedding'
            AND table_name NOT IN (:ddl_table, :chunk_table)
            ORDER BY table_name
        """)
        async with self.engine.connect() as conn:
            result = await conn.execute(query, {
                "schema": self.schema,
                "ddl_table": DDL_TABLE,
                "chunk_table": DDL_CHUNK_TABLE,
            })
            return [row.table_name for row in result.fetchall()]

    async def create_voter_tables(self, table_info: TableInfo) -> str:
        """(Re)create a voter table and its _embedding companion; returns the DDL document"""
        table_name = sanitize_identifier(table_info.table_name)
        statements = table_ddl_statements(self.schema, table_info)

        async with self.engine.begin() as conn:
            await conn.exec_driver_sql(f"DROP TABLE IF EXISTS {self.schema}.{table_name}_embedding")
            await conn.exec_driver_sql(f"DROP TABLE IF EXISTS {self.schema}.{table_name}")
            for statement in statements:
                await conn.exec_driver_sql(statement)
            await conn.exec_driver_sql(embedding_table_ddl(self.schema, table_name, self.dimension))

        logger.info("Created table %s.%s", self.schema, table_name)
        return "\n".join(statements)

    async def reset_schema(self) -> None:
        """Drop every table and foreign key in the voter schema"""
        logger.warning("Dropping all objects in schema %s", self.schema)
        async with self.engine.begin() as conn:
            await conn.exec_driver_sql(drop_all_objects_sql(self.schema))


class SchemaIndexer:
    """Stores a table's DDL document and one vector per DDL chunk"""

    def __init__(self, engine: AsyncEngine, schema: str, embedder, chunk_size: int = 1000,
                 chunk_overlap: int = 200):
        self.engine = engine
        self.schema = validate_identifier(schema)
        self.embedder = embedder
        self.splitter = RecursiveCharacterTextSplitter(chunk_size=chunk_size, chunk_overlap=chunk_overlap)

    async def index_table(self, table_name: str, ddl: str) -> int:
        """Insert the parent document and its chunk embeddings; returns the parent id"""
        chunks = [chunk for chunk in self.splitter.split_text(ddl) if chunk.strip()]
        embeddings = await self.embedder.embed_many(chunks)

        async with self.engine.begin() as conn:
            # A re-imported table replaces its previous document and chunks
            await conn.execute(
                text(f"DELETE FROM {self.schema}.{DDL_TABLE} WHERE table_name = :table_name"),
                {"table_name": table_name},
            )
            result = await conn.execute(
                text(f"""
                    INSERT INTO {self.schema}.{DDL_TABLE} (table_name, table_ddl, updated)
                    VALUES (:table_name, :table_ddl, :updated)
                    RETURNING primary_key
                """),
                {"table_name": table_name, "table_ddl": ddl, "updated": datetime.now(timezone.utc)},
            )
            parent_id = result.scalar_one()

            if embeddings:
                values = []
                params = {"parent_id": parent_id}
                for index, embedding in enumerate(embeddings):
                    values.append(f"(:parent_id, {index}, CAST(:embedding_{index} AS vector))")
                    params[f"embedding_{index}"] = to_pgvector(embedding)
                await conn.execute(
                    text(f"""
                        INSERT INTO {self.schema}.{DDL_CHUNK_TABLE} (parent_id, chunk_index, chunk_embedding)
                        VALUES {", ".join(values)}
                    """),
                    params,
                )

        logger.info("Indexed DDL for %s as %d chunk(s)", table_name, len(embeddings))
        return parent_id
