import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

Base = declarative_base()

# Postgres SQLSTATE for foreign_key_violation
FOREIGN_KEY_VIOLATION = "23503"


def to_async_url(url: str) -> str:
    """Rewrite a plain postgres URL to use the asyncpg driver"""
    for prefix in ("postgresql+psycopg2://", "postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


def make_engine(url: str, **kwargs) -> AsyncEngine:
    options = {
        "pool_pre_ping": True,
        "pool_recycle": 2 * 60 * 60,
        "pool_size": 10,
        "max_overflow": 10,
    }
    options.update(kwargs)
    return create_async_engine(to_async_url(url), **options)


def sqlstate_of(exc: BaseException) -> Optional[str]:
    """Dig the Postgres SQLSTATE out of a (possibly wrapped) DBAPI error"""
    seen = set()
    current = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        for attr in ("sqlstate", "pgcode"):
            code = getattr(current, attr, None)
            if isinstance(code, str) and code:
                return code
        current = getattr(current, "orig", None) or current.__cause__
    return None


def is_foreign_key_violation(exc: BaseException) -> bool:
    return sqlstate_of(exc) == FOREIGN_KEY_VIOLATION


# Columns added after the first release; create_all does not alter existing tables
BILLS_MIGRATIONS = [
    "ALTER TABLE process_tracker ADD COLUMN IF NOT EXISTS table_name TEXT",
]

BILLS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_bills_embedding ON bills USING hnsw (embedding vector_cosine_ops) WITH (m = 8, ef_construction = 32)",
    "CREATE INDEX IF NOT EXISTS idx_bills_inferred_categories ON bills USING GIN (inferred_categories)",
    "CREATE INDEX IF NOT EXISTS idx_bills_subjects ON bills USING GIN (subjects)",
    "CREATE INDEX IF NOT EXISTS idx_bills_committee_name ON bills(committee_name)",
    "CREATE INDEX IF NOT EXISTS idx_bills_bill_number ON bills(bill_number)",
    "CREATE INDEX IF NOT EXISTS idx_bills_last_action_date ON bills(last_action_date)",
    "CREATE INDEX IF NOT EXISTS idx_sponsors_party ON sponsors(party)",
    "CREATE INDEX IF NOT EXISTS idx_sponsors_district ON sponsors(district)",
    "CREATE INDEX IF NOT EXISTS idx_bill_sponsors_sponsor_id ON bill_sponsors(sponsor_id)",
    "CREATE INDEX IF NOT EXISTS idx_roll_calls_bill_id ON roll_calls(bill_id)",
    "CREATE INDEX IF NOT EXISTS idx_roll_calls_date ON roll_calls(date)",
    "CREATE INDEX IF NOT EXISTS idx_roll_call_votes_sponsor_id ON roll_call_votes(sponsor_id)",
    "CREATE INDEX IF NOT EXISTS idx_roll_call_votes_vote ON roll_call_votes(vote)",
    "CREATE INDEX IF NOT EXISTS idx_process_tracker_status ON process_tracker(status)",
    "CREATE INDEX IF NOT EXISTS idx_process_tracker_file_type ON process_tracker(file_type)",
    "CREATE INDEX IF NOT EXISTS idx_process_tracker_state_session ON process_tracker(state, session)",
]


async def create_bills_tables(engine: AsyncEngine) -> None:
    """Create the legislative tables, the progress tracker and their indexes"""
    # Registers the ORM classes on Base.metadata
    from voterchat.models import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
        for statement in BILLS_MIGRATIONS:
            await conn.execute(text(statement))
        for statement in BILLS_INDEXES:
            await conn.execute(text(statement))
    logger.info("Bills schema created/verified")
