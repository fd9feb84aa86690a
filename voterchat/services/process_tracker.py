import logging
from typing import Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from voterchat.models.models import FILE_TYPES, STATUSES

logger = logging.getLogger(__name__)


class ProcessTracker:
    """Per-file ingestion progress, keyed by absolute path.

    Rows are only ever inserted or updated. Once a file is ``completed`` its row
    is frozen: the upsert's ``DO UPDATE`` is guarded so a later status write for
    the same path is a no-op.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def check_completed(self, path: str) -> bool:
        """Whether path was already fully ingested"""
        query = text("SELECT status FROM process_tracker WHERE absolute_path = :path")
        async with self.engine.connect() as conn:
            result = await conn.execute(query, {"path": path})
            row = result.fetchone()
        return row is not None and row.status == "completed"

    async def upsert_status(self, path: str, category: str, region: str, session: str, status: str) -> None:
        """Record the status of one source file"""
        if status not in STATUSES:
            raise ValueError(f"Unknown status: {status}")
        if category not in FILE_TYPES:
            raise ValueError(f"Unknown file type: {category}")

        query = text("""
            INSERT INTO process_tracker (absolute_path, file_type, state, session, status)
            VALUES (:path, :file_type, :state, :session, :status)
            ON CONFLICT (absolute_path) DO UPDATE SET
                file_type = EXCLUDED.file_type,
                state = EXCLUDED.state,
                session = EXCLUDED.session,
                status = EXCLUDED.status,
                updated_at = CURRENT_TIMESTAMP
            WHERE process_tracker.status <> 'completed'
        """)

        async with self.engine.begin() as conn:
            await conn.execute(query, {
                "path": path,
                "file_type": category,
                "state": region,
                "session": session,
                "status": status,
            })
        logger.debug("%s -> %s", path, status)

    async def table_for(self, path: str) -> Optional[str]:
        """Voter table previously created for path, if any"""
        query = text("SELECT table_name FROM process_tracker WHERE absolute_path = :path")
        async with self.engine.connect() as conn:
            result = await conn.execute(query, {"path": path})
            row = result.fetchone()
        return row.table_name if row is not None else None

    async def record_table(self, path: str, table_name: str) -> None:
        """Remember which generated table path owns"""
        query = text("""
            UPDATE process_tracker
            SET table_name = :table_name, updated_at = CURRENT_TIMESTAMP
            WHERE absolute_path = :path AND status <> 'completed'
        """)
        async with self.engine.begin() as conn:
            await conn.execute(query, {"path": path, "table_name": table_name})

    async def status_counts(self, category: Optional[str] = None) -> Dict[str, int]:
        """Number of tracked files per status"""
        params = {}
        where_clause = ""
        if category:
            where_clause = "WHERE file_type = :file_type"
            params["file_type"] = category

        query = text(f"""
            SELECT status, COUNT(*) AS total
            FROM process_tracker
            {where_clause}
            GROUP BY status
        """)

        async with self.engine.connect() as conn:
            result = await conn.execute(query, params)
            rows = result.fetchall()

        counts = {status: 0 for status in STATUSES}
        for row in rows:
            counts[row.status] = row.total
        return counts

    async def list_paths(self, status: str, category: Optional[str] = None) -> List[str]:
        """Paths currently in the given status, e.g. failed files to retry"""
        conditions = ["status = :status"]
        params = {"status": status}
        if category:
            conditions.append("file_type = :file_type")
            params["file_type"] = category

        query = text(f"""
            SELECT absolute_path FROM process_tracker
            WHERE {" AND ".join(conditions)}
            ORDER BY absolute_path
        """)

        async with self.engine.connect() as conn:
            result = await conn.execute(query, params)
            return [row.absolute_path for row in result.fetchall()]
