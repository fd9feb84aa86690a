"""Imports pipe-delimited voter registration extracts.

Each ``*.csv`` file becomes one generated table (named and described by the
table-summary service from a sample of its rows), a companion ``_embedding``
table holding one JSON snapshot per row for the bulk embedding pass, and one
indexed DDL document for schema retrieval.

A generated table belongs to exactly one source file. Names already present in
the voter schema are never handed to another file, and the tracker remembers
which table each file owns so a retried file recreates only its own table.
"""

import itertools
import json
import logging
import os
from decimal import Decimal
from functools import partial
from typing import Any, Dict, Iterator, List, Optional

import pandas as pd
from sqlalchemy import column, insert, table
from sqlalchemy.ext.asyncio import AsyncEngine
from tqdm import tqdm

from voterchat.errors import IngestError, InvalidIdentifierError
from voterchat.models.schemas import TableInfo
from voterchat.services.importers.base import (
    COMPLETED,
    FAILED,
    PARSE_ERROR,
    SKIPPED,
    STORE_ERROR,
    FileOutcome,
    ImportReport,
)
from voterchat.services.voter_schema import sanitize_identifier, unique_table_name, validate_identifier

logger = logging.getLogger(__name__)

DELIMITER = "|"
INSERT_GROUP_SIZE = 100

TEXT_TYPES = ("VARCHAR", "CHARACTER VARYING", "TEXT")
TRUE_VALUES = ("1", "t", "true", "y", "yes")


def _base_type(column_type: str) -> str:
    return column_type.split("(")[0].strip().upper()


def _timestamps(values: pd.Series) -> List[Any]:
    parsed = pd.to_datetime(values, errors="coerce", format="mixed")
    return [None if pd.isna(value) else value.to_pydatetime() for value in parsed]


def coerce_column(values: pd.Series, column_type: str) -> List[Any]:
    """Convert a column of raw CSV strings to Python values for a column type.

    Blank and unparseable values become NULL, except in text columns which are
    stored as read.
    """
    base = _base_type(column_type)
    if base in TEXT_TYPES:
        return values.tolist()

    if base == "TIMESTAMP":
        return _timestamps(values)
    if base == "DATE":
        return [value.date() if value is not None else None for value in _timestamps(values)]

    if base in ("INTEGER", "BIGINT", "NUMERIC"):
        numbers = pd.to_numeric(values, errors="coerce")
        converted = []
        for raw, number in zip(values, numbers):
            if pd.isna(number):
                converted.append(None)
            elif base == "NUMERIC":
                converted.append(Decimal(raw))
            elif float(number).is_integer():
                converted.append(int(number))
            else:
                converted.append(None)
        return converted

    if base == "BOOLEAN":
        return [None if not value else value.lower() in TRUE_VALUES for value in values]
    return values.tolist()


class ColumnPlan:
    """Maps CSV headers onto the generated table's columns"""

    def __init__(self, header: List[str], table_info: TableInfo):
        columns = {
            sanitize_identifier(name): info.type
            for name, info in table_info.columns.items()
        }
        self.header = header
        self.positions = []
        for name in header:
            try:
                key = sanitize_identifier(name)
            except InvalidIdentifierError:
                continue
            if key in columns:
                self.positions.append((name, key, columns.pop(key)))
        if not self.positions:
            raise IngestError(f"No CSV header matches a column of {table_info.table_name}")
        if columns:
            logger.warning("Columns without a CSV header in %s: %s", table_info.table_name, sorted(columns))

    @property
    def column_names(self) -> List[str]:
        return [name for _, name, _ in self.positions]

    def rows(self, frame: pd.DataFrame) -> List[Dict[str, Any]]:
        columns = {
            name: coerce_column(frame[header], column_type)
            for header, name, column_type in self.positions
        }
        return [dict(zip(columns, values)) for values in zip(*columns.values())]

    def snapshots(self, frame: pd.DataFrame) -> List[str]:
        return [json.dumps(record) for record in frame[self.header].to_dict(orient="records")]


class VoterRowWriter:
    """Multi-row parameterised inserts into a generated table and its _embedding table"""

    def __init__(self, engine: AsyncEngine, schema: str, group_size: int = INSERT_GROUP_SIZE):
        self.engine = engine
        self.schema = validate_identifier(schema)
        self.group_size = group_size

    async def write(self, table_name: str, column_names: List[str], rows: List[Dict[str, Any]],
                    snapshots: List[str]) -> None:
        target = table(validate_identifier(table_name), *[column(name) for name in column_names], schema=self.schema)
        embedding = table(f"{table_name}_embedding", column("json_string"), schema=self.schema)

        async with self.engine.begin() as conn:
            for start in range(0, len(rows), self.group_size):
                await conn.execute(insert(target).values(rows[start:start + self.group_size]))
            for start in range(0, len(snapshots), self.group_size):
                group = snapshots[start:start + self.group_size]
                await conn.execute(insert(embedding).values([{"json_string": s} for s in group]))


def _skip_bad_line(name: str, fields: List[str]) -> None:
    logger.info("Skipping a line of %s with %d values: more values than headers", name, len(fields))


class VoterImporter:
    """Tracked, per-file import of a directory of delimited voter extracts"""

    category = "voter"

    def __init__(self, tracker, voter_schema, indexer, summarizer, writer,
                 insert_batch_size: int = 500, sample_size: int = 500):
        self.tracker = tracker
        self.voter_schema = voter_schema
        self.indexer = indexer
        self.summarizer = summarizer
        self.writer = writer
        self.insert_batch_size = insert_batch_size
        self.sample_size = sample_size
        self.generated_tables: List[str] = []

    @staticmethod
    def _source_keys(path: str):
        region = os.path.basename(os.path.dirname(path))
        session = os.path.splitext(os.path.basename(path))[0]
        return region, session

    async def _mark(self, path: str, status: str) -> None:
        region, session = self._source_keys(path)
        await self.tracker.upsert_status(path, self.category, region, session, status)

    async def process_file(self, path: str) -> FileOutcome:
        path = os.path.abspath(path)
        if await self.tracker.check_completed(path):
            return FileOutcome(path, SKIPPED)

        await self._mark(path, "processing")
        try:
            records = await self._ingest(path)
        except (IngestError, InvalidIdentifierError, OSError, UnicodeDecodeError) as e:
            kind = PARSE_ERROR
            error = e
        except Exception as e:
            kind = STORE_ERROR
            error = e
        else:
            await self._mark(path, COMPLETED)
            return FileOutcome(path, COMPLETED, records=records)

        logger.error("Error processing voter file %s: %s", path, error)
        await self._mark(path, FAILED)
        return FileOutcome(path, FAILED, error_kind=kind, message=str(error))

    def _frames(self, path: str) -> Iterator[pd.DataFrame]:
        """Complete, stripped rows of path in chunks of insert_batch_size"""
        name = os.path.basename(path)
        try:
            reader = pd.read_csv(
                path,
                sep=DELIMITER,
                dtype=str,
                keep_default_na=False,
                encoding="utf-8",
                engine="python",
                chunksize=self.insert_batch_size,
                on_bad_lines=partial(_skip_bad_line, name),
            )
            with reader:
                for frame in reader:
                    frame.columns = [str(header).strip() for header in frame.columns]
                    # Missing trailing values are read as NaN; real blanks are ""
                    complete = frame.notna().all(axis=1)
                    if not complete.all():
                        logger.info(
                            "Skipping %d line(s) of %s with fewer values than headers",
                            int((~complete).sum()), name,
                        )
                        frame = frame[complete]
                    if len(frame):
                        yield frame.apply(lambda values: values.str.strip())
        except pd.errors.EmptyDataError as e:
            raise IngestError(f"{path} has no header row") from e
        except pd.errors.ParserError as e:
            raise IngestError(f"Could not parse {path}: {e}") from e

    async def _choose_table_name(self, path: str, table_info: TableInfo, owned: Optional[str], taken) -> TableInfo:
        # A retried file keeps its own table; any other name must be free
        table_name = owned or unique_table_name(sanitize_identifier(table_info.table_name), taken)
        await self.tracker.record_table(path, table_name)
        self.generated_tables.append(table_name)
        return table_info.model_copy(update={"table_name": table_name})

    async def _ingest(self, path: str) -> int:
        frames = self._frames(path)
        sampled: List[pd.DataFrame] = []
        for frame in frames:
            sampled.append(frame)
            if sum(len(f) for f in sampled) >= self.sample_size:
                break
        if not sampled:
            raise IngestError(f"{path} has no data rows")

        header = list(sampled[0].columns)
        if not any(header):
            raise IngestError(f"{path} has no header row")
        sample = pd.concat(sampled).head(self.sample_size)

        owned: Optional[str] = await self.tracker.table_for(path)
        taken = set(await self.voter_schema.existing_tables()) | set(self.generated_tables)
        taken.discard(owned)
        table_info = await self.summarizer.generate(
            os.path.basename(path),
            sample.to_dict(orient="records"),
            exclude_table_names=sorted(taken),
        )
        table_info = await self._choose_table_name(path, table_info, owned, taken)
        table_name = table_info.table_name

        ddl = await self.voter_schema.create_voter_tables(table_info)
        plan = ColumnPlan(header, table_info)

        total = 0
        for frame in itertools.chain(sampled, frames):
            total += await self._write(table_name, plan, frame)

        await self.indexer.index_table(table_name, ddl)
        logger.info("Inserted %d record(s) from %s into %s", total, os.path.basename(path), table_name)
        return total

    async def _write(self, table_name: str, plan: ColumnPlan, frame: pd.DataFrame) -> int:
        written = 0
        for start in range(0, len(frame), self.insert_batch_size):
            chunk = frame.iloc[start:start + self.insert_batch_size]
            await self.writer.write(table_name, plan.column_names, plan.rows(chunk), plan.snapshots(chunk))
            written += len(chunk)
        return written

    async def process_directory(self, directory: str) -> ImportReport:
        """Import every *.csv file in directory, in name order"""
        report = ImportReport(self.category)
        names = sorted(name for name in os.listdir(directory) if name.endswith(".csv"))
        for name in tqdm(names, desc="voter files", unit="file"):
            logger.info("Processing file: %s", name)
            report.add(await self.process_file(os.path.join(directory, name)))

        logger.info(
            "voter import finished: %d completed, %d skipped, %d failed",
            report.completed, report.skipped, report.failed,
        )
        return report
