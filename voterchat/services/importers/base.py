"""Shared machinery for the per-category corpus importers.

The corpus is laid out as ``<root>/<region>/<session>/<category>/*.json``.
Each importer walks its category, and for every file:

1. skips it when the progress tracker already reports it ``completed``
2. marks it ``processing``
3. parses the JSON document into a record
4. upserts the primary entity
5. upserts dependent link rows with bounded concurrency (a failing link is
   logged and counted, never fatal to the file)
6. marks it ``completed``, or ``failed`` if steps 3-4 raised

Per-file failures never stop the walk; the driver aggregates outcomes in an
``ImportReport``.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from tqdm import tqdm

from voterchat.errors import MissingReferenceError, RecordParseError

logger = logging.getLogger(__name__)

COMPLETED = "completed"
SKIPPED = "skipped"
FAILED = "failed"

PARSE_ERROR = "parse"
STORE_ERROR = "store"
MISSING_REFERENCE = "missing_reference"


@dataclass
class SourceFile:
    path: str
    region: str
    session: str
    category: str


@dataclass
class FileOutcome:
    path: str
    status: str
    error_kind: Optional[str] = None
    message: Optional[str] = None
    links_failed: int = 0
    records: int = 0


@dataclass
class ImportReport:
    category: str
    outcomes: List[FileOutcome] = field(default_factory=list)

    def add(self, outcome: FileOutcome) -> None:
        self.outcomes.append(outcome)

    def _count(self, status: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def completed(self) -> int:
        return self._count(COMPLETED)

    @property
    def skipped(self) -> int:
        return self._count(SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(FAILED)

    @property
    def links_failed(self) -> int:
        return sum(outcome.links_failed for outcome in self.outcomes)

    def summary(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "completed": self.completed,
            "skipped": self.skipped,
            "failed": self.failed,
            "links_failed": self.links_failed,
        }


def parse_date(value: Optional[str]) -> Optional[datetime]:
    """Corpus dates are ISO strings; empty and zero dates mean unknown"""
    if not value or value.startswith("0000-00-00"):
        return None
    return datetime.fromisoformat(value)


class CorpusWalker:
    """Yields the JSON files of one category in a deterministic order"""

    def __init__(self, root: str, category: str):
        self.root = os.path.abspath(root)
        self.category = category

    @staticmethod
    def _subdirs(path: str) -> List[str]:
        return sorted(
            entry.name for entry in os.scandir(path)
            if entry.is_dir()
        )

    def __iter__(self) -> Iterator[SourceFile]:
        for region in self._subdirs(self.root):
            region_path = os.path.join(self.root, region)
            for session in self._subdirs(region_path):
                category_path = os.path.join(region_path, session, self.category)
                if not os.path.isdir(category_path):
                    logger.warning("No %s directory in %s/%s", self.category, region, session)
                    continue
                for name in sorted(os.listdir(category_path)):
                    if not name.endswith(".json"):
                        continue
                    yield SourceFile(
                        path=os.path.join(category_path, name),
                        region=region,
                        session=session,
                        category=self.category,
                    )


class BaseImporter:
    """Template for a category importer; subclasses map and store records"""

    category: str = ""

    def __init__(self, tracker, store, link_concurrency: int = 8,
                 abort_on_missing_reference: bool = False):
        self.tracker = tracker
        self.store = store
        self.link_concurrency = link_concurrency
        self.abort_on_missing_reference = abort_on_missing_reference

    def parse(self, data: Dict[str, Any]):
        raise NotImplementedError

    async def store_primary(self, record) -> None:
        raise NotImplementedError

    def links_of(self, record) -> List[Any]:
        return []

    async def store_link(self, record, link) -> None:
        raise NotImplementedError

    def describe_link(self, record, link) -> str:
        return repr(link)

    def _load(self, source: SourceFile):
        try:
            with open(source.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return self.parse(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise RecordParseError(f"Could not read {self.category} record from {source.path}: {e}") from e

    async def _mark(self, source: SourceFile, status: str) -> None:
        await self.tracker.upsert_status(source.path, self.category, source.region, source.session, status)

    async def _failed(self, source: SourceFile, kind: str, error: Exception) -> FileOutcome:
        logger.error("Error processing %s file %s: %s", self.category, source.path, error)
        await self._mark(source, FAILED)
        return FileOutcome(source.path, FAILED, error_kind=kind, message=str(error))

    async def process_file(self, source: SourceFile) -> FileOutcome:
        """Ingest one file, recording its progress in the tracker"""
        if await self.tracker.check_completed(source.path):
            return FileOutcome(source.path, SKIPPED)

        await self._mark(source, "processing")

        try:
            record = self._load(source)
        except RecordParseError as e:
            return await self._failed(source, PARSE_ERROR, e)

        try:
            await self.store_primary(record)
        except MissingReferenceError as e:
            return await self._failed(source, MISSING_REFERENCE, e)
        except Exception as e:
            return await self._failed(source, STORE_ERROR, e)

        links_failed = await self._store_links(record)

        await self._mark(source, COMPLETED)
        return FileOutcome(source.path, COMPLETED, links_failed=links_failed)

    async def _store_links(self, record) -> int:
        links = self.links_of(record)
        if not links:
            return 0

        semaphore = asyncio.Semaphore(self.link_concurrency)

        async def store(link) -> bool:
            async with semaphore:
                try:
                    await self.store_link(record, link)
                    return True
                except MissingReferenceError as e:
                    logger.warning("Skipping %s: %s", self.describe_link(record, link), e)
                except Exception as e:
                    logger.error("Error storing %s: %s", self.describe_link(record, link), e)
                return False

        results = await asyncio.gather(*(store(link) for link in links))
        return results.count(False)

    async def process_directory(self, root: str) -> ImportReport:
        """Import every file of this category under root"""
        report = ImportReport(self.category)
        for source in tqdm(CorpusWalker(root, self.category), desc=f"{self.category} files", unit="file"):
            outcome = await self.process_file(source)
            report.add(outcome)
            if outcome.error_kind == MISSING_REFERENCE and self.abort_on_missing_reference:
                raise MissingReferenceError(outcome.message)

        logger.info(
            "%s import finished: %d completed, %d skipped, %d failed, %d links failed",
            self.category, report.completed, report.skipped, report.failed, report.links_failed,
        )
        return report
