import logging
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncEngine

from voterchat.config import Settings
from voterchat.errors import ConfigurationError
from voterchat.models.models import BILL_EMBEDDING_DIM
from voterchat.services.bulk_embedding import BillEmbeddingTarget, BulkEmbeddingProcessor, BulkRunReport
from voterchat.services.classifier_service import ClassifierService, ZeroShotClassifier
from voterchat.services.embedding_service import EmbeddingService, build_embedding_service
from voterchat.services.importers import BillImporter, ImportReport, SponsorImporter, VoteImporter
from voterchat.services.legislative_store import LegislativeStore
from voterchat.services.process_tracker import ProcessTracker

logger = logging.getLogger(__name__)


def build_bill_embedder(settings: Settings) -> EmbeddingService:
    """Embedding service whose width matches bills.embedding"""
    if settings.bills_embedding.dimension != BILL_EMBEDDING_DIM:
        raise ConfigurationError(
            f"BILLS_EMBED_DIM is {settings.bills_embedding.dimension}, "
            f"but bills.embedding is VECTOR({BILL_EMBEDDING_DIM})"
        )
    return build_embedding_service(settings.bills_embedding)


class LegislativeDataImporter:
    """Runs the legislative import phases in dependency order.

    Sponsors first (bills and votes link to them), then bills, then the bill
    embedding backfill, then roll-call votes (which reference bills).
    """

    def __init__(self, sponsors: SponsorImporter, bills: BillImporter, votes: VoteImporter,
                 bill_embeddings: BulkEmbeddingProcessor):
        self.sponsors = sponsors
        self.bills = bills
        self.votes = votes
        self.bill_embeddings = bill_embeddings

    @classmethod
    def from_settings(cls, settings: Settings, engine: AsyncEngine,
                      embedder: EmbeddingService = None) -> "LegislativeDataImporter":
        tracker = ProcessTracker(engine)
        store = LegislativeStore(engine)
        options = {
            "link_concurrency": settings.imports.link_concurrency,
            "abort_on_missing_reference": settings.imports.abort_on_missing_reference,
        }
        classifier = ClassifierService(primary=ZeroShotClassifier())
        embedder = embedder or build_bill_embedder(settings)
        return cls(
            sponsors=SponsorImporter(tracker, store, **options),
            bills=BillImporter(tracker, store, classifier, **options),
            votes=VoteImporter(tracker, store, **options),
            bill_embeddings=BulkEmbeddingProcessor(
                BillEmbeddingTarget(engine), embedder, batch_size=settings.imports.bill_embed_batch_size
            ),
        )

    async def import_sponsors(self, root: str) -> ImportReport:
        logger.info("Importing sponsors from %s", root)
        return await self.sponsors.process_directory(root)

    async def import_bills(self, root: str) -> ImportReport:
        logger.info("Importing bills from %s", root)
        return await self.bills.process_directory(root)

    async def process_bills(self) -> BulkRunReport:
        logger.info("Embedding bills without an embedding")
        return await self.bill_embeddings.run()

    async def import_votes(self, root: str) -> ImportReport:
        logger.info("Importing votes from %s", root)
        return await self.votes.process_directory(root)

    async def import_all(self, root: str) -> Dict[str, Any]:
        """Every phase, in order; returns the report of each"""
        reports: Dict[str, Any] = {}
        reports["sponsors"] = await self.import_sponsors(root)
        reports["bills"] = await self.import_bills(root)
        reports["embeddings"] = await self.process_bills()
        reports["votes"] = await self.import_votes(root)
        logger.info("Data import completed successfully")
        return reports
