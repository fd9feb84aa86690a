from voterchat.services.importers.base import CorpusWalker, FileOutcome, ImportReport, SourceFile
from voterchat.services.importers.bills import BillImporter
from voterchat.services.importers.sponsors import SponsorImporter
from voterchat.services.importers.votes import VoteImporter

__all__ = [
    "BillImporter",
    "CorpusWalker",
    "FileOutcome",
    "ImportReport",
    "SourceFile",
    "SponsorImporter",
    "VoteImporter",
]
