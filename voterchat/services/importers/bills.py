from typing import Any, Dict, List

from voterchat.models.schemas import BillRecord
from voterchat.services.importers.base import BaseImporter, parse_date


class BillImporter(BaseImporter):
    """Imports ``bill/*.json`` documents into bills and bill_sponsors.

    Categories are inferred from the title and description before the bill is
    stored; sponsor links are written afterwards and tolerate sponsors that
    were never imported.
    """

    category = "bill"

    def __init__(self, tracker, store, classifier, **kwargs):
        super().__init__(tracker, store, **kwargs)
        self.classifier = classifier

    def parse(self, data: Dict[str, Any]) -> BillRecord:
        bill = data["bill"]

        # An empty committee is serialised as []
        committee = bill.get("committee")
        committee_name = None
        if isinstance(committee, dict):
            committee_name = committee.get("name")

        history = bill.get("history") or []
        last_action = history[-1] if history else {}

        texts = bill.get("texts") or []
        pdf_url = texts[-1].get("url") if texts else None

        return BillRecord(
            bill_id=bill["bill_id"],
            bill_number=bill.get("bill_number") or "",
            bill_type=bill.get("bill_type") or "B",
            title=bill["title"],
            description=bill.get("description") or "",
            subjects=bill.get("subjects") or [],
            committee_name=committee_name,
            last_action=last_action.get("action"),
            last_action_date=parse_date(last_action.get("date")),
            pdf_url=pdf_url,
            sponsor_ids=[s["people_id"] for s in bill.get("sponsors") or [] if "people_id" in s],
        )

    async def store_primary(self, record: BillRecord) -> None:
        record.inferred_categories = await self.classifier.classify_bill(record.title, record.description)
        await self.store.upsert_bill(record)

    def links_of(self, record: BillRecord) -> List[int]:
        return record.sponsor_ids

    async def store_link(self, record: BillRecord, sponsor_id: int) -> None:
        await self.store.link_bill_sponsor(record.bill_id, sponsor_id)

    def describe_link(self, record: BillRecord, sponsor_id: int) -> str:
        return f"sponsor {sponsor_id} link for bill {record.bill_id}"
