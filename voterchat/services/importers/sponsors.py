from typing import Any, Dict

from voterchat.models.schemas import SponsorRecord
from voterchat.services.importers.base import BaseImporter


class SponsorImporter(BaseImporter):
    """Imports ``people/*.json`` documents into sponsors"""

    category = "people"

    def parse(self, data: Dict[str, Any]) -> SponsorRecord:
        person = data["person"]
        return SponsorRecord(
            sponsor_id=person["people_id"],
            name=person["name"],
            party=person.get("party"),
            district=person.get("district"),
            role=person.get("role"),
        )

    async def store_primary(self, record: SponsorRecord) -> None:
        await self.store.upsert_sponsor(record)
