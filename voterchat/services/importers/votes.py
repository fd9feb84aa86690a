from typing import Any, Dict, List

from voterchat.models.schemas import RollCallRecord, RollCallVoteRecord
from voterchat.services.importers.base import BaseImporter, parse_date


class VoteImporter(BaseImporter):
    """Imports ``vote/*.json`` roll calls and the individual votes cast"""

    category = "vote"

    def parse(self, data: Dict[str, Any]) -> RollCallRecord:
        roll_call = data["roll_call"]
        return RollCallRecord(
            roll_call_id=roll_call["roll_call_id"],
            bill_id=roll_call.get("bill_id"),
            date=parse_date(roll_call.get("date")),
            yea=roll_call["yea"],
            nay=roll_call["nay"],
            nv=roll_call["nv"],
            absent=roll_call["absent"],
            passed=bool(roll_call["passed"]),
            chamber=roll_call["chamber"],
            chamber_id=roll_call["chamber_id"],
            votes=roll_call.get("votes") or [],
        )

    async def store_primary(self, record: RollCallRecord) -> None:
        await self.store.upsert_roll_call(record)

    def links_of(self, record: RollCallRecord) -> List[Dict[str, Any]]:
        return record.votes

    async def store_link(self, record: RollCallRecord, vote: Dict[str, Any]) -> None:
        await self.store.upsert_roll_call_vote(RollCallVoteRecord(
            roll_call_id=record.roll_call_id,
            sponsor_id=vote["people_id"],
            vote=vote["vote_text"],
        ))

    def describe_link(self, record: RollCallRecord, vote: Dict[str, Any]) -> str:
        return f"vote of sponsor {vote.get('people_id')} on roll call {record.roll_call_id}"
