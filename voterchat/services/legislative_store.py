import json
import logging

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine

from voterchat.errors import MissingReferenceError
from voterchat.models.database import is_foreign_key_violation
from voterchat.models.schemas import BillRecord, RollCallRecord, RollCallVoteRecord, SponsorRecord

logger = logging.getLogger(__name__)


class LegislativeStore:
    """Idempotent writes for sponsors, bills, roll calls and their links.

    Every write runs in its own short transaction and is keyed on the corpus'
    external ids, so replaying a file converges on the same rows. Foreign-key
    violations surface as ``MissingReferenceError`` naming the missing table.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def _execute(self, query, params: dict, missing_table: str = None) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.execute(query, params)
        except DBAPIError as e:
            if is_foreign_key_violation(e):
                raise MissingReferenceError(
                    f"Referenced row not found in {missing_table}: {params}", table=missing_table
                ) from e
            raise

    async def upsert_sponsor(self, sponsor: SponsorRecord) -> None:
        query = text("""
            INSERT INTO sponsors (sponsor_id, name, party, district, role)
            VALUES (:sponsor_id, :name, :party, :district, :role)
            ON CONFLICT (sponsor_id) DO UPDATE SET
                name = EXCLUDED.name,
                party = EXCLUDED.party,
                district = EXCLUDED.district,
                role = EXCLUDED.role,
                updated_at = CURRENT_TIMESTAMP
        """)
        await self._execute(query, sponsor.model_dump())

    async def upsert_bill(self, bill: BillRecord) -> None:
        query = text("""
            INSERT INTO bills (
                bill_id, bill_number, bill_type, title, description,
                inferred_categories, subjects, committee_name,
                last_action, last_action_date, pdf_url
            )
            VALUES (
                :bill_id, :bill_number, :bill_type, :title, :description,
                CAST(:inferred_categories AS JSONB), CAST(:subjects AS JSONB), :committee_name,
                :last_action, :last_action_date, :pdf_url
            )
            ON CONFLICT (bill_id) DO UPDATE SET
                bill_number = EXCLUDED.bill_number,
                bill_type = EXCLUDED.bill_type,
                title = EXCLUDED.title,
                description = EXCLUDED.description,
                inferred_categories = EXCLUDED.inferred_categories,
                subjects = EXCLUDED.subjects,
                committee_name = EXCLUDED.committee_name,
                last_action = EXCLUDED.last_action,
                last_action_date = EXCLUDED.last_action_date,
                pdf_url = EXCLUDED.pdf_url,
                updated_at = CURRENT_TIMESTAMP
        """)
        await self._execute(query, {
            "bill_id": bill.bill_id,
            "bill_number": bill.bill_number,
            "bill_type": bill.bill_type,
            "title": bill.title,
            "description": bill.description,
            "inferred_categories": json.dumps([c.model_dump() for c in bill.inferred_categories]),
            "subjects": json.dumps(bill.subjects),
            "committee_name": bill.committee_name,
            "last_action": bill.last_action,
            "last_action_date": bill.last_action_date,
            "pdf_url": bill.pdf_url,
        })

    async def link_bill_sponsor(self, bill_id: int, sponsor_id: int) -> None:
        query = text("""
            INSERT INTO bill_sponsors (bill_id, sponsor_id)
            VALUES (:bill_id, :sponsor_id)
            ON CONFLICT (bill_id, sponsor_id) DO NOTHING
        """)
        await self._execute(query, {"bill_id": bill_id, "sponsor_id": sponsor_id}, missing_table="sponsors")

    async def upsert_roll_call(self, roll_call: RollCallRecord) -> None:
        query = text("""
            INSERT INTO roll_calls (
                roll_call_id, bill_id, date, yea, nay, nv, absent, passed, chamber, chamber_id
            )
            VALUES (
                :roll_call_id, :bill_id, :date, :yea, :nay, :nv, :absent, :passed, :chamber, :chamber_id
            )
            ON CONFLICT (roll_call_id) DO UPDATE SET
                bill_id = EXCLUDED.bill_id,
                date = EXCLUDED.date,
                yea = EXCLUDED.yea,
                nay = EXCLUDED.nay,
                nv = EXCLUDED.nv,
                absent = EXCLUDED.absent,
                passed = EXCLUDED.passed,
                chamber = EXCLUDED.chamber,
                chamber_id = EXCLUDED.chamber_id,
                updated_at = CURRENT_TIMESTAMP
        """)
        await self._execute(query, roll_call.model_dump(exclude={"votes"}), missing_table="bills")

    async def upsert_roll_call_vote(self, vote: RollCallVoteRecord) -> None:
        query = text("""
            INSERT INTO roll_call_votes (roll_call_id, sponsor_id, vote)
            VALUES (:roll_call_id, :sponsor_id, :vote)
            ON CONFLICT (roll_call_id, sponsor_id) DO UPDATE SET vote = EXCLUDED.vote
        """)
        await self._execute(query, {
            "roll_call_id": vote.roll_call_id,
            "sponsor_id": vote.sponsor_id,
            "vote": vote.vote.value,
        }, missing_table="sponsors")
