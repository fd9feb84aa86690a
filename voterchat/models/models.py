from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB

from voterchat.models.database import Base

BILL_EMBEDDING_DIM = 384

FILE_TYPES = ("bill", "vote", "people", "voter")
STATUSES = ("pending", "processing", "completed", "failed")
VOTE_VALUES = ("Yea", "Nay", "NV", "Absent")


def _quoted(values):
    return ", ".join(f"'{v}'" for v in values)


class Bill(Base):
    __tablename__ = "bills"

    bill_id = Column(Integer, primary_key=True, autoincrement=False)
    bill_number = Column(Text, nullable=False)
    bill_type = Column(String(1), nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=False)
    inferred_categories = Column(JSONB)
    subjects = Column(JSONB)
    committee_name = Column(Text)
    last_action = Column(Text)
    last_action_date = Column(DateTime)
    embedding = Column(Vector(BILL_EMBEDDING_DIM))
    pdf_url = Column(Text)
    created_at = Column(DateTime, server_default=func.current_timestamp())
    updated_at = Column(DateTime, server_default=func.current_timestamp())


class Sponsor(Base):
    __tablename__ = "sponsors"

    sponsor_id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(Text, nullable=False)
    party = Column(String)
    district = Column(String)
    role = Column(String)
    created_at = Column(DateTime, server_default=func.current_timestamp())
    updated_at = Column(DateTime, server_default=func.current_timestamp())


class BillSponsor(Base):
    __tablename__ = "bill_sponsors"

    bill_id = Column(
        Integer,
        ForeignKey("bills.bill_id", ondelete="CASCADE", name="fk_bill_sponsors_bill"),
        primary_key=True,
    )
    sponsor_id = Column(
        Integer,
        ForeignKey("sponsors.sponsor_id", ondelete="CASCADE", name="fk_bill_sponsors_sponsor"),
        primary_key=True,
    )
    created_at = Column(DateTime, server_default=func.current_timestamp())
    updated_at = Column(DateTime, server_default=func.current_timestamp())


class RollCall(Base):
    __tablename__ = "roll_calls"

    roll_call_id = Column(Integer, primary_key=True, autoincrement=False)
    bill_id = Column(
        Integer,
        ForeignKey("bills.bill_id", ondelete="CASCADE", name="fk_roll_calls_bill"),
    )
    date = Column(DateTime, nullable=False)
    yea = Column(Integer, nullable=False)
    nay = Column(Integer, nullable=False)
    nv = Column(Integer, nullable=False)
    absent = Column(Integer, nullable=False)
    passed = Column(Boolean, nullable=False)
    chamber = Column(String, nullable=False)
    chamber_id = Column(Integer, nullable=False)
    created_at = Column(DateTime, server_default=func.current_timestamp())
    updated_at = Column(DateTime, server_default=func.current_timestamp())


class RollCallVote(Base):
    __tablename__ = "roll_call_votes"
    __table_args__ = (
        CheckConstraint(f"vote IN ({_quoted(VOTE_VALUES)})", name="ck_roll_call_votes_vote"),
    )

    roll_call_id = Column(
        Integer,
        ForeignKey("roll_calls.roll_call_id", ondelete="CASCADE", name="fk_roll_call_votes_roll_call"),
        primary_key=True,
    )
    sponsor_id = Column(
        Integer,
        ForeignKey("sponsors.sponsor_id", ondelete="CASCADE", name="fk_roll_call_votes_sponsor"),
        primary_key=True,
    )
    vote = Column(String)
    created_at = Column(DateTime, server_default=func.current_timestamp())


class ProcessTracker(Base):
    __tablename__ = "process_tracker"
    __table_args__ = (
        CheckConstraint(f"file_type IN ({_quoted(FILE_TYPES)})", name="ck_process_tracker_file_type"),
        CheckConstraint(f"status IN ({_quoted(STATUSES)})", name="ck_process_tracker_status"),
    )

    id = Column(Integer, primary_key=True)
    absolute_path = Column(Text, nullable=False, unique=True)
    file_type = Column(String)
    state = Column(String, nullable=False)
    session = Column(String, nullable=False)
    last_processed_record = Column(Integer, server_default="0")
    status = Column(String)
    table_name = Column(Text)
    updated_at = Column(DateTime, server_default=func.current_timestamp())
    created_at = Column(DateTime, server_default=func.current_timestamp())
