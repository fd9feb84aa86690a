from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class VoteValue(str, Enum):
    YEA = "Yea"
    NAY = "Nay"
    NV = "NV"
    ABSENT = "Absent"


class CategoryScore(BaseModel):
    category: str
    score: float


class SponsorRecord(BaseModel):
    sponsor_id: int
    name: str
    party: Optional[str] = None
    district: Optional[str] = None
    role: Optional[str] = None


class BillRecord(BaseModel):
    bill_id: int
    bill_number: str = ""
    bill_type: str = Field(default="B", max_length=1)
    title: str
    description: str
    inferred_categories: List[CategoryScore] = Field(default_factory=list)
    subjects: List[Any] = Field(default_factory=list)
    committee_name: Optional[str] = None
    last_action: Optional[str] = None
    last_action_date: Optional[datetime] = None
    pdf_url: Optional[str] = None
    sponsor_ids: List[int] = Field(default_factory=list)


class RollCallVoteRecord(BaseModel):
    roll_call_id: int
    sponsor_id: int
    vote: VoteValue


class RollCallRecord(BaseModel):
    roll_call_id: int
    bill_id: Optional[int] = None
    date: datetime
    yea: int
    nay: int
    nv: int
    absent: int
    passed: bool
    chamber: str
    chamber_id: int
    votes: List[Dict[str, Any]] = Field(default_factory=list)


class ColumnInfo(BaseModel):
    type: str
    description: str = ""


class TableInfo(BaseModel):
    """Shape of a generated voter table, as returned by the table-summary model"""
    file_name: str = ""
    table_name: str
    summary: str = ""
    columns: Dict[str, ColumnInfo]


# --- tool boundary ---------------------------------------------------------

class SimilaritySearch(BaseModel):
    query: str
    threshold: float = Field(default=0.2, ge=0.0, le=1.0)
    limit: int = Field(default=10, gt=0)


class SchemaCandidatesRequest(BaseModel):
    userInput: str
    topK: int = 2


class SimilarValuesRequest(BaseModel):
    userInput: str
    tableDdl: str
    topK: int = 3
    thres: float = 0.5


class ExecuteSelectsRequest(BaseModel):
    selects: List[str] = Field(default_factory=list)


class ExecuteSqlRequest(BaseModel):
    queries: List[str] = Field(default_factory=list)


class BillsQueryRequest(BaseModel):
    query: str


class LookupValuesRequest(BaseModel):
    keys: List[str]


class SchemaCandidate(BaseModel):
    ddl: str
    possibleColumnValues: List[str] = Field(default_factory=list)


class BillMatch(BaseModel):
    bill_id: int
    bill_number: Optional[str] = None
    title: str
    description: Optional[str] = None
    subjects: Optional[List[Any]] = None
    inferred_categories: Optional[List[Any]] = None
    committee_name: Optional[str] = None
    last_action: Optional[str] = None
    last_action_date: Optional[datetime] = None
    similarity: Optional[float] = None
