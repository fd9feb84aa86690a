"""Exception hierarchy shared by the ingestion pipeline and the query tools"""


class VoterChatError(Exception):
    """Base class for all errors raised by voterchat"""


class ConfigurationError(VoterChatError):
    """A required setting (connection string, schema name, API key) is missing or invalid"""


class IngestError(VoterChatError):
    """A source file or record could not be ingested"""


class RecordParseError(IngestError):
    """A source file could not be parsed into the expected record shape"""


class MissingReferenceError(IngestError):
    """A row references an entity (bill, sponsor) that has not been imported yet"""

    def __init__(self, message: str, table: str = None):
        super().__init__(message)
        self.table = table


class EmbeddingError(VoterChatError):
    """The embedding backend failed or was given unusable input"""


class EmbeddingDimensionError(EmbeddingError):
    """The backend returned a vector whose width does not match the index"""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Expected embedding of dimension {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class InvalidIdentifierError(VoterChatError):
    """A table, column, schema name or column type failed the allow-list check"""


class TableNameExtractionError(VoterChatError):
    """No table name could be extracted from a DDL string"""


class BillNotFoundError(VoterChatError):
    """The requested bill (or its embedding) does not exist"""


class QueryGateError(VoterChatError):
    """Base class for errors raised at the read-only query boundary"""


class ReadOnlyViolationError(QueryGateError):
    """A submitted statement is not a plain SELECT"""


class TokenBudgetExceededError(QueryGateError):
    """The serialized result set is larger than the configured token budget"""

    def __init__(self, limit: int, total: int):
        super().__init__(f"Token limit exceeded: {total} > {limit}")
        self.limit = limit
        self.total = total


class IndexMaintenanceError(VoterChatError):
    """Dropping or rebuilding an ANN index failed"""


class QueryGenerationError(VoterChatError):
    """The language model did not return a usable SQL query"""
