"""Configuration management for the voterchat pipeline.

Settings are read from the environment (optionally seeded from a ``.env`` file)
into pydantic models. Nothing here connects to anything: callers ask for the
pieces they need through the ``require_*`` helpers, which fail fast with a
``ConfigurationError`` before any partial work is attempted.
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from voterchat.errors import ConfigurationError


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


class DatabaseSettings(BaseModel):
    """Connection settings for the bills and voter databases."""
    bills_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy async URL of the legislative (bills) database"
    )
    voter_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy async URL of the voter registration database"
    )
    voter_schema: Optional[str] = Field(
        default=None,
        description="Postgres schema holding the generated voter tables"
    )


class EmbeddingSettings(BaseModel):
    """Configuration for one embedding model (one fixed dimensionality)."""
    provider: str = Field(
        default="local",
        description="local (sentence-transformers), openai or localai"
    )
    model_name: str = Field(
        default="all-MiniLM-L6-v2",
        description="Model identifier passed to the backend"
    )
    dimension: int = Field(
        default=384,
        description="Width of every vector produced by this model"
    )
    chunk_size: int = Field(
        default=1400,
        description="Texts longer than this many characters are chunked and averaged"
    )
    chunk_overlap: int = Field(
        default=136,
        description="Characters shared between consecutive chunks"
    )
    max_concurrency: int = Field(
        default=8,
        description="Maximum in-flight embedding calls per batch"
    )
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    localai_url: str = "http://localhost:8080"


class ImportSettings(BaseModel):
    """Batch sizes and policies for the importers and the bulk processor."""
    bill_embed_batch_size: int = 50
    voter_embed_batch_size: int = 2000
    voter_insert_batch_size: int = 500
    summary_sample_size: int = 500
    link_concurrency: int = 8
    abort_on_missing_reference: bool = False
    summary_model: str = "gpt-3.5-turbo"


class QuerySettings(BaseModel):
    """Limits applied at the read-only query boundary."""
    token_limit: int = 10000
    tokenizer_model: str = "gpt-4"
    bills_query_model: str = "gpt-4o-mini"
    bills_openai_api_key: Optional[str] = None
    bills_openai_base_url: Optional[str] = None


class Settings(BaseModel):
    """Main configuration object"""
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    bills_embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    voter_embedding: EmbeddingSettings = Field(
        default_factory=lambda: EmbeddingSettings(
            provider="openai", model_name="text-embedding-ada-002", dimension=1536
        )
    )
    imports: ImportSettings = Field(default_factory=ImportSettings)
    query: QuerySettings = Field(default_factory=QuerySettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        """Build settings from environment variables"""
        if dotenv:
            load_dotenv()

        chunk_size = _env_int("EMBED_CHUNK_SIZE", 1400)
        chunk_overlap = _env_int("EMBED_CHUNK_OVERLAP", 136)
        concurrency = _env_int("EMBED_CONCURRENCY", 8)
        openai_key = os.getenv("OPENAI_API_KEY")
        openai_base = os.getenv("OPENAI_BASE_URL")
        localai_url = os.getenv("LOCALAI_URL", "http://localhost:8080")

        return cls(
            database=DatabaseSettings(
                bills_url=os.getenv("BILLS_DATABASE_URL"),
                voter_url=os.getenv("VOTERDATA_DATABASE_URL"),
                voter_schema=os.getenv("VOTERDATA_SCHEMA"),
            ),
            bills_embedding=EmbeddingSettings(
                provider=os.getenv("BILLS_EMBED_PROVIDER", "local"),
                model_name=os.getenv("BILLS_EMBED_MODEL", "all-MiniLM-L6-v2"),
                dimension=_env_int("BILLS_EMBED_DIM", 384),
                chunk_size=chunk_size,
                chunk_overlap=chunk_overlap,
                max_concurrency=concurrency,
                openai_api_key=openai_key,
                openai_base_url=openai_base,
                localai_url=localai_url,
            ),
            voter_embedding=EmbeddingSettings(
                provider=os.getenv("VOTER_EMBED_PROVIDER", "openai"),
                model_name=os.getenv("VOTER_EMBED_MODEL", "text-embedding-ada-002"),
                dimension=_env_int("VOTER_EMBED_DIM", 1536),
                chunk_size=chunk_size,
                chunk_overlap=chunk_overlap,
                max_concurrency=concurrency,
                openai_api_key=openai_key,
                openai_base_url=openai_base,
                localai_url=localai_url,
            ),
            imports=ImportSettings(
                bill_embed_batch_size=_env_int("BILL_EMBED_BATCH_SIZE", 50),
                voter_embed_batch_size=_env_int("VOTER_EMBED_BATCH_SIZE", 2000),
                link_concurrency=_env_int("LINK_CONCURRENCY", 8),
                abort_on_missing_reference=_env_bool("IMPORT_ABORT_ON_MISSING_REFERENCE"),
                summary_model=os.getenv("SUMMARY_MODEL", "gpt-3.5-turbo"),
            ),
            query=QuerySettings(
                token_limit=_env_int("TOKEN_LIMIT", 10000),
                tokenizer_model=os.getenv("TOKENIZER_MODEL", "gpt-4"),
                bills_query_model=os.getenv("BILLS_QUERY_MODEL", "gpt-4o-mini"),
                bills_openai_api_key=os.getenv("BILLS_OPENAI_API_KEY") or openai_key,
                bills_openai_base_url=os.getenv("BILLS_OPENAI_BASE_URL") or openai_base,
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def require_bills_database(self) -> str:
        if not self.database.bills_url:
            raise ConfigurationError("BILLS_DATABASE_URL environment variable is not set.")
        return self.database.bills_url

    def require_voter_database(self) -> str:
        if not self.database.voter_url:
            raise ConfigurationError("VOTERDATA_DATABASE_URL environment variable is not set.")
        if not self.database.voter_schema:
            raise ConfigurationError("VOTERDATA_SCHEMA environment variable is not set.")
        return self.database.voter_url

    def require_openai(self, embedding: EmbeddingSettings = None) -> str:
        key = (embedding.openai_api_key if embedding else None) or os.getenv("OPENAI_API_KEY")
        if not key:
            raise ConfigurationError("Missing OpenAI API key. Set OPENAI_API_KEY in the .env file.")
        return key


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )
