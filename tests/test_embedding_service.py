"""
Test cases for the embedding service adapter
"""

import httpx
import numpy as np
import pytest

from voterchat.config import EmbeddingSettings
from voterchat.errors import ConfigurationError, EmbeddingDimensionError, EmbeddingError
from voterchat.services.embedding_service import (
    EmbeddingService,
    LocalAIEmbeddingBackend,
    SentenceTransformerBackend,
    build_embedding_service,
    to_pgvector,
)

from tests.conftest import HashBackend, hash_vector


@pytest.mark.asyncio
async def test_short_text_is_embedded_in_one_call(embedder, backend):
    vector = await embedder.embed("Active voters in Fulton county")

    assert vector == hash_vector("Active voters in Fulton county", 8)
    assert backend.calls == [["Active voters in Fulton county"]]


@pytest.mark.asyncio
async def test_long_text_is_chunked_and_averaged(embedder, backend):
    text = " ".join(f"word{i}" for i in range(120))

    vector = await embedder.embed(text)

    chunks = embedder.split(text)
    assert len(chunks) > 1
    assert backend.calls == [chunks]
    expected = np.mean([hash_vector(c, 8) for c in chunks], axis=0)
    assert np.allclose(vector, expected)
    assert len(vector) == 8


@pytest.mark.asyncio
async def test_embedding_is_deterministic(embedder):
    text = " ".join(f"token{i}" for i in range(80))
    assert await embedder.embed(text) == await embedder.embed(text)


@pytest.mark.asyncio
async def test_empty_text_is_rejected(embedder, backend):
    with pytest.raises(EmbeddingError):
        await embedder.embed("   ")
    assert backend.calls == []


@pytest.mark.asyncio
async def test_wrong_dimension_is_an_error():
    service = EmbeddingService(HashBackend(dimension=4), dimension=8)

    with pytest.raises(EmbeddingDimensionError) as excinfo:
        await service.embed("hello")

    assert excinfo.value.expected == 8
    assert excinfo.value.actual == 4


@pytest.mark.asyncio
async def test_embed_many_bounds_concurrency():
    backend = HashBackend(dimension=8, delay=0.01)
    service = EmbeddingService(backend, dimension=8, max_concurrency=3)

    vectors = await service.embed_many([f"text {i}" for i in range(12)])

    assert len(vectors) == 12
    assert vectors[5] == hash_vector("text 5", 8)
    assert backend.max_in_flight <= 3


def test_overlap_must_be_smaller_than_chunk_size():
    with pytest.raises(ConfigurationError):
        EmbeddingService(HashBackend(), dimension=8, chunk_size=100, chunk_overlap=100)


@pytest.mark.asyncio
async def test_backend_request_failure_is_an_embedding_error():
    class DownBackend(HashBackend):
        async def embed_texts(self, texts):
            raise httpx.ConnectError("connection refused")

    service = EmbeddingService(DownBackend(), dimension=8)

    with pytest.raises(EmbeddingError):
        await service.embed("hello")


def test_to_pgvector():
    assert to_pgvector([1, 0.5]) == "[1.0,0.5]"


def test_build_embedding_service_picks_backend():
    local = build_embedding_service(EmbeddingSettings())
    localai = build_embedding_service(EmbeddingSettings(provider="localai", localai_url="http://ai:8080/"))

    assert isinstance(local.backend, SentenceTransformerBackend)
    assert local.dimension == 384
    assert isinstance(localai.backend, LocalAIEmbeddingBackend)
    assert localai.backend.url == "http://ai:8080"


def test_build_embedding_service_requires_openai_key():
    with pytest.raises(ConfigurationError):
        build_embedding_service(EmbeddingSettings(provider="openai", openai_api_key=None))


def test_build_embedding_service_rejects_unknown_provider():
    with pytest.raises(ConfigurationError):
        build_embedding_service(EmbeddingSettings(provider="carrier-pigeon"))
