import asyncio
import logging
from typing import List, Optional

import httpx
import numpy as np
import openai
from langchain_text_splitters import RecursiveCharacterTextSplitter

from voterchat.config import EmbeddingSettings
from voterchat.errors import ConfigurationError, EmbeddingDimensionError, EmbeddingError

logger = logging.getLogger(__name__)

# Upper bound on inputs per embeddings request accepted by the OpenAI API
MAX_EMBEDDING_BATCH_SIZE = 2048


class EmbeddingBackend:
    """Turns a list of texts into one vector per text"""

    name = "backend"

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class SentenceTransformerBackend(EmbeddingBackend):
    """Local sentence-transformers model, loaded on first use"""

    name = "local"

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", device: Optional[str] = None):
        self.model_name = model_name
        self.device = device
        self.model = None
        self._lock = asyncio.Lock()

    async def _get_model(self):
        if self.model is None:
            async with self._lock:
                if self.model is None:
                    logger.info("Loading sentence-transformer model %s", self.model_name)
                    from sentence_transformers import SentenceTransformer
                    self.model = await asyncio.to_thread(
                        SentenceTransformer, self.model_name, device=self.device
                    )
        return self.model

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        model = await self._get_model()
        vectors = await asyncio.to_thread(
            model.encode, texts, normalize_embeddings=True, convert_to_numpy=True
        )
        return [vector.tolist() for vector in vectors]


class OpenAIEmbeddingBackend(EmbeddingBackend):
    """OpenAI (or OpenAI-compatible) embeddings endpoint"""

    name = "openai"

    def __init__(self, model_name: str = "text-embedding-ada-002", api_key: Optional[str] = None,
                 base_url: Optional[str] = None):
        if not api_key:
            raise ConfigurationError("Missing OpenAI API key. Set OPENAI_API_KEY in the .env file.")
        self.model_name = model_name
        self.api_key = api_key
        self.base_url = base_url
        self.client = None

    def _get_client(self) -> openai.AsyncOpenAI:
        if self.client is None:
            self.client = openai.AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        return self.client

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        client = self._get_client()
        vectors: List[List[float]] = []
        for start in range(0, len(texts), MAX_EMBEDDING_BATCH_SIZE):
            batch = texts[start:start + MAX_EMBEDDING_BATCH_SIZE]
            response = await client.embeddings.create(model=self.model_name, input=batch)
            ordered = sorted(response.data, key=lambda item: item.index)
            vectors.extend(item.embedding for item in ordered)
        return vectors

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.close()
            self.client = None


class LocalAIEmbeddingBackend(EmbeddingBackend):
    """LocalAI server exposing the OpenAI-style /v1/embeddings route"""

    name = "localai"

    def __init__(self, url: str = "http://localhost:8080", model_name: str = "text-embedding-ada-002",
                 timeout: float = 30.0):
        self.url = url.rstrip("/")
        self.model_name = model_name
        self.timeout = timeout
        self.client = None

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self.timeout)
        response = await self.client.post(
            f"{self.url}/v1/embeddings",
            json={"model": self.model_name, "input": texts},
        )
        response.raise_for_status()
        data = response.json().get("data") or []
        if len(data) != len(texts):
            raise EmbeddingError(
                f"LocalAI returned {len(data)} embeddings for {len(texts)} inputs"
            )
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in ordered]

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None


class EmbeddingService:
    """Embeds text with a fixed-width model, chunking and averaging long inputs.

    Texts longer than ``chunk_size`` characters are split into overlapping
    windows; each window is embedded and the vectors are averaged element-wise,
    so every entity ends up with exactly one vector of ``dimension`` floats.
    """

    def __init__(self, backend: EmbeddingBackend, dimension: int, chunk_size: int = 1400,
                 chunk_overlap: int = 136, max_concurrency: int = 8):
        if chunk_overlap >= chunk_size:
            raise ConfigurationError("chunk_overlap must be smaller than chunk_size")
        self.backend = backend
        self.dimension = dimension
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.max_concurrency = max_concurrency
        self.splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size, chunk_overlap=chunk_overlap
        )
        self._semaphore = asyncio.Semaphore(max_concurrency)

    def split(self, text: str) -> List[str]:
        if len(text) <= self.chunk_size:
            return [text]
        chunks = [chunk for chunk in self.splitter.split_text(text) if chunk.strip()]
        return chunks or [text]

    async def embed(self, text: str) -> List[float]:
        """Vector for text; long text is chunk-averaged"""
        if not text or not text.strip():
            raise EmbeddingError("Cannot embed empty text")
        chunks = self.split(text)
        async with self._semaphore:
            try:
                vectors = await self.backend.embed_texts(chunks)
            except (openai.OpenAIError, httpx.HTTPError) as e:
                raise EmbeddingError(f"{self.backend.name} embedding request failed: {e}") from e
        if len(vectors) != len(chunks):
            raise EmbeddingError(f"Backend returned {len(vectors)} vectors for {len(chunks)} chunks")
        for vector in vectors:
            self._check_dimension(vector)
        if len(vectors) == 1:
            return [float(value) for value in vectors[0]]
        return self.average(vectors)

    async def embed_many(self, texts: List[str]) -> List[List[float]]:
        """Embed every text, at most max_concurrency backend calls in flight"""
        return list(await asyncio.gather(*(self.embed(text) for text in texts)))

    def _check_dimension(self, vector: List[float]) -> None:
        if len(vector) != self.dimension:
            raise EmbeddingDimensionError(self.dimension, len(vector))

    @staticmethod
    def average(vectors: List[List[float]]) -> List[float]:
        matrix = np.asarray(vectors, dtype=np.float64)
        return matrix.mean(axis=0).tolist()

    async def aclose(self) -> None:
        await self.backend.aclose()


def to_pgvector(embedding: List[float]) -> str:
    """Text form accepted by CAST(:x AS vector)"""
    return "[" + ",".join(repr(float(value)) for value in embedding) + "]"


def build_embedding_service(settings: EmbeddingSettings) -> EmbeddingService:
    if settings.provider == "local":
        backend = SentenceTransformerBackend(settings.model_name)
    elif settings.provider == "openai":
        backend = OpenAIEmbeddingBackend(
            settings.model_name, api_key=settings.openai_api_key, base_url=settings.openai_base_url
        )
    elif settings.provider == "localai":
        backend = LocalAIEmbeddingBackend(settings.localai_url, settings.model_name)
    else:
        raise ConfigurationError(f"Unknown embedding provider: {settings.provider}")

    return EmbeddingService(
        backend,
        dimension=settings.dimension,
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
        max_concurrency=settings.max_concurrency,
    )
