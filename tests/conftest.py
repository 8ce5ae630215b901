"""
Pytest configuration and fixtures for sitechat tests.

Provides shared fixtures for:
- Test environment variables
- Fake Redis client (fakeredis)
- Deterministic bag-of-words embedder
- In-memory vector store computing exact cosine similarity
- Chunk factory and a sparse index persisted under tmp_path
"""

from typing import Dict, List, Optional, Sequence, Tuple

import fakeredis
import numpy as np
import pytest

from libs.caching.redis_client import reset_redis_client
from sitechat.bm25_provider import SparseIndex
from sitechat.embeddings import EmbeddingProvider
from sitechat.errors import EmbeddingProviderError, VectorStoreError
from sitechat.models import Chunk, DenseHit
from sitechat.tokenizer import tokenize
from sitechat.vector_store import VectorStore


class BagOfWordsEmbedder(EmbeddingProvider):
    """Each distinct term gets its own dimension, so cosine == lexical overlap.

    Hyphenated tokens also count their parts ("data-entry" -> data, entry).
    """

    def __init__(self, dimension: int = 512, concurrency: int = 4):
        super().__init__(model="bag-of-words", dimension=dimension, concurrency=concurrency)
        self.vocabulary: Dict[str, int] = {}
        self.calls = 0
        self.fail = False
        self.model_available = True

    def _terms(self, text: str) -> List[str]:
        terms = []
        for token in tokenize(text):
            terms.append(token)
            if "-" in token:
                terms.extend(part for part in token.split("-") if part)
        return terms

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        if self.fail:
            raise EmbeddingProviderError("embedding model unavailable")
        vector = [0.0] * self.dimension
        for term in self._terms(text):
            if term not in self.vocabulary:
                self.vocabulary[term] = len(self.vocabulary) % (self.dimension - 1)
            vector[self.vocabulary[term]] += 1.0
        if not any(vector):
            # reserved dimension for text with no terms
            vector[self.dimension - 1] = 1.0
        return vector

    async def check_model(self) -> bool:
        return self.model_available


class InMemoryVectorStore(VectorStore):
    """Exact cosine search over a dict; insertion order breaks score ties."""

    def __init__(self):
        self.rows: Dict[int, Tuple[Chunk, List[float]]] = {}
        self.search_calls = 0
        self.fail_search = False
        self.ensured = False

    async def ensure_collection(self) -> None:
        self.ensured = True

    async def upsert(self, chunks: Sequence[Chunk], vectors: Sequence[Sequence[float]]) -> int:
        for chunk, vector in zip(chunks, vectors):
            self.rows[chunk.id] = (chunk, list(vector))
        return len(chunks)

    async def search(self, vector: Sequence[float], limit: int) -> List[DenseHit]:
        self.search_calls += 1
        if self.fail_search:
            raise VectorStoreError("vector database unreachable")
        query = np.array(vector, dtype=float)
        hits = []
        for chunk_id, (chunk, stored) in self.rows.items():
            stored_vec = np.array(stored, dtype=float)
            norm = np.linalg.norm(query) * np.linalg.norm(stored_vec)
            score = float(np.dot(query, stored_vec) / norm) if norm > 0 else 0.0
            hits.append(DenseHit(id=chunk_id, score=min(1.0, max(0.0, score)), chunk=chunk))
        hits.sort(key=lambda hit: -hit.score)
        return hits[:limit]

    async def delete_by_url(self, url: str) -> None:
        for chunk_id in [cid for cid, (chunk, _) in self.rows.items() if chunk.url == url]:
            del self.rows[chunk_id]

    async def get_by_ids(self, ids: Sequence[int]) -> List[Chunk]:
        return [self.rows[i][0] for i in ids if i in self.rows]

    async def has_content_changed(self, url: str, content_hash: str) -> bool:
        for chunk, _ in self.rows.values():
            if chunk.url == url:
                return chunk.content_hash != content_hash
        return True

    async def get_all_chunks(self) -> List[Chunk]:
        return [chunk for chunk, _ in self.rows.values()]

    async def get_stats(self):
        return {"total_points": len(self.rows)}


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("SITECHAT_APP_ENV", "test")
    monkeypatch.delenv("SITECHAT_REDIS_URL", raising=False)


@pytest.fixture
async def redis_client():
    """
    Provide fakeredis client for testing.

    This avoids requiring actual Redis server during tests.
    """
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)

    yield client

    await client.flushall()
    await client.aclose()


@pytest.fixture
async def clean_redis_singleton():
    """Reset the module-level Redis client before and after a test."""
    await reset_redis_client()
    yield
    await reset_redis_client()


@pytest.fixture
def embedder() -> BagOfWordsEmbedder:
    return BagOfWordsEmbedder()


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def sparse_index(tmp_path) -> SparseIndex:
    return SparseIndex(index_path=str(tmp_path / "bm25-index.json"))


@pytest.fixture
def make_chunk():
    """Factory for chunks with sensible provenance defaults."""

    def _make(
        chunk_id: int,
        text: str,
        title: str = "Page",
        url: Optional[str] = None,
        section_heading: str = "",
    ) -> Chunk:
        return Chunk(
            id=chunk_id,
            text=text,
            title=title,
            url=url or f"https://example.com/page-{chunk_id}",
            section_heading=section_heading,
            content_hash=f"hash-{chunk_id}",
        )

    return _make
