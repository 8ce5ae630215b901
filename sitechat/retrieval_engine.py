"""Hybrid retrieval engine: BM25 + dense search, fused, thresholded and cached.

Pipeline per ``retrieve`` call:

1. Cache lookup on (trimmed lower-cased question, top_k).
2. Query expansion for the sparse path only.
3. Dense search (raw question) and sparse search (expanded question)
   concurrently, each for ``top_k * candidate_multiplier`` hits.
4. Merge by chunk id (sparse-only chunks fetched from the vector store) and
   fuse with the configured strategy.
5. Keep the ``top_k`` best candidates scoring at least the threshold.
6. Cache the final list and return it.

An empty result is a normal outcome. Dense failures propagate unless
``allow_sparse_only_fallback`` is set; an unbuilt sparse index simply
contributes no hits.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional

import structlog

from libs.caching.retrieval_cache import RetrievalCache
from sitechat.bm25_provider import SparseIndex
from sitechat.embeddings import EmbeddingProvider
from sitechat.errors import DependencyUnavailableError
from sitechat.fusion import FusionStrategy, WeightedScoreFusion, merge_hits
from sitechat.models import DenseHit, RetrievalCandidate, SparseHit
from sitechat.query_expansion import QueryExpander
from sitechat.vector_store import VectorStore

logger = structlog.get_logger(__name__)


class HybridRetrievalEngine:
    """
    Combines sparse and dense retrieval into one ranked candidate list.

    Usage:
        engine = HybridRetrievalEngine(embedder, vector_store, sparse_index, cache=cache)
        candidates = await engine.retrieve("how much faster is data entry", top_k=3, similarity_threshold=0.3)
    """

    def __init__(
        self,
        embedding_provider: EmbeddingProvider,
        vector_store: VectorStore,
        sparse_index: SparseIndex,
        cache: Optional[RetrievalCache] = None,
        expander: Optional[QueryExpander] = None,
        fusion: Optional[FusionStrategy] = None,
        candidate_multiplier: int = 2,
        allow_sparse_only_fallback: bool = False,
    ):
        self.embedding_provider = embedding_provider
        self.vector_store = vector_store
        self.sparse_index = sparse_index
        self.cache = cache or RetrievalCache(None)
        self.expander = expander or QueryExpander()
        self.fusion = fusion or WeightedScoreFusion()
        self.candidate_multiplier = max(1, candidate_multiplier)
        self.allow_sparse_only_fallback = allow_sparse_only_fallback

    async def retrieve(
        self,
        question: str,
        top_k: int = 8,
        similarity_threshold: float = 0.28,
    ) -> List[RetrievalCandidate]:
        """Return up to ``top_k`` candidates with fused score >= ``similarity_threshold``.

        Cached entries are keyed on question and ``top_k`` only; a hit is
        returned unchanged regardless of the threshold passed.

        Raises:
            DependencyUnavailableError: dense search failed and sparse-only
                fallback is not enabled, or sparse-only chunks could not be fetched
        """
        cached = await self.cache.get(question, top_k)
        if cached is not None:
            return cached

        start_time = time.time()
        fused = await self._hybrid_search(question, top_k * self.candidate_multiplier)

        results = [c for c in fused if c.fused_score >= similarity_threshold][:top_k]

        logger.info(
            "Retrieval completed",
            query_preview=question[:50],
            fused_count=len(fused),
            results_count=len(results),
            threshold=similarity_threshold,
            top_score=round(results[0].fused_score, 4) if results else 0,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        if not results:
            logger.warning("No chunks above threshold", threshold=similarity_threshold, query_preview=question[:50])

        await self.cache.set(question, top_k, results)
        return results

    async def _hybrid_search(self, question: str, limit: int) -> List[RetrievalCandidate]:
        expanded = self.expander.expand(question)
        if expanded != question:
            logger.info("Query expanded", expanded_preview=expanded[:80])

        loop = asyncio.get_running_loop()
        sparse_future = loop.run_in_executor(None, self.sparse_index.search, expanded, limit)
        dense_hits, sparse_hits = await asyncio.gather(
            self._dense_search(question, limit),
            sparse_future,
        )

        logger.info("Candidate lists ready", dense_count=len(dense_hits), sparse_count=len(sparse_hits))
        return await self._fuse(dense_hits, sparse_hits)

    async def _dense_search(self, question: str, limit: int) -> List[DenseHit]:
        try:
            vector = await self.embedding_provider.embed(question)
            return await self.vector_store.search(vector, limit)
        except DependencyUnavailableError as e:
            if not self.allow_sparse_only_fallback:
                raise
            logger.warning("Dense search failed, continuing sparse-only", error=str(e))
            return []

    async def _fuse(self, dense_hits: List[DenseHit], sparse_hits: List[SparseHit]) -> List[RetrievalCandidate]:
        dense_ids = {hit.id for hit in dense_hits}
        sparse_only_ids = []
        for hit in sparse_hits:
            if hit.id not in dense_ids and hit.id not in sparse_only_ids:
                sparse_only_ids.append(hit.id)

        sparse_chunks = {}
        if sparse_only_ids:
            chunks = await self.vector_store.get_by_ids(sparse_only_ids)
            sparse_chunks = {chunk.id: chunk for chunk in chunks}

        matches = merge_hits(dense_hits, sparse_hits, sparse_chunks)
        candidates = self.fusion.fuse(matches)
        logger.info("Fused candidates", strategy=self.fusion.name, fused_count=len(candidates))
        return candidates

    async def semantic_search(
        self,
        question: str,
        top_k: int = 8,
        similarity_threshold: float = 0.28,
    ) -> List[RetrievalCandidate]:
        """Dense-only retrieval: cosine score is the fused score. Not cached."""
        vector = await self.embedding_provider.embed(question)
        hits = await self.vector_store.search(vector, top_k)
        results = [
            RetrievalCandidate.from_chunk(hit.chunk, hit.score, 0.0, hit.score)
            for hit in hits
            if hit.score >= similarity_threshold
        ]
        logger.info("Semantic search completed", results_count=len(results), threshold=similarity_threshold)
        return results

    async def clear_cache(self) -> int:
        return await self.cache.clear()

    async def cache_stats(self) -> Dict[str, Any]:
        return await self.cache.get_stats()
