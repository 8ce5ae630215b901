"""Fusion of dense and sparse result lists into one ranked candidate list.

Hits are first merged per chunk id into one of three match shapes:
``DenseMatch`` (vector search only), ``SparseMatch`` (BM25 only) or
``DualMatch`` (both). A fusion strategy then scores every match and
collapses it into a ``RetrievalCandidate``; the missing side of a
single-list match contributes zero.

Two strategies are available behind the same interface:

- ``WeightedScoreFusion``: ``w * cosine + (1 - w) * minmax(bm25)``.
- ``ReciprocalRankFusion``: ``sum(1 / (k + rank + 1))`` over both lists,
  min-max normalized across the fused set.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Union

import structlog

from sitechat.models import Chunk, DenseHit, RetrievalCandidate, SparseHit

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DenseMatch:
    chunk: Chunk
    semantic_score: float
    dense_rank: int


@dataclass(frozen=True)
class SparseMatch:
    chunk: Chunk
    bm25_score: float
    sparse_rank: int


@dataclass(frozen=True)
class DualMatch:
    chunk: Chunk
    semantic_score: float
    bm25_score: float
    dense_rank: int
    sparse_rank: int


Match = Union[DenseMatch, SparseMatch, DualMatch]


def merge_hits(
    dense_hits: Sequence[DenseHit],
    sparse_hits: Sequence[SparseHit],
    sparse_chunks: Optional[Mapping[int, Chunk]] = None,
) -> List[Match]:
    """Merge both hit lists by chunk id, dense hits first in rank order.

    Sparse-only hits need their chunk from ``sparse_chunks``; one that is
    missing there (deleted since the index was built) is dropped.
    """
    sparse_chunks = sparse_chunks or {}
    sparse_by_id: Dict[int, tuple] = {}
    for rank, hit in enumerate(sparse_hits):
        sparse_by_id.setdefault(hit.id, (rank, hit.score))

    matches: List[Match] = []
    seen = set()
    for rank, hit in enumerate(dense_hits):
        if hit.id in seen:
            continue
        seen.add(hit.id)
        if hit.id in sparse_by_id:
            sparse_rank, bm25 = sparse_by_id[hit.id]
            matches.append(DualMatch(hit.chunk, hit.score, bm25, rank, sparse_rank))
        else:
            matches.append(DenseMatch(hit.chunk, hit.score, rank))

    dropped = 0
    for hit in sparse_hits:
        if hit.id in seen:
            continue
        seen.add(hit.id)
        chunk = sparse_chunks.get(hit.id)
        if chunk is None:
            dropped += 1
            continue
        rank, bm25 = sparse_by_id[hit.id]
        matches.append(SparseMatch(chunk, bm25, rank))

    if dropped:
        logger.warning("Dropped sparse-only hits missing from vector store", dropped=dropped)
    return matches


def min_max_normalize(values: Sequence[float]) -> List[float]:
    """Scale ``values`` to [0, 1]; equal values (including a single one) all map to 1.0."""
    if not values:
        return []
    low = min(values)
    high = max(values)
    spread = high - low
    if spread <= 0:
        return [1.0 for _ in values]
    return [(v - low) / spread for v in values]


def _clamp(score: float) -> float:
    return min(1.0, max(0.0, score))


def _semantic(match: Match) -> float:
    return 0.0 if isinstance(match, SparseMatch) else match.semantic_score


def _bm25(match: Match) -> Optional[float]:
    return None if isinstance(match, DenseMatch) else match.bm25_score


def _normalized_bm25(matches: Sequence[Match]) -> List[float]:
    """Min-max BM25 over the matches that have one; dense-only matches get 0."""
    raw = [_bm25(m) for m in matches]
    present = [score for score in raw if score is not None]
    scaled = iter(min_max_normalize(present))
    return [0.0 if score is None else next(scaled) for score in raw]


def _rank_order(candidates: List[RetrievalCandidate]) -> List[RetrievalCandidate]:
    # stable: equal fused scores keep merge order (dense rank first)
    return sorted(candidates, key=lambda c: -c.fused_score)


class FusionStrategy(ABC):
    """Scores merged matches and returns candidates by descending fused score."""

    name: str = "base"

    @abstractmethod
    def fuse(self, matches: Sequence[Match]) -> List[RetrievalCandidate]:
        ...


class WeightedScoreFusion(FusionStrategy):
    """Linear blend of cosine similarity and min-max normalized BM25."""

    name = "weighted"

    def __init__(self, semantic_weight: float = 0.7):
        if not 0.0 <= semantic_weight <= 1.0:
            raise ValueError("semantic_weight must be in [0, 1]")
        self.semantic_weight = semantic_weight

    def fuse(self, matches: Sequence[Match]) -> List[RetrievalCandidate]:
        bm25_scores = _normalized_bm25(matches)
        candidates = []
        for match, bm25 in zip(matches, bm25_scores):
            semantic = _clamp(_semantic(match))
            fused = self.semantic_weight * semantic + (1 - self.semantic_weight) * bm25
            candidates.append(
                RetrievalCandidate.from_chunk(match.chunk, semantic, bm25, _clamp(fused))
            )
        return _rank_order(candidates)


class ReciprocalRankFusion(FusionStrategy):
    """Rank-based fusion; raw score magnitudes only matter through rank."""

    name = "rrf"

    def __init__(self, k: int = 60):
        if k < 1:
            raise ValueError("k must be >= 1")
        self.k = k

    def _contribution(self, rank: int) -> float:
        return 1.0 / (self.k + rank + 1)

    def fuse(self, matches: Sequence[Match]) -> List[RetrievalCandidate]:
        raw_scores = []
        for match in matches:
            score = 0.0
            if not isinstance(match, SparseMatch):
                score += self._contribution(match.dense_rank)
            if not isinstance(match, DenseMatch):
                score += self._contribution(match.sparse_rank)
            raw_scores.append(score)

        fused_scores = min_max_normalize(raw_scores)
        bm25_scores = _normalized_bm25(matches)
        candidates = [
            RetrievalCandidate.from_chunk(
                match.chunk, _clamp(_semantic(match)), bm25, _clamp(fused)
            )
            for match, bm25, fused in zip(matches, bm25_scores, fused_scores)
        ]
        return _rank_order(candidates)
