"""BM25 sparse index for keyword retrieval over site chunks.

The index is built once per ingestion cycle, persisted as JSON token arrays,
and reloaded on start-up. Scores are never persisted: loading rebuilds the
Okapi statistics from the stored token arrays with the same tokenizer the
query path uses.

The scorer is ``rank_bm25.BM25Okapi`` with its IDF replaced by the
non-negative variant ``ln((N - df + 0.5) / (df + 0.5) + 1)``, so terms that
appear in most documents still contribute a small positive weight instead
of being floored by an epsilon heuristic.

Scaling note: every query scores every document (O(N * avgdl)). That is fine
for a marketing site (low tens of thousands of chunks at most); beyond that
an inverted index is required.
"""

from __future__ import annotations

import json
import math
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import structlog
from rank_bm25 import BM25Okapi

from sitechat.errors import IndexRebuildInProgressError
from sitechat.models import Chunk, SparseHit
from sitechat.tokenizer import tokenize

logger = structlog.get_logger(__name__)

BM25_K1 = 1.5  # Term frequency saturation parameter
BM25_B = 0.75  # Length normalization parameter


class OkapiBM25(BM25Okapi):
    """``BM25Okapi`` with the ``+1`` smoothed, always non-negative IDF."""

    def _calc_idf(self, nd: Dict[str, int]) -> None:
        for word, freq in nd.items():
            self.idf[word] = math.log((self.corpus_size - freq + 0.5) / (freq + 0.5) + 1)


@dataclass(frozen=True)
class _IndexSnapshot:
    """Immutable view of one build; queries hold a reference for their whole run."""

    documents: List[List[str]] = field(default_factory=list)
    document_ids: List[int] = field(default_factory=list)
    scorer: Optional[OkapiBM25] = None
    built_at: Optional[str] = None

    @classmethod
    def from_tokens(
        cls,
        documents: List[List[str]],
        document_ids: List[int],
        built_at: str,
        k1: float = BM25_K1,
        b: float = BM25_B,
    ) -> "_IndexSnapshot":
        if len(documents) != len(document_ids):
            raise ValueError(
                f"documents ({len(documents)}) and documentIds ({len(document_ids)}) differ in length"
            )
        # rank_bm25 divides by corpus size and average length; both must be > 0
        scorer = None
        if documents and any(documents):
            scorer = OkapiBM25(documents, k1=k1, b=b)
        return cls(documents=documents, document_ids=document_ids, scorer=scorer, built_at=built_at)


class SparseIndex:
    """Owned, swappable BM25 index keyed by chunk id.

    Example:
        >>> index = SparseIndex()
        >>> index.build([Chunk(id=1, text="ai ergonomics video"), Chunk(id=2, text="supply chain")])
        >>> [hit.id for hit in index.search("ergonomics", top_k=5)]
        [1]
    """

    def __init__(
        self,
        index_path: Optional[str] = None,
        k1: float = BM25_K1,
        b: float = BM25_B,
    ) -> None:
        self.index_path = index_path
        self.k1 = k1
        self.b = b
        self._snapshot = _IndexSnapshot()
        self._rebuild_lock = threading.Lock()

    @property
    def is_built(self) -> bool:
        return self._snapshot.built_at is not None

    @property
    def is_rebuilding(self) -> bool:
        return self._rebuild_lock.locked()

    def __len__(self) -> int:
        return len(self._snapshot.document_ids)

    def build(self, chunks: Iterable[Chunk]) -> None:
        """Tokenize ``chunks`` into a fresh snapshot and swap it in."""
        start_time = time.time()
        documents: List[List[str]] = []
        document_ids: List[int] = []
        for chunk in chunks:
            documents.append(tokenize(chunk.indexed_text))
            document_ids.append(chunk.id)

        snapshot = _IndexSnapshot.from_tokens(
            documents,
            document_ids,
            built_at=datetime.now(timezone.utc).isoformat(),
            k1=self.k1,
            b=self.b,
        )
        # single reference assignment; in-flight searches keep the old snapshot
        self._snapshot = snapshot

        logger.info(
            "BM25 index built",
            documents=len(documents),
            build_time_ms=round((time.time() - start_time) * 1000, 2),
        )

    def rebuild_and_swap(self, chunks: Iterable[Chunk], persist: bool = True) -> None:
        """Rebuild from ``chunks`` and persist; refuses to run concurrently with itself.

        Raises:
            IndexRebuildInProgressError: another rebuild holds the lock
        """
        if not self._rebuild_lock.acquire(blocking=False):
            raise IndexRebuildInProgressError("BM25 index rebuild already in progress")
        try:
            self.build(chunks)
            if persist and self.index_path:
                self.save()
        finally:
            self._rebuild_lock.release()

    def search(self, query: str, top_k: int = 20) -> List[SparseHit]:
        """Score every document against ``query`` and return the best ``top_k``.

        Returns an empty list when ``top_k`` is not positive, when the index
        has not been built yet, or when the query has no terms after
        tokenization. Documents scoring zero (no shared term) are not hits.
        """
        if top_k <= 0:
            return []

        snapshot = self._snapshot
        if snapshot.scorer is None:
            if not snapshot.built_at:
                logger.warning("BM25 index not initialized, returning empty results")
            return []

        query_tokens = tokenize(query)
        if not query_tokens:
            logger.info("BM25 query has no tokens after tokenization", query=query[:100])
            return []

        scores = snapshot.scorer.get_scores(query_tokens)

        # stable sort keeps corpus order among equal scores
        ranked = np.argsort(-scores, kind="stable")
        hits: List[SparseHit] = []
        for idx in ranked:
            score = float(scores[idx])
            if score <= 0:
                break
            hits.append(SparseHit(id=snapshot.document_ids[idx], score=score))
            if len(hits) >= top_k:
                break

        logger.debug(
            "BM25 search completed",
            query_tokens=query_tokens,
            results_count=len(hits),
            top_score=round(hits[0].score, 4) if hits else 0,
        )
        return hits

    def save(self, path: Optional[str] = None) -> str:
        """Write ``{documents, documentIds, timestamp}`` atomically to disk."""
        target = Path(path or self.index_path or "")
        if not str(target):
            raise ValueError("No index path configured for BM25 index")
        snapshot = self._snapshot
        target.parent.mkdir(parents=True, exist_ok=True)

        index_data = {
            "documents": snapshot.documents,
            "documentIds": snapshot.document_ids,
            "timestamp": snapshot.built_at or datetime.now(timezone.utc).isoformat(),
        }

        fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), prefix=".bm25-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(index_data, f)
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        logger.info("BM25 index saved", path=str(target), documents=len(snapshot.documents))
        return str(target)

    def load(self, path: Optional[str] = None) -> bool:
        """Load a persisted index; returns False when there is nothing usable to load."""
        source = path or self.index_path
        if not source or not os.path.exists(source):
            logger.info("BM25 index file not found, will build on first ingestion", path=source)
            return False

        start_time = time.time()
        try:
            with open(source, "r", encoding="utf-8") as f:
                index_data = json.load(f)
            snapshot = _IndexSnapshot.from_tokens(
                [list(doc) for doc in index_data["documents"]],
                [int(doc_id) for doc_id in index_data["documentIds"]],
                built_at=index_data.get("timestamp") or datetime.now(timezone.utc).isoformat(),
                k1=self.k1,
                b=self.b,
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error("Error loading BM25 index", path=source, error=str(e))
            return False

        self._snapshot = snapshot
        logger.info(
            "BM25 index loaded",
            path=source,
            documents=len(snapshot.documents),
            built_at=snapshot.built_at,
            load_time_ms=round((time.time() - start_time) * 1000, 2),
        )
        return True

    def stats(self) -> Dict[str, Any]:
        snapshot = self._snapshot
        total = len(snapshot.documents)
        return {
            "total_documents": total,
            "avg_tokens_per_doc": round(sum(len(d) for d in snapshot.documents) / total) if total else 0,
            "indexed": snapshot.scorer is not None,
            "built_at": snapshot.built_at,
        }
