"""Dense index: one embedding plus payload per chunk in Milvus.

``pymilvus.MilvusClient`` is synchronous, so every call runs in the default
executor and is bounded by ``asyncio.wait_for``. Any failure or timeout is
raised as ``VectorStoreError`` with the cause chained; nothing here retries.
"""

from __future__ import annotations

import asyncio
import functools
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog
from pymilvus import MilvusClient

from sitechat.errors import VectorStoreError
from sitechat.models import Chunk, DenseHit

logger = structlog.get_logger(__name__)

PAYLOAD_FIELDS = [
    "text",
    "title",
    "url",
    "section_heading",
    "chunk_index",
    "total_chunks",
    "content_hash",
    "last_crawled",
]
SCAN_BATCH_SIZE = 500
# reads that must see writes made earlier in the same ingestion run
READ_CONSISTENCY_LEVEL = "Strong"


def _url_filter(url: str) -> str:
    # JSON string escaping is a valid Milvus string literal
    return f"url == {json.dumps(url)}"


class VectorStore(ABC):
    """Contract the retrieval engine and ingestion pipeline consume."""

    @abstractmethod
    async def ensure_collection(self) -> None:
        ...

    @abstractmethod
    async def upsert(self, chunks: Sequence[Chunk], vectors: Sequence[Sequence[float]]) -> int:
        ...

    @abstractmethod
    async def search(self, vector: Sequence[float], limit: int) -> List[DenseHit]:
        ...

    @abstractmethod
    async def delete_by_url(self, url: str) -> None:
        ...

    @abstractmethod
    async def get_by_ids(self, ids: Sequence[int]) -> List[Chunk]:
        ...

    @abstractmethod
    async def has_content_changed(self, url: str, content_hash: str) -> bool:
        ...

    @abstractmethod
    async def get_all_chunks(self) -> List[Chunk]:
        ...

    async def get_stats(self) -> Dict[str, Any]:
        return {}


class MilvusVectorStore(VectorStore):
    """Milvus collection with int64 ``id``, cosine ``vector`` and dynamic payload fields."""

    def __init__(
        self,
        uri: str,
        collection_name: str,
        dimension: int,
        token: Optional[str] = None,
        timeout_seconds: float = 10.0,
        batch_size: int = 100,
        client: Optional[MilvusClient] = None,
    ):
        self.uri = uri
        self.collection_name = collection_name
        self.dimension = dimension
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.batch_size = batch_size
        self._client = client
        self._collection_ready = False

    def _get_client(self) -> MilvusClient:
        if self._client is None:
            kwargs: Dict[str, Any] = {"uri": self.uri}
            if self.token:
                kwargs["token"] = self.token
            self._client = MilvusClient(**kwargs)
        return self._client

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking client call in the executor under the configured timeout."""
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(fn, *args, **kwargs)),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error("Milvus call timed out", operation=operation, timeout=self.timeout_seconds)
            raise VectorStoreError(f"Milvus {operation} timed out after {self.timeout_seconds}s") from e
        except VectorStoreError:
            raise
        except Exception as e:
            logger.error("Milvus call failed", operation=operation, error=str(e))
            raise VectorStoreError(f"Milvus {operation} failed: {e}") from e

    async def _client_call(self, operation: str, **kwargs: Any) -> Any:
        try:
            client = await self._call("connect", self._get_client)
        except VectorStoreError:
            self._client = None
            raise
        return await self._call(operation, getattr(client, operation), **kwargs)

    async def ensure_collection(self) -> None:
        """Create the collection (fixed dimension, COSINE) if it does not exist yet."""
        if self._collection_ready:
            return

        exists = await self._client_call("has_collection", collection_name=self.collection_name)
        if not exists:
            logger.info("Creating Milvus collection", collection=self.collection_name, dimension=self.dimension)
            await self._client_call(
                "create_collection",
                collection_name=self.collection_name,
                dimension=self.dimension,
                primary_field_name="id",
                id_type="int",
                vector_field_name="vector",
                metric_type="COSINE",
                auto_id=False,
                enable_dynamic_field=True,
            )
        self._collection_ready = True

    async def upsert(self, chunks: Sequence[Chunk], vectors: Sequence[Sequence[float]]) -> int:
        if len(chunks) != len(vectors):
            raise ValueError(f"Got {len(chunks)} chunks but {len(vectors)} vectors")
        if not chunks:
            return 0
        await self.ensure_collection()

        rows = [
            {"id": chunk.id, "vector": list(vector), **chunk.payload()}
            for chunk, vector in zip(chunks, vectors)
        ]
        for start in range(0, len(rows), self.batch_size):
            batch = rows[start:start + self.batch_size]
            await self._client_call("upsert", collection_name=self.collection_name, data=batch)
            logger.debug("Upserted batch", upserted=start + len(batch), total=len(rows))

        logger.info("Chunks upserted", collection=self.collection_name, count=len(rows))
        return len(rows)

    async def search(self, vector: Sequence[float], limit: int) -> List[DenseHit]:
        await self.ensure_collection()
        start_time = time.time()
        results = await self._client_call(
            "search",
            collection_name=self.collection_name,
            data=[list(vector)],
            limit=limit,
            output_fields=PAYLOAD_FIELDS,
            search_params={"metric_type": "COSINE"},
        )

        hits: List[DenseHit] = []
        for hit in (results[0] if results else []):
            chunk_id = int(hit["id"])
            # cosine similarity can dip below zero for opposed vectors
            score = min(1.0, max(0.0, float(hit.get("distance", 0.0))))
            hits.append(
                DenseHit(id=chunk_id, score=score, chunk=Chunk.from_payload(chunk_id, hit.get("entity") or {}))
            )

        logger.info(
            "Vector search completed",
            results_count=len(hits),
            top_score=round(hits[0].score, 4) if hits else 0,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return hits

    async def delete_by_url(self, url: str) -> None:
        await self.ensure_collection()
        await self._client_call("delete", collection_name=self.collection_name, filter=_url_filter(url))
        logger.info("Deleted old chunks", url=url)

    async def get_by_ids(self, ids: Sequence[int]) -> List[Chunk]:
        if not ids:
            return []
        await self.ensure_collection()
        rows = await self._client_call(
            "get",
            collection_name=self.collection_name,
            ids=list(ids),
            output_fields=PAYLOAD_FIELDS,
        )
        return [Chunk.from_payload(row["id"], row) for row in rows or []]

    async def has_content_changed(self, url: str, content_hash: str) -> bool:
        """True when the URL is unknown or its stored hash differs."""
        await self.ensure_collection()
        rows = await self._client_call(
            "query",
            collection_name=self.collection_name,
            filter=_url_filter(url),
            output_fields=["content_hash"],
            limit=1,
            consistency_level=READ_CONSISTENCY_LEVEL,
        )
        if not rows:
            return True
        return rows[0].get("content_hash") != content_hash

    async def get_all_chunks(self) -> List[Chunk]:
        """Scan every stored chunk (payload only, no vectors) for sparse index rebuilds."""
        await self.ensure_collection()
        iterator = await self._client_call(
            "query_iterator",
            collection_name=self.collection_name,
            batch_size=SCAN_BATCH_SIZE,
            filter="id >= 0",
            output_fields=PAYLOAD_FIELDS,
            consistency_level=READ_CONSISTENCY_LEVEL,
        )

        chunks: List[Chunk] = []
        try:
            while True:
                batch = await self._call("query_iterator.next", iterator.next)
                if not batch:
                    break
                chunks.extend(Chunk.from_payload(row["id"], row) for row in batch)
        finally:
            iterator.close()

        logger.info("Retrieved chunks from Milvus", collection=self.collection_name, count=len(chunks))
        return chunks

    async def get_stats(self) -> Dict[str, Any]:
        await self.ensure_collection()
        stats = await self._client_call("get_collection_stats", collection_name=self.collection_name)
        return {
            "collection": self.collection_name,
            "total_points": int(stats.get("row_count", 0)),
            "vector_size": self.dimension,
        }
