"""Ingestion pipeline: page text to chunks, embeddings, vector upserts and a fresh BM25 index.

Per page: skip short pages, skip pages whose stored content hash matches,
otherwise re-chunk, embed with bounded concurrency, then replace the
page's old chunks with the new ones. After all pages, the sparse index is
rebuilt from the full vector store contents and swapped in.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Iterable, List, Literal, Optional

import structlog
from pydantic import BaseModel, Field

from sitechat.bm25_provider import SparseIndex
from sitechat.chunker import Chunker
from sitechat.embeddings import EmbeddingProvider
from sitechat.errors import EmbeddingProviderError, IndexRebuildInProgressError
from sitechat.models import PageMetadata, PageSection, make_content_hash
from sitechat.vector_store import VectorStore

logger = structlog.get_logger(__name__)


class PageContent(BaseModel):
    """A scraped page as handed over by the crawler."""

    url: str
    title: str = ""
    content: str
    sections: List[PageSection] = Field(default_factory=list)
    content_hash: Optional[str] = None
    last_modified: Optional[str] = None

    @property
    def effective_hash(self) -> str:
        return self.content_hash or make_content_hash(self.content)


class IngestionOutcome(BaseModel):
    url: str
    status: Literal["ingested", "unchanged", "too_short"]
    chunks: int = 0


class IngestionReport(BaseModel):
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    chunks_ingested: int = 0
    indexed_documents: int = 0
    elapsed_seconds: float = 0.0
    failed_urls: List[str] = Field(default_factory=list)


class IngestionPipeline:
    """Drives chunking, embedding and indexing for a batch of pages."""

    def __init__(
        self,
        chunker: Chunker,
        embedding_provider: EmbeddingProvider,
        vector_store: VectorStore,
        sparse_index: SparseIndex,
        min_page_chars: int = 100,
    ):
        self.chunker = chunker
        self.embedding_provider = embedding_provider
        self.vector_store = vector_store
        self.sparse_index = sparse_index
        self.min_page_chars = min_page_chars
        self._ingest_lock = asyncio.Lock()

    async def verify_dependencies(self) -> None:
        """Create the collection if needed and make sure the embedding model is there.

        Raises:
            EmbeddingProviderError: the embedding model is not available
            VectorStoreError: the vector database is unreachable
        """
        await self.vector_store.ensure_collection()
        if not await self.embedding_provider.check_model():
            raise EmbeddingProviderError(f"Embedding model {self.embedding_provider.model} not available")
        logger.info("Ingestion dependencies ready", model=self.embedding_provider.model)

    async def process_page(self, page: PageContent) -> IngestionOutcome:
        content = page.content.strip()
        if len(content) < self.min_page_chars:
            logger.info("Skipped page with insufficient content", url=page.url, chars=len(content))
            return IngestionOutcome(url=page.url, status="too_short")

        content_hash = page.effective_hash
        if not await self.vector_store.has_content_changed(page.url, content_hash):
            logger.info("Skipped unchanged page", url=page.url)
            return IngestionOutcome(url=page.url, status="unchanged")

        metadata = PageMetadata(
            url=page.url,
            title=page.title,
            content_hash=content_hash,
            sections=page.sections,
            last_crawled=page.last_modified or datetime.now(timezone.utc).isoformat(),
        )
        chunks = self.chunker.chunk_text(content, metadata)
        vectors = await self.embedding_provider.embed_batch([chunk.embedding_text for chunk in chunks])

        # old chunks stay in place until the new ones are embedded
        await self.vector_store.delete_by_url(page.url)
        await self.vector_store.upsert(chunks, vectors)

        logger.info("Page ingested", url=page.url, chunks=len(chunks))
        return IngestionOutcome(url=page.url, status="ingested", chunks=len(chunks))

    async def rebuild_sparse_index(self) -> int:
        """Rebuild the BM25 index from every chunk in the vector store and persist it.

        Raises:
            IndexRebuildInProgressError: another rebuild is running
        """
        chunks = await self.vector_store.get_all_chunks()
        chunks.sort(key=lambda chunk: chunk.id)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.sparse_index.rebuild_and_swap, chunks)
        return len(chunks)

    async def ingest(self, pages: Iterable[PageContent], rebuild_index: bool = True) -> IngestionReport:
        """Ingest ``pages`` and rebuild the sparse index; one run at a time.

        Raises:
            IndexRebuildInProgressError: another ingestion or index rebuild is running
        """
        if self._ingest_lock.locked() or self.sparse_index.is_rebuilding:
            raise IndexRebuildInProgressError("Ingestion already in progress")

        async with self._ingest_lock:
            return await self._run(pages, rebuild_index)

    async def _run(self, pages: Iterable[PageContent], rebuild_index: bool) -> IngestionReport:
        start_time = time.time()
        await self.verify_dependencies()

        report = IngestionReport()
        for page in pages:
            try:
                outcome = await self.process_page(page)
            except Exception as e:
                # Continue with the remaining pages
                logger.error("Error processing page", url=page.url, error=str(e), error_type=type(e).__name__)
                report.errors += 1
                report.failed_urls.append(page.url)
                continue

            if outcome.status == "ingested":
                report.processed += 1
                report.chunks_ingested += outcome.chunks
            else:
                report.skipped += 1

        if rebuild_index:
            report.indexed_documents = await self.rebuild_sparse_index()

        report.elapsed_seconds = round(time.time() - start_time, 2)
        logger.info("Ingestion complete", **report.model_dump(exclude={"failed_urls"}))
        return report
