"""Pydantic models shared by ingestion, indexing and retrieval.

A ``Chunk`` is the unit of retrieval. It is created during ingestion, stored
once in the vector database (vector + payload) and once in the BM25 index
(token array), and never mutated afterwards: re-ingesting a page deletes its
chunks and inserts new ones under the same deterministic ids.
"""

from __future__ import annotations

import hashlib
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def make_chunk_id(url: str, chunk_index: int) -> int:
    """Derive a stable positive int64 id from the source URL and chunk position."""
    digest = hashlib.sha256(f"{url}_{chunk_index}".encode("utf-8")).hexdigest()
    # 15 hex digits = 60 bits, always a positive signed int64
    return int(digest[:15], 16)


def make_content_hash(text: str) -> str:
    """Hash of a page's cleaned text, used to skip unchanged pages."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class PageSection(BaseModel):
    """A headed section extracted upstream from the page markup."""

    heading: str = ""
    text: str = ""


class PageMetadata(BaseModel):
    """Provenance handed to the chunker alongside a page's text."""

    url: str
    title: str = ""
    content_hash: str = ""
    sections: List[PageSection] = Field(default_factory=list)
    last_crawled: Optional[str] = None


class Chunk(BaseModel):
    """A contiguous, size-bounded span of page text."""

    model_config = ConfigDict(frozen=True)

    id: int
    text: str
    title: str = ""
    url: str = ""
    section_heading: str = ""
    chunk_index: int = 0
    total_chunks: int = 1
    content_hash: str = ""
    last_crawled: Optional[str] = None

    @property
    def indexed_text(self) -> str:
        """Text fed to the BM25 tokenizer: heading keywords count toward term frequency."""
        if self.section_heading:
            return f"{self.section_heading} {self.text}"
        return self.text

    @property
    def embedding_text(self) -> str:
        """Text sent to the embedding provider."""
        return f"{self.title}\n\n{self.text}" if self.title else self.text

    def payload(self) -> Dict[str, Any]:
        """Metadata duplicated into the vector database next to the embedding."""
        return {
            "text": self.text,
            "title": self.title,
            "url": self.url,
            "section_heading": self.section_heading,
            "chunk_index": self.chunk_index,
            "total_chunks": self.total_chunks,
            "content_hash": self.content_hash,
            "last_crawled": self.last_crawled or "",
        }

    @classmethod
    def from_payload(cls, chunk_id: int, payload: Dict[str, Any]) -> "Chunk":
        return cls(
            id=int(chunk_id),
            text=payload.get("text") or "",
            title=payload.get("title") or "",
            url=payload.get("url") or "",
            section_heading=payload.get("section_heading") or "",
            chunk_index=int(payload.get("chunk_index") or 0),
            total_chunks=int(payload.get("total_chunks") or 1),
            content_hash=payload.get("content_hash") or "",
            last_crawled=payload.get("last_crawled") or None,
        )


class SparseHit(BaseModel):
    """One BM25 result: chunk id and an unnormalized positive score."""

    model_config = ConfigDict(frozen=True)

    id: int
    score: float


class DenseHit(BaseModel):
    """One vector-search result, carrying the stored chunk payload."""

    model_config = ConfigDict(frozen=True)

    id: int
    score: float = Field(ge=0.0, le=1.0)
    chunk: Chunk


class RetrievalCandidate(BaseModel):
    """A fused, uniformly shaped retrieval result handed to the answer generator."""

    model_config = ConfigDict(frozen=True)

    id: int
    text: str
    title: str = ""
    url: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    semantic_score: float = Field(default=0.0, ge=0.0, le=1.0)
    bm25_score: float = Field(default=0.0, ge=0.0, le=1.0)
    fused_score: float = Field(ge=0.0, le=1.0)

    @property
    def score(self) -> float:
        return self.fused_score

    @classmethod
    def from_chunk(
        cls,
        chunk: Chunk,
        semantic_score: float,
        bm25_score: float,
        fused_score: float,
    ) -> "RetrievalCandidate":
        return cls(
            id=chunk.id,
            text=chunk.text,
            title=chunk.title,
            url=chunk.url,
            metadata={
                "section_heading": chunk.section_heading,
                "chunk_index": chunk.chunk_index,
                "total_chunks": chunk.total_chunks,
            },
            semantic_score=semantic_score,
            bm25_score=bm25_score,
            fused_score=fused_score,
        )


class Citation(BaseModel):
    """Source reference shown next to a generated answer."""

    title: str
    url: str


class ChatAnswer(BaseModel):
    """What the chat layer returns to its caller."""

    answer: str
    citations: List[Citation] = Field(default_factory=list)
    chunks_retrieved: int = 0
    elapsed_ms: int = 0
