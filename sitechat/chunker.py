"""Split page text into overlapping, size-bounded chunks.

Chunks are built from whole sentences. When a chunk is closed, the next one
is seeded with the trailing sentences of the closed chunk that fit inside
the overlap budget, so neighbouring chunks share context. Output is a pure
function of (text, metadata, configuration): chunk ids are derived from
the URL and chunk position, so unchanged pages re-chunk to the same ids.
"""

from __future__ import annotations

import re
from typing import List, Optional, Sequence

import structlog

from sitechat.models import Chunk, PageMetadata, PageSection, make_chunk_id, make_content_hash

logger = structlog.get_logger(__name__)

CHARS_PER_TOKEN = 4  # Approximate characters per token for English text
HEADING_MATCH_WORDS = 50  # Leading chunk words compared against section text
HEADING_MIN_WORD_CHARS = 4  # Shorter words are too common to signal a section

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")
_FIRST_SENTENCE = re.compile(r"[.!?]")


def estimate_tokens(text: str) -> int:
    """Estimate the number of tokens in a text using character count."""
    return len(text) // CHARS_PER_TOKEN


def split_into_sentences(text: str) -> List[str]:
    """Split on whitespace that follows ``.``, ``!`` or ``?``."""
    return [s for s in _SENTENCE_END.split(text) if s.strip()]


def synthesize_heading(text: str, max_chars: int = 100) -> str:
    """Use the first sentence as a heading, truncated to ``max_chars``."""
    first_sentence = _FIRST_SENTENCE.split(text, maxsplit=1)[0]
    if len(first_sentence) <= max_chars:
        return first_sentence.strip()
    return first_sentence[:max_chars].strip() + "..."


def find_section_heading(
    chunk_text: str,
    sections: Optional[Sequence[PageSection]] = None,
    max_chars: int = 100,
) -> str:
    """Pick the heading of the section sharing the most words with the chunk's opening.

    Falls back to a synthetic heading from the chunk's first sentence when
    no sections were extracted or none shares a significant word.
    """
    if not sections:
        return synthesize_heading(chunk_text, max_chars)

    chunk_words = chunk_text.lower().split()[:HEADING_MATCH_WORDS]
    significant = [w for w in chunk_words if len(w) >= HEADING_MIN_WORD_CHARS]

    best_heading = ""
    max_overlap = 0
    for section in sections:
        if not section.text:
            continue
        section_text = section.text.lower()
        overlap = sum(1 for word in significant if word in section_text)
        # strict comparison: the first section wins ties
        if overlap > max_overlap:
            max_overlap = overlap
            best_heading = section.heading

    return best_heading or synthesize_heading(chunk_text, max_chars)


class Chunker:
    """Sentence-greedy chunker with a trailing overlap window.

    Args:
        max_tokens: target chunk size in estimated tokens
        overlap_tokens: budget for sentences carried into the next chunk
        min_chunk_chars: a trailing chunk shorter than this is dropped
        heading_max_chars: character budget for synthetic headings
    """

    def __init__(
        self,
        max_tokens: int = 800,
        overlap_tokens: int = 100,
        min_chunk_chars: int = 200,
        heading_max_chars: int = 100,
    ):
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        if not 0 <= overlap_tokens < max_tokens:
            raise ValueError("overlap_tokens must be in [0, max_tokens)")
        self.max_tokens = max_tokens
        self.overlap_tokens = overlap_tokens
        self.min_chunk_chars = min_chunk_chars
        self.heading_max_chars = heading_max_chars

    def chunk_text(self, text: str, metadata: PageMetadata) -> List[Chunk]:
        """Split ``text`` into chunks carrying ``metadata`` provenance."""
        text = text.strip()
        if not text:
            return []

        if estimate_tokens(text) <= self.max_tokens:
            pieces = [text]
        else:
            pieces = self._split(text)

        content_hash = metadata.content_hash or make_content_hash(text)
        chunks = [
            Chunk(
                id=make_chunk_id(metadata.url, index),
                text=piece,
                title=metadata.title,
                url=metadata.url,
                section_heading=find_section_heading(piece, metadata.sections, self.heading_max_chars),
                chunk_index=index,
                total_chunks=len(pieces),
                content_hash=content_hash,
                last_crawled=metadata.last_crawled,
            )
            for index, piece in enumerate(pieces)
        ]

        logger.debug(
            "Page chunked",
            url=metadata.url,
            chars=len(text),
            chunks=len(chunks),
        )
        return chunks

    def _split(self, text: str) -> List[str]:
        sentences = split_into_sentences(text)
        pieces: List[str] = []
        current: List[str] = []
        current_tokens = 0

        for i, sentence in enumerate(sentences):
            sentence_tokens = estimate_tokens(sentence)
            if current and current_tokens + sentence_tokens > self.max_tokens:
                pieces.append(" ".join(current).strip())
                current = self._overlap(sentences, i)
                current_tokens = estimate_tokens(" ".join(current))
            current.append(sentence)
            current_tokens += sentence_tokens

        tail = " ".join(current).strip()
        if len(tail) >= self.min_chunk_chars:
            pieces.append(tail)
        elif tail:
            logger.debug("Dropped short trailing chunk", chars=len(tail))
        return pieces

    def _overlap(self, sentences: List[str], current_index: int) -> List[str]:
        """Walk backwards from ``current_index`` collecting sentences within the overlap budget."""
        overlap: List[str] = []
        token_count = 0
        for i in range(current_index - 1, -1, -1):
            sentence_tokens = estimate_tokens(sentences[i])
            if token_count + sentence_tokens > self.overlap_tokens:
                break
            overlap.insert(0, sentences[i])
            token_count += sentence_tokens
        return overlap
