#!/usr/bin/env python3
"""
build_bm25_index.py - Rebuild the BM25 sparse index from the chunks stored in Milvus

Reads every chunk payload from the vector store, tokenizes heading + text,
and writes {documents, documentIds, timestamp} JSON for the API to load
at start-up.

Usage:
    python scripts/build_bm25_index.py [--output PATH] [--verbose]
"""

import argparse
import asyncio
import sys
import time

import structlog
from dotenv import load_dotenv

from libs.common.logging import configure_logging
from libs.common.settings import get_settings
from sitechat.bm25_provider import SparseIndex
from sitechat.errors import SiteChatError
from sitechat.factory import build_vector_store

load_dotenv()

logger = structlog.get_logger()


async def rebuild(output_path: str) -> int:
    settings = get_settings()
    vector_store = build_vector_store(settings)

    start_time = time.time()
    chunks = await vector_store.get_all_chunks()
    chunks.sort(key=lambda chunk: chunk.id)

    index = SparseIndex(index_path=output_path)
    index.rebuild_and_swap(chunks)

    stats = index.stats()
    logger.info(
        "BM25 index build complete",
        chunks=stats["total_documents"],
        avg_tokens_per_doc=stats["avg_tokens_per_doc"],
        output=output_path,
        build_time_s=round(time.time() - start_time, 2),
    )
    return stats["total_documents"]


def main():
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Rebuild the BM25 index from the Milvus collection")
    parser.add_argument("--output", type=str, default=settings.bm25_index_path,
                        help=f"Output file for the BM25 index (default: {settings.bm25_index_path})")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    configure_logging(level="DEBUG" if args.verbose else settings.log_level, json_logs=settings.log_json)

    try:
        asyncio.run(rebuild(args.output))
    except SiteChatError as e:
        logger.error("Error building BM25 index", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    main()
