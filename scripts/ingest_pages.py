#!/usr/bin/env python3
"""
ingest_pages.py - Chunk, embed and index scraped site pages

Reads one JSON object per line:

    {"url": "...", "title": "...", "content": "...", "sections": [{"heading": "...", "text": "..."}],
     "last_modified": "2025-01-01T00:00:00Z"}

Unchanged pages (same content hash as stored) are skipped. After all pages
the BM25 index is rebuilt from the vector store and saved.

Usage:
    python scripts/ingest_pages.py --input data/pages.jsonl [--limit N] [--no-rebuild]
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

import structlog
from dotenv import load_dotenv
from pydantic import ValidationError
from tqdm import tqdm

from libs.common.logging import configure_logging
from libs.common.settings import get_settings
from sitechat.errors import SiteChatError
from sitechat.factory import build_engine, build_ingestion_pipeline
from sitechat.ingestion import IngestionReport, PageContent

load_dotenv()

logger = structlog.get_logger()


def load_pages(path: Path, limit: Optional[int] = None) -> List[PageContent]:
    """Parse the JSONL export; malformed lines are logged and skipped."""
    pages = []
    with path.open("r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                pages.append(PageContent.model_validate(json.loads(line)))
            except (ValueError, ValidationError) as e:
                logger.warning("Skipping malformed page record", line=line_no, error=str(e))
            if limit is not None and len(pages) >= limit:
                break
    return pages


async def run(pages: List[PageContent], rebuild_index: bool) -> IngestionReport:
    settings = get_settings()
    engine = await build_engine(settings)
    pipeline = build_ingestion_pipeline(settings, engine)
    return await pipeline.ingest(tqdm(pages, desc="Ingesting pages", unit="page"), rebuild_index=rebuild_index)


def main():
    parser = argparse.ArgumentParser(description="Ingest scraped pages into Milvus and the BM25 index")
    parser.add_argument("--input", type=Path, required=True, help="JSONL file of scraped pages")
    parser.add_argument("--limit", type=int, default=None, help="Maximum number of pages to process")
    parser.add_argument("--no-rebuild", action="store_true", help="Skip the BM25 index rebuild")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(level="DEBUG" if args.verbose else settings.log_level, json_logs=settings.log_json)

    if not args.input.exists():
        logger.error("Input file not found", path=str(args.input))
        sys.exit(1)

    pages = load_pages(args.input, args.limit)
    logger.info("Loaded pages", count=len(pages), path=str(args.input))

    try:
        report = asyncio.run(run(pages, rebuild_index=not args.no_rebuild))
    except SiteChatError as e:
        logger.error("Ingestion failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)

    print(json.dumps(report.model_dump(), indent=2))
    if report.errors:
        sys.exit(2)


if __name__ == "__main__":
    main()
