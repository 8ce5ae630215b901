#!/usr/bin/env python3
"""
ask.py - Ask the site chatbot a question from the command line

Prints the retrieved passages with their scores, then the generated
answer and citations (unless --no-generate).

Usage:
    python scripts/ask.py "how much faster is data entry" [--top-k 3] [--threshold 0.3] [--no-generate]
"""

import argparse
import asyncio
import sys
from typing import Optional

import structlog
from dotenv import load_dotenv

from libs.caching.redis_client import close_redis_client
from libs.common.logging import configure_logging
from libs.common.settings import get_settings
from sitechat.errors import SiteChatError
from sitechat.factory import build_chat_service, build_engine

load_dotenv()

logger = structlog.get_logger()


async def ask(question: str, top_k: int, threshold: float, generate: bool, strategy: Optional[str]) -> None:
    settings = get_settings()
    if strategy:
        settings = settings.model_copy(update={"fusion_strategy": strategy})
    engine = await build_engine(settings)

    try:
        candidates = await engine.retrieve(question, top_k=top_k, similarity_threshold=threshold)
        print(f"\nRetrieved {len(candidates)} passages (top_k={top_k}, threshold={threshold}):\n")
        for rank, candidate in enumerate(candidates, start=1):
            print(
                f"{rank}. {candidate.title} [{candidate.url}]\n"
                f"   fused={candidate.fused_score:.3f} semantic={candidate.semantic_score:.3f} "
                f"bm25={candidate.bm25_score:.3f}\n"
                f"   {candidate.text[:200]}...\n"
            )

        if generate:
            chat = build_chat_service(settings.model_copy(update={
                "default_top_k": top_k,
                "similarity_threshold": threshold,
            }), engine)
            answer = await chat.answer(question)
            print(f"Answer ({answer.elapsed_ms} ms):\n\n{answer.answer}\n")
            for citation in answer.citations:
                print(f"  - {citation.title}: {citation.url}")
    finally:
        await close_redis_client()


def main():
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Query the hybrid retrieval engine")
    parser.add_argument("question", type=str, help="Question to ask")
    parser.add_argument("--top-k", type=int, default=settings.default_top_k, help="Number of passages")
    parser.add_argument("--threshold", type=float, default=settings.similarity_threshold,
                        help="Minimum fused score")
    parser.add_argument("--strategy", choices=["weighted", "rrf"], default=None, help="Override fusion strategy")
    parser.add_argument("--no-generate", action="store_true", help="Only print retrieved passages")
    args = parser.parse_args()

    configure_logging(level=settings.log_level, json_logs=settings.log_json)

    if not args.question.strip():
        parser.error("question must not be empty")

    try:
        asyncio.run(ask(args.question, args.top_k, args.threshold, not args.no_generate, args.strategy))
    except SiteChatError as e:
        logger.error("Question failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    main()
