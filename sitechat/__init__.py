"""Hybrid BM25 + dense retrieval core for a single-site RAG chatbot."""

__version__ = "0.1.0"
