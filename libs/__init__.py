"""Shared libraries for the site chatbot.

This package contains reusable components:
- common: Configuration and logging setup
- caching: Redis client management and the retrieval result cache
"""
