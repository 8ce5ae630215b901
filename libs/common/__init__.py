"""Configuration and logging shared by the RAG core and the scripts."""
