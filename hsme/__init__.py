"""Local SQLite memory store with hybrid lexical and vector search and a knowledge graph."""

__version__ = "1.0.1"