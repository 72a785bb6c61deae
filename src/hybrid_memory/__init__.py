"""Hybrid SQLite + FAISS memory store."""

__version__ = "0.1.0"

from .memory import (  # noqa: E402
    HybridMemoryStore,
    Memory,
    MemoryCategory,
    MemorySearchResult,
)

__all__ = ["HybridMemoryStore", "Memory", "MemoryCategory", "MemorySearchResult", "__version__"]
