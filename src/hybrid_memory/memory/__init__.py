"""
Memory System.

Provides persistent storage and retrieval of memories using SQLite and vector embeddings.
"""

from .embedding import EmbeddingProvider, SentenceTransformerEmbeddings
from .errors import (
    EmbeddingProviderError,
    MemoryNotFoundError,
    MemoryStoreError,
    MissingParameterError,
    StorageError,
)
from .faiss_index import FAISSIndex
from .models import Memory, MemoryCategory, MemoryPage, MemorySearchResult
from .store import HybridMemoryStore, UNSET

__all__ = [
    'HybridMemoryStore',
    'UNSET',
    'Memory',
    'MemoryCategory',
    'MemoryPage',
    'MemorySearchResult',
    'EmbeddingProvider',
    'SentenceTransformerEmbeddings',
    'FAISSIndex',
    'MemoryStoreError',
    'MemoryNotFoundError',
    'MissingParameterError',
    'EmbeddingProviderError',
    'StorageError',
]
