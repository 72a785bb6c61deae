"""Exceptions raised by the memory system."""


class MemoryStoreError(Exception):
    """Base class for memory store errors."""


class MemoryNotFoundError(MemoryStoreError):
    """The identifier does not resolve to a live memory."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Memory not found: {identifier}")


class MissingParameterError(MemoryStoreError, ValueError):
    """A required discriminator (e.g. id or query) was not supplied."""


class EmbeddingProviderError(MemoryStoreError):
    """Embedding computation failed. Never retried by the store."""


class StorageError(MemoryStoreError):
    """The metadata database or the vector index failed."""
