"""Hybrid memory store.

SQLite holds the canonical metadata of every memory; a FAISS collection holds
one vector per live memory. Writes go to the vector collection first and to
SQLite second, and a failed second write is compensated by undoing the first.
"""
import asyncio
import uuid
from functools import partial
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Union

from loguru import logger

from .embedding import EmbeddingProvider
from .errors import MemoryNotFoundError, StorageError
from .faiss_index import FAISSIndex, VectorEntry
from .memory_utils import distance_to_score, is_short_id, now_ms, order_by_rank
from .metadata_store import MetadataStore
from .models import (
    DEFAULT_CONFIDENCE, DEFAULT_IMPORTANCE,
    Memory, MemoryCategory, MemoryPage, MemorySearchResult
)

DEFAULT_DEDUP_THRESHOLD = 0.95
DEFAULT_FORGET_THRESHOLD = 0.9
DEFAULT_FORGET_CANDIDATES = 5
DEFAULT_SEARCH_LIMIT = 10
DEFAULT_INSTRUCTION_LIMIT = 50

# Marks an update argument that was not supplied, so None can mean "clear"
UNSET = object()


def _coerce_category(category: Union[MemoryCategory, str]) -> MemoryCategory:
    if isinstance(category, MemoryCategory):
        return category
    return MemoryCategory(category.lower())


class HybridMemoryStore:
    """Memory store combining structured metadata and semantic search."""

    def __init__(
        self,
        db_path: Union[str, Path],
        embeddings: EmbeddingProvider,
        vector_dim: int,
        dedup_threshold: float = DEFAULT_DEDUP_THRESHOLD,
        forget_threshold: float = DEFAULT_FORGET_THRESHOLD,
        forget_candidates: int = DEFAULT_FORGET_CANDIDATES,
        search_limit: int = DEFAULT_SEARCH_LIMIT,
        instruction_limit: int = DEFAULT_INSTRUCTION_LIMIT,
        auto_inject_instructions: bool = True,
        clock: Optional[Callable[[], int]] = None,
    ):
        """Initialize the memory store.

        Args:
            db_path: Directory holding ``memory.db`` and the ``vectors`` collection
            embeddings: Provider used to embed memory content and queries
            vector_dim: Dimension of the provider's vectors
            dedup_threshold: Default similarity threshold for ``find_duplicates``
            forget_threshold: Score at which forget-by-query deletes a lone match
            forget_candidates: Results returned when forget-by-query is ambiguous
            search_limit: Default maximum number of search results
            instruction_limit: Maximum number of standing instructions
            auto_inject_instructions: Whether standing instructions are injected
            clock: Returns the current time in epoch milliseconds
        """
        self.db_path = Path(db_path).expanduser()
        self.db_path.mkdir(parents=True, exist_ok=True)

        self.embeddings = embeddings
        self.vector_dim = vector_dim
        self.dedup_threshold = dedup_threshold
        self.forget_threshold = forget_threshold
        self.forget_candidates = forget_candidates
        self.search_limit = search_limit
        self.instruction_limit = instruction_limit
        self.auto_inject_instructions = auto_inject_instructions
        self._clock = clock or now_ms

        self.metadata = MetadataStore(self.db_path / "memory.db")

        # Opened lazily on first use
        self.vector_index = FAISSIndex(self.db_path / "vectors", vector_dim)
        self._vector_ready = False
        self._init_lock = asyncio.Lock()
        self._vector_lock = asyncio.Lock()

    async def _ensure_vector_index(self) -> FAISSIndex:
        """Open the vector collection once, sharing the load between callers."""
        if self._vector_ready:
            return self.vector_index

        async with self._init_lock:
            if not self._vector_ready:
                logger.debug(f"Opening vector collection in {self.vector_index.directory}")
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, self.vector_index.open)
                self._vector_ready = True

        return self.vector_index

    async def _vector_op(self, fn: Callable, *args):
        """Run a blocking vector collection call in an executor, one at a time."""
        async with self._vector_lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, partial(fn, *args))

    async def _discard_vector(self, memory_id: str) -> None:
        """Best-effort removal of a vector entry left behind by a failed write."""
        try:
            await self._vector_op(self.vector_index.delete, memory_id)
        except Exception as e:
            logger.error(
                f"Integrity issue: vector entry {memory_id} has no live metadata row "
                f"and could not be removed: {e}"
            )

    @staticmethod
    def _replace_vector(
        index: FAISSIndex, memory_id: str, vector: Sequence[float], text: str
    ) -> Optional[VectorEntry]:
        """Write the new vector for ``memory_id`` and return the entry it replaced."""
        previous = index.get(memory_id)
        if previous is None:
            logger.warning(f"Memory {memory_id} had no vector entry; re-creating it")
            index.add(memory_id, vector, text)
        else:
            index.update(memory_id, vector, text)
        return previous

    async def _restore_vector(self, memory_id: str, previous: Optional[VectorEntry]) -> None:
        """Best-effort rollback of an in-place vector update."""
        if previous is None:
            await self._discard_vector(memory_id)
            return
        try:
            await self._vector_op(
                self.vector_index.update, memory_id, previous.vector, previous.text
            )
        except Exception as e:
            logger.error(
                f"Integrity issue: vector entry {memory_id} no longer matches its "
                f"metadata content and could not be restored: {e}"
            )

    async def create(
        self,
        content: str,
        category: Union[MemoryCategory, str],
        confidence: Optional[float] = None,
        importance: Optional[float] = None,
        decay_days: Optional[int] = None,
        tags: Optional[Sequence[str]] = None,
        source_channel: Optional[str] = None,
        source_message_id: Optional[str] = None,
        supersedes: Optional[str] = None,
    ) -> Memory:
        """Store a new memory.

        Args:
            content: The text of the memory
            category: One of :class:`MemoryCategory`
            confidence: Certainty estimate in [0, 1] (default 0.8)
            importance: Priority in [0, 1] (default 0.5)
            decay_days: Days until the memory expires; None means permanent
            tags: Free-form labels
            source_channel: Where the memory came from
            source_message_id: Message the memory was extracted from
            supersedes: Id of a memory this one replaces

        Returns:
            The created Memory

        Raises:
            EmbeddingProviderError: If the content could not be embedded
            StorageError: If either store failed; nothing is left behind
        """
        category = _coerce_category(category)
        index = await self._ensure_vector_index()

        vector = await self.embeddings.embed(content)
        memory_id = str(uuid.uuid4())
        now = self._clock()

        await self._vector_op(index.add, memory_id, vector, content)

        try:
            memory = self.metadata.insert(
                memory_id=memory_id,
                content=content,
                category=category.value,
                confidence=DEFAULT_CONFIDENCE if confidence is None else confidence,
                importance=DEFAULT_IMPORTANCE if importance is None else importance,
                now=now,
                decay_days=decay_days,
                source_channel=source_channel,
                source_message_id=source_message_id,
                tags=list(tags or []),
                supersedes=supersedes,
            )
        except StorageError:
            await self._discard_vector(memory_id)
            raise

        logger.info(f"Created memory {memory_id} (category: {category.value})")
        return memory

    def get(self, identifier: str) -> Optional[Memory]:
        """Get a memory by full id or 8-character prefix.

        Soft-deleted and expired memories are returned too.
        """
        memory_id = self.metadata.resolve_id(identifier) if is_short_id(identifier) else identifier
        if memory_id is None:
            return None
        return self.metadata.get(memory_id)

    async def update(
        self,
        identifier: str,
        content: Optional[str] = None,
        confidence: Optional[float] = None,
        importance: Optional[float] = None,
        decay_days=UNSET,
        tags: Optional[Sequence[str]] = None,
    ) -> Memory:
        """Update a live memory.

        Only the supplied fields change; ``updated_at`` always does. Pass
        ``decay_days=None`` to make a memory permanent again. New content is
        re-embedded and replaces the vector entry under the same id.

        Raises:
            MemoryNotFoundError: If the identifier resolves to no live memory
        """
        memory_id = self.metadata.resolve_id(identifier, live_only=True)
        if memory_id is None:
            raise MemoryNotFoundError(identifier)

        values = {}
        if confidence is not None:
            values["confidence"] = confidence
        if importance is not None:
            values["importance"] = importance
        if decay_days is not UNSET:
            values["decay_days"] = decay_days
        if tags is not None:
            values["tags"] = list(tags)

        previous = None
        if content is not None:
            index = await self._ensure_vector_index()
            vector = await self.embeddings.embed(content)
            values["content"] = content

            previous = await self._vector_op(self._replace_vector, index, memory_id, vector, content)

        values["updated_at"] = self._clock()

        try:
            changed = self.metadata.update_fields(memory_id, values)
        except StorageError:
            if content is not None:
                await self._restore_vector(memory_id, previous)
            raise

        if not changed:
            # Deleted while the new content was being embedded
            if content is not None:
                await self._discard_vector(memory_id)
            raise MemoryNotFoundError(identifier)

        logger.info(f"Updated memory {memory_id} ({', '.join(sorted(values))})")
        return self.metadata.get(memory_id)

    async def delete(self, identifier: str, reason: Optional[str] = None) -> None:
        """Soft-delete a memory and drop it from the vector collection.

        Unknown and already-deleted ids are ignored. An 8-character prefix only
        resolves against live memories.
        """
        index = await self._ensure_vector_index()

        memory_id = identifier
        if is_short_id(identifier):
            memory_id = self.metadata.resolve_id(identifier, live_only=True) or identifier

        if self.metadata.soft_delete(memory_id, self._clock(), reason):
            logger.info(f"Deleted memory {memory_id}" + (f" ({reason})" if reason else ""))

        try:
            await self._vector_op(index.delete, memory_id)
        except StorageError:
            logger.error(
                f"Integrity issue: memory {memory_id} is deleted but its vector entry "
                f"could not be removed; deleting it again by full id retries the removal"
            )
            raise

    async def search(
        self,
        query: Optional[str] = None,
        category: Optional[Union[MemoryCategory, str]] = None,
        min_confidence: Optional[float] = None,
        min_importance: Optional[float] = None,
        tags: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        exclude_decayed: bool = True,
    ) -> List[MemorySearchResult]:
        """Search memories by meaning and/or structured filters.

        Args:
            query: Free text; when empty the search is purely structured
            category: Only this category
            min_confidence: Inclusive lower bound on confidence
            min_importance: Inclusive lower bound on importance
            tags: Tags that must all be present
            limit: Maximum number of results; defaults to ``search_limit``
            exclude_decayed: Hide memories whose decay window has elapsed

        Returns:
            Results closest first for semantic queries; structured results
            newest first with a score of 1.0
        """
        if limit is None:
            limit = self.search_limit
        if limit <= 0:
            return []

        semantic = bool(query and query.strip())
        ranked_ids: List[str] = []
        scores = {}

        if semantic:
            index = await self._ensure_vector_index()
            query_vector = await self.embeddings.embed(query)

            # Get extra results to account for filtering
            hits = await self._vector_op(index.search, query_vector, limit * 2)
            if not hits:
                return []

            for hit in hits:
                ranked_ids.append(hit.id)
                scores[hit.id] = distance_to_score(hit.distance)

        memories = self.metadata.query(
            candidate_ids=ranked_ids if semantic else None,
            category=_coerce_category(category).value if category else None,
            min_confidence=min_confidence,
            min_importance=min_importance,
            tags=tags,
            alive_at=self._clock() if exclude_decayed else None,
            limit=None if semantic else limit,
        )

        if semantic:
            memories = order_by_rank(memories, ranked_ids, key=lambda m: m.id)[:limit]

        logger.debug(f"Search returned {len(memories)} memories (semantic: {semantic})")
        return [
            MemorySearchResult(memory=memory, score=scores.get(memory.id, 1.0))
            for memory in memories
        ]

    async def find_duplicates(
        self,
        content: str,
        threshold: Optional[float] = None,
    ) -> List[MemorySearchResult]:
        """Return the nearest live memory if it is at least ``threshold`` similar.

        ``threshold`` defaults to the store's ``dedup_threshold``.
        """
        threshold = self.dedup_threshold if threshold is None else threshold
        index = await self._ensure_vector_index()

        vector = await self.embeddings.embed(content)
        hits = await self._vector_op(index.search, vector, 1)
        if not hits:
            return []

        score = distance_to_score(hits[0].distance)
        if score < threshold:
            return []

        memory = self.metadata.get(hits[0].id)
        if memory is None or memory.is_deleted:
            return []

        return [MemorySearchResult(memory=memory, score=score)]

    def list(
        self,
        category: Optional[Union[MemoryCategory, str]] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        limit: int = 20,
        offset: int = 0,
    ) -> MemoryPage:
        """Page through live memories.

        ``sort_by`` is any Memory attribute, in snake_case or camelCase. Ties
        are broken by id so pages never overlap.
        """
        return self.metadata.list_page(
            category=_coerce_category(category).value if category else None,
            sort_by=sort_by,
            sort_order=sort_order.lower(),
            limit=limit,
            offset=offset,
        )

    def touch_many(self, memory_ids: Iterable[str]) -> None:
        """Set ``last_accessed_at`` to now for every given id."""
        memory_ids = list(memory_ids)
        if not memory_ids:
            return
        self.metadata.touch(memory_ids, self._clock())

    def count(self) -> int:
        """Number of live memories."""
        return self.metadata.count_live()

    def get_by_category(self, category: Union[MemoryCategory, str], limit: int = 50) -> List[Memory]:
        """Live memories of one category, most important and newest first."""
        return self.metadata.by_category(_coerce_category(category).value, limit)

    def close(self) -> None:
        """Release the database and the vector collection."""
        self.metadata.close()
        self.vector_index.close()
        self._vector_ready = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()
