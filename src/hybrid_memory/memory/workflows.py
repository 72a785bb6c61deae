"""Caller-level workflows composed from store primitives.

These hold the policies a tool layer applies on top of the store: the
duplicate gate before storing, delete-by-query, and touching what a search
returned.
"""
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

from loguru import logger

from .errors import MemoryNotFoundError, MissingParameterError
from .models import Memory, MemoryCategory, MemorySearchResult
from .store import HybridMemoryStore


@dataclass
class RememberResult:
    action: str  # "created" or "duplicate"
    memory: Memory
    score: Optional[float] = None


@dataclass
class ForgetResult:
    action: str  # "deleted", "candidates" or "no_match"
    memory: Optional[Memory] = None
    candidates: List[MemorySearchResult] = field(default_factory=list)


async def remember(
    store: HybridMemoryStore,
    content: str,
    category: Union[MemoryCategory, str],
    dedup_threshold: Optional[float] = None,
    **fields,
) -> RememberResult:
    """Store ``content`` unless a near-identical memory already exists.

    Args:
        store: Target store
        content: The text of the memory
        category: Memory category
        dedup_threshold: Similarity at which an existing memory counts as a
            duplicate; defaults to the store's threshold
        **fields: Passed through to :meth:`HybridMemoryStore.create`

    Returns:
        The created memory, or the existing duplicate and its score
    """
    duplicates = await store.find_duplicates(content, dedup_threshold)
    if duplicates:
        match = duplicates[0]
        logger.info(f"Skipped storing duplicate of memory {match.memory.id} (score {match.score:.3f})")
        return RememberResult(action="duplicate", memory=match.memory, score=match.score)

    memory = await store.create(content, category, **fields)
    return RememberResult(action="created", memory=memory)


async def forget(
    store: HybridMemoryStore,
    identifier: Optional[str] = None,
    query: Optional[str] = None,
    reason: Optional[str] = None,
    threshold: Optional[float] = None,
    candidate_limit: Optional[int] = None,
) -> ForgetResult:
    """Delete a memory by id, or by query when the match is unambiguous.

    A query deletes automatically only when exactly one result scores at or
    above ``threshold``. Otherwise the results come back as candidates for the
    caller to choose from. ``threshold`` and ``candidate_limit`` default to the
    store's ``forget_threshold`` and ``forget_candidates``.

    Raises:
        MissingParameterError: If neither ``identifier`` nor ``query`` is given
        MemoryNotFoundError: If ``identifier`` matches no live memory
    """
    if identifier:
        memory = store.get(identifier)
        if memory is None or memory.is_deleted:
            raise MemoryNotFoundError(identifier)
        await store.delete(memory.id, reason)
        return ForgetResult(action="deleted", memory=memory)

    if not query or not query.strip():
        raise MissingParameterError("Provide either a memory id or a query to forget")

    threshold = store.forget_threshold if threshold is None else threshold
    candidate_limit = store.forget_candidates if candidate_limit is None else candidate_limit

    results = await store.search(query, limit=candidate_limit)
    confident = [r for r in results if r.score >= threshold]

    if len(confident) == 1:
        memory = confident[0].memory
        await store.delete(memory.id, reason)
        return ForgetResult(action="deleted", memory=memory)

    if results:
        return ForgetResult(action="candidates", candidates=results)

    return ForgetResult(action="no_match")


async def recall(
    store: HybridMemoryStore,
    query: Optional[str] = None,
    category: Optional[Union[MemoryCategory, str]] = None,
    min_confidence: Optional[float] = None,
    min_importance: Optional[float] = None,
    tags: Optional[Sequence[str]] = None,
    limit: Optional[int] = None,
    touch: bool = True,
) -> List[MemorySearchResult]:
    """Search and mark the returned memories as accessed."""
    results = await store.search(
        query,
        category=category,
        min_confidence=min_confidence,
        min_importance=min_importance,
        tags=tags,
        limit=limit,
    )
    if touch:
        store.touch_many(r.memory.id for r in results)
    return results


def standing_instructions(store: HybridMemoryStore, limit: Optional[int] = None) -> List[Memory]:
    """Instructions to inject into every conversation.

    Empty when the store has ``auto_inject_instructions`` turned off.
    """
    if not store.auto_inject_instructions:
        return []
    return store.get_by_category(MemoryCategory.INSTRUCTION, limit or store.instruction_limit)
