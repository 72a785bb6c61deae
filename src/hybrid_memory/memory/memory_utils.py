"""Utility functions for working with the memory system."""

import time
from typing import TYPE_CHECKING, Any, Dict, List, Sequence, TypeVar

from sqlalchemy import func

from .models import MemoryCategory, MemoryRecord, SHORT_ID_LENGTH

if TYPE_CHECKING:
    from .store import HybridMemoryStore

T = TypeVar("T")


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def is_short_id(identifier: str) -> bool:
    """Whether ``identifier`` should be resolved as an id prefix."""
    return len(identifier) == SHORT_ID_LENGTH


def escape_like(value: str, escape: str = "\\") -> str:
    """Escape LIKE wildcards so ``value`` matches literally."""
    return (
        value.replace(escape, escape * 2)
        .replace("%", f"{escape}%")
        .replace("_", f"{escape}_")
    )


def distance_to_score(distance: float) -> float:
    """Map a non-negative L2 distance onto a similarity in (0, 1].

    FAISS can report tiny negative distances for identical vectors, so the
    distance is clamped at zero first.
    """
    return 1.0 / (1.0 + max(float(distance), 0.0))


def order_by_rank(items: List[T], ids: Sequence[str], key) -> List[T]:
    """Sort ``items`` by the position of ``key(item)`` in ``ids``.

    Items whose id is not in ``ids`` go last, keeping their relative order.
    """
    rank = {memory_id: i for i, memory_id in enumerate(ids)}
    return sorted(items, key=lambda item: rank.get(key(item), len(rank)))


def get_memory_statistics(store: "HybridMemoryStore") -> Dict[str, Any]:
    """Get statistics about the memory database.

    Args:
        store: The store to inspect

    Returns:
        Dictionary with memory statistics
    """
    stats: Dict[str, Any] = {}

    with store.metadata.Session() as session:
        live = session.query(MemoryRecord).filter(MemoryRecord.deleted_at.is_(None))

        stats['total_memories'] = live.count()
        stats['deleted_memories'] = session.query(MemoryRecord).filter(
            MemoryRecord.deleted_at.isnot(None)
        ).count()

        # Count by category
        counts = dict(
            live.with_entities(MemoryRecord.category, func.count(MemoryRecord.id))
            .group_by(MemoryRecord.category)
            .all()
        )
        stats['count_by_category'] = {
            category.value: counts.get(category.value, 0) for category in MemoryCategory
        }

        oldest, newest = live.with_entities(
            func.min(MemoryRecord.created_at), func.max(MemoryRecord.created_at)
        ).one()

    if oldest is not None and newest is not None:
        stats['oldest_memory'] = oldest
        stats['newest_memory'] = newest

    # Only report the vector side if it has been loaded
    if store.vector_index.is_open:
        stats['vector_entries'] = len(store.vector_index)

    return stats
