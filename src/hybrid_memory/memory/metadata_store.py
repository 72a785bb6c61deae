"""SQLite metadata table for memories."""
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Union

from loguru import logger
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import StorageError
from .memory_utils import escape_like, is_short_id
from .models import (
    Memory, MemoryPage, MemoryRecord, MS_PER_DAY,
    create_session_factory, dump_tags, get_engine, init_db
)

SORTABLE_COLUMNS = {
    "id": MemoryRecord.id,
    "content": MemoryRecord.content,
    "category": MemoryRecord.category,
    "confidence": MemoryRecord.confidence,
    "importance": MemoryRecord.importance,
    "created_at": MemoryRecord.created_at,
    "updated_at": MemoryRecord.updated_at,
    "last_accessed_at": MemoryRecord.last_accessed_at,
    "decay_days": MemoryRecord.decay_days,
    "source_channel": MemoryRecord.source_channel,
    "source_message_id": MemoryRecord.source_message_id,
    "tags": MemoryRecord.tags,
    "supersedes": MemoryRecord.supersedes,
    "deleted_at": MemoryRecord.deleted_at,
    "delete_reason": MemoryRecord.delete_reason,
}


def sort_column(sort_by: str):
    """Resolve an attribute name (``importance``, ``createdAt``...) to a column."""
    name = re.sub(r"([A-Z])", r"_\1", sort_by).lower()
    try:
        return SORTABLE_COLUMNS[name]
    except KeyError:
        raise ValueError(f"Cannot sort memories by {sort_by!r}") from None


class MetadataStore:
    """Canonical lifecycle record of every memory, live or soft-deleted."""

    def __init__(self, db_file: Union[str, Path]):
        self.db_file = Path(db_file)
        try:
            self.engine = get_engine(f"sqlite:///{self.db_file}")
            self.Session = create_session_factory(self.engine)
            init_db(self.engine)
        except SQLAlchemyError as e:
            logger.error(f"Failed to open metadata database {self.db_file}: {e}")
            raise StorageError(f"Failed to open metadata database {self.db_file}: {e}") from e

    @contextmanager
    def session_scope(self, action: str) -> Iterator[Session]:
        """Yield a session committed on success and rolled back on failure."""
        session = self.Session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to {action}: {e}")
            raise StorageError(f"Failed to {action}: {e}") from e
        finally:
            session.close()

    @staticmethod
    def _live(query):
        return query.filter(MemoryRecord.deleted_at.is_(None))

    @staticmethod
    def _has_tag(tag: str):
        """Match ``tag`` as a whole element of the stored JSON array.

        The serialized element must sit between array delimiters, so a tag
        whose escaped text merely contains it does not match.
        """
        element = dump_tags([tag])[1:-1]
        pattern = escape_like(element)
        return or_(
            MemoryRecord.tags == f"[{element}]",
            MemoryRecord.tags.like(f"[{pattern},%", escape="\\"),
            MemoryRecord.tags.like(f"%,{pattern},%", escape="\\"),
            MemoryRecord.tags.like(f"%,{pattern}]", escape="\\"),
        )

    def insert(
        self,
        memory_id: str,
        content: str,
        category: str,
        confidence: float,
        importance: float,
        now: int,
        decay_days: Optional[int] = None,
        source_channel: Optional[str] = None,
        source_message_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
        supersedes: Optional[str] = None,
    ) -> Memory:
        record = MemoryRecord(
            id=memory_id,
            content=content,
            category=category,
            confidence=confidence,
            importance=importance,
            created_at=now,
            updated_at=now,
            last_accessed_at=now,
            decay_days=decay_days,
            source_channel=source_channel,
            source_message_id=source_message_id,
            tags=dump_tags(tags),
            supersedes=supersedes,
        )
        with self.session_scope(f"insert memory {memory_id}") as session:
            session.add(record)
        return record.to_memory()

    def get(self, memory_id: str) -> Optional[Memory]:
        with self.session_scope(f"get memory {memory_id}") as session:
            record = session.get(MemoryRecord, memory_id)
            return record.to_memory() if record else None

    def resolve_id(self, identifier: str, live_only: bool = False) -> Optional[str]:
        """Resolve a full id or an 8-character prefix to a stored id.

        Ambiguous prefixes resolve to the lexicographically smallest match.
        """
        with self.session_scope(f"resolve id {identifier}") as session:
            query = session.query(MemoryRecord.id)
            if live_only:
                query = self._live(query)

            if is_short_id(identifier):
                query = query.filter(
                    MemoryRecord.id.like(f"{escape_like(identifier)}%", escape="\\")
                ).order_by(MemoryRecord.id)
            else:
                query = query.filter(MemoryRecord.id == identifier)

            row = query.first()
            return row[0] if row else None

    def update_fields(self, memory_id: str, values: Dict[str, Any]) -> int:
        """Apply column updates to one live row. Returns the number of rows changed."""
        if "tags" in values:
            values = {**values, "tags": dump_tags(values["tags"])}
        with self.session_scope(f"update memory {memory_id}") as session:
            return self._live(session.query(MemoryRecord)).filter(
                MemoryRecord.id == memory_id
            ).update(values, synchronize_session=False)

    def soft_delete(self, memory_id: str, deleted_at: int, reason: Optional[str]) -> bool:
        """Mark a live row deleted. Already-deleted rows keep their first values."""
        with self.session_scope(f"delete memory {memory_id}") as session:
            changed = self._live(session.query(MemoryRecord)).filter(
                MemoryRecord.id == memory_id
            ).update(
                {MemoryRecord.deleted_at: deleted_at, MemoryRecord.delete_reason: reason},
                synchronize_session=False,
            )
        return changed > 0

    def query(
        self,
        candidate_ids: Optional[Sequence[str]] = None,
        category: Optional[str] = None,
        min_confidence: Optional[float] = None,
        min_importance: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        alive_at: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Memory]:
        """Fetch live rows matching every given filter.

        Args:
            candidate_ids: Restrict to these ids
            category: Exact category match
            min_confidence: Inclusive lower bound on confidence
            min_importance: Inclusive lower bound on importance
            tags: Every tag must be an element of the row's tag list
            alive_at: Exclude rows whose decay window has elapsed at this time
            limit: Maximum number of rows
        """
        with self.session_scope("search memories") as session:
            query = self._live(session.query(MemoryRecord))

            if candidate_ids is not None:
                query = query.filter(MemoryRecord.id.in_(list(candidate_ids)))
            if category:
                query = query.filter(MemoryRecord.category == category)
            if min_confidence is not None:
                query = query.filter(MemoryRecord.confidence >= min_confidence)
            if min_importance is not None:
                query = query.filter(MemoryRecord.importance >= min_importance)
            for tag in tags or []:
                query = query.filter(self._has_tag(tag))
            if alive_at is not None:
                query = query.filter(or_(
                    MemoryRecord.decay_days.is_(None),
                    MemoryRecord.created_at + MemoryRecord.decay_days * MS_PER_DAY > alive_at,
                ))

            query = query.order_by(MemoryRecord.created_at.desc(), MemoryRecord.id)
            if limit is not None:
                query = query.limit(limit)

            return [record.to_memory() for record in query.all()]

    def list_page(
        self,
        category: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        limit: int = 20,
        offset: int = 0,
    ) -> MemoryPage:
        column = sort_column(sort_by)
        if sort_order not in ("asc", "desc"):
            raise ValueError(f"sort_order must be 'asc' or 'desc', got {sort_order!r}")

        with self.session_scope("list memories") as session:
            query = self._live(session.query(MemoryRecord))
            if category:
                query = query.filter(MemoryRecord.category == category)

            total = query.count()

            ordering = column.desc() if sort_order == "desc" else column.asc()
            records = (
                query.order_by(ordering, MemoryRecord.id)
                .limit(limit)
                .offset(offset)
                .all()
            )
            return MemoryPage(total=total, items=[r.to_memory() for r in records])

    def touch(self, memory_ids: Sequence[str], now: int) -> int:
        if not memory_ids:
            return 0
        with self.session_scope("touch memories") as session:
            return session.query(MemoryRecord).filter(
                MemoryRecord.id.in_(list(memory_ids))
            ).update({MemoryRecord.last_accessed_at: now}, synchronize_session=False)

    def count_live(self) -> int:
        with self.session_scope("count memories") as session:
            return self._live(session.query(MemoryRecord)).count()

    def by_category(self, category: str, limit: int = 50) -> List[Memory]:
        with self.session_scope(f"get {category} memories") as session:
            records = (
                self._live(session.query(MemoryRecord))
                .filter(MemoryRecord.category == category)
                .order_by(
                    MemoryRecord.importance.desc(),
                    MemoryRecord.created_at.desc(),
                    MemoryRecord.id,
                )
                .limit(limit)
                .all()
            )
            return [r.to_memory() for r in records]

    def close(self) -> None:
        self.engine.dispose()
