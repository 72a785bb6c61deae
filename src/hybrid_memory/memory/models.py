"""Database models for the memory system."""
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Column, Integer, REAL, Text,
    create_engine, event, Index, text
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from .errors import StorageError

# SQLAlchemy base class
Base = declarative_base()

MS_PER_DAY = 86_400_000
SHORT_ID_LENGTH = 8

DEFAULT_CONFIDENCE = 0.8
DEFAULT_IMPORTANCE = 0.5


class MemoryCategory(str, Enum):
    """Kinds of memories the store accepts."""
    FACT = "fact"
    PREFERENCE = "preference"
    EVENT = "event"
    RELATIONSHIP = "relationship"
    CONTEXT = "context"
    INSTRUCTION = "instruction"
    DECISION = "decision"
    ENTITY = "entity"


def dump_tags(tags: Optional[List[str]]) -> str:
    """Serialize tags the way they are stored in the ``tags`` column."""
    return json.dumps(list(tags or []), separators=(",", ":"), ensure_ascii=False)


def load_tags(raw: Optional[str]) -> List[str]:
    """Parse the ``tags`` column back into a list of strings."""
    tags = json.loads(raw or "[]")
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        raise ValueError(f"tags column is not a JSON array of strings: {raw!r}")
    return tags


class MemoryRecord(Base):
    """Metadata row for a single memory."""
    __tablename__ = "memories"

    id = Column(Text, primary_key=True)

    # Core fields
    content = Column(Text, nullable=False)
    category = Column(Text, nullable=False)
    confidence = Column(REAL, default=DEFAULT_CONFIDENCE, server_default=text("0.8"))
    importance = Column(REAL, default=DEFAULT_IMPORTANCE, server_default=text("0.5"))

    # Timestamps (epoch milliseconds)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)
    last_accessed_at = Column(Integer)
    decay_days = Column(Integer)

    # Provenance
    source_channel = Column(Text)
    source_message_id = Column(Text)

    tags = Column(Text)
    supersedes = Column(Text)

    # Soft delete
    deleted_at = Column(Integer)
    delete_reason = Column(Text)

    def __repr__(self) -> str:
        return f"<MemoryRecord(id={self.id}, category={self.category}, content='{(self.content or '')[:50]}...'>"

    def to_memory(self) -> "Memory":
        """Decode this row into a :class:`Memory`.

        Raises:
            StorageError: If the row does not match the expected schema
        """
        missing = [
            name for name in ("id", "content", "category", "created_at", "updated_at")
            if getattr(self, name) is None
        ]
        if missing:
            raise StorageError(
                f"Memory row {self.id!r} is missing required columns: {', '.join(missing)}"
            )

        try:
            category = MemoryCategory(self.category)
            tags = load_tags(self.tags)
        except ValueError as e:
            raise StorageError(f"Memory row {self.id!r} could not be decoded: {e}") from e

        return Memory(
            id=self.id,
            content=self.content,
            category=category,
            confidence=float(self.confidence if self.confidence is not None else DEFAULT_CONFIDENCE),
            importance=float(self.importance if self.importance is not None else DEFAULT_IMPORTANCE),
            created_at=int(self.created_at),
            updated_at=int(self.updated_at),
            last_accessed_at=self.last_accessed_at,
            decay_days=self.decay_days,
            source_channel=self.source_channel,
            source_message_id=self.source_message_id,
            tags=tags,
            supersedes=self.supersedes,
            deleted_at=self.deleted_at,
            delete_reason=self.delete_reason,
        )


# Create indexes for performance
Index("idx_memories_category", MemoryRecord.category)
Index("idx_memories_confidence", MemoryRecord.confidence)
Index("idx_memories_importance", MemoryRecord.importance)
Index("idx_memories_created", MemoryRecord.created_at)
Index("idx_memories_deleted", MemoryRecord.deleted_at)


@dataclass
class Memory:
    """A stored memory as returned to callers."""
    id: str
    content: str
    category: MemoryCategory
    confidence: float
    importance: float
    created_at: int
    updated_at: int
    last_accessed_at: Optional[int] = None
    decay_days: Optional[int] = None
    source_channel: Optional[str] = None
    source_message_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    supersedes: Optional[str] = None
    deleted_at: Optional[int] = None
    delete_reason: Optional[str] = None

    @property
    def short_id(self) -> str:
        return self.id[:SHORT_ID_LENGTH]

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def is_expired(self, now_ms: int) -> bool:
        """Whether the decay window has elapsed at ``now_ms``."""
        if self.decay_days is None:
            return False
        return self.created_at + self.decay_days * MS_PER_DAY <= now_ms

    def to_dict(self) -> Dict[str, Any]:
        """Convert memory to dictionary."""
        return {
            "id": self.id,
            "content": self.content,
            "category": self.category.value,
            "confidence": self.confidence,
            "importance": self.importance,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_accessed_at": self.last_accessed_at,
            "decay_days": self.decay_days,
            "source_channel": self.source_channel,
            "source_message_id": self.source_message_id,
            "tags": list(self.tags),
            "supersedes": self.supersedes,
            "deleted_at": self.deleted_at,
            "delete_reason": self.delete_reason,
        }


@dataclass
class MemorySearchResult:
    """A memory paired with its relevance score in [0, 1]."""
    memory: Memory
    score: float


@dataclass
class MemoryPage:
    """One page of a listing plus the total number of matching rows."""
    total: int
    items: List[Memory]


def get_engine(db_url: str = "sqlite:///:memory:", **kwargs) -> Engine:
    """Get a SQLAlchemy engine with the specified configuration."""
    if db_url.startswith("sqlite"):
        kwargs.update({
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool
        })

    engine = create_engine(db_url, **kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", set_sqlite_pragma)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory for the given engine."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Initialize the database with all tables."""
    Base.metadata.create_all(bind=engine)


def set_sqlite_pragma(dbapi_connection, connection_record):
    """Enable WAL journaling and other SQLite optimizations."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA cache_size=-2000")  # 2MB cache
    cursor.close()
