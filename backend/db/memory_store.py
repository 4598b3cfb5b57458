"""
Embedded vector store for agent memories.

This module implements the SQLite-backed memory table with:
- L0/L1/L2 tiered rows (abstract / overview / content)
- Category-filtered nearest-neighbor search over fixed-width vectors
- Optional time/usage decay applied when ranking search hits
- One serial write lane per store instance for read-modify-write updates
"""

import asyncio
import json
import math
import re
import sqlite3
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy import Column, DateTime, Integer, String, Text, delete, func, select
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from errors import DimensionMismatchError, InvalidCategoryError, InvalidIdentifierError
from memory_types import MEMORY_CATEGORY_VALUES, MemoryCategory
from runtime_state import WriteLane

Base = declarative_base()

TABLE_NAME = "agent_memories"
FIND_BY_CATEGORY_LIMIT = 100
GET_ALL_HARD_LIMIT = 10000
DECAY_OVERFETCH_FACTOR = 3
DECAY_OVERFETCH_MIN = 20

# Fields a caller may never rewrite once the row exists.
WRITE_ONCE_FIELDS = frozenset({"id", "category", "source_session", "created_at"})
# Fields owned by the store itself.
STORE_MANAGED_FIELDS = frozenset({"active_count", "updated_at"})
UPDATABLE_FIELDS = frozenset({"abstract", "overview", "content", "vector"})

_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

_SQLITE_ADAPTERS_REGISTERED = False


def _register_sqlite_adapters() -> None:
    """
    Register explicit sqlite adapters for Python datetime objects.

    Python 3.12+ deprecates sqlite3's implicit default datetime adapter.
    """
    global _SQLITE_ADAPTERS_REGISTERED
    if _SQLITE_ADAPTERS_REGISTERED:
        return
    sqlite3.register_adapter(datetime, lambda value: value.isoformat(sep=" "))
    _SQLITE_ADAPTERS_REGISTERED = True


_register_sqlite_adapters()


def _ensure_sqlite_parent_dir(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite" or not url.database or url.database == ":memory:":
        return
    Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)


def _utc_now_naive() -> datetime:
    """Naive UTC datetime, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# Validation
# =============================================================================


def assert_memory_id(value: Any) -> str:
    """Reject anything that is not a canonical UUID before it reaches a query."""
    if not isinstance(value, str) or not _UUID_PATTERN.match(value):
        raise InvalidIdentifierError(f"Invalid UUID: {value!r}")
    return value


def assert_category(value: Any) -> MemoryCategory:
    if isinstance(value, MemoryCategory):
        return value
    if not isinstance(value, str) or value not in MEMORY_CATEGORY_VALUES:
        raise InvalidCategoryError(f"Invalid memory category: {value!r}")
    return MemoryCategory(value)


# =============================================================================
# Decay scoring
# =============================================================================


@dataclass(frozen=True)
class DecayConfig:
    enabled: bool = False
    half_life_days: float = 30.0
    active_weight: float = 0.1


def compute_decay_score(
    vector_score: float,
    created_at: datetime,
    active_count: int,
    decay: DecayConfig,
    now: Optional[datetime] = None,
) -> float:
    """
    Time-and-usage adjusted score.

    timeDecay   = 2 ^ (-ageDays / halfLifeDays)
    activeBoost = 1 + activeWeight * ln(1 + activeCount)

    With decay disabled the vector score is returned unchanged.
    """
    if not decay.enabled:
        return vector_score
    now_value = now or _utc_now_naive()
    age_days = max(0.0, (now_value - created_at).total_seconds() / 86400.0)
    time_decay = math.pow(2.0, -age_days / decay.half_life_days)
    active_boost = 1.0 + decay.active_weight * math.log1p(max(0, int(active_count)))
    return vector_score * time_decay * active_boost


# =============================================================================
# ORM Models
# =============================================================================


class AgentMemory(Base):
    """One persisted memory row. Category is a column, not a table."""

    __tablename__ = TABLE_NAME

    id = Column(String(36), primary_key=True)
    category = Column(String(32), nullable=False, index=True)
    abstract = Column(Text, nullable=False)
    overview = Column(Text, nullable=False, default="")
    content = Column(Text, nullable=False)
    vector = Column(Text, nullable=False)
    source_session = Column(String(255), nullable=False, default="")
    active_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=_utc_now_naive)
    updated_at = Column(DateTime, nullable=False, default=_utc_now_naive)


class StoreMeta(Base):
    """Store-level metadata, including the vector width fixed at creation."""

    __tablename__ = "store_meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


@dataclass
class MemoryRecord:
    id: str
    category: MemoryCategory
    abstract: str
    overview: str
    content: str
    vector: List[float]
    source_session: str
    active_count: int
    created_at: datetime
    updated_at: datetime


@dataclass
class SearchHit:
    record: MemoryRecord
    score: float
    vector_score: float


def _row_to_record(row: AgentMemory) -> MemoryRecord:
    return MemoryRecord(
        id=row.id,
        category=MemoryCategory(row.category),
        abstract=row.abstract,
        overview=row.overview or "",
        content=row.content,
        vector=[float(v) for v in json.loads(row.vector)],
        source_session=row.source_session or "",
        active_count=int(row.active_count or 0),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _squared_l2(v1: List[float], v2: List[float]) -> float:
    return float(sum((a - b) * (a - b) for a, b in zip(v1, v2)))


# =============================================================================
# Memory Store
# =============================================================================


class MemoryStore:
    """
    Async SQLite vector store for agent memories.

    Core operations:
    - store: insert a new row with a fresh id
    - search: nearest-neighbor lookup, optionally within one category
    - find_by_category / get_by_id / get_all: bounded reads
    - update / increment_active_count / delete: serialized writes
    """

    def __init__(
        self,
        database_url: str,
        vector_dim: int,
        *,
        decay: Optional[DecayConfig] = None,
    ):
        """
        Args:
            database_url: SQLAlchemy async URL, e.g.
                         "sqlite+aiosqlite:///epro_memory.db"
            vector_dim: Fixed embedding width for the life of the table.
            decay: Decay settings used by search ranking.
        """
        if vector_dim <= 0:
            raise ValueError(f"vector_dim must be positive, got {vector_dim}")
        self.database_url = database_url
        self.vector_dim = int(vector_dim)
        self.decay = decay or DecayConfig()
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self.write_lane = WriteLane(name=TABLE_NAME)
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def init_db(self) -> None:
        """Create tables if needed and pin (or check) the vector dimension."""
        async with self._init_lock:
            if self._initialized:
                return
            _ensure_sqlite_parent_dir(self.database_url)
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

            async with self.session() as session:
                stored_dim = await self._get_meta(session, "vector_dim")
                if stored_dim is None:
                    existing = await session.execute(select(AgentMemory.vector).limit(1))
                    sample = existing.scalar_one_or_none()
                    if sample is not None:
                        stored_dim = str(len(json.loads(sample)))
                if stored_dim is not None and int(stored_dim) != self.vector_dim:
                    raise DimensionMismatchError(
                        f"Table '{TABLE_NAME}' holds {stored_dim}-dim vectors, "
                        f"but the store is configured for {self.vector_dim}. "
                        "Reconfigure the embedding model or recreate the store."
                    )
                if stored_dim is None:
                    session.add(StoreMeta(key="vector_dim", value=str(self.vector_dim)))
                    logger.info(
                        f"epro-memory: created {TABLE_NAME} table (dim={self.vector_dim})"
                    )
            self._initialized = True

    async def _ensure_init(self) -> None:
        if not self._initialized:
            await self.init_db()

    @staticmethod
    async def _get_meta(session: AsyncSession, key: str) -> Optional[str]:
        result = await session.execute(select(StoreMeta.value).where(StoreMeta.key == key))
        value = result.scalar_one_or_none()
        return str(value) if value is not None else None

    async def close(self):
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get an async session context manager; rolls back on error."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def _check_vector(self, vector: List[float]) -> List[float]:
        if len(vector) != self.vector_dim:
            raise DimensionMismatchError(
                f"Vector has {len(vector)} dimensions, expected {self.vector_dim}"
            )
        return [float(v) for v in vector]

    # =========================================================================
    # Write Operations
    # =========================================================================

    async def store(
        self,
        *,
        category: Any,
        abstract: str,
        overview: str,
        content: str,
        vector: List[float],
        source_session: str,
    ) -> MemoryRecord:
        """
        Insert a new memory.

        Returns:
            The full record, with a fresh id, zero active_count and
            created_at == updated_at == now.
        """
        category_value = assert_category(category)
        clean_vector = self._check_vector(vector)
        await self._ensure_init()

        now_value = _utc_now_naive()
        record = MemoryRecord(
            id=str(uuid.uuid4()),
            category=category_value,
            abstract=abstract,
            overview=overview or "",
            content=content,
            vector=clean_vector,
            source_session=source_session or "",
            active_count=0,
            created_at=now_value,
            updated_at=now_value,
        )

        async def _insert() -> None:
            async with self.session() as session:
                session.add(
                    AgentMemory(
                        id=record.id,
                        category=record.category.value,
                        abstract=record.abstract,
                        overview=record.overview,
                        content=record.content,
                        vector=json.dumps(record.vector, separators=(",", ":")),
                        source_session=record.source_session,
                        active_count=0,
                        created_at=now_value,
                        updated_at=now_value,
                    )
                )

        await self.write_lane.run_write(operation="store", task=_insert)
        return record

    async def update(self, memory_id: str, fields: Dict[str, Any]) -> None:
        """
        Merge ``fields`` into an existing row and bump updated_at.

        Write-once fields (id, category, source_session, created_at) and
        store-managed counters are dropped silently. Unknown ids are a no-op.
        The whole read-modify-write runs in one transaction inside the write
        lane, so a failed write leaves the original row in place.
        """
        assert_memory_id(memory_id)
        changes: Dict[str, Any] = {}
        for key, value in (fields or {}).items():
            if key in UPDATABLE_FIELDS:
                changes[key] = value
            elif key not in WRITE_ONCE_FIELDS and key not in STORE_MANAGED_FIELDS:
                logger.debug(f"epro-memory: update ignored unknown field '{key}'")
        if "vector" in changes:
            changes["vector"] = json.dumps(
                self._check_vector(changes["vector"]), separators=(",", ":")
            )
        await self._ensure_init()

        async def _apply() -> bool:
            async with self.session() as session:
                row = await session.get(AgentMemory, memory_id)
                if row is None:
                    return False
                for key, value in changes.items():
                    setattr(row, key, value)
                row.updated_at = _utc_now_naive()
                session.add(row)
                return True

        applied = await self.write_lane.run_write(operation="update", task=_apply)
        if not applied:
            logger.debug(f"epro-memory: update skipped, {memory_id} not found")

    async def increment_active_count(self, memory_id: str) -> None:
        """Bump active_count by one; serialized so concurrent bumps never collide."""
        assert_memory_id(memory_id)
        await self._ensure_init()

        async def _bump() -> None:
            async with self.session() as session:
                row = await session.get(AgentMemory, memory_id)
                if row is None:
                    return
                row.active_count = max(0, int(row.active_count or 0)) + 1
                row.updated_at = _utc_now_naive()
                session.add(row)

        await self.write_lane.run_write(operation="increment_active_count", task=_bump)

    async def delete(self, memory_id: str) -> bool:
        assert_memory_id(memory_id)
        await self._ensure_init()

        async def _remove() -> bool:
            async with self.session() as session:
                result = await session.execute(
                    delete(AgentMemory).where(AgentMemory.id == memory_id)
                )
                return bool(result.rowcount)

        return await self.write_lane.run_write(operation="delete", task=_remove)

    # =========================================================================
    # Read Operations
    # =========================================================================

    async def get_by_id(self, memory_id: str) -> Optional[MemoryRecord]:
        assert_memory_id(memory_id)
        await self._ensure_init()
        async with self.session() as session:
            row = await session.get(AgentMemory, memory_id)
            return _row_to_record(row) if row is not None else None

    async def find_by_category(self, category: Any) -> List[MemoryRecord]:
        """Up to FIND_BY_CATEGORY_LIMIT rows of one category, oldest first."""
        category_value = assert_category(category)
        await self._ensure_init()
        async with self.session() as session:
            result = await session.execute(
                select(AgentMemory)
                .where(AgentMemory.category == category_value.value)
                .order_by(AgentMemory.created_at.asc(), AgentMemory.id.asc())
                .limit(FIND_BY_CATEGORY_LIMIT)
            )
            return [_row_to_record(row) for row in result.scalars().all()]

    async def get_all(self, max_limit: int = 1000) -> List[MemoryRecord]:
        """Bulk read for projection/reporting, most recently updated first."""
        bounded = max(1, min(GET_ALL_HARD_LIMIT, int(max_limit)))
        await self._ensure_init()
        async with self.session() as session:
            result = await session.execute(
                select(AgentMemory)
                .order_by(AgentMemory.updated_at.desc())
                .limit(bounded)
            )
            return [_row_to_record(row) for row in result.scalars().all()]

    async def count(self, category: Optional[Any] = None) -> int:
        await self._ensure_init()
        query = select(func.count()).select_from(AgentMemory)
        if category is not None:
            query = query.where(AgentMemory.category == assert_category(category).value)
        async with self.session() as session:
            result = await session.execute(query)
            return int(result.scalar_one() or 0)

    async def search(
        self,
        query_vector: List[float],
        limit: int = 5,
        min_score: float = 0.3,
        category_filter: Optional[Any] = None,
        *,
        decay: bool = True,
    ) -> List[SearchHit]:
        """
        Nearest-neighbor search.

        Raw distance is squared L2; similarity is ``1 / (1 + distance)``.
        With decay enabled on the store and ``decay=True``, ``max(limit * 3, 20)``
        raw neighbors are fetched and re-ranked by decay score, since decay can
        reorder past the raw top-K. With ``decay=False`` hits are filtered and
        ranked on raw similarity.

        Returns:
            Hits with score >= min_score, best first, at most ``limit``.
        """
        category_value = (
            assert_category(category_filter) if category_filter is not None else None
        )
        query = self._check_vector(query_vector)
        if limit <= 0:
            return []
        await self._ensure_init()

        apply_decay = decay and self.decay.enabled
        fetch_limit = limit
        if apply_decay:
            fetch_limit = max(limit * DECAY_OVERFETCH_FACTOR, DECAY_OVERFETCH_MIN)

        statement = select(AgentMemory)
        if category_value is not None:
            statement = statement.where(AgentMemory.category == category_value.value)
        async with self.session() as session:
            result = await session.execute(statement)
            rows = list(result.scalars().all())

        neighbors: List[Tuple[float, MemoryRecord]] = []
        for row in rows:
            record = _row_to_record(row)
            neighbors.append((_squared_l2(query, record.vector), record))
        neighbors.sort(key=lambda item: item[0])

        now_value = _utc_now_naive()
        hits: List[SearchHit] = []
        for distance, record in neighbors[:fetch_limit]:
            vector_score = 1.0 / (1.0 + distance)
            score = vector_score
            if apply_decay:
                score = compute_decay_score(
                    vector_score,
                    record.created_at,
                    record.active_count,
                    self.decay,
                    now=now_value,
                )
            if score >= min_score:
                hits.append(SearchHit(record=record, score=score, vector_score=vector_score))

        hits.sort(key=lambda item: item.score, reverse=True)
        return hits[:limit]
