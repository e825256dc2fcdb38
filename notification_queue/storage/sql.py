"""
Queue Storage - SQL Backend.

============================================================
PURPOSE
============================================================
Async SQLAlchemy implementation of QueueStorageAdapter.

- PostgreSQL in production (asyncpg driver)
- SQLite in tests (aiosqlite driver)

============================================================
CLAIM SEMANTICS
============================================================
A claim selects candidate ids, then moves each one with a
conditional UPDATE (WHERE status = :from). Only rows whose
UPDATE matched are returned, so two overlapping claims never
hand out the same entry. Ids lost to another worker are
excluded and the select is repeated until the limit is met
or no candidates remain. On PostgreSQL the candidate select
also uses FOR UPDATE SKIP LOCKED.

============================================================
"""

import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from notification_queue.clock import Clock, get_default_clock
from notification_queue.logging_utils import log_storage
from notification_queue.storage.base import QueueStorageAdapter, apply_entry_updates, sort_entries
from notification_queue.storage.models import Base, QueueEntryModel, RateLimitStateModel
from notification_queue.types import (
    ALL_PRIORITIES,
    EntryNotFoundError,
    QueueEntry,
    QueueStats,
    QueueStatus,
    RateLimitState,
    StatsAccumulator,
    StorageError,
)


logger = logging.getLogger(__name__)


# Entry columns a status update may write
_MUTABLE_COLUMNS = (
    "device_id",
    "device_profile",
    "payload",
    "status",
    "retry_count",
    "max_retries",
    "next_attempt_at",
    "last_attempt_at",
    "sent_at",
    "http_status",
    "error_message",
    "response_body",
)


class SqlStorageAdapter(QueueStorageAdapter):
    """
    Queue storage on a relational database.

    Either pass a database URL (the adapter owns the engine) or
    an existing AsyncEngine (the caller owns it).
    """

    backend_name = "sql"

    def __init__(
        self,
        database_url: Optional[str] = None,
        engine: Optional[AsyncEngine] = None,
        echo: bool = False,
        pool_size: int = 5,
        create_tables: bool = True,
        clock: Optional[Clock] = None,
    ):
        if engine is None and not database_url:
            raise ValueError("database_url or engine is required")

        self._owns_engine = engine is None
        self._engine = engine or _create_engine(database_url, echo, pool_size)
        self._session_factory = async_sessionmaker(
            self._engine, class_=AsyncSession, expire_on_commit=False
        )
        self._create_tables = create_tables
        self._clock = clock or get_default_clock()
        self._skip_locked = self._engine.dialect.name == "postgresql"

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def initialize(self) -> None:
        if self._create_tables:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        logger.info(f"SQL queue storage ready ({self._engine.dialect.name})")

    async def close(self) -> None:
        if self._owns_engine:
            await self._engine.dispose()

    # --------------------------------------------------------
    # ENTRY OPERATIONS
    # --------------------------------------------------------

    async def save(self, entry: QueueEntry) -> str:
        start = time.monotonic()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(QueueEntryModel.from_entry(entry))
        except IntegrityError as e:
            raise StorageError(
                f"Duplicate queue entry: {entry.queue_id}",
                context={"queue_id": entry.queue_id},
            ) from e
        except SQLAlchemyError as e:
            raise _storage_error("save", e, queue_id=entry.queue_id) from e

        log_storage("save", 1, (time.monotonic() - start) * 1000)
        return entry.queue_id

    async def fetch_by_status_and_priority(
        self,
        status: QueueStatus,
        limit: int,
        priorities: Sequence[int] = ALL_PRIORITIES,
        attempted_before_ms: Optional[int] = None,
    ) -> List[QueueEntry]:
        if limit <= 0:
            return []
        stmt = (
            select(QueueEntryModel)
            .where(
                QueueEntryModel.status == status.value,
                QueueEntryModel.priority.in_([int(p) for p in priorities]),
            )
            .order_by(QueueEntryModel.priority, QueueEntryModel.created_at)
            .limit(limit)
        )
        if attempted_before_ms is not None:
            stmt = stmt.where(
                or_(
                    QueueEntryModel.last_attempt_at.is_(None),
                    QueueEntryModel.last_attempt_at <= attempted_before_ms,
                )
            )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [model.to_entry() for model in result.scalars().all()]
        except SQLAlchemyError as e:
            raise _storage_error("fetch_by_status_and_priority", e, status=status.value) from e

    async def claim_by_status_and_priority(
        self,
        status: QueueStatus,
        limit: int,
        priorities: Sequence[int],
        now_ms: int,
        due_before_ms: Optional[int] = None,
        tenant_id: Optional[str] = None,
    ) -> List[QueueEntry]:
        if limit <= 0:
            return []

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    claimed_ids: List[str] = []
                    lost_ids: List[str] = []
                    while len(claimed_ids) < limit:
                        candidates = self._claim_candidates(
                            status, limit - len(claimed_ids), priorities,
                            due_before_ms, tenant_id, claimed_ids + lost_ids,
                        )
                        ids = list((await session.execute(candidates)).scalars().all())
                        if not ids:
                            break
                        for queue_id in ids:
                            result = await session.execute(
                                update(QueueEntryModel)
                                .where(
                                    QueueEntryModel.queue_id == queue_id,
                                    QueueEntryModel.status == status.value,
                                )
                                .values(
                                    status=QueueStatus.SENDING.value,
                                    last_attempt_at=now_ms,
                                )
                            )
                            if result.rowcount == 1:
                                claimed_ids.append(queue_id)
                            else:
                                lost_ids.append(queue_id)

                    if not claimed_ids:
                        return []

                    rows = await session.execute(
                        select(QueueEntryModel)
                        .where(QueueEntryModel.queue_id.in_(claimed_ids))
                        .execution_options(populate_existing=True)
                    )
                    entries = [model.to_entry() for model in rows.scalars().all()]
        except SQLAlchemyError as e:
            raise _storage_error("claim_by_status_and_priority", e, status=status.value) from e

        if lost_ids:
            logger.debug(f"Claim lost {len(lost_ids)} entries to a concurrent worker")
        log_storage("claim", len(entries))
        return sort_entries(entries)

    def _claim_candidates(
        self,
        status: QueueStatus,
        limit: int,
        priorities: Sequence[int],
        due_before_ms: Optional[int],
        tenant_id: Optional[str],
        exclude_ids: Sequence[str],
    ):
        candidates = (
            select(QueueEntryModel.queue_id)
            .where(
                QueueEntryModel.status == status.value,
                QueueEntryModel.priority.in_([int(p) for p in priorities]),
            )
            .order_by(QueueEntryModel.priority, QueueEntryModel.created_at)
            .limit(limit)
        )
        if due_before_ms is not None:
            candidates = candidates.where(
                or_(
                    QueueEntryModel.next_attempt_at.is_(None),
                    QueueEntryModel.next_attempt_at <= due_before_ms,
                )
            )
        if tenant_id:
            candidates = candidates.where(QueueEntryModel.customer_id == tenant_id)
        if exclude_ids:
            candidates = candidates.where(QueueEntryModel.queue_id.not_in(list(exclude_ids)))
        if self._skip_locked:
            candidates = candidates.with_for_update(skip_locked=True)
        return candidates

    async def update_entry(self, queue_id: str, fields: Dict[str, Any]) -> QueueEntry:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    model = await session.get(QueueEntryModel, queue_id)
                    if model is None:
                        raise EntryNotFoundError(queue_id)

                    entry = apply_entry_updates(model.to_entry(), fields)
                    for column in _MUTABLE_COLUMNS:
                        value = getattr(entry, column)
                        if column == "status":
                            value = value.value
                        setattr(model, column, value)
        except SQLAlchemyError as e:
            raise _storage_error("update_entry", e, queue_id=queue_id) from e

        log_storage("update", 1)
        return entry

    async def get_entry(self, queue_id: str) -> Optional[QueueEntry]:
        try:
            async with self._session_factory() as session:
                model = await session.get(QueueEntryModel, queue_id)
                return model.to_entry() if model else None
        except SQLAlchemyError as e:
            raise _storage_error("get_entry", e, queue_id=queue_id) from e

    async def list_active_tenants(self) -> List[str]:
        stmt = (
            select(QueueEntryModel.customer_id)
            .where(
                QueueEntryModel.status.in_(
                    [QueueStatus.PENDING.value, QueueStatus.RETRY.value]
                )
            )
            .distinct()
            .order_by(QueueEntryModel.customer_id)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise _storage_error("list_active_tenants", e) from e

    async def get_stats(self, tenant_id: Optional[str] = None) -> QueueStats:
        stmt = select(QueueEntryModel)
        if tenant_id:
            stmt = stmt.where(QueueEntryModel.customer_id == tenant_id)

        accumulator = StatsAccumulator()
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                for model in result.scalars():
                    accumulator.add(model.to_entry())
        except SQLAlchemyError as e:
            raise _storage_error("get_stats", e, tenant_id=tenant_id) from e
        return accumulator.result()

    async def delete_older_than(
        self,
        timestamp_ms: int,
        tenant_id: Optional[str] = None,
    ) -> int:
        stmt = delete(QueueEntryModel).where(QueueEntryModel.created_at < timestamp_ms)
        if tenant_id:
            stmt = stmt.where(QueueEntryModel.customer_id == tenant_id)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
        except SQLAlchemyError as e:
            raise _storage_error("delete_older_than", e, timestamp_ms=timestamp_ms) from e

        log_storage("delete", result.rowcount)
        return result.rowcount

    # --------------------------------------------------------
    # RATE LIMIT STATE
    # --------------------------------------------------------

    async def get_rate_limit_state(self, tenant_id: str) -> RateLimitState:
        try:
            async with self._session_factory() as session:
                model = await session.get(RateLimitStateModel, tenant_id)
        except SQLAlchemyError as e:
            raise _storage_error("get_rate_limit_state", e, tenant_id=tenant_id) from e

        if model is None:
            return RateLimitState(updated_at=self._clock.now_ms())
        return model.to_state()

    async def update_rate_limit_state(
        self,
        tenant_id: str,
        fields: Dict[str, Any],
    ) -> RateLimitState:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    model = await session.get(RateLimitStateModel, tenant_id)
                    if model is None:
                        model = RateLimitStateModel(
                            customer_id=tenant_id, last_dispatch_at=0, batch_count=0
                        )
                        session.add(model)
                    for name in ("last_dispatch_at", "batch_count"):
                        if name in fields:
                            setattr(model, name, fields[name])
                    model.updated_at = self._clock.now_ms()
                    state = model.to_state()
        except SQLAlchemyError as e:
            raise _storage_error("update_rate_limit_state", e, tenant_id=tenant_id) from e
        return state


# ============================================================
# HELPERS
# ============================================================

def _create_engine(database_url: str, echo: bool, pool_size: int) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url:
            kwargs["poolclass"] = StaticPool
        return create_async_engine(database_url, echo=echo, **kwargs)
    return create_async_engine(database_url, echo=echo, pool_size=pool_size, pool_pre_ping=True)


def _storage_error(operation: str, error: Exception, **context: Any) -> StorageError:
    logger.error(f"SQL {operation} failed: {error}")
    return StorageError(f"{operation} failed: {error}", context=context)
