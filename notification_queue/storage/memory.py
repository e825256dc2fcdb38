"""
Queue Storage - In-Memory Backend.

Dict-backed adapter for tests and single-process deployments.
Entries are deep-copied on the way in and out, so callers never
share mutable state with the store.
"""

import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional, Sequence

from notification_queue.clock import Clock, get_default_clock
from notification_queue.storage.base import (
    QueueStorageAdapter,
    TenantConfigSource,
    apply_entry_updates,
    attempted_before,
    is_due,
    owned_by,
    sort_entries,
)
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


class InMemoryStorageAdapter(QueueStorageAdapter):
    """In-memory queue storage guarded by one asyncio.Lock."""

    backend_name = "memory"

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or get_default_clock()
        self._entries: Dict[str, QueueEntry] = {}
        self._rate_limits: Dict[str, RateLimitState] = {}
        self._lock = asyncio.Lock()

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    async def save(self, entry: QueueEntry) -> str:
        async with self._lock:
            if entry.queue_id in self._entries:
                raise StorageError(
                    f"Duplicate queue entry: {entry.queue_id}",
                    context={"queue_id": entry.queue_id},
                )
            self._entries[entry.queue_id] = entry.copy()
        return entry.queue_id

    async def fetch_by_status_and_priority(
        self,
        status: QueueStatus,
        limit: int,
        priorities: Sequence[int] = ALL_PRIORITIES,
        attempted_before_ms: Optional[int] = None,
    ) -> List[QueueEntry]:
        wanted = set(int(p) for p in priorities)
        async with self._lock:
            matches = [
                e for e in self._entries.values()
                if e.status == status
                and e.priority in wanted
                and attempted_before(e, attempted_before_ms)
            ]
            return [e.copy() for e in sort_entries(matches)[:max(limit, 0)]]

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
        wanted = set(int(p) for p in priorities)
        async with self._lock:
            candidates = [
                e for e in self._entries.values()
                if e.status == status
                and e.priority in wanted
                and is_due(e, due_before_ms)
                and owned_by(e, tenant_id)
            ]
            claimed = []
            for entry in sort_entries(candidates)[:limit]:
                entry.status = QueueStatus.SENDING
                entry.last_attempt_at = now_ms
                claimed.append(entry.copy())
            return claimed

    async def update_entry(self, queue_id: str, fields: Dict[str, Any]) -> QueueEntry:
        async with self._lock:
            entry = self._entries.get(queue_id)
            if entry is None:
                raise EntryNotFoundError(queue_id)
            apply_entry_updates(entry, copy.deepcopy(fields))
            return entry.copy()

    async def get_entry(self, queue_id: str) -> Optional[QueueEntry]:
        async with self._lock:
            entry = self._entries.get(queue_id)
            return entry.copy() if entry else None

    async def list_active_tenants(self) -> List[str]:
        async with self._lock:
            return sorted({
                e.customer_id for e in self._entries.values()
                if e.status.is_dequeue_eligible()
            })

    async def get_stats(self, tenant_id: Optional[str] = None) -> QueueStats:
        accumulator = StatsAccumulator()
        async with self._lock:
            for entry in self._entries.values():
                if tenant_id and entry.customer_id != tenant_id:
                    continue
                accumulator.add(entry)
        return accumulator.result()

    async def delete_older_than(
        self,
        timestamp_ms: int,
        tenant_id: Optional[str] = None,
    ) -> int:
        async with self._lock:
            doomed = [
                queue_id for queue_id, e in self._entries.items()
                if e.created_at < timestamp_ms
                and (not tenant_id or e.customer_id == tenant_id)
            ]
            for queue_id in doomed:
                del self._entries[queue_id]
        return len(doomed)

    async def get_rate_limit_state(self, tenant_id: str) -> RateLimitState:
        async with self._lock:
            state = self._rate_limits.get(tenant_id)
            if state is None:
                return RateLimitState(updated_at=self._clock.now_ms())
            return copy.copy(state)

    async def update_rate_limit_state(
        self,
        tenant_id: str,
        fields: Dict[str, Any],
    ) -> RateLimitState:
        async with self._lock:
            state = copy.copy(self._rate_limits.get(tenant_id) or RateLimitState())
            for name, value in fields.items():
                if hasattr(state, name):
                    setattr(state, name, value)
            state.updated_at = self._clock.now_ms()
            self._rate_limits[tenant_id] = state
            return copy.copy(state)


class StaticConfigSource(TenantConfigSource):
    """Tenant configuration documents held in memory."""

    def __init__(self, configs: Optional[Dict[str, Dict[str, Any]]] = None):
        self._configs = dict(configs or {})
        self.fetch_count = 0

    def set_config(self, tenant_id: str, document: Optional[Dict[str, Any]]) -> None:
        if document is None:
            self._configs.pop(tenant_id, None)
        else:
            self._configs[tenant_id] = document

    async def fetch_tenant_config(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        self.fetch_count += 1
        document = self._configs.get(tenant_id)
        return copy.deepcopy(document) if document is not None else None
