"""
Queue Storage - Abstract Interfaces.

============================================================
PURPOSE
============================================================
Backend-independent persistence contract for the queue.

Every backend (in-memory, SQL, attribute store) implements
QueueStorageAdapter. Queue core, rate limiter and dispatcher
depend only on this interface.

============================================================
CONTRACT
============================================================
- fetch_by_status_and_priority is read-only and ordered by
  (priority asc, created_at asc)
- claim_by_status_and_priority is atomic: an entry is handed
  to at most one caller per status transition
- update_entry never changes queue_id, customer_id, priority
  or created_at
- get_rate_limit_state returns a zero value when absent

============================================================
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence

from notification_queue.types import (
    ALL_PRIORITIES,
    IMMUTABLE_FIELDS,
    QueueEntry,
    QueueStats,
    QueueStatus,
    RateLimitState,
)


logger = logging.getLogger(__name__)


# ============================================================
# QUEUE STORAGE ADAPTER
# ============================================================

class QueueStorageAdapter(ABC):
    """
    Abstract queue storage backend.

    Usable as an async context manager:

        async with InMemoryStorageAdapter() as storage:
            await storage.save(entry)
    """

    backend_name = "abstract"

    async def initialize(self) -> None:
        """Prepare the backend (create tables, log in, ...)."""

    async def close(self) -> None:
        """Release backend resources."""

    async def __aenter__(self) -> "QueueStorageAdapter":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================================================
    # ENTRIES
    # =========================================================

    @abstractmethod
    async def save(self, entry: QueueEntry) -> str:
        """
        Persist a new entry.

        Returns:
            The entry's queue_id
        """

    @abstractmethod
    async def fetch_by_status_and_priority(
        self,
        status: QueueStatus,
        limit: int,
        priorities: Sequence[int] = ALL_PRIORITIES,
        attempted_before_ms: Optional[int] = None,
    ) -> List[QueueEntry]:
        """
        Read entries in one status, ordered by priority then age.

        With attempted_before_ms, only entries never attempted or
        last attempted at or before that time are returned.
        """

    @abstractmethod
    async def claim_by_status_and_priority(
        self,
        status: QueueStatus,
        limit: int,
        priorities: Sequence[int],
        now_ms: int,
        due_before_ms: Optional[int] = None,
        tenant_id: Optional[str] = None,
    ) -> List[QueueEntry]:
        """
        Atomically move up to `limit` entries from `status` to SENDING.

        Args:
            status: PENDING or RETRY
            limit: Maximum number of entries
            priorities: Priorities to consider
            now_ms: Stamped into last_attempt_at of claimed entries
            due_before_ms: When set, only entries whose next_attempt_at
                is None or <= this value are eligible
            tenant_id: When set, only entries of this tenant

        Returns:
            Claimed entries (already in SENDING), ordered
        """

    @abstractmethod
    async def update_entry(self, queue_id: str, fields: Dict[str, Any]) -> QueueEntry:
        """
        Merge fields into an entry.

        Raises:
            EntryNotFoundError: queue_id does not exist
        """

    @abstractmethod
    async def get_entry(self, queue_id: str) -> Optional[QueueEntry]:
        """Read one entry, or None."""

    @abstractmethod
    async def list_active_tenants(self) -> List[str]:
        """Tenants owning at least one PENDING or RETRY entry."""

    @abstractmethod
    async def get_stats(self, tenant_id: Optional[str] = None) -> QueueStats:
        """Aggregate statistics, optionally for one tenant."""

    @abstractmethod
    async def delete_older_than(
        self,
        timestamp_ms: int,
        tenant_id: Optional[str] = None,
    ) -> int:
        """Delete entries created before timestamp_ms. Returns count."""

    # =========================================================
    # RATE LIMIT STATE
    # =========================================================

    @abstractmethod
    async def get_rate_limit_state(self, tenant_id: str) -> RateLimitState:
        """Rate-limit state of a tenant (zero value when absent)."""

    @abstractmethod
    async def update_rate_limit_state(
        self,
        tenant_id: str,
        fields: Dict[str, Any],
    ) -> RateLimitState:
        """Merge fields into the tenant's rate-limit state."""


# ============================================================
# TENANT CONFIGURATION SOURCE
# ============================================================

class TenantConfigSource(ABC):
    """Read-only source of tenant configuration documents."""

    @abstractmethod
    async def fetch_tenant_config(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch the raw configuration document of a tenant.

        Returns:
            Parsed JSON document, or None when the tenant has none
        """

    async def close(self) -> None:
        """Release resources."""


# ============================================================
# SHARED HELPERS
# ============================================================

def apply_entry_updates(entry: QueueEntry, fields: Dict[str, Any]) -> QueueEntry:
    """
    Apply an update dict to an entry in place.

    Immutable fields are ignored with a warning; status values are
    parsed into QueueStatus.
    """
    for name, value in fields.items():
        if name in IMMUTABLE_FIELDS:
            if getattr(entry, name) != value:
                logger.warning(
                    f"Ignoring update of immutable field {name} on {entry.queue_id}"
                )
            continue
        if not hasattr(entry, name):
            logger.warning(f"Ignoring unknown field {name} on {entry.queue_id}")
            continue
        if name == "status":
            value = QueueStatus.parse(value)
        setattr(entry, name, value)
    return entry


def sort_entries(entries: Iterable[QueueEntry]) -> List[QueueEntry]:
    """Order entries by (priority asc, created_at asc)."""
    return sorted(entries, key=lambda e: (e.priority or 99, e.created_at))


def is_due(entry: QueueEntry, due_before_ms: Optional[int]) -> bool:
    """Check whether a backoff window has elapsed."""
    if due_before_ms is None or entry.next_attempt_at is None:
        return True
    return entry.next_attempt_at <= due_before_ms


def owned_by(entry: QueueEntry, tenant_id: Optional[str]) -> bool:
    return not tenant_id or entry.customer_id == tenant_id


def attempted_before(entry: QueueEntry, attempted_before_ms: Optional[int]) -> bool:
    if attempted_before_ms is None or entry.last_attempt_at is None:
        return True
    return entry.last_attempt_at <= attempted_before_ms
