"""
Notification Queue - Queue Core.

============================================================
PURPOSE
============================================================
Queue lifecycle operations:

    normalize -> enqueue -> dequeue -> update_status -> cleanup

============================================================
RULES
============================================================
- normalize never fails: missing identity becomes "unknown"
- enqueue requires a resolved priority
- dequeue is an atomic claim: PENDING first, then due RETRY
  entries, each moved to SENDING inside the storage adapter
- update_status merges only the result fields provided
- storage errors propagate to the caller

============================================================
"""

import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from notification_queue.clock import Clock, get_default_clock
from notification_queue.logging_utils import log_cleanup, log_enqueue
from notification_queue.storage.base import QueueStorageAdapter
from notification_queue.types import (
    ALL_PRIORITIES,
    DEFAULT_MAX_RETRIES,
    InvalidEntryError,
    InvalidStatusError,
    PriorityNotSetError,
    QueueEntry,
    QueueStats,
    QueueStatus,
    StatusResult,
    UNKNOWN,
)


logger = logging.getLogger(__name__)


MS_PER_DAY = 24 * 60 * 60 * 1000


class QueueCore:
    """
    Queue operations on top of a storage adapter.
    """

    def __init__(
        self,
        storage: QueueStorageAdapter,
        clock: Optional[Clock] = None,
    ):
        self._storage = storage
        self._clock = clock or get_default_clock()

    @property
    def storage(self) -> QueueStorageAdapter:
        return self._storage

    @property
    def clock(self) -> Clock:
        return self._clock

    # =========================================================
    # NORMALIZE
    # =========================================================

    def normalize(
        self,
        raw_event: Any,
        context: Optional[Mapping[str, Any]] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> QueueEntry:
        """
        Build a queue entry (without priority) from a raw event.

        Accepts the rule-chain envelope
            {"msg": {"text": ...}, "metadata": {"deviceType", "deviceName", "ts", ...}}
        and the flat shape
            {"text", "deviceType", "deviceName", "ts", "deviceId"?, "customerId"?}.

        Args:
            raw_event: Event from the rule engine
            context: Fallback customerId / deviceId
            max_retries: Retry ceiling (tenant rate control may override)

        Returns:
            QueueEntry in PENDING with priority None
        """
        event = raw_event if isinstance(raw_event, Mapping) else {}
        context = context if isinstance(context, Mapping) else {}

        if isinstance(event.get("msg"), Mapping) or isinstance(event.get("metadata"), Mapping):
            body = event.get("msg") if isinstance(event.get("msg"), Mapping) else {}
            metadata = event.get("metadata") if isinstance(event.get("metadata"), Mapping) else {}
        else:
            body = event
            metadata = event

        text = body.get("text") or ""
        device_type = metadata.get("deviceType") or UNKNOWN
        device_name = metadata.get("deviceName") or UNKNOWN
        device_id = metadata.get("deviceId") or context.get("deviceId") or UNKNOWN
        customer_id = metadata.get("customerId") or context.get("customerId") or UNKNOWN

        return QueueEntry(
            queue_id=str(uuid.uuid4()),
            customer_id=str(customer_id),
            device_id=str(device_id),
            device_profile=str(device_type),
            payload={
                "text": str(text),
                "originalDeviceName": str(device_name),
            },
            created_at=self._parse_timestamp(metadata.get("ts")),
            status=QueueStatus.PENDING,
            retry_count=0,
            max_retries=max_retries,
        )

    def _parse_timestamp(self, value: Any) -> int:
        try:
            ts = int(value)
        except (TypeError, ValueError):
            return self._clock.now_ms()
        return ts if ts > 0 else self._clock.now_ms()

    # =========================================================
    # ENQUEUE / DEQUEUE
    # =========================================================

    async def enqueue(self, entry: QueueEntry) -> str:
        """
        Persist a normalized entry.

        Raises:
            PriorityNotSetError: priority was not resolved
            InvalidEntryError: entry failed validation
            StorageError: storage write failed
        """
        if entry.priority is None:
            raise PriorityNotSetError(
                "Priority must be set before enqueue",
                context={"queue_id": entry.queue_id},
            )

        errors = entry.validate()
        if errors:
            raise InvalidEntryError(errors, queue_id=entry.queue_id)

        try:
            queue_id = await self._storage.save(entry)
        except Exception as e:
            logger.error(self.build_error_message("enqueue", e, {"queue_id": entry.queue_id}))
            raise

        log_enqueue(queue_id, entry.customer_id, entry.device_id, entry.priority)
        return queue_id

    async def dequeue(
        self,
        batch_size: int,
        priorities: Sequence[int] = ALL_PRIORITIES,
        tenant_id: Optional[str] = None,
    ) -> List[QueueEntry]:
        """
        Claim up to batch_size entries for dispatch.

        PENDING entries come first (priority asc, created_at asc);
        remaining slots are filled with RETRY entries whose backoff
        has elapsed. Returned entries are already in SENDING.
        With tenant_id, only that tenant's entries are claimed.

        Raises:
            ValueError: batch_size <= 0
        """
        if not batch_size or batch_size <= 0:
            raise ValueError("Batch size must be positive")

        now = self._clock.now_ms()
        entries = await self._storage.claim_by_status_and_priority(
            QueueStatus.PENDING, batch_size, priorities, now,
            tenant_id=tenant_id,
        )

        if len(entries) < batch_size:
            entries.extend(await self._storage.claim_by_status_and_priority(
                QueueStatus.RETRY, batch_size - len(entries), priorities, now,
                due_before_ms=now, tenant_id=tenant_id,
            ))

        return entries

    # =========================================================
    # STATUS
    # =========================================================

    async def update_status(
        self,
        queue_id: str,
        status: Union[QueueStatus, str],
        result: Optional[Union[StatusResult, Dict[str, Any]]] = None,
    ) -> QueueEntry:
        """
        Move an entry to a new status.

        Always stamps last_attempt_at; merges only provided result fields.

        Raises:
            InvalidStatusError: unknown status
            EntryNotFoundError: queue_id does not exist
            InvalidEntryError: unknown result field
        """
        try:
            new_status = QueueStatus.parse(status)
        except ValueError:
            raise InvalidStatusError(f"Invalid status: {status}", context={"queue_id": queue_id})

        updates: Dict[str, Any] = {
            "status": new_status,
            "last_attempt_at": self._clock.now_ms(),
        }
        if isinstance(result, StatusResult):
            updates.update(result.to_updates())
        elif result:
            updates.update(StatusResult.from_dict(result, queue_id=queue_id).to_updates())

        try:
            return await self._storage.update_entry(queue_id, updates)
        except Exception as e:
            logger.error(self.build_error_message(
                "update_status", e, {"queue_id": queue_id, "status": new_status.value},
            ))
            raise

    @staticmethod
    def should_retry(entry: QueueEntry) -> bool:
        """True while retry_count < max_retries."""
        return entry.retry_count < entry.max_retries

    # =========================================================
    # INTROSPECTION / MAINTENANCE
    # =========================================================

    async def get_queue_stats(self, tenant_id: Optional[str] = None) -> QueueStats:
        return await self._storage.get_stats(tenant_id)

    async def get_queue_entry(self, queue_id: str) -> Optional[QueueEntry]:
        return await self._storage.get_entry(queue_id)

    async def get_active_tenants(self) -> List[str]:
        """Tenants with PENDING or RETRY entries."""
        return await self._storage.list_active_tenants()

    async def recover_stale_entries(
        self,
        stale_after_seconds: float = 600,
        limit: int = 100,
    ) -> int:
        """
        Return entries stuck in SENDING to RETRY.

        An entry stays in SENDING only if the dispatcher died between
        claim and status update. Its retry_count is left unchanged and
        it becomes due immediately.

        Returns:
            Number of recovered entries
        """
        cutoff = self._clock.now_ms() - int(stale_after_seconds * 1000)
        stale = await self._storage.fetch_by_status_and_priority(
            QueueStatus.SENDING, limit, attempted_before_ms=cutoff,
        )

        recovered = 0
        for entry in stale:
            await self._storage.update_entry(entry.queue_id, {
                "status": QueueStatus.RETRY,
                "next_attempt_at": None,
            })
            recovered += 1

        if recovered:
            logger.warning(f"Recovered {recovered} stale SENDING entries")
        return recovered

    async def cleanup_old_entries(
        self,
        days_old: int = 30,
        tenant_id: Optional[str] = None,
    ) -> int:
        """
        Delete entries created more than days_old days ago.

        Applies to every status, including PENDING and RETRY.

        Raises:
            ValueError: days_old <= 0
        """
        if days_old <= 0:
            raise ValueError("days_old must be positive")

        cutoff = self._clock.now_ms() - int(days_old * MS_PER_DAY)
        deleted = await self._storage.delete_older_than(cutoff, tenant_id)
        log_cleanup(deleted, days_old, tenant_id)
        return deleted

    @staticmethod
    def build_error_message(
        operation: str,
        error: BaseException,
        context: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """Format "<operation> failed (k=v, ...): <error>"."""
        context_str = ", ".join(f"{k}={v}" for k, v in (context or {}).items())
        suffix = f" ({context_str})" if context_str else ""
        return f"{operation} failed{suffix}: {error}"
