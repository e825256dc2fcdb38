"""
Notification Queue - Ingestion.

Producer path: normalize -> resolve priority -> enqueue.

Never touches the dispatcher, so producers are not slowed by
outbound rate limits.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Set

from notification_queue.priority_resolver import PriorityResolver
from notification_queue.queue_core import QueueCore
from notification_queue.types import PrioritySource


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    """Outcome of one ingested event."""

    queue_id: str
    priority: int
    source: PrioritySource
    created_at: int

    def to_dict(self) -> dict:
        return {
            "queueId": self.queue_id,
            "priority": self.priority,
            "source": self.source.value,
            "createdAt": self.created_at,
        }


class EventIngestor:
    """Turns raw rule-engine events into queued entries."""

    def __init__(self, queue: QueueCore, resolver: PriorityResolver):
        self._queue = queue
        self._resolver = resolver
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def ingest(
        self,
        raw_event: Any,
        context: Optional[Mapping[str, Any]] = None,
    ) -> IngestResult:
        """
        Normalize, prioritize and enqueue one event.

        The tenant's rateControl.maxRetries, when configured, becomes
        the entry's retry ceiling.

        Raises:
            QueueError: entry rejected by enqueue
            StorageError: storage write failed
        """
        entry = self._queue.normalize(raw_event, context)

        config = await self._resolver.fetch_tenant_config(entry.customer_id)
        if config is not None:
            entry.max_retries = config.rate_control.max_retries

        resolution = await self._resolver.resolve(
            entry.customer_id, entry.device_id, entry.device_profile,
        )
        entry = entry.with_priority(resolution.priority)

        queue_id = await self._queue.enqueue(entry)
        return IngestResult(
            queue_id=queue_id,
            priority=resolution.priority,
            source=resolution.source,
            created_at=entry.created_at,
        )

    def submit(
        self,
        raw_event: Any,
        context: Optional[Mapping[str, Any]] = None,
    ) -> asyncio.Task:
        """Schedule ingest() in the background; failures are logged."""
        task = asyncio.create_task(self.ingest(raw_event, context))
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    async def drain(self) -> None:
        """Wait for every submitted event to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background enqueue failed: {error}")
