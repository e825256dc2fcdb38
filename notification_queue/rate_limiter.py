"""
Notification Queue - Rate Limiter.

============================================================
PURPOSE
============================================================
Batch spacing and retry backoff arithmetic per tenant.

BATCH SPACING:
    can send  <=>  never dispatched
                   or now - last_dispatch_at >= delay_between_batches

RETRY BACKOFF:
    exponential  base * 2^n
    linear       base * (n + 1)

============================================================
FAILURE MODE
============================================================
can_send_batch / get_wait_time fail OPEN (True / 0).
record_batch_dispatch logs and swallows errors.
All durations are milliseconds.

============================================================
"""

import logging
import math
from typing import Any, Dict, Optional

from notification_queue.clock import Clock, get_default_clock
from notification_queue.logging_utils import log_rate_limit
from notification_queue.storage.base import QueueStorageAdapter
from notification_queue.types import BackoffStrategy, QueueEntry, RateControl


logger = logging.getLogger(__name__)


DEFAULT_RETRY_BASE_DELAY_SECONDS = 10


def calculate_retry_delay(
    retry_count: int,
    strategy: str,
    base_delay_seconds: float,
) -> int:
    """
    Backoff delay in milliseconds.

    Args:
        retry_count: Retries so far (clamped to >= 0)
        strategy: "exponential" or "linear" (unknown -> linear)
        base_delay_seconds: Base delay (non-positive -> 10)

    Returns:
        Delay in milliseconds
    """
    retry_count = max(int(retry_count or 0), 0)
    if not base_delay_seconds or base_delay_seconds <= 0:
        base_delay_seconds = DEFAULT_RETRY_BASE_DELAY_SECONDS

    base_ms = base_delay_seconds * 1000

    if strategy == BackoffStrategy.EXPONENTIAL.value:
        return int(base_ms * (2 ** retry_count))
    if strategy != BackoffStrategy.LINEAR.value:
        logger.warning(f"Unknown backoff strategy: {strategy}, using linear")
    return int(base_ms * (retry_count + 1))


class RateLimiter:
    """
    Tenant-scoped rate limiter backed by storage.
    """

    def __init__(
        self,
        storage: QueueStorageAdapter,
        clock: Optional[Clock] = None,
    ):
        self._storage = storage
        self._clock = clock or get_default_clock()

    calculate_retry_delay = staticmethod(calculate_retry_delay)

    # --------------------------------------------------------
    # BATCH SPACING
    # --------------------------------------------------------

    async def can_send_batch(self, tenant_id: str, rate_control: RateControl) -> bool:
        """True when the tenant may dispatch a batch now. Fails open."""
        try:
            return await self._wait_ms(tenant_id, rate_control) == 0
        except Exception as e:
            logger.error(f"can_send_batch failed (customer_id={tenant_id}): {e}")
            return True

    async def get_wait_time(self, tenant_id: str, rate_control: RateControl) -> int:
        """Milliseconds until the next batch is allowed. Errors give 0."""
        try:
            return await self._wait_ms(tenant_id, rate_control)
        except Exception as e:
            logger.error(f"get_wait_time failed (customer_id={tenant_id}): {e}")
            return 0

    async def _wait_ms(self, tenant_id: str, rate_control: RateControl) -> int:
        if rate_control is None:
            raise ValueError("rate_control is required")

        state = await self._storage.get_rate_limit_state(tenant_id)
        if not state.last_dispatch_at:
            return 0

        delay_ms = rate_control.delay_between_batches_seconds * 1000
        elapsed = self._clock.now_ms() - state.last_dispatch_at
        return int(max(0, delay_ms - elapsed))

    async def record_batch_dispatch(self, tenant_id: str, batch_size: int) -> None:
        """Stamp last_dispatch_at and bump batch_count. Never raises."""
        try:
            state = await self._storage.get_rate_limit_state(tenant_id)
            await self._storage.update_rate_limit_state(tenant_id, {
                "last_dispatch_at": self._clock.now_ms(),
                "batch_count": (state.batch_count or 0) + 1,
            })
            logger.debug(f"Recorded batch dispatch for customer {tenant_id}: {batch_size} messages")
        except Exception as e:
            logger.error(
                f"record_batch_dispatch failed (customer_id={tenant_id}, "
                f"batch_size={batch_size}): {e}"
            )

    async def apply_rate_limit(self, tenant_id: str, rate_control: RateControl) -> bool:
        """can_send_batch, logging the wait when limited."""
        can_send = await self.can_send_batch(tenant_id, rate_control)
        if not can_send:
            wait_ms = await self.get_wait_time(tenant_id, rate_control)
            log_rate_limit(tenant_id, wait_ms / 1000)
        return can_send

    # --------------------------------------------------------
    # RETRY BACKOFF
    # --------------------------------------------------------

    def should_retry_now(self, entry: QueueEntry, rate_control: RateControl) -> bool:
        """True when the entry's backoff since its last attempt has elapsed."""
        if not entry.last_attempt_at:
            return True
        return self._clock.now_ms() >= self.get_next_retry_time(entry, rate_control)

    def get_next_retry_time(self, entry: QueueEntry, rate_control: RateControl) -> int:
        """Epoch ms at which the entry may be retried."""
        if not entry.last_attempt_at:
            return self._clock.now_ms()
        return entry.last_attempt_at + _retry_delay(entry.retry_count, rate_control)

    def compute_backoff(
        self,
        retry_count: int,
        rate_control: RateControl,
        retry_after_seconds: Optional[float] = None,
    ) -> int:
        """
        Backoff in ms, honouring a server-suggested retry_after.

        Returns max(calculated delay, retry_after).
        """
        delay = _retry_delay(retry_count, rate_control)
        if retry_after_seconds and retry_after_seconds > 0:
            delay = max(delay, int(retry_after_seconds * 1000))
        return delay

    # --------------------------------------------------------
    # INTROSPECTION
    # --------------------------------------------------------

    async def get_rate_limit_stats(
        self,
        tenant_id: str,
        rate_control: RateControl,
    ) -> Dict[str, Any]:
        """Snapshot of a tenant's rate-limit state. Storage errors propagate."""
        state = await self._storage.get_rate_limit_state(tenant_id)
        now = self._clock.now_ms()
        since_last = now - state.last_dispatch_at if state.last_dispatch_at else 0

        can_send = await self.can_send_batch(tenant_id, rate_control)
        wait_ms = await self.get_wait_time(tenant_id, rate_control)

        return {
            "last_dispatch_at": state.last_dispatch_at or 0,
            "batch_count": state.batch_count or 0,
            "time_since_last_dispatch_seconds": since_last // 1000,
            "can_send_now": can_send,
            "wait_time_seconds": math.ceil(wait_ms / 1000),
        }

    async def reset_rate_limit_state(self, tenant_id: str) -> None:
        await self._storage.update_rate_limit_state(tenant_id, {
            "last_dispatch_at": 0,
            "batch_count": 0,
        })
        logger.info(f"Reset rate limit state for customer {tenant_id}")


def _retry_delay(retry_count: int, rate_control: RateControl) -> int:
    return calculate_retry_delay(
        retry_count,
        rate_control.retry_backoff or BackoffStrategy.EXPONENTIAL.value,
        rate_control.retry_base_delay_seconds or DEFAULT_RETRY_BASE_DELAY_SECONDS,
    )
