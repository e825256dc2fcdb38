"""
Notification Queue - Dispatcher.

============================================================
PURPOSE
============================================================
Composition root of the dispatch side. Once per tick, for
every tenant with work:

    config -> rate limit -> dequeue -> send -> update status

============================================================
OUTCOMES PER ENTRY
============================================================
- Sent                      -> SENT (http 200, sent_at, response)
- Retryable and budget left -> RETRY (retry_count + 1,
                               next_attempt_at = now + backoff)
- Anything else             -> FAILED

A tenant without configuration is dispatched with default
settings. Its empty credentials make every entry FAIL with a
configuration error, so nothing is dropped silently.

============================================================
CONCURRENCY
============================================================
- One asyncio.Lock per tenant: an overlapping tick skips a
  tenant whose previous batch is still running
- Tenants run concurrently, bounded by a semaphore
- Claims are atomic in storage

============================================================
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from notification_queue.clock import Clock, get_default_clock
from notification_queue.config import DispatcherConfig
from notification_queue.errors import (
    TelegramApiError,
    get_retry_after,
    is_retryable_error,
)
from notification_queue.logging_utils import (
    log_batch_complete,
    log_batch_start,
    log_dispatch,
)
from notification_queue.priority_resolver import PriorityResolver, build_default_tenant_config
from notification_queue.queue_core import QueueCore
from notification_queue.rate_limiter import RateLimiter
from notification_queue.telegram_client import TelegramClient, format_telegram_error
from notification_queue.types import (
    QueueEntry,
    QueueStatus,
    StatusResult,
    StorageError,
    TenantPriorityConfig,
)


logger = logging.getLogger(__name__)


TenantProvider = Callable[[], Awaitable[Iterable[str]]]


# ============================================================
# RESULTS
# ============================================================

class SkipReason(Enum):
    """Why a tenant was not dispatched this tick."""

    IN_PROGRESS = "in_progress"
    """Previous batch of this tenant still running."""

    DISABLED = "disabled"
    """Queue disabled in tenant configuration."""

    RATE_LIMITED = "rate_limited"
    """Minimum spacing between batches not yet elapsed."""


@dataclass
class BatchResult:
    """Outcome of one tenant batch."""

    customer_id: str
    batch_size: int = 0
    sent: int = 0
    failed: int = 0
    retry: int = 0
    skipped: bool = False
    reason: Optional[SkipReason] = None
    error: Optional[str] = None
    timestamp: int = 0

    @property
    def processed(self) -> int:
        return self.sent + self.failed + self.retry

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "batch_size": self.batch_size,
            "sent": self.sent,
            "failed": self.failed,
            "retry": self.retry,
            "skipped": self.skipped,
            "reason": self.reason.value if self.reason else None,
            "error": self.error,
            "timestamp": self.timestamp,
        }


# ============================================================
# DISPATCHER
# ============================================================

class Dispatcher:
    """
    Periodic per-tenant batch dispatcher.

    Usage:
        dispatcher = Dispatcher(queue, rate_limiter, resolver, client)
        results = await dispatcher.run_once(["tenant-a"])

        # or, as a service
        await dispatcher.run_forever()
    """

    def __init__(
        self,
        queue: QueueCore,
        rate_limiter: RateLimiter,
        resolver: PriorityResolver,
        client: TelegramClient,
        config: Optional[DispatcherConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self._queue = queue
        self._rate_limiter = rate_limiter
        self._resolver = resolver
        self._client = client
        self._config = config or DispatcherConfig()
        self._clock = clock or get_default_clock()

        self._tenant_locks: Dict[str, asyncio.Lock] = {}
        self._stop_event = asyncio.Event()
        self._running = False
        self._last_maintenance_at: Optional[int] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def _tenant_lock(self, tenant_id: str) -> asyncio.Lock:
        lock = self._tenant_locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._tenant_locks[tenant_id] = lock
        return lock

    # --------------------------------------------------------
    # SINGLE TENANT
    # --------------------------------------------------------

    async def dispatch_tenant(self, tenant_id: str) -> BatchResult:
        """
        Dispatch one batch for a tenant.

        Returns:
            BatchResult (skipped=True when nothing was attempted)
        """
        lock = self._tenant_lock(tenant_id)
        if lock.locked():
            logger.debug(f"Batch for customer {tenant_id} still running, skipping tick")
            return self._skipped(tenant_id, SkipReason.IN_PROGRESS)

        async with lock:
            return await self._dispatch_locked(tenant_id)

    async def _dispatch_locked(self, tenant_id: str) -> BatchResult:
        config = await self._resolver.fetch_tenant_config(tenant_id)
        if config is None:
            config = build_default_tenant_config({
                "rateControl": {"batchSize": self._config.default_batch_size},
            })

        if not config.enabled:
            return self._skipped(tenant_id, SkipReason.DISABLED)

        rate_control = config.rate_control
        if not await self._rate_limiter.apply_rate_limit(tenant_id, rate_control):
            return self._skipped(tenant_id, SkipReason.RATE_LIMITED)

        batch_size = rate_control.batch_size or self._config.default_batch_size
        entries = await self._queue.dequeue(batch_size, tenant_id=tenant_id)

        result = BatchResult(customer_id=tenant_id, timestamp=self._clock.now_ms())
        if not entries:
            return result

        result.batch_size = len(entries)
        log_batch_start(len(entries), tenant_id)

        try:
            for entry in entries:
                try:
                    status = await self._dispatch_entry(entry, config)
                except StorageError as e:
                    # Entry stays in SENDING until stale recovery picks it up
                    logger.error(f"Failed to record outcome of {entry.queue_id}: {e}")
                    continue

                if status == QueueStatus.SENT:
                    result.sent += 1
                elif status == QueueStatus.RETRY:
                    result.retry += 1
                else:
                    result.failed += 1
        finally:
            await self._rate_limiter.record_batch_dispatch(tenant_id, len(entries))

        log_batch_complete(result.sent, result.failed, result.retry, tenant_id)
        return result

    async def _dispatch_entry(
        self,
        entry: QueueEntry,
        config: TenantPriorityConfig,
    ) -> QueueStatus:
        try:
            response = await self._client.send_message(config.telegram, entry.text)
        except TelegramApiError as e:
            return await self._handle_send_failure(entry, config, e)
        except Exception as e:
            logger.exception(f"Unexpected error dispatching {entry.queue_id}")
            message = str(e) or type(e).__name__
            await self._queue.update_status(
                entry.queue_id,
                QueueStatus.FAILED,
                StatusResult(http_status=0, error_message=message),
            )
            log_dispatch(entry.queue_id, QueueStatus.FAILED.value, 0, message)
            return QueueStatus.FAILED

        await self._queue.update_status(
            entry.queue_id,
            QueueStatus.SENT,
            StatusResult(
                http_status=200,
                response_body=json.dumps(response),
                sent_at=self._clock.now_ms(),
            ),
        )
        log_dispatch(entry.queue_id, QueueStatus.SENT.value, 200)
        return QueueStatus.SENT

    async def _handle_send_failure(
        self,
        entry: QueueEntry,
        config: TenantPriorityConfig,
        error: TelegramApiError,
    ) -> QueueStatus:
        message = format_telegram_error(error)
        response_body = json.dumps(error.response) if error.response else None

        if is_retryable_error(error) and self._queue.should_retry(entry):
            retry_count = entry.retry_count + 1
            delay_ms = self._rate_limiter.compute_backoff(
                retry_count, config.rate_control, get_retry_after(error),
            )
            await self._queue.update_status(
                entry.queue_id,
                QueueStatus.RETRY,
                StatusResult(
                    http_status=error.status_code,
                    response_body=response_body,
                    error_message=message,
                    retry_count=retry_count,
                    next_attempt_at=self._clock.now_ms() + delay_ms,
                ),
            )
            log_dispatch(entry.queue_id, QueueStatus.RETRY.value, error.status_code, message)
            return QueueStatus.RETRY

        await self._queue.update_status(
            entry.queue_id,
            QueueStatus.FAILED,
            StatusResult(
                http_status=error.status_code,
                response_body=response_body,
                error_message=message,
            ),
        )
        log_dispatch(entry.queue_id, QueueStatus.FAILED.value, error.status_code, message)
        return QueueStatus.FAILED

    def _skipped(self, tenant_id: str, reason: SkipReason) -> BatchResult:
        return BatchResult(
            customer_id=tenant_id,
            skipped=True,
            reason=reason,
            timestamp=self._clock.now_ms(),
        )

    # --------------------------------------------------------
    # ALL TENANTS
    # --------------------------------------------------------

    async def run_once(
        self,
        tenant_ids: Optional[Iterable[str]] = None,
    ) -> Dict[str, BatchResult]:
        """
        Dispatch one batch per tenant, concurrently.

        Args:
            tenant_ids: Tenants to dispatch (default: tenants with work)

        Returns:
            BatchResult per tenant. A tenant whose batch raised gets a
            result with `error` set; other tenants are unaffected.
        """
        if tenant_ids is None:
            tenant_ids = await self._queue.get_active_tenants()
        tenants: List[str] = list(dict.fromkeys(tenant_ids))
        if not tenants:
            return {}

        semaphore = asyncio.Semaphore(max(1, self._config.max_concurrent_tenants))

        async def bounded(tenant_id: str) -> BatchResult:
            async with semaphore:
                return await self.dispatch_tenant(tenant_id)

        outcomes = await asyncio.gather(
            *(bounded(t) for t in tenants),
            return_exceptions=True,
        )

        results: Dict[str, BatchResult] = {}
        for tenant_id, outcome in zip(tenants, outcomes):
            if isinstance(outcome, BatchResult):
                results[tenant_id] = outcome
            elif isinstance(outcome, Exception):
                logger.error(f"Dispatch failed for customer {tenant_id}: {outcome}")
                results[tenant_id] = BatchResult(
                    customer_id=tenant_id,
                    error=str(outcome) or type(outcome).__name__,
                    timestamp=self._clock.now_ms(),
                )
            else:
                raise outcome
        return results

    async def run_maintenance(self, force: bool = False) -> Dict[str, int]:
        """
        Recover stale SENDING entries and apply the retention window.

        Runs at most once per cleanup interval unless forced.
        """
        now = self._clock.now_ms()
        interval_ms = int(self._config.cleanup_interval_seconds * 1000)
        if (
            not force
            and self._last_maintenance_at is not None
            and now - self._last_maintenance_at < interval_ms
        ):
            return {}

        self._last_maintenance_at = now
        report = {
            "recovered": await self._queue.recover_stale_entries(
                self._config.stale_after_seconds
            ),
        }
        if self._config.cleanup_days_old:
            report["deleted"] = await self._queue.cleanup_old_entries(
                self._config.cleanup_days_old
            )
        return report

    # --------------------------------------------------------
    # LOOP
    # --------------------------------------------------------

    async def run_forever(self, tenant_ids_provider: Optional[TenantProvider] = None) -> None:
        """
        Run the dispatch loop until stop() is called.

        Args:
            tenant_ids_provider: Async callable returning the tenants
                to dispatch each tick (default: tenants with work)
        """
        provider = tenant_ids_provider or self._queue.get_active_tenants
        self._stop_event.clear()
        self._running = True

        logger.info(f"Starting dispatch loop | interval={self._config.interval_seconds}s")

        try:
            while not self._stop_event.is_set():
                try:
                    await self.run_maintenance()
                    tenant_ids = list(await provider())
                    if tenant_ids:
                        await self.run_once(tenant_ids)
                except asyncio.CancelledError:
                    logger.info("Dispatch loop cancelled")
                    raise
                except Exception as e:
                    logger.error(f"Dispatch tick error: {e}", exc_info=True)

                await self._wait_for_next_tick()
        finally:
            self._running = False
            logger.info("Dispatch loop stopped")

    async def _wait_for_next_tick(self) -> None:
        try:
            await asyncio.wait_for(
                self._stop_event.wait(),
                timeout=self._config.interval_seconds,
            )
        except asyncio.TimeoutError:
            pass

    def stop(self) -> None:
        """Request the loop to stop after the current tick."""
        logger.info("Dispatch loop stop requested")
        self._stop_event.set()
