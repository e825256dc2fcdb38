"""
Notification Queue - Monitor.

============================================================
PURPOSE
============================================================
Read-only operational snapshot of one tenant, flattened into
telemetry keys:

- queue_depth_priority_1..4, total_queue_depth
- pending_count, sending_count, retry_count, failed_count, sent_count
- average_dispatch_delay_seconds
- time_since_last_dispatch_seconds, can_send_now,
  wait_time_seconds, batch_count
- cache_size
- monitor_timestamp

Queue statistics errors propagate. Rate-limit statistics fall
back to neutral values.

============================================================
"""

import logging
from typing import Any, Dict, Optional

from notification_queue.clock import Clock, get_default_clock
from notification_queue.priority_resolver import PriorityResolver, build_default_tenant_config
from notification_queue.queue_core import QueueCore
from notification_queue.rate_limiter import RateLimiter
from notification_queue.types import ALL_PRIORITIES


logger = logging.getLogger(__name__)


_DEFAULT_RATE_STATS: Dict[str, Any] = {
    "last_dispatch_at": 0,
    "batch_count": 0,
    "time_since_last_dispatch_seconds": 0,
    "can_send_now": True,
    "wait_time_seconds": 0,
}


class QueueMonitor:
    """Collects queue, rate-limit and cache statistics per tenant."""

    def __init__(
        self,
        queue: QueueCore,
        rate_limiter: RateLimiter,
        resolver: PriorityResolver,
        clock: Optional[Clock] = None,
    ):
        self._queue = queue
        self._rate_limiter = rate_limiter
        self._resolver = resolver
        self._clock = clock or get_default_clock()

    async def collect(self, tenant_id: str) -> Dict[str, Any]:
        stats = await self._queue.get_queue_stats(tenant_id)
        rate_stats = await self._collect_rate_stats(tenant_id)
        cache_stats = self._resolver.get_cache_stats()

        telemetry: Dict[str, Any] = {}
        for priority in ALL_PRIORITIES:
            telemetry[f"queue_depth_priority_{int(priority)}"] = stats.queue_depth.get(int(priority), 0)

        telemetry.update({
            "total_queue_depth": stats.total_queue_depth,
            "pending_count": stats.pending_count,
            "sending_count": stats.sending_count,
            "retry_count": stats.retry_count,
            "failed_count": stats.failed_count,
            "sent_count": stats.sent_count,
            "average_dispatch_delay_seconds": stats.average_dispatch_delay_seconds,
            "time_since_last_dispatch_seconds": rate_stats["time_since_last_dispatch_seconds"],
            "can_send_now": rate_stats["can_send_now"],
            "wait_time_seconds": rate_stats["wait_time_seconds"],
            "batch_count": rate_stats["batch_count"],
            "cache_size": cache_stats.get("size", 0),
            "monitor_timestamp": self._clock.now_ms(),
        })
        return telemetry

    async def _collect_rate_stats(self, tenant_id: str) -> Dict[str, Any]:
        try:
            config = await self._resolver.fetch_tenant_config(tenant_id)
            rate_control = (config or build_default_tenant_config()).rate_control
            return await self._rate_limiter.get_rate_limit_stats(tenant_id, rate_control)
        except Exception as e:
            logger.warning(f"Rate limit stats unavailable for customer {tenant_id}: {e}")
            return dict(_DEFAULT_RATE_STATS)
