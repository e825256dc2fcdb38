"""
Tests for Ingestion and Monitoring.

============================================================
PURPOSE
============================================================
1. Producer path: normalize -> resolve -> enqueue
2. Background submission and drain
3. Per-tenant telemetry snapshot

============================================================
"""

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from notification_queue.ingestion import EventIngestor, IngestResult
from notification_queue.monitor import QueueMonitor
from notification_queue.priority_resolver import PriorityResolver
from notification_queue.rate_limiter import RateLimiter
from notification_queue.types import (
    PrioritySource,
    QueueStatus,
    StorageError,
)

from tests.notification_queue.conftest import T0


def rule_chain_event(device_type="3F_MEDIDOR", customer_id="customer-a", device_id="device-1"):
    """Event as emitted by the rule chain."""
    return {
        "msg": {"text": f"{device_type} alarm"},
        "metadata": {
            "deviceType": device_type,
            "deviceName": "Meter 1",
            "deviceId": device_id,
            "customerId": customer_id,
            "ts": T0 - 5_000,
        },
    }


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def resolver(config_source, clock):
    return PriorityResolver(config_source, clock=clock)


@pytest.fixture
def ingestor(queue, resolver):
    return EventIngestor(queue, resolver)


@pytest.fixture
def monitor(queue, storage, resolver, clock):
    return QueueMonitor(queue, RateLimiter(storage, clock), resolver, clock)


# ============================================================
# INGESTION TESTS
# ============================================================

class TestIngest:
    """Tests for EventIngestor.ingest."""

    @pytest.mark.asyncio
    async def test_profile_priority(self, ingestor, storage):
        result = await ingestor.ingest(rule_chain_event())

        assert result.priority == 2
        assert result.source == PrioritySource.DEVICE_PROFILE
        assert result.created_at == T0 - 5_000

        entry = await storage.get_entry(result.queue_id)
        assert entry.status == QueueStatus.PENDING
        assert entry.priority == 2
        assert entry.payload == {"text": "3F_MEDIDOR alarm", "originalDeviceName": "Meter 1"}

    @pytest.mark.asyncio
    async def test_context_supplies_identity(self, ingestor, storage):
        event = {"text": "Door open", "deviceType": "SENSOR_PORTA", "deviceName": "Door"}

        result = await ingestor.ingest(
            event, context={"customerId": "customer-a", "deviceId": "device-vip"},
        )

        assert result.priority == 1
        assert result.source == PrioritySource.DEVICE_OVERRIDE
        entry = await storage.get_entry(result.queue_id)
        assert entry.customer_id == "customer-a"
        assert entry.device_id == "device-vip"

    @pytest.mark.asyncio
    async def test_tenant_max_retries(self, ingestor, config_source, tenant_document, storage):
        tenant_document["rateControl"]["maxRetries"] = 6
        config_source.set_config("customer-a", tenant_document)

        result = await ingestor.ingest(rule_chain_event())

        assert (await storage.get_entry(result.queue_id)).max_retries == 6

    @pytest.mark.asyncio
    async def test_unconfigured_tenant(self, ingestor, storage):
        result = await ingestor.ingest(rule_chain_event(customer_id="customer-x"))

        assert result.priority == 3
        assert result.source == PrioritySource.SYSTEM_GLOBAL
        assert (await storage.get_entry(result.queue_id)).max_retries == 3

    @pytest.mark.asyncio
    async def test_malformed_event_still_queued(self, ingestor, storage):
        result = await ingestor.ingest("not an event")

        entry = await storage.get_entry(result.queue_id)
        assert entry.customer_id == "unknown"
        assert entry.device_profile == "unknown"
        assert entry.priority == 3

    @pytest.mark.asyncio
    async def test_storage_error_propagates(self, ingestor, queue, monkeypatch):
        monkeypatch.setattr(queue, "enqueue", AsyncMock(side_effect=StorageError("disk full")))

        with pytest.raises(StorageError):
            await ingestor.ingest(rule_chain_event())

    def test_result_to_dict(self):
        result = IngestResult("q-1", 2, PrioritySource.DEVICE_PROFILE, T0)

        assert result.to_dict() == {
            "queueId": "q-1",
            "priority": 2,
            "source": "deviceProfile",
            "createdAt": T0,
        }


class TestSubmit:
    """Tests for background submission."""

    @pytest.mark.asyncio
    async def test_submit_and_drain(self, ingestor, storage):
        ingestor.submit(rule_chain_event())
        ingestor.submit(rule_chain_event(device_type="TERMOSTATO"))

        await ingestor.drain()

        assert ingestor.pending_count == 0
        assert storage.entry_count == 2
        stats = await storage.get_stats("customer-a")
        assert stats.queue_depth[2] == 1
        assert stats.queue_depth[4] == 1

    @pytest.mark.asyncio
    async def test_background_failure_is_logged(self, ingestor, queue, monkeypatch, caplog):
        monkeypatch.setattr(queue, "enqueue", AsyncMock(side_effect=StorageError("disk full")))

        with caplog.at_level(logging.ERROR, logger="notification_queue.ingestion"):
            ingestor.submit(rule_chain_event())
            await ingestor.drain()

        assert ingestor.pending_count == 0
        assert "Background enqueue failed: disk full" in caplog.text


# ============================================================
# MONITOR TESTS
# ============================================================

class TestMonitor:
    """Tests for QueueMonitor.collect."""

    @pytest.mark.asyncio
    async def test_collect(self, monitor, storage, make_entry, clock):
        await storage.save(make_entry("p1", priority=1))
        await storage.save(make_entry("r1", priority=2, status=QueueStatus.RETRY))
        await storage.save(make_entry("s1", status=QueueStatus.SENT, sent_at=T0 + 4_000))
        await storage.save(make_entry("other", customer_id="customer-b"))
        await storage.update_rate_limit_state(
            "customer-a", {"last_dispatch_at": T0, "batch_count": 1},
        )
        clock.advance(seconds=10)

        telemetry = await monitor.collect("customer-a")

        assert telemetry == {
            "queue_depth_priority_1": 1,
            "queue_depth_priority_2": 1,
            "queue_depth_priority_3": 0,
            "queue_depth_priority_4": 0,
            "total_queue_depth": 2,
            "pending_count": 1,
            "sending_count": 0,
            "retry_count": 1,
            "failed_count": 0,
            "sent_count": 1,
            "average_dispatch_delay_seconds": 4.0,
            "time_since_last_dispatch_seconds": 10,
            "can_send_now": False,
            "wait_time_seconds": 50,
            "batch_count": 1,
            "cache_size": 1,
            "monitor_timestamp": T0 + 10_000,
        }

    @pytest.mark.asyncio
    async def test_rate_stats_fallback(self, queue, resolver, clock):
        rate_limiter = MagicMock()
        rate_limiter.get_rate_limit_stats = AsyncMock(side_effect=StorageError("state unavailable"))
        monitor = QueueMonitor(queue, rate_limiter, resolver, clock)

        telemetry = await monitor.collect("customer-a")

        assert telemetry["can_send_now"] is True
        assert telemetry["wait_time_seconds"] == 0
        assert telemetry["batch_count"] == 0

    @pytest.mark.asyncio
    async def test_queue_stats_error_propagates(self, resolver, storage, clock):
        queue = MagicMock()
        queue.get_queue_stats = AsyncMock(side_effect=StorageError("down"))
        monitor = QueueMonitor(queue, RateLimiter(storage, clock), resolver, clock)

        with pytest.raises(StorageError):
            await monitor.collect("customer-a")
