"""
Tests for Queue Core.

============================================================
PURPOSE
============================================================
Covers the queue lifecycle:
1. Normalization of both event shapes
2. Enqueue validation
3. Dequeue ordering, batch bounds and RETRY eligibility
4. Status updates
5. Cleanup and stale SENDING recovery

============================================================
"""

import asyncio

import pytest

from notification_queue.queue_core import MS_PER_DAY
from notification_queue.types import (
    EntryNotFoundError,
    InvalidEntryError,
    InvalidStatusError,
    PriorityNotSetError,
    QueueStatus,
    StatusResult,
)


# ============================================================
# NORMALIZATION TESTS
# ============================================================

class TestNormalize:
    """Tests for normalize."""

    def test_rule_chain_envelope(self, queue):
        """Envelope events take text from msg and identity from metadata."""
        entry = queue.normalize(
            {
                "msg": {"text": "Tensão alta no medidor"},
                "metadata": {
                    "deviceType": "3F_MEDIDOR",
                    "deviceName": "Medidor Loja 12",
                    "ts": "1700000000500",
                    "deviceId": "device-42",
                },
            },
            {"customerId": "customer-a"},
        )

        assert entry.customer_id == "customer-a"
        assert entry.device_id == "device-42"
        assert entry.device_profile == "3F_MEDIDOR"
        assert entry.payload == {
            "text": "Tensão alta no medidor",
            "originalDeviceName": "Medidor Loja 12",
        }
        assert entry.created_at == 1_700_000_000_500
        assert entry.priority is None
        assert entry.status == QueueStatus.PENDING
        assert entry.retry_count == 0
        assert entry.max_retries == 3

    def test_flat_shape(self, queue):
        entry = queue.normalize({
            "text": "Porta aberta",
            "deviceType": "ENTRADA",
            "deviceName": "Portaria",
            "ts": 1_700_000_000_000,
            "customerId": "customer-b",
        })

        assert entry.customer_id == "customer-b"
        assert entry.device_profile == "ENTRADA"
        assert entry.text == "Porta aberta"

    def test_missing_fields_default_to_unknown(self, queue, clock):
        """Missing identity becomes "unknown" and a missing ts becomes now."""
        entry = queue.normalize({"msg": {}, "metadata": {}})

        assert entry.customer_id == "unknown"
        assert entry.device_id == "unknown"
        assert entry.device_profile == "unknown"
        assert entry.payload["originalDeviceName"] == "unknown"
        assert entry.text == ""
        assert entry.created_at == clock.now_ms()

    def test_non_mapping_event(self, queue, clock):
        entry = queue.normalize(None)

        assert entry.customer_id == "unknown"
        assert entry.created_at == clock.now_ms()

    def test_unparsable_timestamp(self, queue, clock):
        entry = queue.normalize({"text": "x", "ts": "yesterday"})

        assert entry.created_at == clock.now_ms()

    def test_ids_are_unique(self, queue):
        first = queue.normalize({"text": "a"})
        second = queue.normalize({"text": "a"})

        assert first.queue_id != second.queue_id

    def test_max_retries_override(self, queue):
        entry = queue.normalize({"text": "a"}, max_retries=5)

        assert entry.max_retries == 5


# ============================================================
# ENQUEUE TESTS
# ============================================================

class TestEnqueue:
    """Tests for enqueue."""

    @pytest.mark.asyncio
    async def test_enqueue_requires_priority(self, queue, storage):
        """An entry without a resolved priority is never persisted."""
        entry = queue.normalize({"text": "a", "customerId": "customer-a"})

        with pytest.raises(PriorityNotSetError):
            await queue.enqueue(entry)

        assert storage.entry_count == 0

    @pytest.mark.asyncio
    async def test_enqueue_rejects_invalid_priority(self, queue):
        entry = queue.normalize({"text": "a"}).with_priority(9)

        with pytest.raises(InvalidEntryError) as exc_info:
            await queue.enqueue(entry)

        assert any("priority" in e for e in exc_info.value.errors)

    @pytest.mark.asyncio
    async def test_enqueue_persists(self, queue):
        entry = queue.normalize({"text": "a", "customerId": "customer-a"}).with_priority(2)

        queue_id = await queue.enqueue(entry)
        stored = await queue.get_queue_entry(queue_id)

        assert queue_id == entry.queue_id
        assert stored.priority == 2
        assert stored.status == QueueStatus.PENDING


# ============================================================
# DEQUEUE TESTS
# ============================================================

class TestDequeue:
    """Tests for dequeue."""

    @pytest.mark.asyncio
    async def test_orders_by_priority_then_age(self, queue, make_entry, clock):
        now = clock.now_ms()
        for entry in (
            make_entry("p3-old", priority=3, created_at=now - 5000),
            make_entry("p1-new", priority=1, created_at=now - 1000),
            make_entry("p2", priority=2, created_at=now - 9000),
            make_entry("p1-old", priority=1, created_at=now - 2000),
        ):
            await queue.enqueue(entry)

        batch = await queue.dequeue(10)

        assert [e.queue_id for e in batch] == ["p1-old", "p1-new", "p2", "p3-old"]

    @pytest.mark.asyncio
    async def test_never_exceeds_batch_size(self, queue, make_entry, clock):
        for i in range(7):
            await queue.enqueue(make_entry(f"e{i}", created_at=clock.now_ms() + i))

        batch = await queue.dequeue(5)

        assert len(batch) == 5
        assert [e.queue_id for e in batch] == ["e0", "e1", "e2", "e3", "e4"]

    @pytest.mark.asyncio
    async def test_claimed_entries_are_sending(self, queue, make_entry, clock):
        await queue.enqueue(make_entry("e1"))

        batch = await queue.dequeue(5)
        stored = await queue.get_queue_entry("e1")

        assert batch[0].status == QueueStatus.SENDING
        assert stored.status == QueueStatus.SENDING
        assert stored.last_attempt_at == clock.now_ms()

    @pytest.mark.asyncio
    async def test_entry_claimed_once(self, queue, make_entry):
        """Two overlapping dequeues never receive the same entry."""
        await queue.enqueue(make_entry("e1"))

        first, second = await asyncio.gather(queue.dequeue(5), queue.dequeue(5))

        assert sorted(len(batch) for batch in (first, second)) == [0, 1]
        assert [e.queue_id for e in first + second] == ["e1"]

    @pytest.mark.asyncio
    async def test_retry_only_after_pending(self, queue, storage, make_entry):
        """PENDING entries fill the batch before any RETRY entry."""
        await storage.save(make_entry("retry-p1", priority=1, status=QueueStatus.RETRY))
        await queue.enqueue(make_entry("pending-p4", priority=4))

        first = await queue.dequeue(1)
        second = await queue.dequeue(1)

        assert [e.queue_id for e in first] == ["pending-p4"]
        assert [e.queue_id for e in second] == ["retry-p1"]

    @pytest.mark.asyncio
    async def test_retry_tops_up_batch(self, queue, storage, make_entry):
        await queue.enqueue(make_entry("pending"))
        await storage.save(make_entry("retry", status=QueueStatus.RETRY))

        batch = await queue.dequeue(5)

        assert [e.queue_id for e in batch] == ["pending", "retry"]

    @pytest.mark.asyncio
    async def test_retry_waits_for_backoff(self, queue, storage, make_entry, clock):
        await storage.save(make_entry(
            "retry",
            status=QueueStatus.RETRY,
            retry_count=1,
            next_attempt_at=clock.now_ms() + 20_000,
        ))

        assert await queue.dequeue(5) == []

        clock.advance(seconds=20)
        batch = await queue.dequeue(5)

        assert [e.queue_id for e in batch] == ["retry"]

    @pytest.mark.asyncio
    async def test_terminal_entries_never_dequeued(self, queue, storage, make_entry):
        await storage.save(make_entry("sent", status=QueueStatus.SENT))
        await storage.save(make_entry("failed", status=QueueStatus.FAILED))

        assert await queue.dequeue(5) == []

    @pytest.mark.asyncio
    async def test_priority_filter(self, queue, make_entry):
        await queue.enqueue(make_entry("p1", priority=1))
        await queue.enqueue(make_entry("p4", priority=4))

        batch = await queue.dequeue(5, priorities=(4,))

        assert [e.queue_id for e in batch] == ["p4"]

    @pytest.mark.asyncio
    async def test_tenant_scope(self, queue, make_entry):
        await queue.enqueue(make_entry("a1", customer_id="customer-a"))
        await queue.enqueue(make_entry("b1", priority=1, customer_id="customer-b"))

        batch = await queue.dequeue(5, tenant_id="customer-a")

        assert [e.queue_id for e in batch] == ["a1"]
        assert (await queue.get_queue_entry("b1")).status == QueueStatus.PENDING

    @pytest.mark.asyncio
    @pytest.mark.parametrize("batch_size", [0, -1])
    async def test_rejects_non_positive_batch(self, queue, batch_size):
        with pytest.raises(ValueError):
            await queue.dequeue(batch_size)

    @pytest.mark.asyncio
    async def test_active_tenants(self, queue, storage, make_entry):
        await queue.enqueue(make_entry("a1", customer_id="customer-a"))
        await storage.save(make_entry("b1", customer_id="customer-b", status=QueueStatus.RETRY))
        await storage.save(make_entry("c1", customer_id="customer-c", status=QueueStatus.SENT))

        assert await queue.get_active_tenants() == ["customer-a", "customer-b"]


# ============================================================
# STATUS UPDATE TESTS
# ============================================================

class TestUpdateStatus:
    """Tests for update_status."""

    @pytest.mark.asyncio
    async def test_sent(self, queue, make_entry, clock):
        await queue.enqueue(make_entry("e1"))
        await queue.dequeue(1)

        updated = await queue.update_status("e1", QueueStatus.SENT, StatusResult(
            http_status=200,
            response_body='{"ok": true}',
            sent_at=clock.now_ms(),
        ))

        assert updated.status == QueueStatus.SENT
        assert updated.http_status == 200
        assert updated.sent_at == clock.now_ms()
        assert updated.is_terminal

    @pytest.mark.asyncio
    async def test_accepts_string_status_and_dict_result(self, queue, make_entry):
        await queue.enqueue(make_entry("e1"))

        updated = await queue.update_status("e1", "failed", {"http_status": 400})

        assert updated.status == QueueStatus.FAILED
        assert updated.http_status == 400

    @pytest.mark.asyncio
    async def test_accepts_document_keys(self, queue, make_entry, clock):
        await queue.enqueue(make_entry("e1"))

        updated = await queue.update_status("e1", "SENT", {
            "httpStatus": 200, "sentAt": clock.now_ms(), "responseBody": '{"ok": true}',
        })

        assert updated.http_status == 200
        assert updated.sent_at == clock.now_ms()
        assert updated.response_body == '{"ok": true}'

    @pytest.mark.asyncio
    async def test_unknown_result_field(self, queue, make_entry):
        await queue.enqueue(make_entry("e1"))

        with pytest.raises(InvalidEntryError) as exc_info:
            await queue.update_status("e1", "SENT", {"httpStatus": 200, "deliveredBy": "bot"})

        assert exc_info.value.errors == ["unknown result field: deliveredBy"]
        assert (await queue.get_queue_entry("e1")).status == QueueStatus.PENDING

    @pytest.mark.asyncio
    async def test_idempotent(self, queue, make_entry):
        """Applying the same update twice leaves the same entry."""
        await queue.enqueue(make_entry("e1"))
        result = StatusResult(http_status=500, error_message="boom", retry_count=1)

        first = await queue.update_status("e1", QueueStatus.RETRY, result)
        second = await queue.update_status("e1", QueueStatus.RETRY, result)

        assert first == second

    @pytest.mark.asyncio
    async def test_merges_only_provided_fields(self, queue, make_entry):
        await queue.enqueue(make_entry("e1"))
        await queue.update_status("e1", QueueStatus.RETRY, StatusResult(
            http_status=503, error_message="unavailable",
        ))

        updated = await queue.update_status("e1", QueueStatus.RETRY, StatusResult(retry_count=2))

        assert updated.retry_count == 2
        assert updated.http_status == 503
        assert updated.error_message == "unavailable"

    @pytest.mark.asyncio
    async def test_stamps_last_attempt(self, queue, make_entry, clock):
        await queue.enqueue(make_entry("e1"))
        clock.advance(seconds=5)

        updated = await queue.update_status("e1", QueueStatus.FAILED)

        assert updated.last_attempt_at == clock.now_ms()

    @pytest.mark.asyncio
    async def test_priority_is_immutable(self, queue, make_entry):
        await queue.enqueue(make_entry("e1", priority=3))

        updated = await queue.update_status("e1", QueueStatus.RETRY, {"retry_count": 1})
        stored = await queue.storage.update_entry("e1", {"priority": 1})

        assert updated.priority == 3
        assert stored.priority == 3

    @pytest.mark.asyncio
    async def test_invalid_status(self, queue, make_entry):
        await queue.enqueue(make_entry("e1"))

        with pytest.raises(InvalidStatusError):
            await queue.update_status("e1", "DELIVERED")

    @pytest.mark.asyncio
    async def test_unknown_entry(self, queue):
        with pytest.raises(EntryNotFoundError):
            await queue.update_status("missing", QueueStatus.SENT)


# ============================================================
# RETRY POLICY TESTS
# ============================================================

class TestShouldRetry:
    """Tests for should_retry."""

    @pytest.mark.parametrize("retry_count,expected", [(0, True), (2, True), (3, False), (4, False)])
    def test_retry_budget(self, queue, make_entry, retry_count, expected):
        entry = make_entry("e1", retry_count=retry_count, max_retries=3)

        assert queue.should_retry(entry) is expected


# ============================================================
# MAINTENANCE TESTS
# ============================================================

class TestMaintenance:
    """Tests for stats, cleanup and stale recovery."""

    @pytest.mark.asyncio
    async def test_queue_stats(self, queue, storage, make_entry, clock):
        now = clock.now_ms()
        await queue.enqueue(make_entry("p1", priority=1))
        await storage.save(make_entry("r2", priority=2, status=QueueStatus.RETRY))
        await storage.save(make_entry("f", status=QueueStatus.FAILED))
        await storage.save(make_entry(
            "s", status=QueueStatus.SENT, created_at=now - 4000, sent_at=now,
        ))

        stats = await queue.get_queue_stats("customer-a")

        assert stats.queue_depth == {1: 1, 2: 1, 3: 0, 4: 0}
        assert stats.total_queue_depth == 2
        assert stats.pending_count == 1
        assert stats.retry_count == 1
        assert stats.failed_count == 1
        assert stats.sent_count == 1
        assert stats.average_dispatch_delay_seconds == 4.0

    @pytest.mark.asyncio
    async def test_cleanup_old_entries(self, queue, make_entry, clock):
        now = clock.now_ms()
        await queue.enqueue(make_entry("old", created_at=now - 31 * MS_PER_DAY))
        await queue.enqueue(make_entry("new", created_at=now - MS_PER_DAY))

        deleted = await queue.cleanup_old_entries(30)

        assert deleted == 1
        assert await queue.get_queue_entry("old") is None
        assert await queue.get_queue_entry("new") is not None

    @pytest.mark.asyncio
    async def test_cleanup_scoped_to_tenant(self, queue, make_entry, clock):
        old = clock.now_ms() - 40 * MS_PER_DAY
        await queue.enqueue(make_entry("a", created_at=old, customer_id="customer-a"))
        await queue.enqueue(make_entry("b", created_at=old, customer_id="customer-b"))

        deleted = await queue.cleanup_old_entries(30, tenant_id="customer-a")

        assert deleted == 1
        assert await queue.get_queue_entry("b") is not None

    @pytest.mark.asyncio
    async def test_cleanup_rejects_non_positive_days(self, queue):
        with pytest.raises(ValueError):
            await queue.cleanup_old_entries(0)

    @pytest.mark.asyncio
    async def test_recover_stale_entries(self, queue, make_entry, clock):
        await queue.enqueue(make_entry("e1"))
        await queue.dequeue(1)

        clock.advance(seconds=60)
        assert await queue.recover_stale_entries(stale_after_seconds=600) == 0

        clock.advance(seconds=600)
        assert await queue.recover_stale_entries(stale_after_seconds=600) == 1

        stored = await queue.get_queue_entry("e1")
        assert stored.status == QueueStatus.RETRY
        assert stored.retry_count == 0
        assert [e.queue_id for e in await queue.dequeue(1)] == ["e1"]

    @pytest.mark.asyncio
    async def test_recover_ignores_fresh_higher_priority(self, queue, make_entry, clock):
        await queue.enqueue(make_entry("stale-p4", priority=4))
        await queue.dequeue(1)
        clock.advance(seconds=700)
        await queue.enqueue(make_entry("fresh-a", priority=1, created_at=clock.now_ms()))
        await queue.enqueue(make_entry("fresh-b", priority=1, created_at=clock.now_ms() + 1))
        await queue.dequeue(2)

        assert await queue.recover_stale_entries(stale_after_seconds=600, limit=2) == 1

        assert (await queue.get_queue_entry("stale-p4")).status == QueueStatus.RETRY
        assert (await queue.get_queue_entry("fresh-a")).status == QueueStatus.SENDING
        assert (await queue.get_queue_entry("fresh-b")).status == QueueStatus.SENDING

    def test_build_error_message(self, queue):
        message = queue.build_error_message("enqueue", RuntimeError("down"), {"queue_id": "q1"})

        assert message == "enqueue failed (queue_id=q1): down"
