"""
Tests for Queue Storage Backends.

============================================================
PURPOSE
============================================================
Runs the storage contract against every local backend:
- InMemoryStorageAdapter
- SqlStorageAdapter on SQLite (aiosqlite)

============================================================
"""

import asyncio

import pytest

from notification_queue.queue_core import QueueCore
from notification_queue.storage.memory import InMemoryStorageAdapter
from notification_queue.storage.sql import SqlStorageAdapter
from notification_queue.types import (
    EntryNotFoundError,
    QueueStatus,
    StorageError,
)

from tests.notification_queue.conftest import T0


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture(params=["memory", "sql"])
async def backend(request, clock):
    """Each storage backend, initialized and closed around the test."""
    if request.param == "memory":
        adapter = InMemoryStorageAdapter(clock=clock)
    else:
        adapter = SqlStorageAdapter("sqlite+aiosqlite:///:memory:", clock=clock)

    await adapter.initialize()
    yield adapter
    await adapter.close()


@pytest.fixture(params=["memory", "sql-file"])
async def shared_backend(request, clock, tmp_path):
    """Backend whose claims run on separate connections when SQL."""
    if request.param == "memory":
        adapter = InMemoryStorageAdapter(clock=clock)
    else:
        adapter = SqlStorageAdapter(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}", clock=clock)

    await adapter.initialize()
    yield adapter
    await adapter.close()


# ============================================================
# ENTRY TESTS
# ============================================================

class TestEntries:
    """Tests for entry persistence."""

    @pytest.mark.asyncio
    async def test_save_and_get(self, backend, make_entry):
        entry = make_entry("e1", priority=2, payload={"text": "Alarm", "level": "high"})

        assert await backend.save(entry) == "e1"

        stored = await backend.get_entry("e1")
        assert stored.customer_id == "customer-a"
        assert stored.priority == 2
        assert stored.status == QueueStatus.PENDING
        assert stored.created_at == T0
        assert stored.payload == {"text": "Alarm", "level": "high"}
        assert stored.retry_count == 0

    @pytest.mark.asyncio
    async def test_get_missing(self, backend):
        assert await backend.get_entry("nope") is None

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, backend, make_entry):
        await backend.save(make_entry("e1"))

        with pytest.raises(StorageError):
            await backend.save(make_entry("e1"))

    @pytest.mark.asyncio
    async def test_stored_copy_is_isolated(self, backend, make_entry):
        entry = make_entry("e1")
        await backend.save(entry)

        entry.status = QueueStatus.FAILED

        assert (await backend.get_entry("e1")).status == QueueStatus.PENDING

    @pytest.mark.asyncio
    async def test_update_merges_fields(self, backend, make_entry, clock):
        await backend.save(make_entry("e1"))

        updated = await backend.update_entry("e1", {
            "status": "SENT",
            "http_status": 200,
            "sent_at": clock.now_ms(),
        })

        assert updated.status == QueueStatus.SENT
        stored = await backend.get_entry("e1")
        assert stored.status == QueueStatus.SENT
        assert stored.http_status == 200
        assert stored.sent_at == T0
        assert stored.device_id == "device-1"

    @pytest.mark.asyncio
    async def test_update_never_changes_identity(self, backend, make_entry):
        await backend.save(make_entry("e1", priority=2))

        await backend.update_entry("e1", {
            "priority": 1,
            "created_at": 0,
            "customer_id": "customer-b",
            "retry_count": 1,
        })

        stored = await backend.get_entry("e1")
        assert stored.priority == 2
        assert stored.created_at == T0
        assert stored.customer_id == "customer-a"
        assert stored.retry_count == 1

    @pytest.mark.asyncio
    async def test_update_missing_entry(self, backend):
        with pytest.raises(EntryNotFoundError):
            await backend.update_entry("nope", {"status": "SENT"})


# ============================================================
# FETCH / CLAIM TESTS
# ============================================================

class TestFetchAndClaim:
    """Tests for ordered reads and atomic claims."""

    @pytest.mark.asyncio
    async def test_fetch_is_ordered_and_read_only(self, backend, make_entry):
        await backend.save(make_entry("low-old", priority=4, created_at=T0))
        await backend.save(make_entry("high-new", priority=1, created_at=T0 + 500))
        await backend.save(make_entry("high-old", priority=1, created_at=T0 + 100))
        await backend.save(make_entry("medium", priority=3, created_at=T0))

        entries = await backend.fetch_by_status_and_priority(QueueStatus.PENDING, 10)

        assert [e.queue_id for e in entries] == ["high-old", "high-new", "medium", "low-old"]
        assert all(e.status == QueueStatus.PENDING for e in entries)
        assert (await backend.get_entry("high-old")).status == QueueStatus.PENDING

    @pytest.mark.asyncio
    async def test_fetch_priority_filter_and_limit(self, backend, make_entry):
        for i, priority in enumerate([1, 2, 2, 3]):
            await backend.save(make_entry(f"e{i}", priority=priority, created_at=T0 + i))

        entries = await backend.fetch_by_status_and_priority(
            QueueStatus.PENDING, 1, priorities=[2, 3],
        )

        assert [e.queue_id for e in entries] == ["e1"]

    @pytest.mark.asyncio
    async def test_fetch_attempted_before(self, backend, make_entry):
        await backend.save(make_entry(
            "fresh", priority=1, status=QueueStatus.SENDING, last_attempt_at=T0,
        ))
        await backend.save(make_entry(
            "stale", priority=4, status=QueueStatus.SENDING, last_attempt_at=T0 - 700_000,
        ))
        await backend.save(make_entry(
            "never", priority=4, status=QueueStatus.SENDING, created_at=T0 + 1,
        ))

        entries = await backend.fetch_by_status_and_priority(
            QueueStatus.SENDING, 1, attempted_before_ms=T0 - 600_000,
        )

        assert [e.queue_id for e in entries] == ["stale"]

    @pytest.mark.asyncio
    async def test_claim_moves_to_sending(self, backend, make_entry, clock):
        await backend.save(make_entry("e1", priority=2))
        await backend.save(make_entry("e2", priority=1))

        claimed = await backend.claim_by_status_and_priority(
            QueueStatus.PENDING, 5, [1, 2, 3, 4], clock.now_ms(),
        )

        assert [e.queue_id for e in claimed] == ["e2", "e1"]
        assert all(e.status == QueueStatus.SENDING for e in claimed)
        assert all(e.last_attempt_at == T0 for e in claimed)
        assert (await backend.get_entry("e1")).status == QueueStatus.SENDING

    @pytest.mark.asyncio
    async def test_entry_claimed_once(self, backend, make_entry, clock):
        for i in range(6):
            await backend.save(make_entry(f"e{i}", created_at=T0 + i))

        first = await backend.claim_by_status_and_priority(
            QueueStatus.PENDING, 4, [3], clock.now_ms(),
        )
        second = await backend.claim_by_status_and_priority(
            QueueStatus.PENDING, 4, [3], clock.now_ms(),
        )
        third = await backend.claim_by_status_and_priority(
            QueueStatus.PENDING, 4, [3], clock.now_ms(),
        )

        assert [e.queue_id for e in first] == ["e0", "e1", "e2", "e3"]
        assert [e.queue_id for e in second] == ["e4", "e5"]
        assert third == []

    @pytest.mark.asyncio
    async def test_claim_tenant_scope(self, backend, make_entry, clock):
        await backend.save(make_entry("a1", customer_id="customer-a", priority=2))
        await backend.save(make_entry("b1", customer_id="customer-b", priority=1))

        claimed = await backend.claim_by_status_and_priority(
            QueueStatus.PENDING, 5, [1, 2, 3, 4], clock.now_ms(), tenant_id="customer-a",
        )

        assert [e.queue_id for e in claimed] == ["a1"]
        assert (await backend.get_entry("b1")).status == QueueStatus.PENDING

    @pytest.mark.asyncio
    async def test_claim_due_filter(self, backend, make_entry, clock):
        await backend.save(make_entry(
            "later", status=QueueStatus.RETRY, next_attempt_at=T0 + 10_000,
        ))
        await backend.save(make_entry(
            "due", status=QueueStatus.RETRY, next_attempt_at=T0 - 1,
        ))
        await backend.save(make_entry(
            "unscheduled", status=QueueStatus.RETRY, created_at=T0 + 1,
        ))

        claimed = await backend.claim_by_status_and_priority(
            QueueStatus.RETRY, 5, [3], clock.now_ms(), due_before_ms=clock.now_ms(),
        )

        assert sorted(e.queue_id for e in claimed) == ["due", "unscheduled"]
        assert (await backend.get_entry("later")).status == QueueStatus.RETRY

    @pytest.mark.asyncio
    async def test_claim_non_positive_limit(self, backend, make_entry, clock):
        await backend.save(make_entry("e1"))

        assert await backend.claim_by_status_and_priority(
            QueueStatus.PENDING, 0, [3], clock.now_ms(),
        ) == []


class TestConcurrentClaims:
    """Tests for overlapping dequeues."""

    @pytest.mark.asyncio
    async def test_overlapping_dequeues_claim_each_entry_once(
        self, shared_backend, make_entry, clock,
    ):
        for i in range(20):
            await shared_backend.save(make_entry(f"e{i:02d}", created_at=T0 + i))
        queue = QueueCore(shared_backend, clock)

        batches = await asyncio.gather(*(queue.dequeue(5) for _ in range(8)))

        claimed = [entry.queue_id for batch in batches for entry in batch]
        assert len(claimed) == 20
        assert set(claimed) == {f"e{i:02d}" for i in range(20)}
        assert all(len(batch) <= 5 for batch in batches)

        stats = await shared_backend.get_stats()
        assert stats.pending_count == 0
        assert stats.sending_count == 20


# ============================================================
# MAINTENANCE TESTS
# ============================================================

class TestMaintenance:
    """Tests for tenants, stats and cleanup."""

    @pytest.mark.asyncio
    async def test_list_active_tenants(self, backend, make_entry):
        await backend.save(make_entry("b1", customer_id="customer-b"))
        await backend.save(make_entry("a1", customer_id="customer-a", status=QueueStatus.RETRY))
        await backend.save(make_entry("c1", customer_id="customer-c", status=QueueStatus.SENT))
        await backend.save(make_entry("d1", customer_id="customer-d", status=QueueStatus.SENDING))

        assert await backend.list_active_tenants() == ["customer-a", "customer-b"]

    @pytest.mark.asyncio
    async def test_stats(self, backend, make_entry):
        await backend.save(make_entry("p1", priority=1))
        await backend.save(make_entry("p2", priority=1, status=QueueStatus.RETRY))
        await backend.save(make_entry("p3", priority=4))
        await backend.save(make_entry("s1", status=QueueStatus.SENDING))
        await backend.save(make_entry("f1", status=QueueStatus.FAILED))
        await backend.save(make_entry("ok1", status=QueueStatus.SENT, sent_at=T0 + 2_000))
        await backend.save(make_entry("ok2", status=QueueStatus.SENT, sent_at=T0 + 3_000))
        await backend.save(make_entry("other", customer_id="customer-b"))

        stats = await backend.get_stats("customer-a")

        assert stats.queue_depth == {1: 2, 2: 0, 3: 0, 4: 1}
        assert stats.total_queue_depth == 3
        assert stats.pending_count == 2
        assert stats.retry_count == 1
        assert stats.sending_count == 1
        assert stats.failed_count == 1
        assert stats.sent_count == 2
        assert stats.average_dispatch_delay_seconds == 2.5

        assert (await backend.get_stats()).pending_count == 3

    @pytest.mark.asyncio
    async def test_delete_older_than(self, backend, make_entry):
        await backend.save(make_entry("old-a", created_at=T0 - 10_000))
        await backend.save(make_entry("old-b", created_at=T0 - 10_000, customer_id="customer-b"))
        await backend.save(make_entry("new-a", created_at=T0))

        assert await backend.delete_older_than(T0 - 5_000, tenant_id="customer-b") == 1
        assert await backend.delete_older_than(T0 - 5_000) == 1

        assert await backend.get_entry("old-a") is None
        assert await backend.get_entry("old-b") is None
        assert await backend.get_entry("new-a") is not None


# ============================================================
# RATE LIMIT STATE TESTS
# ============================================================

class TestRateLimitState:
    """Tests for rate-limit state persistence."""

    @pytest.mark.asyncio
    async def test_absent_state_is_zero(self, backend):
        state = await backend.get_rate_limit_state("customer-a")

        assert state.last_dispatch_at == 0
        assert state.batch_count == 0

    @pytest.mark.asyncio
    async def test_update_merges(self, backend, clock):
        await backend.update_rate_limit_state("customer-a", {"last_dispatch_at": T0, "batch_count": 1})
        clock.advance(seconds=5)
        state = await backend.update_rate_limit_state("customer-a", {"batch_count": 2})

        assert state.last_dispatch_at == T0
        assert state.batch_count == 2
        assert state.updated_at == T0 + 5_000

        stored = await backend.get_rate_limit_state("customer-a")
        assert stored.batch_count == 2
        assert (await backend.get_rate_limit_state("customer-b")).batch_count == 0
