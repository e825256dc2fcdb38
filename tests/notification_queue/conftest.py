"""
Shared fixtures for notification queue tests.
"""

import copy
from typing import Any, Dict

import pytest

from notification_queue.clock import MockClock
from notification_queue.queue_core import QueueCore
from notification_queue.storage.memory import InMemoryStorageAdapter, StaticConfigSource
from notification_queue.types import QueueEntry, QueueStatus


T0 = 1_700_000_000_000

BOT_TOKEN = "123456789:AAHfakeTokenForTestsOnly"

TENANT_DOCUMENT: Dict[str, Any] = {
    "enabled": True,
    "priorityRules": {
        "deviceProfiles": {
            "3F_MEDIDOR": 2,
            "TERMOSTATO": 4,
        },
        "deviceOverrides": {
            "device-vip": 1,
        },
        "globalDefault": 3,
    },
    "rateControl": {
        "batchSize": 5,
        "delayBetweenBatchesSeconds": 60,
        "maxRetries": 3,
        "retryBackoff": "exponential",
    },
    "telegram": {
        "botToken": BOT_TOKEN,
        "chatId": "-1001234567890",
    },
}


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    """Mock clock frozen at T0."""
    return MockClock(T0)


@pytest.fixture
def storage(clock):
    """In-memory storage."""
    return InMemoryStorageAdapter(clock=clock)


@pytest.fixture
def queue(storage, clock):
    """Queue core over in-memory storage."""
    return QueueCore(storage, clock)


@pytest.fixture
def tenant_document():
    """Complete, valid tenant configuration document."""
    return copy.deepcopy(TENANT_DOCUMENT)


@pytest.fixture
def config_source(tenant_document):
    """Config source holding one configured tenant."""
    return StaticConfigSource({"customer-a": tenant_document})


@pytest.fixture
def make_entry():
    """Factory for prioritized queue entries."""

    def _make(
        queue_id: str,
        priority: int = 3,
        created_at: int = T0,
        customer_id: str = "customer-a",
        status: QueueStatus = QueueStatus.PENDING,
        **overrides: Any,
    ) -> QueueEntry:
        return QueueEntry(
            queue_id=queue_id,
            customer_id=customer_id,
            device_id=overrides.pop("device_id", "device-1"),
            device_profile=overrides.pop("device_profile", "3F_MEDIDOR"),
            payload=overrides.pop("payload", {"text": f"Alarm {queue_id}"}),
            created_at=created_at,
            priority=priority,
            status=status,
            **overrides,
        )

    return _make
