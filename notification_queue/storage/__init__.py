"""
Queue Storage Package.

Backends:
- memory: InMemoryStorageAdapter
- sql: SqlStorageAdapter (async SQLAlchemy)
- thingsboard: AttributeStorageAdapter (SERVER_SCOPE attributes)
"""

from notification_queue.storage.base import QueueStorageAdapter, TenantConfigSource
from notification_queue.storage.memory import InMemoryStorageAdapter, StaticConfigSource
from notification_queue.storage.sql import SqlStorageAdapter
from notification_queue.storage.attributes import (
    AttributeConfigSource,
    AttributeStorageAdapter,
    ThingsboardAttributeClient,
)
from notification_queue.storage.factory import StorageBackend, StorageBundle, StorageFactory


__all__ = [
    "QueueStorageAdapter",
    "TenantConfigSource",
    "InMemoryStorageAdapter",
    "StaticConfigSource",
    "SqlStorageAdapter",
    "AttributeStorageAdapter",
    "AttributeConfigSource",
    "ThingsboardAttributeClient",
    "StorageBackend",
    "StorageBundle",
    "StorageFactory",
]
