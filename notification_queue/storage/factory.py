"""
Queue Storage - Factory.

============================================================
PURPOSE
============================================================
Create the storage adapter and tenant configuration source
selected by StorageConfig.backend.

============================================================
USAGE
============================================================
```python
bundle = StorageFactory.create(config.storage, clock=clock)
await bundle.storage.initialize()
...
await bundle.close()
```

============================================================
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from notification_queue.clock import Clock
from notification_queue.config import StorageConfig
from notification_queue.storage.attributes import (
    AttributeConfigSource,
    AttributeStorageAdapter,
    ThingsboardAttributeClient,
)
from notification_queue.storage.base import QueueStorageAdapter, TenantConfigSource
from notification_queue.storage.memory import InMemoryStorageAdapter, StaticConfigSource
from notification_queue.storage.sql import SqlStorageAdapter
from notification_queue.types import ConfigurationError


logger = logging.getLogger(__name__)


# ============================================================
# BACKEND IDENTIFIERS
# ============================================================

class StorageBackend(Enum):
    """Supported storage backends."""

    MEMORY = "memory"
    SQL = "sql"
    THINGSBOARD = "thingsboard"


@dataclass
class StorageBundle:
    """Storage adapter plus the tenant configuration source paired with it."""

    storage: QueueStorageAdapter
    config_source: TenantConfigSource

    async def close(self) -> None:
        await self.storage.close()
        await self.config_source.close()


Creator = Callable[[StorageConfig, Optional[Clock]], StorageBundle]


# ============================================================
# FACTORY
# ============================================================

class StorageFactory:
    """
    Registry of storage backend creators.
    """

    _creators: Dict[StorageBackend, Creator] = {}

    @classmethod
    def register(cls, backend: StorageBackend, creator: Creator) -> None:
        cls._creators[backend] = creator

    @classmethod
    def unregister(cls, backend: StorageBackend) -> None:
        cls._creators.pop(backend, None)

    @classmethod
    def create(
        cls,
        config: StorageConfig,
        clock: Optional[Clock] = None,
    ) -> StorageBundle:
        """
        Create the configured backend.

        Raises:
            ConfigurationError: Unknown backend or incomplete settings
        """
        try:
            backend = StorageBackend(config.backend.lower())
        except ValueError:
            raise ConfigurationError(
                f"Unknown storage backend: {config.backend}",
                context={"supported": cls.list_backends()},
            )

        creator = cls._creators.get(backend)
        if creator is None:
            raise ConfigurationError(f"No creator registered for backend: {backend.value}")

        logger.info(f"Creating {backend.value} queue storage")
        return creator(config, clock)

    @classmethod
    def list_backends(cls) -> List[str]:
        return [backend.value for backend in cls._creators]


# ============================================================
# BUILT-IN CREATORS
# ============================================================

def load_tenant_configs(path: Optional[str]) -> Dict[str, Dict[str, Any]]:
    """Load `{tenant_id: telegram_queue_config}` from a JSON file."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot read tenant config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Tenant config file {path} must hold a JSON object")
    return data


def _create_memory(config: StorageConfig, clock: Optional[Clock]) -> StorageBundle:
    return StorageBundle(
        storage=InMemoryStorageAdapter(clock=clock),
        config_source=StaticConfigSource(load_tenant_configs(config.tenant_config_file)),
    )


def _create_sql(config: StorageConfig, clock: Optional[Clock]) -> StorageBundle:
    if not config.database_url:
        raise ConfigurationError("DATABASE_URL is required for the sql backend")
    return StorageBundle(
        storage=SqlStorageAdapter(
            database_url=config.database_url,
            echo=config.echo,
            pool_size=config.pool_size,
            clock=clock,
        ),
        config_source=StaticConfigSource(load_tenant_configs(config.tenant_config_file)),
    )


def _create_thingsboard(config: StorageConfig, clock: Optional[Clock]) -> StorageBundle:
    missing = [
        name for name in ("thingsboard_url", "customer_id", "username", "password")
        if not getattr(config, name)
    ]
    if missing:
        raise ConfigurationError(
            f"Missing ThingsBoard settings: {', '.join(missing)}",
            context={"missing": missing},
        )
    client = ThingsboardAttributeClient(
        base_url=config.thingsboard_url,
        username=config.username,
        password=config.password,
        timeout_seconds=config.request_timeout_seconds,
    )
    return StorageBundle(
        storage=AttributeStorageAdapter(client, config.customer_id, clock=clock),
        config_source=AttributeConfigSource(client),
    )


StorageFactory.register(StorageBackend.MEMORY, _create_memory)
StorageFactory.register(StorageBackend.SQL, _create_sql)
StorageFactory.register(StorageBackend.THINGSBOARD, _create_thingsboard)
