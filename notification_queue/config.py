"""
Notification Queue - Configuration.

============================================================
PURPOSE
============================================================
Service-level configuration for the notification queue.

Tenant-level settings (priority rules, rate control, bot
credentials) are NOT configured here; they are read per tenant
from the tenant configuration source.

Values can be loaded from the environment (and a local .env
file) with QueueServiceConfig.from_env().

============================================================
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv


# ============================================================
# CACHE CONFIGURATION
# ============================================================

@dataclass
class CacheConfig:
    """Tenant configuration cache."""

    ttl_seconds: float = 300.0
    """How long a fetched tenant config (or a cached miss) stays valid."""


# ============================================================
# STORAGE CONFIGURATION
# ============================================================

@dataclass
class StorageConfig:
    """
    Storage backend selection and connection settings.
    """

    backend: str = "memory"
    """One of: memory, sql, thingsboard."""

    # SQL backend
    database_url: str = "sqlite+aiosqlite:///./notification_queue.db"
    """SQLAlchemy async URL (postgresql+asyncpg://... in production)."""

    echo: bool = False
    """Log SQL statements."""

    pool_size: int = 5
    """Connection pool size (ignored for SQLite)."""

    # ThingsBoard attribute backend
    thingsboard_url: str = ""
    """ThingsBoard base URL."""

    customer_id: str = ""
    """Customer whose SERVER_SCOPE attributes hold the queue."""

    username: str = ""
    """Service account username."""

    password: str = ""
    """Service account password."""

    request_timeout_seconds: float = 15.0
    """Timeout for attribute API calls."""

    # Tenant configuration for the memory and sql backends
    tenant_config_file: Optional[str] = None
    """JSON file mapping tenant id to its telegram_queue_config document."""


# ============================================================
# TELEGRAM CLIENT CONFIGURATION
# ============================================================

@dataclass
class TelegramClientConfig:
    """Outbound client settings."""

    api_base: str = "https://api.telegram.org"
    """Bot API base URL."""

    timeout_seconds: float = 10.0
    """Upper bound for one sendMessage call."""

    max_message_length: int = 4096
    """Longer texts are truncated before sending."""


# ============================================================
# DISPATCHER CONFIGURATION
# ============================================================

@dataclass
class DispatcherConfig:
    """Dispatch loop settings."""

    interval_seconds: float = 30.0
    """Tick cadence."""

    max_concurrent_tenants: int = 8
    """Tenants dispatched in parallel within one tick."""

    default_batch_size: int = 5
    """Batch size when a tenant has no configuration."""

    cleanup_days_old: Optional[int] = 30
    """Retention window applied once per cleanup interval (None disables)."""

    cleanup_interval_seconds: float = 3600.0
    """How often the loop runs TTL cleanup."""

    stale_after_seconds: float = 600.0
    """SENDING entries older than this are returned to RETRY."""


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class QueueServiceConfig:
    """
    Master configuration for the notification queue service.
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    telegram: TelegramClientConfig = field(default_factory=TelegramClientConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "QueueServiceConfig":
        """
        Build configuration from environment variables.

        Args:
            env_file: Optional .env path (defaults to ./.env if present)

        Returns:
            QueueServiceConfig
        """
        load_dotenv(env_file)

        storage = StorageConfig(
            backend=os.getenv("NQ_STORAGE_BACKEND", StorageConfig.backend),
            database_url=os.getenv("DATABASE_URL", StorageConfig.database_url),
            echo=_env_bool("NQ_SQL_ECHO", False),
            pool_size=int(os.getenv("NQ_SQL_POOL_SIZE", StorageConfig.pool_size)),
            thingsboard_url=os.getenv("THINGSBOARD_URL", ""),
            customer_id=os.getenv("THINGSBOARD_CUSTOMER_ID", ""),
            username=os.getenv("THINGSBOARD_USERNAME", ""),
            password=os.getenv("THINGSBOARD_PASSWORD", ""),
            tenant_config_file=os.getenv("NQ_TENANT_CONFIG_FILE") or None,
        )

        telegram = TelegramClientConfig(
            api_base=os.getenv("TELEGRAM_API_BASE", TelegramClientConfig.api_base),
            timeout_seconds=float(
                os.getenv("TELEGRAM_TIMEOUT_SECONDS", TelegramClientConfig.timeout_seconds)
            ),
        )

        dispatcher = DispatcherConfig(
            interval_seconds=float(
                os.getenv("NQ_DISPATCH_INTERVAL_SECONDS", DispatcherConfig.interval_seconds)
            ),
            max_concurrent_tenants=int(
                os.getenv("NQ_MAX_CONCURRENT_TENANTS", DispatcherConfig.max_concurrent_tenants)
            ),
        )

        cache = CacheConfig(
            ttl_seconds=float(os.getenv("NQ_CACHE_TTL_SECONDS", CacheConfig.ttl_seconds)),
        )

        return cls(
            storage=storage,
            cache=cache,
            telegram=telegram,
            dispatcher=dispatcher,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )

    @classmethod
    def for_testing(cls) -> "QueueServiceConfig":
        """Get configuration for testing."""
        return cls(
            storage=StorageConfig(backend="memory"),
            telegram=TelegramClientConfig(timeout_seconds=2.0),
            dispatcher=DispatcherConfig(interval_seconds=0.05, cleanup_days_old=None),
            log_level="DEBUG",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")
