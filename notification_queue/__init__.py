"""
Notification Queue Package.

============================================================
PURPOSE
============================================================
At-least-once, priority-ordered notification dispatch queue
between telemetry/alarm producers and the Telegram Bot API.

PRINCIPLES:
    "Producers never wait on the chat API."
    "An accepted notification is delivered, retried or marked
     FAILED. It is never dropped silently."

============================================================
MODULES
============================================================
- types: Entry, statuses, priorities, tenant config, exceptions
- errors: Outbound error taxonomy and failure policy
- config: Service configuration (.env aware)
- clock: Injectable millisecond clock
- logging_utils: Logging setup, event helpers, token masking
- priority_resolver: Tenant rule cascade with TTL cache
- queue_core: normalize / enqueue / dequeue / update_status
- rate_limiter: Batch spacing and retry backoff
- telegram_client: Telegram Bot API client (aiohttp)
- dispatcher: Per-tenant batch loop
- ingestion: Producer path
- monitor: Operational snapshot
- storage: Storage adapters (memory, SQL, ThingsBoard attributes)

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    # Enums
    QueueStatus,
    Priority,
    PrioritySource,
    BackoffStrategy,
    # Constants
    ALL_PRIORITIES,
    SYSTEM_FALLBACK_PRIORITY,
    DEFAULT_MAX_RETRIES,
    # Dataclasses
    QueueEntry,
    StatusResult,
    RateControl,
    TelegramSettings,
    PriorityRules,
    TenantPriorityConfig,
    RateLimitState,
    QueueStats,
    # Exceptions
    NotificationQueueError,
    QueueError,
    PriorityNotSetError,
    InvalidStatusError,
    InvalidEntryError,
    StorageError,
    EntryNotFoundError,
    ConfigurationError,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    ErrorCategory,
    RetryEligibility,
    OutboundError,
    TelegramApiError,
    TelegramConfigError,
    classify_http_status,
    map_telegram_error,
    is_retryable_error,
    get_retry_after,
)

# ============================================================
# INFRASTRUCTURE
# ============================================================
from .clock import Clock, SystemClock, MockClock
from .config import (
    CacheConfig,
    StorageConfig,
    TelegramClientConfig,
    DispatcherConfig,
    QueueServiceConfig,
)
from .logging_utils import setup_logging, mask_token

# ============================================================
# COMPONENTS
# ============================================================
from .priority_resolver import (
    PriorityCache,
    PriorityResolver,
    PriorityResolution,
    build_default_tenant_config,
    validate_tenant_config,
)
from .queue_core import QueueCore
from .rate_limiter import RateLimiter, calculate_retry_delay
from .telegram_client import TelegramClient, format_telegram_error
from .dispatcher import Dispatcher, BatchResult, SkipReason
from .ingestion import EventIngestor, IngestResult
from .monitor import QueueMonitor


__all__ = [
    # Types
    "QueueStatus",
    "Priority",
    "PrioritySource",
    "BackoffStrategy",
    "ALL_PRIORITIES",
    "SYSTEM_FALLBACK_PRIORITY",
    "DEFAULT_MAX_RETRIES",
    "QueueEntry",
    "StatusResult",
    "RateControl",
    "TelegramSettings",
    "PriorityRules",
    "TenantPriorityConfig",
    "RateLimitState",
    "QueueStats",
    "NotificationQueueError",
    "QueueError",
    "PriorityNotSetError",
    "InvalidStatusError",
    "InvalidEntryError",
    "StorageError",
    "EntryNotFoundError",
    "ConfigurationError",
    # Errors
    "ErrorCategory",
    "RetryEligibility",
    "OutboundError",
    "TelegramApiError",
    "TelegramConfigError",
    "classify_http_status",
    "map_telegram_error",
    "is_retryable_error",
    "get_retry_after",
    # Infrastructure
    "Clock",
    "SystemClock",
    "MockClock",
    "CacheConfig",
    "StorageConfig",
    "TelegramClientConfig",
    "DispatcherConfig",
    "QueueServiceConfig",
    "setup_logging",
    "mask_token",
    # Components
    "PriorityCache",
    "PriorityResolver",
    "PriorityResolution",
    "build_default_tenant_config",
    "validate_tenant_config",
    "QueueCore",
    "RateLimiter",
    "calculate_retry_delay",
    "TelegramClient",
    "format_telegram_error",
    "Dispatcher",
    "BatchResult",
    "SkipReason",
    "EventIngestor",
    "IngestResult",
    "QueueMonitor",
]
