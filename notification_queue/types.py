"""
Notification Queue - Types.

============================================================
PURPOSE
============================================================
All type definitions for the notification dispatch queue.

ENTRY LIFECYCLE:

    PENDING ──► SENDING ──► SENT
                  │   ▲
                  │   │
                  ├──►RETRY
                  │
                  └──► FAILED

- PENDING and RETRY are dequeue-eligible
- SENT and FAILED are terminal
- Priority is fixed once the entry is enqueued

All timestamps are epoch milliseconds.

============================================================
"""

import copy
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional


# ============================================================
# ENUMS
# ============================================================

class QueueStatus(Enum):
    """Queue entry status."""

    PENDING = "PENDING"
    """Waiting for first dispatch."""

    SENDING = "SENDING"
    """Claimed by a dispatcher tick."""

    SENT = "SENT"
    """Delivered to the outbound channel."""

    FAILED = "FAILED"
    """Permanently failed."""

    RETRY = "RETRY"
    """Failed transiently, waiting for backoff."""

    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in (QueueStatus.SENT, QueueStatus.FAILED)

    def is_dequeue_eligible(self) -> bool:
        """Check if entries in this state may be dequeued."""
        return self in (QueueStatus.PENDING, QueueStatus.RETRY)

    @classmethod
    def parse(cls, value: Any) -> "QueueStatus":
        """Parse a status from an enum member or its string value."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            return cls(value.upper())
        raise ValueError(f"Invalid status: {value!r}")


class Priority(IntEnum):
    """Dispatch priority. Lower value is dispatched first."""

    CRITICAL = 1
    HIGH = 2
    MEDIUM = 3
    LOW = 4

    @classmethod
    def is_valid(cls, value: Any) -> bool:
        """Check if value is a usable priority (1..4)."""
        if isinstance(value, bool) or not isinstance(value, int):
            return False
        return cls.CRITICAL <= value <= cls.LOW


ALL_PRIORITIES = (
    Priority.CRITICAL,
    Priority.HIGH,
    Priority.MEDIUM,
    Priority.LOW,
)

SYSTEM_FALLBACK_PRIORITY = Priority.MEDIUM
DEFAULT_MAX_RETRIES = 3
UNKNOWN = "unknown"


class PrioritySource(Enum):
    """Which cascade level produced a priority."""

    DEVICE_OVERRIDE = "deviceOverride"
    DEVICE_PROFILE = "deviceProfile"
    CUSTOMER_GLOBAL = "customerGlobal"
    SYSTEM_GLOBAL = "systemGlobal"


class BackoffStrategy(Enum):
    """Retry backoff strategies."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"


# ============================================================
# QUEUE ENTRY
# ============================================================

# Python attribute -> JSON document key
_ENTRY_KEYS = {
    "queue_id": "queueId",
    "customer_id": "customerId",
    "device_id": "deviceId",
    "device_profile": "deviceProfile",
    "priority": "priority",
    "payload": "payload",
    "status": "status",
    "retry_count": "retryCount",
    "max_retries": "maxRetries",
    "created_at": "createdAt",
    "last_attempt_at": "lastAttemptAt",
    "sent_at": "sentAt",
    "http_status": "httpStatus",
    "error_message": "errorMessage",
    "response_body": "responseBody",
    "next_attempt_at": "nextAttemptAt",
}

# Fields that never change after enqueue
IMMUTABLE_FIELDS = frozenset({"queue_id", "customer_id", "priority", "created_at"})

# Fields a status update may carry
RESULT_FIELDS = (
    "http_status",
    "response_body",
    "error_message",
    "retry_count",
    "sent_at",
    "next_attempt_at",
)

# JSON document key -> result attribute
_RESULT_KEYS = {_ENTRY_KEYS[name]: name for name in RESULT_FIELDS}


@dataclass
class QueueEntry:
    """
    One notification awaiting or having undergone dispatch.

    Created by normalization, given a priority by the resolver,
    persisted by the storage adapter and mutated only through
    storage updates.
    """

    queue_id: str
    customer_id: str
    device_id: str
    device_profile: str
    payload: Dict[str, Any]
    created_at: int

    priority: Optional[int] = None
    """Resolved priority (1..4). None until resolved."""

    status: QueueStatus = QueueStatus.PENDING
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES

    last_attempt_at: Optional[int] = None
    sent_at: Optional[int] = None
    next_attempt_at: Optional[int] = None
    """Earliest time a RETRY entry may be claimed again."""

    http_status: Optional[int] = None
    error_message: Optional[str] = None
    response_body: Optional[str] = None

    @property
    def text(self) -> str:
        """Message text to send."""
        return str(self.payload.get("text") or "")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal()

    def copy(self) -> "QueueEntry":
        """Deep copy of this entry."""
        return copy.deepcopy(self)

    def with_priority(self, priority: int) -> "QueueEntry":
        """Return a copy carrying the given priority."""
        entry = self.copy()
        entry.priority = priority
        return entry

    def validate(self) -> List[str]:
        """
        Validate entry fields.

        Returns:
            List of validation errors (empty when valid)
        """
        errors = []

        if not self.queue_id or not isinstance(self.queue_id, str):
            errors.append("queue_id is required and must be a string")
        if not self.customer_id or not isinstance(self.customer_id, str):
            errors.append("customer_id is required and must be a string")
        if not self.device_id or not isinstance(self.device_id, str):
            errors.append("device_id is required and must be a string")
        if not self.device_profile or not isinstance(self.device_profile, str):
            errors.append("device_profile is required and must be a string")
        if not Priority.is_valid(self.priority):
            errors.append("priority is required and must be an integer between 1 and 4")
        if not isinstance(self.payload, dict):
            errors.append("payload is required and must be a dict")
        elif not isinstance(self.payload.get("text"), str):
            errors.append("payload.text is required and must be a string")
        if not isinstance(self.status, QueueStatus):
            errors.append("status must be a QueueStatus")
        if not isinstance(self.retry_count, int) or self.retry_count < 0:
            errors.append("retry_count must be a non-negative integer")
        if not isinstance(self.created_at, int) or self.created_at <= 0:
            errors.append("created_at must be a positive timestamp in milliseconds")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the JSON document layout."""
        data = {}
        for attr, key in _ENTRY_KEYS.items():
            value = getattr(self, attr)
            if isinstance(value, QueueStatus):
                value = value.value
            data[key] = copy.deepcopy(value)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueEntry":
        """Deserialize from the JSON document layout."""
        kwargs = {}
        for attr, key in _ENTRY_KEYS.items():
            if key in data:
                kwargs[attr] = copy.deepcopy(data[key])
            elif attr in data:
                kwargs[attr] = copy.deepcopy(data[attr])

        kwargs["status"] = QueueStatus.parse(kwargs.get("status", QueueStatus.PENDING))
        kwargs.setdefault("payload", {})
        kwargs.setdefault("device_profile", UNKNOWN)
        kwargs.setdefault("device_id", UNKNOWN)
        kwargs.setdefault("customer_id", UNKNOWN)
        return cls(**kwargs)


@dataclass
class StatusResult:
    """
    Result fields merged into an entry on a status update.

    Only fields that are not None are written.
    """

    http_status: Optional[int] = None
    response_body: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: Optional[int] = None
    sent_at: Optional[int] = None
    next_attempt_at: Optional[int] = None

    def to_updates(self) -> Dict[str, Any]:
        return {
            name: getattr(self, name)
            for name in RESULT_FIELDS
            if getattr(self, name) is not None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], queue_id: Optional[str] = None) -> "StatusResult":
        """Accepts attribute names or JSON document keys (httpStatus, sentAt, ...)."""
        values: Dict[str, Any] = {}
        unknown: List[str] = []
        for key, value in data.items():
            if key in RESULT_FIELDS:
                values[key] = value
            elif key in _RESULT_KEYS:
                values[_RESULT_KEYS[key]] = value
            else:
                unknown.append(key)
        if unknown:
            raise InvalidEntryError(
                [f"unknown result field: {key}" for key in sorted(unknown)],
                queue_id=queue_id,
            )
        return cls(**values)


# ============================================================
# TENANT CONFIGURATION
# ============================================================

@dataclass(frozen=True)
class RateControl:
    """Per-tenant dispatch pacing."""

    batch_size: int = 5
    """Messages per batch."""

    delay_between_batches_seconds: float = 60
    """Minimum spacing between two batches."""

    max_retries: int = DEFAULT_MAX_RETRIES
    """Retry ceiling applied to new entries of this tenant."""

    retry_backoff: str = BackoffStrategy.EXPONENTIAL.value
    """'exponential' or 'linear'."""

    retry_base_delay_seconds: float = 10
    """Base delay for retry backoff."""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RateControl":
        data = data or {}
        default = cls()
        return cls(
            batch_size=int(data.get("batchSize", default.batch_size)),
            delay_between_batches_seconds=data.get(
                "delayBetweenBatchesSeconds", default.delay_between_batches_seconds
            ),
            max_retries=int(data.get("maxRetries", default.max_retries)),
            retry_backoff=data.get("retryBackoff", default.retry_backoff),
            retry_base_delay_seconds=data.get(
                "retryBaseDelaySeconds", default.retry_base_delay_seconds
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchSize": self.batch_size,
            "delayBetweenBatchesSeconds": self.delay_between_batches_seconds,
            "maxRetries": self.max_retries,
            "retryBackoff": self.retry_backoff,
            "retryBaseDelaySeconds": self.retry_base_delay_seconds,
        }


@dataclass(frozen=True)
class TelegramSettings:
    """Outbound channel credentials for one tenant."""

    bot_token: str = ""
    chat_id: str = ""
    parse_mode: str = "HTML"
    disable_notification: bool = False

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TelegramSettings":
        data = data or {}
        return cls(
            bot_token=str(data.get("botToken") or ""),
            chat_id=str(data.get("chatId") or ""),
            parse_mode=data.get("parseMode", "HTML"),
            disable_notification=bool(data.get("disableNotification", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "botToken": self.bot_token,
            "chatId": self.chat_id,
            "parseMode": self.parse_mode,
            "disableNotification": self.disable_notification,
        }


@dataclass(frozen=True)
class PriorityRules:
    """Priority cascade rules for one tenant."""

    device_overrides: Dict[str, Any] = field(default_factory=dict)
    """device id -> priority (highest precedence)."""

    device_profiles: Dict[str, Any] = field(default_factory=dict)
    """device profile name -> priority."""

    global_default: Optional[Any] = None
    """Tenant-wide default priority."""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PriorityRules":
        data = data or {}
        return cls(
            device_overrides=dict(data.get("deviceOverrides") or {}),
            device_profiles=dict(data.get("deviceProfiles") or {}),
            global_default=data.get("globalDefault"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceOverrides": dict(self.device_overrides),
            "deviceProfiles": dict(self.device_profiles),
            "globalDefault": self.global_default,
        }


@dataclass(frozen=True)
class TenantPriorityConfig:
    """
    Tenant queue configuration.

    Read from the tenant attribute `telegram_queue_config`.
    Never written by the queue.
    """

    enabled: bool = True
    priority_rules: PriorityRules = field(default_factory=PriorityRules)
    rate_control: RateControl = field(default_factory=RateControl)
    telegram: TelegramSettings = field(default_factory=TelegramSettings)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TenantPriorityConfig":
        return cls(
            enabled=bool(data.get("enabled", True)),
            priority_rules=PriorityRules.from_dict(data.get("priorityRules")),
            rate_control=RateControl.from_dict(data.get("rateControl")),
            telegram=TelegramSettings.from_dict(data.get("telegram")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "priorityRules": self.priority_rules.to_dict(),
            "rateControl": self.rate_control.to_dict(),
            "telegram": self.telegram.to_dict(),
        }


# ============================================================
# RATE LIMIT STATE
# ============================================================

@dataclass
class RateLimitState:
    """Per-tenant batch bookkeeping. Zero value means never dispatched."""

    last_dispatch_at: int = 0
    batch_count: int = 0
    updated_at: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RateLimitState":
        data = data or {}
        return cls(
            last_dispatch_at=int(data.get("lastDispatchAt") or 0),
            batch_count=int(data.get("batchCount") or 0),
            updated_at=int(data.get("updatedAt") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastDispatchAt": self.last_dispatch_at,
            "batchCount": self.batch_count,
            "updatedAt": self.updated_at,
        }


# ============================================================
# STATISTICS
# ============================================================

@dataclass
class QueueStats:
    """Aggregate queue statistics."""

    queue_depth: Dict[int, int] = field(
        default_factory=lambda: {int(p): 0 for p in ALL_PRIORITIES}
    )
    """Dequeue-eligible entries (PENDING + RETRY) per priority."""

    pending_count: int = 0
    sending_count: int = 0
    failed_count: int = 0
    retry_count: int = 0
    sent_count: int = 0

    average_dispatch_delay_seconds: float = 0
    """Mean enqueue-to-sent latency over SENT entries."""

    @property
    def total_queue_depth(self) -> int:
        return sum(self.queue_depth.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queueDepth": dict(self.queue_depth),
            "pendingCount": self.pending_count,
            "sendingCount": self.sending_count,
            "failedCount": self.failed_count,
            "retryCount": self.retry_count,
            "sentCount": self.sent_count,
            "averageDispatchDelaySeconds": self.average_dispatch_delay_seconds,
        }


class StatsAccumulator:
    """Builds QueueStats from a stream of entries. Shared by backends."""

    def __init__(self):
        self._stats = QueueStats()
        self._total_delay_ms = 0
        self._sent_with_delay = 0

    def add(self, entry: QueueEntry) -> None:
        stats = self._stats
        status = entry.status

        if status == QueueStatus.PENDING:
            stats.pending_count += 1
        elif status == QueueStatus.RETRY:
            stats.retry_count += 1
        elif status == QueueStatus.SENDING:
            stats.sending_count += 1
        elif status == QueueStatus.FAILED:
            stats.failed_count += 1
        elif status == QueueStatus.SENT:
            stats.sent_count += 1
            if entry.sent_at and entry.created_at:
                self._total_delay_ms += entry.sent_at - entry.created_at
                self._sent_with_delay += 1

        if status.is_dequeue_eligible() and entry.priority in stats.queue_depth:
            stats.queue_depth[entry.priority] += 1

    def result(self) -> QueueStats:
        if self._sent_with_delay:
            self._stats.average_dispatch_delay_seconds = round(
                self._total_delay_ms / self._sent_with_delay / 1000, 3
            )
        return self._stats


# ============================================================
# EXCEPTIONS
# ============================================================

class NotificationQueueError(Exception):
    """Base exception for the notification queue."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class QueueError(NotificationQueueError):
    """Queue operation rejected."""


class PriorityNotSetError(QueueError):
    """Entry reached enqueue without a resolved priority."""


class InvalidStatusError(QueueError):
    """Unknown queue status."""


class InvalidEntryError(QueueError):
    """Entry failed validation."""

    def __init__(self, errors: List[str], queue_id: Optional[str] = None):
        super().__init__(
            f"Invalid queue entry: {', '.join(errors)}",
            context={"queue_id": queue_id},
        )
        self.errors = errors


class StorageError(NotificationQueueError):
    """Storage backend failure."""


class EntryNotFoundError(StorageError):
    """Queue entry does not exist."""

    def __init__(self, queue_id: str):
        super().__init__(f"Entry not found: {queue_id}", context={"queue_id": queue_id})
        self.queue_id = queue_id


class ConfigurationError(NotificationQueueError):
    """Invalid service or tenant configuration."""
