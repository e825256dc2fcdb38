"""
Queue Storage - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for the SQL queue backend.

TABLES:
- notification_queue_entries: Queue entries
- notification_queue_rate_limits: Per-tenant batch bookkeeping

Timestamps are stored as epoch milliseconds (BIGINT) so the
SQL backend holds exactly the values the other backends hold.

============================================================
"""

from typing import Any, Dict, Optional

from sqlalchemy import JSON, BigInteger, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from notification_queue.types import QueueEntry, QueueStatus, RateLimitState


# ============================================================
# BASE
# ============================================================

class Base(DeclarativeBase):
    """Declarative base for notification queue models."""


# ============================================================
# QUEUE ENTRY MODEL
# ============================================================

class QueueEntryModel(Base):
    """
    Persisted queue entry.
    """

    __tablename__ = "notification_queue_entries"

    queue_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Identity
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    device_id: Mapped[str] = mapped_column(String(128), nullable=False)
    device_profile: Mapped[str] = mapped_column(String(128), nullable=False)

    # Ordering
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)

    # Retry bookkeeping
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    next_attempt_at: Mapped[Optional[int]] = mapped_column(BigInteger)

    # Attempt results
    last_attempt_at: Mapped[Optional[int]] = mapped_column(BigInteger)
    sent_at: Mapped[Optional[int]] = mapped_column(BigInteger)
    http_status: Mapped[Optional[int]] = mapped_column(Integer)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    response_body: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("ix_nq_entries_status_priority_created", "status", "priority", "created_at"),
        Index("ix_nq_entries_customer_created", "customer_id", "created_at"),
    )

    @classmethod
    def from_entry(cls, entry: QueueEntry) -> "QueueEntryModel":
        return cls(
            queue_id=entry.queue_id,
            customer_id=entry.customer_id,
            device_id=entry.device_id,
            device_profile=entry.device_profile,
            priority=entry.priority,
            status=entry.status.value,
            created_at=entry.created_at,
            payload=dict(entry.payload),
            retry_count=entry.retry_count,
            max_retries=entry.max_retries,
            next_attempt_at=entry.next_attempt_at,
            last_attempt_at=entry.last_attempt_at,
            sent_at=entry.sent_at,
            http_status=entry.http_status,
            error_message=entry.error_message,
            response_body=entry.response_body,
        )

    def to_entry(self) -> QueueEntry:
        return QueueEntry(
            queue_id=self.queue_id,
            customer_id=self.customer_id,
            device_id=self.device_id,
            device_profile=self.device_profile,
            priority=self.priority,
            status=QueueStatus.parse(self.status),
            created_at=self.created_at,
            payload=dict(self.payload or {}),
            retry_count=self.retry_count,
            max_retries=self.max_retries,
            next_attempt_at=self.next_attempt_at,
            last_attempt_at=self.last_attempt_at,
            sent_at=self.sent_at,
            http_status=self.http_status,
            error_message=self.error_message,
            response_body=self.response_body,
        )


# ============================================================
# RATE LIMIT MODEL
# ============================================================

class RateLimitStateModel(Base):
    """Per-tenant rate-limit state."""

    __tablename__ = "notification_queue_rate_limits"

    customer_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_dispatch_at: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    batch_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    def to_state(self) -> RateLimitState:
        return RateLimitState(
            last_dispatch_at=self.last_dispatch_at or 0,
            batch_count=self.batch_count or 0,
            updated_at=self.updated_at or 0,
        )
