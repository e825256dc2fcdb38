"""
Notification Queue - Logging Utilities.

============================================================
PURPOSE
============================================================
Logging setup and structured log helpers for queue operations.

- setup_logging(): json or text formatter on stdout
- log_* helpers: one consistent message per queue event
- Credential masking (bot tokens never appear in logs)

============================================================
SECURITY REQUIREMENTS
============================================================
1. NEVER log a raw bot token
2. Mask tokens embedded in Bot API URLs
3. Mask Authorization headers of attribute-store calls

============================================================
"""

import json
import logging
import math
import re
import sys
from typing import Dict, Optional


logger = logging.getLogger("notification_queue")


# ============================================================
# LOGGING SETUP
# ============================================================

def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
) -> logging.Logger:
    """
    Set up process-wide logging.

    Args:
        level: Log level name
        log_format: Output format (json or text)

    Returns:
        The package logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
            })
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logger


# ============================================================
# MASKING FUNCTIONS
# ============================================================

# /bot<token>/method in Bot API URLs
_BOT_URL_PATTERN = re.compile(r"/bot[^/\s]+/")

SENSITIVE_HEADERS = {"authorization", "x-authorization"}


def mask_token(token: Optional[str]) -> str:
    """
    Mask a bot token for logging.

    Keeps the first 10 characters (the bot id part) and hides the rest.
    """
    if not token or len(token) <= 10:
        return "***"
    return f"{token[:10]}:***"


def mask_url(url: str) -> str:
    """Mask the token segment of a Bot API URL."""
    if not url:
        return url
    return _BOT_URL_PATTERN.sub("/bot***/", url)


def mask_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Mask sensitive request headers."""
    if not headers:
        return {}
    return {
        key: ("***" if key.lower() in SENSITIVE_HEADERS else value)
        for key, value in headers.items()
    }


# ============================================================
# QUEUE EVENT HELPERS
# ============================================================

def log_enqueue(queue_id: str, customer_id: str, device_id: str, priority: int) -> None:
    logger.info(
        f"[enqueue] {queue_id} - Customer: {customer_id}, "
        f"Device: {device_id}, Priority: {priority}"
    )


def log_dispatch(
    queue_id: str,
    status: str,
    http_status: Optional[int],
    error_message: Optional[str] = None,
) -> None:
    """Log the outcome of one send attempt at a level matching the status."""
    if status == "SENT":
        logger.info(f"[dispatch] {queue_id} - Dispatched successfully - HTTP {http_status}")
    elif status == "RETRY":
        logger.warning(
            f"[dispatch] {queue_id} - Dispatch failed, will retry - "
            f"HTTP {http_status}: {error_message or 'Unknown error'}"
        )
    else:
        logger.error(
            f"[dispatch] {queue_id} - Dispatch failed permanently - "
            f"HTTP {http_status}: {error_message or 'Unknown error'}"
        )


def log_rate_limit(customer_id: str, wait_time_seconds: float) -> None:
    logger.warning(
        f"[rateLimit] {customer_id} - Rate limited - "
        f"Must wait {math.ceil(wait_time_seconds)}s before next batch"
    )


def log_priority_resolution(
    device_id: str,
    device_profile: str,
    priority: int,
    source: str,
) -> None:
    logger.debug(
        f"[priorityResolve] Priority {priority} for device {device_id} "
        f"({device_profile}) - Source: {source}"
    )


def log_batch_start(batch_size: int, customer_id: str) -> None:
    logger.info(f"[batch] {customer_id} - Starting batch processing - {batch_size} messages")


def log_batch_complete(sent: int, failed: int, retry: int, customer_id: str) -> None:
    logger.info(
        f"[batch] {customer_id} - Batch complete - "
        f"Sent: {sent}, Failed: {failed}, Retry: {retry}"
    )


def log_config_load(customer_id: str, found: bool, enabled: Optional[bool] = None) -> None:
    if not found:
        logger.warning(f"[config] {customer_id} - Customer configuration not found - using defaults")
    elif enabled is False:
        logger.info(f"[config] {customer_id} - Queue disabled for customer")
    else:
        logger.debug(f"[config] {customer_id} - Configuration loaded")


def log_cleanup(deleted: int, days_old: int, customer_id: Optional[str] = None) -> None:
    scope = customer_id or "all customers"
    logger.info(f"[cleanup] Deleted {deleted} entries older than {days_old} days ({scope})")


def log_storage(
    operation: str,
    count: Optional[int] = None,
    duration_ms: Optional[float] = None,
) -> None:
    message = f"[storage] Storage {operation}"
    if count is not None:
        message += f" - {count} entries"
    if duration_ms is not None:
        message += f" ({duration_ms:.0f}ms)"
    logger.debug(message)
