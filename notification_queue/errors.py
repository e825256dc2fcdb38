"""
Notification Queue - Outbound Error Taxonomy.

============================================================
PURPOSE
============================================================
Classify outbound channel failures and record the failure
policy of each component.

ERROR CATEGORIES:
1. RATE_LIMIT      - HTTP 429 (honour retry_after)
2. SERVER_ERROR    - HTTP 5xx
3. NETWORK         - Connection failures
4. TIMEOUT         - Request exceeded the send timeout
5. AUTHENTICATION  - HTTP 401/403
6. BAD_REQUEST     - Other 4xx (bad chat id, bad markup)
7. CONFIGURATION   - Missing credentials or empty text
8. UNKNOWN         - Unclassified

RETRYABLE: RATE_LIMIT, SERVER_ERROR, NETWORK, TIMEOUT
PERMANENT: everything else

============================================================
FAILURE POLICY
============================================================
  normalize                      absorb, default "unknown"
  resolve_priority               degrade to MEDIUM (3)
  fetch_tenant_config            degrade to None (not cached)
  can_send_batch / get_wait_time fail open (True / 0)
  record_batch_dispatch          log and swallow
  queue core storage calls       propagate
  outbound send                  classify retryable / permanent

Dispatch availability wins over perfect prioritisation and
rate limiting; queue writes are never silently lost.

============================================================
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple


logger = logging.getLogger(__name__)


# ============================================================
# ERROR TAXONOMY
# ============================================================

class ErrorCategory(Enum):
    """Outbound error categories."""

    RATE_LIMIT = "RATE_LIMIT"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    AUTHENTICATION = "AUTHENTICATION"
    BAD_REQUEST = "BAD_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    CONFIGURATION = "CONFIGURATION"
    UNKNOWN = "UNKNOWN"


class RetryEligibility(Enum):
    """Whether an error is eligible for retry."""

    RETRY = "RETRY"          # Transient, retry with normal backoff
    BACKOFF = "BACKOFF"      # Retry, honour server-suggested delay
    NO_RETRY = "NO_RETRY"    # Permanent


# HTTP status -> (category, eligibility)
HTTP_STATUS_MAP: Dict[int, Tuple[ErrorCategory, RetryEligibility]] = {
    400: (ErrorCategory.BAD_REQUEST, RetryEligibility.NO_RETRY),
    401: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    403: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    404: (ErrorCategory.NOT_FOUND, RetryEligibility.NO_RETRY),
    429: (ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF),
}


# ============================================================
# OUTBOUND ERROR
# ============================================================

@dataclass
class OutboundError:
    """
    Classified outbound failure.

    Carries an HTTP-like status code (0 when no response was
    received) and the channel's description.
    """

    category: ErrorCategory
    retry_eligible: RetryEligibility
    http_status: int
    description: str

    retry_after_seconds: Optional[int] = None
    """Server-suggested delay (429 only)."""

    response: Optional[Dict[str, Any]] = None
    """Decoded error envelope, when one was received."""

    def is_retryable(self) -> bool:
        return self.retry_eligible in (RetryEligibility.RETRY, RetryEligibility.BACKOFF)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "retry_eligible": self.retry_eligible.value,
            "http_status": self.http_status,
            "description": self.description,
            "retry_after_seconds": self.retry_after_seconds,
        }

    def __str__(self) -> str:
        return f"[{self.category.value}] HTTP {self.http_status}: {self.description}"


class TelegramApiError(Exception):
    """Exception wrapper for OutboundError."""

    def __init__(self, error: OutboundError):
        self.error = error
        super().__init__(f"Telegram API error: {error.description}")

    @property
    def status_code(self) -> int:
        return self.error.http_status

    @property
    def description(self) -> str:
        return self.error.description

    @property
    def retry_after(self) -> Optional[int]:
        return self.error.retry_after_seconds

    @property
    def response(self) -> Optional[Dict[str, Any]]:
        return self.error.response


class TelegramConfigError(TelegramApiError):
    """Missing bot token, chat id or message text. Never retried."""

    def __init__(self, description: str):
        super().__init__(OutboundError(
            category=ErrorCategory.CONFIGURATION,
            retry_eligible=RetryEligibility.NO_RETRY,
            http_status=0,
            description=description,
        ))


# ============================================================
# CLASSIFICATION
# ============================================================

def classify_http_status(http_status: int) -> Tuple[ErrorCategory, RetryEligibility]:
    """
    Classify an HTTP status code.

    429 and 5xx are retryable; any other 4xx is permanent.
    """
    if http_status in HTTP_STATUS_MAP:
        return HTTP_STATUS_MAP[http_status]
    if 500 <= http_status < 600:
        return ErrorCategory.SERVER_ERROR, RetryEligibility.RETRY
    if 400 <= http_status < 500:
        return ErrorCategory.BAD_REQUEST, RetryEligibility.NO_RETRY
    return ErrorCategory.UNKNOWN, RetryEligibility.NO_RETRY


def map_telegram_error(
    http_status: int,
    body: Optional[Dict[str, Any]] = None,
) -> OutboundError:
    """
    Map a Telegram error envelope to an OutboundError.

    Args:
        http_status: HTTP status of the response
        body: Decoded `{ok: false, error_code, description, parameters}`

    Returns:
        Classified OutboundError
    """
    body = body or {}
    code = body.get("error_code") or http_status
    try:
        code = int(code)
    except (TypeError, ValueError):
        code = http_status

    category, retry = classify_http_status(code)
    description = body.get("description") or "Unknown error"

    retry_after = None
    parameters = body.get("parameters") or {}
    raw_retry_after = parameters.get("retry_after")
    if isinstance(raw_retry_after, (int, float)) and raw_retry_after > 0:
        retry_after = int(raw_retry_after)

    return OutboundError(
        category=category,
        retry_eligible=retry,
        http_status=code,
        description=description,
        retry_after_seconds=retry_after,
        response=body or None,
    )


def create_network_error(message: str) -> OutboundError:
    """Create a network error (no response received)."""
    return OutboundError(
        category=ErrorCategory.NETWORK,
        retry_eligible=RetryEligibility.RETRY,
        http_status=0,
        description=f"Network error: {message}",
    )


def create_timeout_error(timeout_seconds: float) -> OutboundError:
    """Create a timeout error."""
    return OutboundError(
        category=ErrorCategory.TIMEOUT,
        retry_eligible=RetryEligibility.RETRY,
        http_status=0,
        description=f"Request timed out after {timeout_seconds}s",
    )


def is_retryable_error(error: Optional[BaseException]) -> bool:
    """
    Check whether a send failure should be retried.

    Unclassified exceptions are treated as permanent.
    """
    if isinstance(error, TelegramApiError):
        return error.error.is_retryable()
    return False


def get_retry_after(error: Optional[BaseException]) -> int:
    """Server-suggested retry delay in seconds, or 0."""
    if isinstance(error, TelegramApiError) and error.retry_after:
        return error.retry_after
    return 0
