"""
Notification Queue - Telegram Client.

============================================================
PURPOSE
============================================================
Send one message through the Telegram Bot API and classify
the outcome.

- Success: decoded `{ok: true, result: {...}}` envelope
- Failure: TelegramApiError carrying a classified OutboundError
  (429 / 5xx / network / timeout retryable, other 4xx permanent)

Every call is bounded by a client timeout. Bot tokens are
masked in all log lines.

============================================================
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from notification_queue.errors import (
    TelegramApiError,
    TelegramConfigError,
    create_network_error,
    create_timeout_error,
    map_telegram_error,
)
from notification_queue.logging_utils import mask_token
from notification_queue.types import TelegramSettings


logger = logging.getLogger(__name__)


TELEGRAM_API_BASE = "https://api.telegram.org"
MAX_MESSAGE_LENGTH = 4096
TRUNCATION_SUFFIX = "\n\n[Message truncated]"
TEST_MESSAGE = "✅ Test message from Telegram Queue - Configuration valid!"


@dataclass
class ConfigValidation:
    """Result of validate_config."""

    valid: bool
    error: Optional[str] = None
    bot_info: Optional[Dict[str, Any]] = None


class TelegramClient:
    """
    Telegram Bot API client.

    Credentials are passed per call, so one client serves every
    tenant.
    """

    def __init__(
        self,
        api_base: str = TELEGRAM_API_BASE,
        timeout_seconds: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
        max_message_length: int = MAX_MESSAGE_LENGTH,
    ):
        self._api_base = api_base.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None
        self._max_message_length = max_message_length

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the client."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "TelegramClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # --------------------------------------------------------
    # API CALLS
    # --------------------------------------------------------

    async def send_message(self, settings: TelegramSettings, text: str) -> Dict[str, Any]:
        """
        Send a message.

        Args:
            settings: Tenant bot token, chat id and formatting options
            text: Message text (truncated to the API limit)

        Returns:
            Decoded success envelope

        Raises:
            TelegramConfigError: missing token, chat id or text
            TelegramApiError: API, network or timeout failure
        """
        if not settings.bot_token or not settings.chat_id:
            raise TelegramConfigError("botToken and chatId are required")
        if not text or not isinstance(text, str):
            raise TelegramConfigError("Message text is required and must be a string")

        text = truncate_message(text, self._max_message_length)
        body = {
            "chat_id": settings.chat_id,
            "text": text,
            "parse_mode": settings.parse_mode,
            "disable_notification": settings.disable_notification,
        }

        logger.debug(
            f"Sending message to Telegram - Bot: {mask_token(settings.bot_token)}, "
            f"Chat: {settings.chat_id}, Length: {len(text)} chars"
        )

        try:
            data = await self._call(settings.bot_token, "sendMessage", body)
        except TelegramApiError as e:
            if e.status_code == 429:
                logger.warning("Telegram API rate limit (429) - Should retry with backoff")
            elif e.status_code == 400:
                logger.error("Telegram API bad request (400) - Check bot token and chat ID")
            raise

        logger.debug(f"Telegram sendMessage OK - Chat: {settings.chat_id}")
        return data

    async def get_me(self, bot_token: str) -> Dict[str, Any]:
        """Bot identity (getMe)."""
        if not bot_token:
            raise TelegramConfigError("botToken is required")
        data = await self._call(bot_token, "getMe", None)
        return data.get("result") or {}

    async def validate_config(
        self,
        settings: TelegramSettings,
        send_test_message: bool = False,
    ) -> ConfigValidation:
        """
        Check credentials with getMe, optionally sending a test message.

        Never raises.
        """
        if not settings.bot_token:
            return ConfigValidation(False, "Bot token is required and must be a string")
        if not settings.chat_id:
            return ConfigValidation(False, "Chat ID is required and must be a string")

        try:
            bot_info = await self.get_me(settings.bot_token)
        except TelegramApiError as e:
            return ConfigValidation(False, f"Invalid bot token: {e.description}")

        if send_test_message:
            try:
                await self.send_message(settings, TEST_MESSAGE)
            except TelegramApiError as e:
                return ConfigValidation(
                    False, f"Failed to send test message: {e.description}", bot_info
                )

        return ConfigValidation(True, bot_info=bot_info)

    async def _call(
        self,
        bot_token: str,
        method: str,
        body: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        session = await self._get_session()
        url = f"{self._api_base}/bot{bot_token}/{method}"

        try:
            async with session.post(url, json=body, timeout=self._timeout) as response:
                raw = await response.text()
                status = response.status
        except asyncio.TimeoutError:
            error = create_timeout_error(self._timeout_seconds)
            logger.warning(f"Telegram {method} timed out after {self._timeout_seconds}s")
            raise TelegramApiError(error)
        except aiohttp.ClientError as e:
            logger.warning(f"Network error calling Telegram {method}: {type(e).__name__}")
            raise TelegramApiError(create_network_error(str(e) or type(e).__name__))

        try:
            data = json.loads(raw) if raw else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if status >= 300 or not data.get("ok"):
            if "error_code" not in data and status < 300:
                data = dict(data, error_code=502, description=data.get("description") or "Malformed response")
            error = map_telegram_error(status, data)
            logger.warning(f"Telegram {method} failed: {error}")
            raise TelegramApiError(error)

        return data


# ============================================================
# HELPERS
# ============================================================

def format_telegram_error(error: Optional[BaseException]) -> str:
    """Human-readable description of a send failure."""
    if error is None:
        return "Unknown error"

    if isinstance(error, TelegramApiError):
        if error.status_code == 0:
            return error.description

        message = f"Telegram API error {error.status_code}"
        if error.description:
            message += f": {error.description}"

        hints = {
            429: " (Rate limit - retry with backoff)",
            400: " (Invalid bot token or chat ID)",
            401: " (Unauthorized - check bot token)",
            404: " (Chat not found - check chat ID)",
        }
        return message + hints.get(error.status_code, "")

    return str(error) or "Unknown error"


def build_chat_link(chat_id: Optional[str]) -> Optional[str]:
    """t.me link for a chat id (supergroup -100 prefix stripped)."""
    if not chat_id or not isinstance(chat_id, str):
        return None
    if not chat_id.startswith("-"):
        return f"https://t.me/{chat_id}"
    if chat_id.startswith("-100"):
        return f"https://t.me/c/{chat_id[4:]}"
    return f"https://t.me/c/{chat_id[1:]}"


def escape_html(text: Optional[str]) -> str:
    """Escape &, < and > for parse_mode=HTML."""
    if not text or not isinstance(text, str):
        return ""
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def truncate_message(text: Optional[str], max_length: int = MAX_MESSAGE_LENGTH) -> str:
    if not text or not isinstance(text, str):
        return ""
    if len(text) <= max_length:
        return text
    return text[:max_length - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX
