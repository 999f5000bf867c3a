"""
Telegram Bot API client.

Thin synchronous wrapper over httpx. Every call is bounded by the
configured timeout and never retried here; callers on advisory paths
(notifications, confirmations, bot replies) use the best-effort helpers,
which log and swallow TelegramError.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

import httpx

from clarity_mdt.core.config import settings
from clarity_mdt.core.structured_logging import mask_chat_id

logger = logging.getLogger(__name__)


class TelegramError(Exception):
    """Bot API call failed (transport error or ok=false response)."""

    def __init__(
        self,
        message: str,
        *,
        error_code: int | None = None,
        description: str | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.description = description

    @property
    def chat_not_found(self) -> bool:
        return self.error_code == 400 and "chat not found" in (self.description or "").lower()


class TelegramClient:
    """Bot API client bound to one bot token."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        if not token:
            raise ValueError("Telegram bot token is required")
        self._token = token
        self._base_url = (base_url or settings.TELEGRAM_API_BASE_URL).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.TELEGRAM_TIMEOUT_SECONDS
        self._transport = transport

    def _call(self, method: str, payload: dict[str, Any] | None = None, *, timeout: float | None = None) -> Any:
        url = f"{self._base_url}/bot{self._token}/{method}"
        request_timeout = self._timeout if timeout is None else timeout
        try:
            with httpx.Client(timeout=request_timeout, transport=self._transport) as client:
                response = client.post(url, json=payload or {})
        except httpx.HTTPError as exc:
            # Never include the URL: it carries the bot token
            raise TelegramError(f"Telegram {method} request failed: {type(exc).__name__}") from exc

        try:
            data = response.json()
        except ValueError:
            raise TelegramError(
                f"Telegram {method} returned non-JSON response",
                error_code=response.status_code,
            )
        if not isinstance(data, dict):
            raise TelegramError(
                f"Telegram {method} returned an unexpected response",
                error_code=response.status_code,
            )

        if response.status_code >= 400 or not data.get("ok"):
            raise TelegramError(
                f"Telegram {method} failed",
                error_code=data.get("error_code", response.status_code),
                description=data.get("description"),
            )
        return data.get("result")

    # -------------------------------------------------------------------------
    # Bot API methods
    # -------------------------------------------------------------------------

    def send_message(self, chat_id: str, text: str, parse_mode: str | None = None) -> dict:
        """Send a text message; returns the Telegram Message object."""
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        return self._call("sendMessage", payload)

    def get_updates(self, offset: int | None = None, timeout: int = 1) -> list[dict]:
        """Long-poll for updates after `offset` (exclusive of already-seen ids)."""
        payload: dict[str, Any] = {"timeout": timeout, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        # HTTP timeout must outlast the long-poll window
        return self._call("getUpdates", payload, timeout=self._timeout + timeout) or []

    def get_me(self) -> dict:
        return self._call("getMe")

    # -------------------------------------------------------------------------
    # Best-effort helpers
    # -------------------------------------------------------------------------

    def send_notification(self, chat_id: str, text: str) -> bool:
        """Send without raising; returns False when delivery failed."""
        try:
            self.send_message(chat_id, text)
            return True
        except TelegramError as exc:
            logger.warning(
                "Telegram notification to %s failed: %s (%s)",
                mask_chat_id(chat_id),
                exc,
                exc.description or "no description",
            )
            return False
        except Exception:
            logger.exception("Telegram notification to %s failed", mask_chat_id(chat_id))
            return False

    def send_bulk(self, chat_ids: Iterable[str], text: str) -> int:
        """Send the same text to many chats; returns the number delivered."""
        delivered = 0
        for chat_id in chat_ids:
            if self.send_notification(chat_id, text):
                delivered += 1
        return delivered
