"""
Telegram Bot API messaging sink.

Only ``sendMessage`` is needed: reminders are posted into the moderation chat
(optionally a forum thread) with an inline keyboard attached.
"""

import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from dispatchbot.core.config import Settings, settings

logger = logging.getLogger("dispatchbot")


class MessengerError(RuntimeError):
    """Raised when the messaging backend rejects a message."""


class Messenger(Protocol):
    def send(
        self,
        chat_id: int,
        thread_id: Optional[int],
        text: str,
        keyboard: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


class TelegramMessenger:
    def __init__(self, token: str, api_base: str = "https://api.telegram.org", timeout: float = 10.0):
        if not token:
            raise ValueError("TELEGRAM_BOT_TOKEN is not configured")
        self.url = f"{api_base.rstrip('/')}/bot{token}/sendMessage"
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings_obj: Optional[Settings] = None) -> "TelegramMessenger":
        cfg = settings_obj or settings
        return cls(cfg.TELEGRAM_BOT_TOKEN, cfg.TELEGRAM_API_BASE, cfg.TELEGRAM_TIMEOUT_SECONDS)

    def send(
        self,
        chat_id: int,
        thread_id: Optional[int],
        text: str,
        keyboard: Optional[Dict[str, Any]] = None,
    ) -> None:
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if thread_id is not None:
            payload["message_thread_id"] = thread_id
        if keyboard is not None:
            payload["reply_markup"] = keyboard

        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(self.url, json=payload)
        if response.status_code >= 300:
            # The token is part of the URL; never log it
            raise MessengerError(f"sendMessage failed: {response.status_code} {response.text}")
        logger.debug(f"[telegram] message sent chat={chat_id} thread={thread_id}")
