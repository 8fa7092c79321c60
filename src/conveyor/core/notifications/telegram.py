"""Telegram Bot API notifier.

Sends HTML-formatted messages to the admin (actionable) and info channels.
Chat ids may carry a forum topic as ``chatId:threadId``.
"""

import html
import logging
import re
from typing import Any, Dict, Optional, Tuple

import requests

from conveyor.core.config import TelegramConfig
from conveyor.core.http import build_session
from conveyor.core.notifications.base import Notifier

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"

# Telegram rejects messages longer than this
MAX_MESSAGE_LENGTH = 4096

_TAG = re.compile(r"<[^>]*>")


def parse_chat_id(raw: str) -> Tuple[str, Optional[int]]:
    """Split ``chatId:threadId`` into its parts.

    Only a purely numeric suffix is treated as a thread id, so negative
    supergroup ids and ``@channel`` names pass through untouched.
    """
    head, sep, tail = raw.rpartition(":")
    if sep and head and tail.isdigit():
        return head, int(tail)
    return raw, None


def fit_message(text: str) -> Tuple[str, Optional[str]]:
    """Return the text to send and its parse mode.

    A message over the limit cannot be cut safely as HTML, so it is reduced
    to plain text first and then truncated.
    """
    if len(text) <= MAX_MESSAGE_LENGTH:
        return text, "HTML"
    plain = html.unescape(_TAG.sub("", text))
    if len(plain) > MAX_MESSAGE_LENGTH:
        plain = plain[: MAX_MESSAGE_LENGTH - 1] + "…"
    return plain, None


class TelegramNotifier(Notifier):
    """Notifier that posts through the Telegram ``sendMessage`` method."""

    def __init__(self, config: TelegramConfig, session: Optional[requests.Session] = None):
        self.config = config
        self._session = session or build_session(config.max_attempts, config.backoff_factor)

    def send_message(self, channel: str, text: str) -> bool:
        if not self.config.enabled:
            return True

        if not self.config.bot_token:
            logger.warning("Telegram notification skipped: missing TELEGRAM_BOT_TOKEN")
            return False

        raw_chat_id = self.config.chat_for(channel)
        if not raw_chat_id:
            logger.warning(f"Telegram notification skipped: no chat configured for '{channel}'")
            return False

        chat_id, thread_id = parse_chat_id(raw_chat_id)
        body, parse_mode = fit_message(text)
        payload: Dict[str, Any] = {
            "chat_id": chat_id,
            "text": body,
            "disable_web_page_preview": True,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode
        else:
            logger.warning(f"Telegram message for {channel} too long, sending as plain text")
        if thread_id is not None:
            payload["message_thread_id"] = thread_id

        url = f"{TELEGRAM_API_URL}/bot{self.config.bot_token}/sendMessage"
        try:
            response = self._session.post(url, json=payload, timeout=self.config.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            # Request URLs embed the bot token
            error = str(e).replace(self.config.bot_token, "***")
            logger.error(
                f"Telegram notification not sent ({channel}, chat_id: {raw_chat_id}): {error}"
            )
            return False

        logger.debug(f"Telegram notification sent to {channel}")
        return True
