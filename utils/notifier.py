"""Operator notifications over Telegram."""

from __future__ import annotations

import asyncio
import logging
from html import escape

from telegram import Bot

import config

logger = logging.getLogger(__name__)


class OperatorNotifier:
    """Sends operator alerts to a single admin chat; log-only when not configured."""

    def __init__(self, bot: Bot | None = None, chat_id: int | None = None, token: str | None = None) -> None:
        self.chat_id = int(config.ADMIN_CHAT_ID if chat_id is None else chat_id)
        token = str(config.TELEGRAM_BOT_TOKEN if token is None else token).strip()
        if bot is None and token and self.chat_id:
            bot = Bot(token=token)
        self._bot = bot if self.chat_id else None
        self._pending: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self._bot is not None

    async def notify(self, title: str, body: str = "") -> bool:
        logger.warning("OPERATOR_ALERT title=%s body=%s", title, body)
        if self._bot is None:
            return False
        text = f"<b>{escape(title)}</b>"
        if body:
            text += f"\n\n{escape(body)}"
        try:
            await self._bot.send_message(chat_id=self.chat_id, text=text, parse_mode="HTML")
            return True
        except Exception as exc:
            logger.warning("Failed to send operator alert: %s", exc)
            return False

    def notify_nowait(self, title: str, body: str = "") -> None:
        """Schedule `notify` from sync code; logs only when no loop is running."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("OPERATOR_ALERT title=%s body=%s", title, body)
            return
        task = loop.create_task(self.notify(title, body))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
