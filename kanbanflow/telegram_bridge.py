"""
Telegram notification for card moves: post a short summary to configured chats.

Registered on the EventNotifier as a sink, so deliver() runs on its own
thread and may block on the network. Every delivery of one notifier runs
on the same event loop, so an injected bot keeps a usable HTTP client.
"""
import asyncio
import logging
import os
import threading
from typing import Optional, List

from telegram import Bot
from telegram.helpers import escape_markdown

from .events import CardMovedEvent

logger = logging.getLogger(__name__)


def _md(value) -> str:
    return escape_markdown(str(value), version=1)


def format_move_summary(event: CardMovedEvent, from_label: str = None, to_label: str = None) -> str:
    """Format a card move as a Markdown message for Telegram.

    Free text (actor name, column labels, entity type) is escaped so a
    stray "_" or "*" cannot break parsing and drop the message.
    """
    actor = (event.actor.name or event.actor.id) if event.actor else "unknown"
    from_text = _md(from_label or event.from_column_id)
    to_text = _md(to_label or event.to_column_id)
    entity_id = str(event.entity_id).replace("`", "'")
    lines = [
        "🔀 *Card moved*",
        f"Card: `{event.card_id}` ({_md(event.entity_type)} `{entity_id}`)",
        f"Pipeline: `{event.pipeline_id}`",
        f"From: {from_text} → To: {to_text}",
        f"By: {_md(actor)}",
        f"Time: {event.timestamp.strftime('%Y-%m-%d %H:%M:%S')} UTC",
    ]
    return "\n".join(lines)


class TelegramMoveNotifier:
    """Send card-moved summaries to a list of Telegram chats."""

    def __init__(
        self,
        chat_ids: List[int],
        token: Optional[str] = None,
        bot: Optional[Bot] = None,
        column_labels: Optional[dict] = None,
    ):
        """
        Either pass a ready bot (tests, shared Application.bot) or a token;
        with a token a fresh Bot is opened per delivery.
        """
        if bot is None and not token:
            raise ValueError("TelegramMoveNotifier needs a bot or a token")
        self.chat_ids = list(chat_ids)
        self.token = token
        self.bot = bot
        self.column_labels = column_labels or {}
        self._loop = asyncio.new_event_loop()
        self._loop_lock = threading.Lock()

    @classmethod
    def from_env(cls, token_env: str, chat_ids: List[int]) -> Optional["TelegramMoveNotifier"]:
        """Build from a token stored in an environment variable; None if unset."""
        token = os.environ.get(token_env, "")
        if not token:
            logger.warning(f"{token_env} not set; Telegram move notifications disabled")
            return None
        return cls(chat_ids=chat_ids, token=token)

    def deliver(self, event: CardMovedEvent) -> int:
        """Blocking send to every chat. Returns the number of chats reached."""
        if not self.chat_ids:
            return 0
        msg = format_move_summary(
            event,
            from_label=self.column_labels.get(event.from_column_id),
            to_label=self.column_labels.get(event.to_column_id),
        )
        # Sink threads take turns on the notifier's single loop
        with self._loop_lock:
            if self._loop.is_closed():
                logger.warning("Telegram notifier closed; move notification dropped")
                return 0
            return self._loop.run_until_complete(self._send(msg))

    def close(self) -> None:
        """Close the event loop. Later deliveries are dropped."""
        with self._loop_lock:
            if not self._loop.is_closed():
                self._loop.close()

    async def _send(self, msg: str) -> int:
        if self.bot is not None:
            return await self._send_all(self.bot, msg)
        async with Bot(self.token) as bot:
            return await self._send_all(bot, msg)

    async def _send_all(self, bot, msg: str) -> int:
        sent = 0
        for chat_id in self.chat_ids:
            try:
                await bot.send_message(chat_id, msg, parse_mode="Markdown")
                sent += 1
            except Exception as e:
                logger.error(f"Failed to send move notification to {chat_id}: {e}")
        return sent
