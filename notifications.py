"""
Notification port for parties and administrators.

The escrow core reports hand-offs it cannot finish on its own (manual
review cases, admin tickets, escalation alerts) and keeps both parties
informed about deadlines. ``TelegramNotifier`` delivers through a
Telegram bot; ``LoggingNotifier`` only writes to the log.
"""

import html
import logging
from abc import ABC, abstractmethod
from typing import Optional

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

logger = logging.getLogger(__name__)


class Notifier(ABC):

    @abstractmethod
    async def notify_user(self, user_id: str, subject: str, message: str) -> None:
        ...

    @abstractmethod
    async def notify_admins(self, subject: str, message: str,
                            transaction_id: Optional[str] = None) -> None:
        ...

    @abstractmethod
    async def open_manual_review(self, transaction_id: str, reason: str) -> str:
        """Open a manual-review case; returns its reference."""

    @abstractmethod
    async def open_admin_ticket(self, transaction_id: str, reason: str) -> str:
        """Open a formal admin ticket; returns its reference."""


class LoggingNotifier(Notifier):
    """Writes every notification to the log."""

    async def notify_user(self, user_id: str, subject: str, message: str) -> None:
        logger.info(f"[notify user {user_id}] {subject}: {message}")

    async def notify_admins(self, subject: str, message: str,
                            transaction_id: Optional[str] = None) -> None:
        logger.warning(f"[notify admins] {subject} ({transaction_id}): {message}")

    async def open_manual_review(self, transaction_id: str, reason: str) -> str:
        reference = f"REVIEW-{transaction_id}"
        logger.warning(f"Manual review opened {reference}: {reason}")
        return reference

    async def open_admin_ticket(self, transaction_id: str, reason: str) -> str:
        reference = f"TICKET-{transaction_id}"
        logger.warning(f"Admin ticket opened {reference}: {reason}")
        return reference


class TelegramNotifier(Notifier):
    """
    Sends notifications as Telegram messages.

    Admin traffic goes to ``admin_chat_id``; user ids are Telegram chat ids.
    Delivery failures are logged and never interrupt escrow processing.
    """

    def __init__(self, bot: Bot, admin_chat_id: str):
        self.bot = bot
        self.admin_chat_id = admin_chat_id

    async def _send(self, chat_id: str, text: str) -> bool:
        try:
            await self.bot.send_message(chat_id=chat_id, text=text, parse_mode=ParseMode.HTML)
            return True
        except TelegramError as e:
            logger.error(f"Failed to send Telegram message to {chat_id}: {e}")
            return False

    async def notify_user(self, user_id: str, subject: str, message: str) -> None:
        await self._send(
            user_id,
            f"📚 <b>{html.escape(subject)}</b>\n\n{html.escape(message)}"
        )

    async def notify_admins(self, subject: str, message: str,
                            transaction_id: Optional[str] = None) -> None:
        text = f"⚠️ <b>{html.escape(subject)}</b>\n\n"
        if transaction_id:
            text += f"<b>Transaction ID:</b> <code>{html.escape(transaction_id)}</code>\n"
        text += html.escape(message)
        await self._send(self.admin_chat_id, text)

    async def open_manual_review(self, transaction_id: str, reason: str) -> str:
        reference = f"REVIEW-{transaction_id}"
        await self._send(
            self.admin_chat_id,
            "🔍 <b>Manual Review Required</b>\n\n"
            f"<b>Case:</b> <code>{html.escape(reference)}</code>\n"
            f"<b>Reason:</b> {html.escape(reason)}\n\n"
            "Please review this transaction."
        )
        return reference

    async def open_admin_ticket(self, transaction_id: str, reason: str) -> str:
        reference = f"TICKET-{transaction_id}"
        await self._send(
            self.admin_chat_id,
            "🚨 <b>Admin Ticket Opened</b>\n\n"
            f"<b>Ticket:</b> <code>{html.escape(reference)}</code>\n"
            f"<b>Reason:</b> {html.escape(reason)}\n\n"
            "This transaction has been unresolved past the admin escalation window."
        )
        return reference
