"""
Notification dispatcher for slot lifecycle events.

Delivers Telegram messages through an aiogram Bot. Dispatch is
fire-and-forget from the caller's point of view: every failure (missing
contact, Telegram error, timeout) is logged and reported as ``False``,
never raised.
"""

import asyncio
from typing import Optional

from aiogram import Bot

from config import settings
from db.supabase_client import SupabaseClient
from models.slot import Slot
from notifications.templates import NotificationKind, render
from utils.exceptions import DatabaseError
from utils.logging_config import setup_logging

logger = setup_logging(name=__name__, log_file="notifications.log")


class NotificationDispatcher:
    """Sends confirmation, cancellation, suspension and reminder messages."""

    def __init__(
        self,
        db: SupabaseClient,
        bot: Optional[Bot] = None,
        timeout: Optional[float] = None,
        tz_name: Optional[str] = None,
    ):
        self.db = db
        self.bot = bot
        self.timeout = timeout if timeout is not None else settings.notification_timeout_seconds
        self.tz_name = tz_name or settings.timezone

    def set_bot(self, bot: Optional[Bot]) -> None:
        self.bot = bot

    async def _service_name(self, slot: Slot) -> Optional[str]:
        try:
            service = await self.db.get_service_by_id(slot.service_id)
        except DatabaseError as e:
            logger.warning(f"Could not load service {slot.service_id} for notification: {e}")
            return None
        return service.name if service else None

    async def dispatch(
        self, recipient_contact: Optional[int], kind: NotificationKind, slot: Slot
    ) -> bool:
        """
        Send one notification.

        Args:
            recipient_contact: Telegram chat ID of the recipient
            kind: Template to use
            slot: Snapshot of the slot the message is about

        Returns:
            True if the message was handed to Telegram, False otherwise
        """
        if not self.bot:
            logger.debug(f"Notifications disabled, skipping {kind} for slot {slot.id}")
            return False

        if not recipient_contact:
            logger.info(f"No contact for {kind} notification on slot {slot.id}")
            return False

        try:
            text = render(kind, slot, self.tz_name, await self._service_name(slot))
            await asyncio.wait_for(
                self.bot.send_message(recipient_contact, text), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Timed out sending {kind} notification for slot {slot.id} to {recipient_contact}"
            )
            return False
        except Exception as e:
            logger.error(
                f"Failed to send {kind} notification for slot {slot.id}: {e}", exc_info=True
            )
            return False

        logger.info(f"Sent {kind} notification for slot {slot.id} to {recipient_contact}")
        return True

    async def notify_client(self, slot: Slot, kind: NotificationKind) -> bool:
        if not slot.client_id:
            return False
        try:
            client = await self.db.get_client_by_id(slot.client_id)
        except DatabaseError as e:
            logger.warning(f"Could not load client {slot.client_id} for notification: {e}")
            return False
        return await self.dispatch(client.telegram_id if client else None, kind, slot)

    async def notify_practitioner(self, slot: Slot, kind: NotificationKind) -> bool:
        try:
            practitioner = await self.db.get_practitioner_by_id(slot.practitioner_id)
        except DatabaseError as e:
            logger.warning(
                f"Could not load practitioner {slot.practitioner_id} for notification: {e}"
            )
            return False
        return await self.dispatch(
            practitioner.telegram_id if practitioner else None, kind, slot
        )

    async def notify_parties(self, slot: Slot, kind: NotificationKind) -> int:
        """Notify both client and practitioner. Returns how many messages went out."""
        sent = await asyncio.gather(
            self.notify_client(slot, kind),
            self.notify_practitioner(slot, kind),
        )
        return sum(1 for ok in sent if ok)


_dispatcher: Optional[NotificationDispatcher] = None


def get_dispatcher() -> NotificationDispatcher:
    """Get or create the shared dispatcher (without a bot until set_bot_instance)."""
    global _dispatcher
    if _dispatcher is None:
        from db import get_db_client

        _dispatcher = NotificationDispatcher(get_db_client())
    return _dispatcher


def set_bot_instance(bot: Optional[Bot]) -> None:
    """Set the bot instance used for all notifications.

    Args:
        bot: Aiogram Bot instance, or None to disable delivery
    """
    get_dispatcher().set_bot(bot)
    logger.info("Bot instance set for notifications" if bot else "Notifications disabled")
