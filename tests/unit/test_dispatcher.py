"""
Unit tests for notification rendering and delivery.
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from models.slot import Slot
from notifications.dispatcher import NotificationDispatcher
from notifications.templates import NotificationKind, render


@pytest.fixture
def mock_bot():
    """Mock Telegram bot."""
    bot = MagicMock()
    bot.send_message = AsyncMock()
    return bot


@pytest.fixture
def slot():
    return Slot(
        id="abcdef123456",
        practitioner_id="prac-1",
        service_id="svc-a",
        client_id="client-1",
        start_time=datetime(2030, 1, 15, 10, 0, tzinfo=timezone.utc),
        end_time=datetime(2030, 1, 15, 10, 30, tzinfo=timezone.utc),
        status="confirmed",
        meeting_link="https://meet.example.com/x",
    )


def test_render_confirmation(slot):
    text = render(NotificationKind.CONFIRMATION, slot, "Europe/Paris", "Consultation")

    assert "confirmed" in text
    assert "Consultation" in text
    assert "15.01.2030 11:00" in text
    assert "abcdef12" in text


def test_render_reminder_includes_meeting_link(slot):
    text = render(NotificationKind.REMINDER, slot, "UTC")

    assert "https://meet.example.com/x" in text
    assert "your appointment" in text


@pytest.mark.asyncio
async def test_no_bot_skips_delivery(store, slot):
    dispatcher = NotificationDispatcher(store, bot=None, timeout=1)

    assert await dispatcher.notify_client(slot, NotificationKind.CONFIRMATION) is False


@pytest.mark.asyncio
async def test_notify_client_sends_to_telegram_id(store, slot, mock_bot):
    dispatcher = NotificationDispatcher(store, bot=mock_bot, timeout=1, tz_name="UTC")

    assert await dispatcher.notify_client(slot, NotificationKind.CONFIRMATION) is True

    chat_id, text = mock_bot.send_message.call_args.args
    assert chat_id == 2001
    assert "Consultation" in text


@pytest.mark.asyncio
async def test_missing_contact(store, slot, mock_bot):
    store.clients["client-1"].telegram_id = None
    dispatcher = NotificationDispatcher(store, bot=mock_bot, timeout=1)

    assert await dispatcher.notify_client(slot, NotificationKind.CANCELLATION) is False
    mock_bot.send_message.assert_not_called()


@pytest.mark.asyncio
async def test_unbooked_slot_has_no_client_to_notify(store, slot, mock_bot):
    dispatcher = NotificationDispatcher(store, bot=mock_bot, timeout=1)
    slot.client_id = None

    assert await dispatcher.notify_client(slot, NotificationKind.CANCELLATION) is False


@pytest.mark.asyncio
async def test_send_failure_is_not_raised(store, slot, mock_bot):
    mock_bot.send_message.side_effect = RuntimeError("Forbidden: bot was blocked by the user")
    dispatcher = NotificationDispatcher(store, bot=mock_bot, timeout=1)

    assert await dispatcher.notify_client(slot, NotificationKind.CONFIRMATION) is False


@pytest.mark.asyncio
async def test_send_timeout_is_not_raised(store, slot, mock_bot):
    async def hang(*args, **kwargs):
        await asyncio.sleep(10)

    mock_bot.send_message.side_effect = hang
    dispatcher = NotificationDispatcher(store, bot=mock_bot, timeout=0.01)

    assert await dispatcher.notify_client(slot, NotificationKind.CONFIRMATION) is False


@pytest.mark.asyncio
async def test_notify_parties_counts_deliveries(store, slot, mock_bot):
    dispatcher = NotificationDispatcher(store, bot=mock_bot, timeout=1)

    sent = await dispatcher.notify_parties(slot, NotificationKind.CONFIRMATION)

    assert sent == 2
    recipients = {c.args[0] for c in mock_bot.send_message.call_args_list}
    assert recipients == {2001, 1001}
