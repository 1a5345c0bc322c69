"""Message templates for slot notifications."""

from enum import Enum
from typing import Optional

from models.slot import Slot
from utils.constants import SLOT_ID_DISPLAY_LENGTH
from utils.datetime_utils import format_local


class NotificationKind(str, Enum):
    CONFIRMATION = "confirmation"
    CANCELLATION = "cancellation"
    SUSPENSION = "suspension"
    REMINDER = "reminder"


_TEMPLATES = {
    NotificationKind.CONFIRMATION: (
        "✅ Appointment confirmed\n\n"
        "Service: {service}\n"
        "When: {start} - {end}\n"
        "Reference: {reference}"
    ),
    NotificationKind.CANCELLATION: (
        "❌ Appointment cancelled\n\n"
        "Service: {service}\n"
        "When: {start} - {end}\n"
        "Reference: {reference}"
    ),
    NotificationKind.SUSPENSION: (
        "⚠️ Your appointment could not be kept\n\n"
        "The practitioner is no longer available for {service} on {start}. "
        "The slot has been cancelled and will be released if the practitioner "
        "becomes available again.\n"
        "Reference: {reference}"
    ),
    NotificationKind.REMINDER: (
        "🔔 Reminder: you have an appointment soon!\n\n"
        "Service: {service}\n"
        "When: {start} - {end}\n"
        "{meeting}"
    ),
}


def render(
    kind: NotificationKind,
    slot: Slot,
    tz_name: str,
    service_name: Optional[str] = None,
) -> str:
    """Render the message body for ``kind`` about ``slot``."""
    meeting = f"Link: {slot.meeting_link}" if slot.meeting_link else ""
    text = _TEMPLATES[NotificationKind(kind)].format(
        service=service_name or "your appointment",
        start=format_local(slot.start_time, tz_name),
        end=format_local(slot.end_time, tz_name, "%H:%M"),
        reference=(slot.id or "")[:SLOT_ID_DISPLAY_LENGTH],
        meeting=meeting,
    )
    return text.rstrip()
