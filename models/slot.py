"""Slot models for appointment time slots."""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SlotStatus(str, Enum):
    """Slot lifecycle status."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class PaymentStatus(str, Enum):
    """Slot payment status."""

    UNPAID = "unpaid"
    PAID = "paid"
    REFUNDED = "refunded"


class ActorRole(str, Enum):
    """Role of whoever requests a lifecycle operation."""

    CLIENT = "client"
    PRACTITIONER = "practitioner"
    ADMIN = "admin"

    @property
    def is_privileged(self) -> bool:
        return self is ActorRole.ADMIN


# Client-identifying payload cleared when an unpaid booking is released
CLIENT_FIELDS = (
    "client_id",
    "payment_id",
    "notes",
    "beneficiary_first_name",
    "beneficiary_last_name",
    "beneficiary_birth_date",
    "beneficiary_email",
    "beneficiary_phone",
)


class Slot(BaseModel):
    """One bookable time interval for one practitioner and one service."""

    id: Optional[str] = None
    practitioner_id: str
    service_id: str
    client_id: Optional[str] = None
    start_time: datetime
    end_time: datetime
    status: SlotStatus = SlotStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    suspended_by: Optional[str] = Field(
        default=None, description="Slot whose confirmation auto-cancelled this one"
    )
    cancellation_reason: Optional[str] = None
    payment_id: Optional[str] = None
    notes: Optional[str] = None
    beneficiary_first_name: Optional[str] = None
    beneficiary_last_name: Optional[str] = None
    beneficiary_birth_date: Optional[date] = None
    beneficiary_email: Optional[str] = None
    beneficiary_phone: Optional[str] = None
    custom_price: Optional[float] = None
    meeting_link: Optional[str] = None
    reminder_sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "practitioner_id": "uuid-here",
                "service_id": "uuid-here",
                "start_time": "2026-01-15T10:00:00+00:00",
                "end_time": "2026-01-15T11:00:00+00:00",
                "status": "pending",
                "payment_status": "unpaid",
            }
        }

    @property
    def is_booked(self) -> bool:
        return self.client_id is not None


class SlotCreate(BaseModel):
    """Slot creation model (single slot or generated batch row)."""

    practitioner_id: str
    service_id: str
    start_time: datetime
    end_time: datetime
    client_id: Optional[str] = None
    status: SlotStatus = SlotStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    notes: Optional[str] = None
    custom_price: Optional[float] = None
    meeting_link: Optional[str] = None

    class Config:
        use_enum_values = True


class BookingExtra(BaseModel):
    """Payload supplied by the client when booking a slot."""

    payment_status: PaymentStatus = PaymentStatus.UNPAID
    payment_id: Optional[str] = None
    # Payment was started but not settled yet: confirmation is sent by the
    # payment collaborator once it succeeds
    awaiting_payment: bool = False
    notes: Optional[str] = None
    beneficiary_first_name: Optional[str] = None
    beneficiary_last_name: Optional[str] = None
    beneficiary_birth_date: Optional[date] = None
    beneficiary_email: Optional[str] = None
    beneficiary_phone: Optional[str] = None
    custom_price: Optional[float] = None

    class Config:
        use_enum_values = True


class SlotPatch(BaseModel):
    """
    Partial update for an existing slot.

    Only fields explicitly set are applied (``model_dump(exclude_unset=True)``),
    so ``client_id=None`` can be sent deliberately to detach a client.
    """

    service_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: Optional[SlotStatus] = None
    payment_status: Optional[PaymentStatus] = None
    client_id: Optional[str] = None
    payment_id: Optional[str] = None
    notes: Optional[str] = None
    beneficiary_first_name: Optional[str] = None
    beneficiary_last_name: Optional[str] = None
    beneficiary_birth_date: Optional[date] = None
    beneficiary_email: Optional[str] = None
    beneficiary_phone: Optional[str] = None
    custom_price: Optional[float] = None
    meeting_link: Optional[str] = None

    class Config:
        use_enum_values = True

    @property
    def changes_schedule(self) -> bool:
        fields = self.model_fields_set
        return bool(fields & {"service_id", "start_time", "end_time"})
