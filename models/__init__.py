"""Pydantic models for data validation and serialization."""

from .client import Client, Practitioner
from .outcomes import (
    AvailabilityOutcome,
    ConflictOutcome,
    ErrorKind,
    GenerationOutcome,
    OperationError,
    ReapOutcome,
    SlotOutcome,
    SweepSummary,
)
from .schedule import (
    AvailabilityWindow,
    DateRange,
    DayAvailability,
    GenerationMode,
    Weekday,
    WeeklyTemplate,
)
from .service import Service
from .slot import (
    ActorRole,
    BookingExtra,
    PaymentStatus,
    Slot,
    SlotCreate,
    SlotPatch,
    SlotStatus,
)

__all__ = [
    "ActorRole",
    "AvailabilityOutcome",
    "AvailabilityWindow",
    "BookingExtra",
    "Client",
    "ConflictOutcome",
    "DateRange",
    "DayAvailability",
    "ErrorKind",
    "GenerationMode",
    "GenerationOutcome",
    "OperationError",
    "PaymentStatus",
    "Practitioner",
    "ReapOutcome",
    "Service",
    "Slot",
    "SlotCreate",
    "SlotOutcome",
    "SlotPatch",
    "SlotStatus",
    "SweepSummary",
    "Weekday",
    "WeeklyTemplate",
]
