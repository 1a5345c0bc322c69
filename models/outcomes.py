"""
Typed outcomes returned by every caller-facing operation.

Expected business conditions (slot taken, linked transaction, bad input)
are reported here instead of being raised.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from models.slot import Slot
from utils.exceptions import BackingStoreUnavailableError


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_BOOKED = "already_booked"
    INVALID_TRANSITION = "invalid_transition"
    HAS_LINKED_TRANSACTION = "has_linked_transaction"
    VALIDATION_FAILED = "validation_failed"
    BACKING_STORE_UNAVAILABLE = "backing_store_unavailable"


class OperationError(BaseModel):
    kind: ErrorKind
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    # Action the caller may take instead (e.g. "move" when cancel is blocked)
    alternative_action: Optional[str] = None

    class Config:
        use_enum_values = True


class SweepSummary(BaseModel):
    """Result of one suspend or reactivate pass."""

    trigger_slot_id: str
    matched: int = 0
    changed: int = 0
    failed: int = 0
    changed_slot_ids: List[str] = Field(default_factory=list)
    # Slots given back by a confirmed slot that was itself suspended
    reactivated_slot_ids: List[str] = Field(default_factory=list)
    # Set when the pass could not even search for its candidates
    error: Optional[str] = None

    @property
    def partial(self) -> bool:
        return self.failed > 0 or self.error is not None


class SlotOutcome(BaseModel):
    """Outcome of a single-slot lifecycle operation."""

    success: bool
    action: Optional[str] = None
    slot: Optional[Slot] = None
    error: Optional[OperationError] = None
    suspension: Optional[SweepSummary] = None
    reactivation: Optional[SweepSummary] = None
    notification_deferred: bool = False

    @classmethod
    def ok(cls, action: str, slot: Optional[Slot] = None, **kwargs: Any) -> "SlotOutcome":
        return cls(success=True, action=action, slot=slot, **kwargs)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str, **kwargs: Any) -> "SlotOutcome":
        alternative = kwargs.pop("alternative_action", None)
        details = kwargs.pop("details", None) or {}
        return cls(
            success=False,
            error=OperationError(
                kind=kind, message=message, details=details, alternative_action=alternative
            ),
            **kwargs,
        )


class ConflictOutcome(BaseModel):
    success: bool = True
    has_conflict: bool = False
    conflicting_slot_ids: List[str] = Field(default_factory=list)
    error: Optional[OperationError] = None


class AvailabilityOutcome(BaseModel):
    success: bool = True
    slots: List[Slot] = Field(default_factory=list)
    error: Optional[OperationError] = None


class GenerationOutcome(BaseModel):
    success: bool
    created_count: int = 0
    deleted_count: int = 0
    nothing_to_generate: bool = False
    per_day: Dict[str, int] = Field(default_factory=dict)
    error: Optional[OperationError] = None


class ReapOutcome(BaseModel):
    success: bool
    practitioner_id: str
    deleted_count: int = 0
    error: Optional[OperationError] = None


def failure(kind: ErrorKind, message: str, **details: Any) -> OperationError:
    return OperationError(kind=kind, message=message, details=details)


def store_failure(error: Exception) -> OperationError:
    """Describe a backing store failure for the caller."""
    return OperationError(
        kind=ErrorKind.BACKING_STORE_UNAVAILABLE,
        message=str(error),
        details={"transient": isinstance(error, BackingStoreUnavailableError)},
    )
