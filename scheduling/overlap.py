"""
Conflict detection for practitioner calendars.

Intervals are half-open: ``[start, end)``. Two slots that merely touch
(one ends when the other starts) do not overlap.
"""

import logging
from datetime import datetime
from typing import List, NamedTuple, Optional, Protocol

from db.supabase_client import SupabaseClient
from models.outcomes import ConflictOutcome, ErrorKind, failure, store_failure
from models.slot import Slot, SlotStatus
from utils.datetime_utils import ensure_aware
from utils.exceptions import DatabaseError

logger = logging.getLogger(__name__)

# Statuses that still claim their time range (completed slots release it)
ACTIVE_STATUSES = (SlotStatus.PENDING, SlotStatus.CONFIRMED)


class TimedInterval(Protocol):
    start_time: datetime
    end_time: datetime


class Interval(NamedTuple):
    start_time: datetime
    end_time: datetime


def overlaps(a: TimedInterval, b: TimedInterval) -> bool:
    """True if the half-open intervals ``a`` and ``b`` share any instant."""
    return a.start_time < b.end_time and b.start_time < a.end_time


class ConflictDetector:
    """Answers whether a candidate interval collides with stored slots."""

    def __init__(self, db: SupabaseClient):
        self.db = db

    async def find_conflicts(
        self,
        practitioner_id: str,
        service_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> List[Slot]:
        """
        Pending or confirmed slots of the same (practitioner, service) overlapping ``[start, end)``.

        Raises:
            DatabaseError: If the store query fails
        """
        candidate = Interval(ensure_aware(start), ensure_aware(end))
        slots = await self.db.find_overlapping_slots(
            practitioner_id,
            candidate.start_time,
            candidate.end_time,
            service_id=service_id,
            exclude_id=exclude_id,
            statuses=ACTIVE_STATUSES,
        )
        # The store filter is a range prefilter; the overlap rule is applied here
        return [
            slot
            for slot in slots
            if slot.id != exclude_id
            and slot.service_id == service_id
            and slot.status in ACTIVE_STATUSES
            and overlaps(slot, candidate)
        ]

    async def has_conflict(
        self,
        practitioner_id: str,
        service_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> bool:
        conflicts = await self.find_conflicts(
            practitioner_id, service_id, start, end, exclude_id
        )
        return bool(conflicts)

    async def check_conflict(
        self,
        practitioner_id: str,
        service_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> ConflictOutcome:
        """Caller-facing variant of has_conflict returning a typed outcome."""
        if ensure_aware(start) >= ensure_aware(end):
            return ConflictOutcome(
                success=False,
                error=failure(
                    ErrorKind.VALIDATION_FAILED, "Interval start must be before its end"
                ),
            )

        try:
            conflicts = await self.find_conflicts(
                practitioner_id, service_id, start, end, exclude_id
            )
        except DatabaseError as e:
            logger.error(f"Store error while checking conflicts: {e}")
            return ConflictOutcome(success=False, error=store_failure(e))

        return ConflictOutcome(
            has_conflict=bool(conflicts),
            conflicting_slot_ids=[slot.id for slot in conflicts if slot.id],
        )
