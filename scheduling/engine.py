"""
Caller-facing slot engine.

Wires the store, conflict detector, suspension coordinator, ledger,
dispatcher, generator and reaper together and exposes the operations the
HTTP transport and scheduled jobs call. Every method returns a typed
outcome.
"""

import logging
from datetime import datetime
from typing import List, Optional

from db.supabase_client import SupabaseClient
from models.outcomes import (
    AvailabilityOutcome,
    ConflictOutcome,
    ErrorKind,
    GenerationOutcome,
    ReapOutcome,
    SlotOutcome,
    failure,
    store_failure,
)
from models.schedule import DateRange, GenerationMode, WeeklyTemplate
from models.slot import ActorRole, BookingExtra, SlotCreate, SlotPatch
from notifications.dispatcher import NotificationDispatcher
from payments.ledger import PaymentLedger
from scheduling.generator import SlotGenerator
from scheduling.lifecycle import BookingService
from scheduling.overlap import ConflictDetector
from scheduling.reaper import SlotReaper
from scheduling.suspension import SuspensionCoordinator
from utils.datetime_utils import ensure_aware
from utils.exceptions import DatabaseError

logger = logging.getLogger(__name__)


class SlotEngine:
    def __init__(
        self,
        db: SupabaseClient,
        dispatcher: Optional[NotificationDispatcher] = None,
        batch_size: Optional[int] = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.detector = ConflictDetector(db)
        self.coordinator = SuspensionCoordinator(db, dispatcher)
        self.ledger = PaymentLedger(db)
        self.lifecycle = BookingService(
            db,
            detector=self.detector,
            coordinator=self.coordinator,
            ledger=self.ledger,
            dispatcher=dispatcher,
        )
        self.generator = SlotGenerator(db, batch_size=batch_size)
        self.reaper = SlotReaper(db)

    # ========== Generation ==========

    async def generate_slots(
        self,
        template: WeeklyTemplate,
        date_range: DateRange,
        mode: GenerationMode = GenerationMode.APPEND,
    ) -> GenerationOutcome:
        return await self.generator.generate(template, date_range, mode)

    def preview_slots(self, template: WeeklyTemplate, date_range: DateRange) -> GenerationOutcome:
        return self.generator.preview(template, date_range)

    # ========== Queries ==========

    async def check_conflict(
        self,
        practitioner_id: str,
        service_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> ConflictOutcome:
        return await self.detector.check_conflict(
            practitioner_id, service_id, start, end, exclude_id
        )

    async def available_slots(
        self,
        service_id: str,
        start: datetime,
        end: datetime,
        practitioner_id: Optional[str] = None,
    ) -> AvailabilityOutcome:
        """Unbooked, non-cancelled slots of a service starting within ``[start, end]``, by start."""
        start = ensure_aware(start)
        end = ensure_aware(end)
        if start > end:
            return AvailabilityOutcome(
                success=False,
                error=failure(ErrorKind.VALIDATION_FAILED, "Range start must not be after its end"),
            )

        try:
            slots = await self.db.get_available_slots(service_id, start, end, practitioner_id)
        except DatabaseError as e:
            logger.error(f"Could not list available slots for service {service_id}: {e}")
            return AvailabilityOutcome(success=False, error=store_failure(e))

        return AvailabilityOutcome(slots=slots)

    # ========== Lifecycle ==========

    async def create_slot(
        self, data: SlotCreate, actor_role: ActorRole = ActorRole.PRACTITIONER
    ) -> SlotOutcome:
        return await self.lifecycle.create_slot(data, actor_role)

    async def book(
        self, slot_id: str, client_id: str, extra: Optional[BookingExtra] = None
    ) -> SlotOutcome:
        return await self.lifecycle.book(slot_id, client_id, extra)

    async def edit_slot(
        self, slot_id: str, patch: SlotPatch, actor_role: ActorRole = ActorRole.PRACTITIONER
    ) -> SlotOutcome:
        return await self.lifecycle.edit_slot(slot_id, patch, actor_role)

    async def cancel(
        self,
        slot_id: str,
        actor_role: ActorRole = ActorRole.CLIENT,
        keep_history: bool = False,
    ) -> SlotOutcome:
        return await self.lifecycle.cancel(slot_id, actor_role, keep_history)

    async def complete(self, slot_id: str) -> SlotOutcome:
        return await self.lifecycle.complete(slot_id)

    async def delete_slot(
        self, slot_id: str, actor_role: ActorRole = ActorRole.PRACTITIONER
    ) -> SlotOutcome:
        return await self.lifecycle.delete_slot(slot_id, actor_role)

    # ========== Reaping ==========

    async def reap(self, practitioner_id: str, now: Optional[datetime] = None) -> ReapOutcome:
        return await self.reaper.reap(practitioner_id, now)

    async def reap_all(self, now: Optional[datetime] = None) -> List[ReapOutcome]:
        return await self.reaper.reap_all(now)


_engine: Optional[SlotEngine] = None


def get_engine() -> SlotEngine:
    """Get or create the shared engine, wired to the shared store and dispatcher."""
    global _engine
    if _engine is None:
        from db import get_db_client
        from notifications import get_dispatcher

        _engine = SlotEngine(get_db_client(), dispatcher=get_dispatcher())
    return _engine
