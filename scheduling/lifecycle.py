"""
Booking lifecycle.

Every mutation of a single slot goes through BookingService: creation,
booking, edits, cancellation, completion and deletion. Each operation
returns a SlotOutcome; expected business conditions (slot taken, linked
transaction, bad input, store down) never raise.

Status changes into or out of ``confirmed`` are routed through
``_apply_transition``, which drives the suspension coordinator.
"""

from typing import Any, Dict, Optional, Tuple

from config import settings
from db.supabase_client import NOT_NULL, SupabaseClient
from models.outcomes import ErrorKind, SlotOutcome, SweepSummary, store_failure
from models.slot import (
    CLIENT_FIELDS,
    ActorRole,
    BookingExtra,
    PaymentStatus,
    Slot,
    SlotCreate,
    SlotPatch,
    SlotStatus,
)
from notifications.dispatcher import NotificationDispatcher
from notifications.templates import NotificationKind
from payments.ledger import PaymentLedger
from scheduling.overlap import ConflictDetector
from scheduling.suspension import SuspensionCoordinator
from utils.constants import MAX_NOTES_LENGTH, MOVE_ACTION
from utils.datetime_utils import ensure_aware
from utils.exceptions import DatabaseError, ValidationError
from utils.logging_config import setup_logging
from utils.validation import sanitize_text, validate_custom_price, validate_interval

logger = setup_logging(name=__name__, log_file="lifecycle.log")

# Manual status changes. Completed is terminal; cancelled is terminal unless
# the slot was auto-suspended, which an operator may set back to pending.
ALLOWED_TRANSITIONS = {
    SlotStatus.PENDING: {SlotStatus.CONFIRMED, SlotStatus.CANCELLED, SlotStatus.COMPLETED},
    SlotStatus.CONFIRMED: {SlotStatus.PENDING, SlotStatus.CANCELLED, SlotStatus.COMPLETED},
    SlotStatus.CANCELLED: set(),
    SlotStatus.COMPLETED: set(),
}

TERMINAL_STATUSES = (SlotStatus.CANCELLED, SlotStatus.COMPLETED)


def _is_reinstatement(slot: Slot, target: SlotStatus) -> bool:
    """Operator putting an auto-suspended slot back on offer."""
    return (
        slot.status == SlotStatus.CANCELLED
        and slot.suspended_by is not None
        and target == SlotStatus.PENDING
    )


def _transition_allowed(slot: Slot, target: SlotStatus) -> bool:
    if _is_reinstatement(slot, target):
        return True
    return target in ALLOWED_TRANSITIONS[SlotStatus(slot.status)]


def _schedule_changed(before: Slot, after: Slot) -> bool:
    return (
        before.start_time != after.start_time
        or before.end_time != after.end_time
        or before.service_id != after.service_id
    )


def _check_client_invariant(slot: Slot) -> None:
    """An unbooked slot must be pending and unpaid."""
    if slot.client_id is None and (
        slot.status != SlotStatus.PENDING or slot.payment_status != PaymentStatus.UNPAID
    ):
        raise ValidationError("A slot without a client must be pending and unpaid")


class BookingService:
    """State machine for single slots."""

    def __init__(
        self,
        db: SupabaseClient,
        detector: Optional[ConflictDetector] = None,
        coordinator: Optional[SuspensionCoordinator] = None,
        ledger: Optional[PaymentLedger] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.detector = detector or ConflictDetector(db)
        self.coordinator = coordinator or SuspensionCoordinator(db, dispatcher)
        self.ledger = ledger or PaymentLedger(db)

    # ========== Transition ==========

    async def _apply_transition(
        self, before: Optional[Slot], after: Optional[Slot]
    ) -> Tuple[Optional[SweepSummary], Optional[SweepSummary]]:
        """
        Run the suspension side effects of a state change.

        ``before`` is None for a created slot, ``after`` is None for a
        deleted one.

        Returns:
            (suspension summary, reactivation summary); None where no pass ran
        """
        was_confirmed = before is not None and before.status == SlotStatus.CONFIRMED
        is_confirmed = after is not None and after.status == SlotStatus.CONFIRMED
        moved = was_confirmed and is_confirmed and _schedule_changed(before, after)

        suspension = None
        reactivation = None

        # Completion keeps the time consumed, suspended slots stay cancelled
        if was_confirmed and after is not None and after.status == SlotStatus.COMPLETED:
            return None, None

        if was_confirmed and (not is_confirmed or moved):
            reactivation = await self.coordinator.reactivate(before.id)

        if is_confirmed and (not was_confirmed or moved):
            suspension = await self.coordinator.suspend(after)

        return suspension, reactivation

    # ========== Helpers ==========

    async def _load(self, slot_id: str) -> Optional[Slot]:
        return await self.db.get_slot_by_id(slot_id)

    async def _service_price(self, service_id: str) -> Optional[float]:
        service = await self.db.get_service_by_id(service_id)
        if not service:
            raise ValidationError(f"Unknown service {service_id}")
        return service.price

    async def _blocked_by_ledger(self, slot: Slot, actor_role: ActorRole) -> bool:
        if ActorRole(actor_role).is_privileged:
            return False
        return await self.ledger.has_linked_transaction(slot.id)

    async def _notify(self, slot: Slot, kind: NotificationKind, parties: bool = False) -> None:
        if not self.dispatcher:
            return
        if parties:
            await self.dispatcher.notify_parties(slot, kind)
        else:
            await self.dispatcher.notify_client(slot, kind)

    async def _lost_race(self, slot_id: str, action: str) -> SlotOutcome:
        """Outcome for a conditional write that matched no row."""
        current = await self._load(slot_id)
        if current is None:
            return SlotOutcome.fail(ErrorKind.NOT_FOUND, f"Slot {slot_id} not found")
        logger.info(f"Slot {slot_id} changed concurrently, {action} not applied")
        return SlotOutcome.fail(
            ErrorKind.INVALID_TRANSITION,
            f"Slot {slot_id} was modified by another request",
            slot=current,
        )

    @staticmethod
    def _not_found(slot_id: str) -> SlotOutcome:
        return SlotOutcome.fail(ErrorKind.NOT_FOUND, f"Slot {slot_id} not found")

    @staticmethod
    def _store_failed(action: str, slot_id: Optional[str], error: DatabaseError) -> SlotOutcome:
        logger.error(f"Store error during {action} of slot {slot_id}: {error}")
        return SlotOutcome(success=False, error=store_failure(error))

    # ========== Operations ==========

    async def create_slot(
        self, data: SlotCreate, actor_role: ActorRole = ActorRole.PRACTITIONER
    ) -> SlotOutcome:
        """
        Create one slot outside of template generation.

        The interval must be valid and must not overlap another active slot of
        the same practitioner and service. A slot created as confirmed runs the
        suspension pass.
        """
        try:
            start = ensure_aware(data.start_time)
            end = ensure_aware(data.end_time)
            validate_interval(start, end)

            if data.status not in (SlotStatus.PENDING, SlotStatus.CONFIRMED):
                raise ValidationError(f"A new slot cannot be {data.status}")
            preview = Slot(**data.model_dump())
            _check_client_invariant(preview)

            service_price = await self._service_price(data.service_id)
            validate_custom_price(
                data.custom_price, service_price, ActorRole(actor_role).is_privileged
            )

            conflicts = await self.detector.find_conflicts(
                data.practitioner_id, data.service_id, start, end
            )
            if conflicts:
                return SlotOutcome.fail(
                    ErrorKind.VALIDATION_FAILED,
                    "Slot overlaps an existing slot of the same service",
                    details={"conflicting_slot_id": conflicts[0].id},
                )

            payload = data.model_copy(
                update={
                    "start_time": start,
                    "end_time": end,
                    "notes": sanitize_text(data.notes, MAX_NOTES_LENGTH) or None,
                }
            )
            created = await self.db.create_slot(payload)
        except ValidationError as e:
            return SlotOutcome.fail(ErrorKind.VALIDATION_FAILED, str(e))
        except DatabaseError as e:
            return self._store_failed("create", None, e)

        logger.info(
            f"Created slot {created.id} for practitioner {created.practitioner_id} "
            f"({created.start_time.isoformat()} - {created.end_time.isoformat()})"
        )

        suspension, _ = await self._apply_transition(None, created)
        if created.status == SlotStatus.CONFIRMED:
            await self._notify(created, NotificationKind.CONFIRMATION, parties=True)

        return SlotOutcome.ok("created", created, suspension=suspension)

    async def book(
        self, slot_id: str, client_id: str, extra: Optional[BookingExtra] = None
    ) -> SlotOutcome:
        """
        Claim an available slot for a client.

        The claim is one conditional update (client still null, status not
        cancelled). Losing the race is AlreadyBooked. Slots of the same service
        overlapping this one stay bookable; slots of other services are
        suspended.

        Args:
            slot_id: Slot to book
            client_id: Client taking the slot
            extra: Payment state and booking payload

        Returns:
            SlotOutcome with action "booked"
        """
        extra = extra or BookingExtra()

        try:
            slot = await self._load(slot_id)
            if slot is None:
                return self._not_found(slot_id)
            if slot.is_booked or slot.status == SlotStatus.CANCELLED:
                return SlotOutcome.fail(
                    ErrorKind.ALREADY_BOOKED, f"Slot {slot_id} is not available", slot=slot
                )

            if extra.custom_price is not None:
                validate_custom_price(
                    extra.custom_price, await self._service_price(slot.service_id), False
                )

            data: Dict[str, Any] = extra.model_dump(exclude={"awaiting_payment"}, exclude_none=True)
            if "notes" in data:
                data["notes"] = sanitize_text(data["notes"], MAX_NOTES_LENGTH)
            data["client_id"] = client_id
            data["status"] = SlotStatus.CONFIRMED
            data["payment_status"] = extra.payment_status

            booked = await self.db.claim_slot(slot_id, data)
        except ValidationError as e:
            return SlotOutcome.fail(ErrorKind.VALIDATION_FAILED, str(e))
        except DatabaseError as e:
            return self._store_failed("booking", slot_id, e)

        if booked is None:
            logger.info(f"Slot {slot_id} was claimed by another request")
            return SlotOutcome.fail(ErrorKind.ALREADY_BOOKED, f"Slot {slot_id} is already booked")

        logger.info(f"Slot {slot_id} booked by client {client_id}")
        suspension, _ = await self._apply_transition(slot, booked)

        if extra.awaiting_payment:
            logger.info(f"Confirmation for slot {slot_id} deferred until payment succeeds")
        else:
            await self._notify(booked, NotificationKind.CONFIRMATION, parties=True)

        return SlotOutcome.ok(
            "booked",
            booked,
            suspension=suspension,
            notification_deferred=extra.awaiting_payment,
        )

    async def edit_slot(
        self, slot_id: str, patch: SlotPatch, actor_role: ActorRole = ActorRole.PRACTITIONER
    ) -> SlotOutcome:
        """
        Apply a partial update to a slot.

        Moving the slot or reassigning its service re-runs conflict detection.
        A status change follows the lifecycle graph and, when it cancels the
        slot, the same linked-transaction guard as ``cancel``.
        """
        role = ActorRole(actor_role)
        changes = patch.model_dump(exclude_unset=True)

        try:
            slot = await self._load(slot_id)
            if slot is None:
                return self._not_found(slot_id)
            if not changes:
                return SlotOutcome.ok("unchanged", slot)

            merged = slot.model_copy(update=changes)
            merged.start_time = ensure_aware(merged.start_time)
            merged.end_time = ensure_aware(merged.end_time)
            validate_interval(merged.start_time, merged.end_time)

            status_changed = merged.status != slot.status
            if status_changed and not _transition_allowed(slot, SlotStatus(merged.status)):
                return SlotOutcome.fail(
                    ErrorKind.INVALID_TRANSITION,
                    f"Cannot change slot status from {slot.status} to {merged.status}",
                    slot=slot,
                )
            reinstated = status_changed and _is_reinstatement(slot, SlotStatus(merged.status))
            if patch.changes_schedule and slot.status in TERMINAL_STATUSES and not reinstated:
                return SlotOutcome.fail(
                    ErrorKind.INVALID_TRANSITION,
                    f"Cannot reschedule a {slot.status} slot",
                    slot=slot,
                )

            _check_client_invariant(merged)

            if "service_id" in changes or "custom_price" in changes:
                service_price = await self._service_price(merged.service_id)
                if "custom_price" in changes:
                    validate_custom_price(merged.custom_price, service_price, role.is_privileged)

            if patch.changes_schedule:
                conflicts = await self.detector.find_conflicts(
                    merged.practitioner_id,
                    merged.service_id,
                    merged.start_time,
                    merged.end_time,
                    exclude_id=slot.id,
                )
                if conflicts:
                    if settings.allow_operator_conflict_override and role.is_privileged:
                        logger.warning(
                            f"Admin override: slot {slot_id} moved over conflicting slot(s) "
                            f"{[c.id for c in conflicts]}"
                        )
                    else:
                        return SlotOutcome.fail(
                            ErrorKind.VALIDATION_FAILED,
                            "Slot overlaps an existing slot of the same service",
                            details={"conflicting_slot_id": conflicts[0].id},
                            slot=slot,
                        )

            if status_changed and merged.status == SlotStatus.CANCELLED:
                if await self._blocked_by_ledger(slot, role):
                    return SlotOutcome.fail(
                        ErrorKind.HAS_LINKED_TRANSACTION,
                        "Slot has a linked transaction; move it instead",
                        alternative_action=MOVE_ACTION,
                        slot=slot,
                    )

            if "notes" in changes and changes["notes"] is not None:
                changes["notes"] = sanitize_text(changes["notes"], MAX_NOTES_LENGTH)
            if "start_time" in changes:
                changes["start_time"] = merged.start_time
            if "end_time" in changes:
                changes["end_time"] = merged.end_time

            conditions: Dict[str, Any] = {"status": slot.status}
            if reinstated:
                changes.update({"suspended_by": None, "cancellation_reason": None})
                # Loses to a reactivation pass that got there first
                conditions["suspended_by"] = slot.suspended_by

            updated = await self.db.update_slot(slot_id, changes, conditions=conditions)
            if updated is None:
                return await self._lost_race(slot_id, "edit")
        except ValidationError as e:
            return SlotOutcome.fail(ErrorKind.VALIDATION_FAILED, str(e))
        except DatabaseError as e:
            return self._store_failed("edit", slot_id, e)

        logger.info(f"Slot {slot_id} updated by {role.value}: {sorted(changes)}")
        suspension, reactivation = await self._apply_transition(slot, updated)

        if status_changed and updated.status == SlotStatus.CANCELLED:
            await self._notify(updated, NotificationKind.CANCELLATION)
        elif status_changed and updated.status == SlotStatus.CONFIRMED:
            await self._notify(updated, NotificationKind.CONFIRMATION, parties=True)

        return SlotOutcome.ok(
            "updated", updated, suspension=suspension, reactivation=reactivation
        )

    async def cancel(
        self,
        slot_id: str,
        actor_role: ActorRole = ActorRole.CLIENT,
        keep_history: bool = False,
    ) -> SlotOutcome:
        """
        Cancel a booking.

        A paid slot (or any slot when ``keep_history`` is set) becomes
        cancelled and keeps its client data. Otherwise the booking is released:
        client payload cleared and the slot returns to pending, bookable again.

        Args:
            slot_id: Slot to cancel
            actor_role: Who asks; only admins may cancel a slot with a linked transaction
            keep_history: Keep the booking on record even if unpaid

        Returns:
            SlotOutcome with action "cancelled" or "released"
        """
        role = ActorRole(actor_role)

        try:
            slot = await self._load(slot_id)
            if slot is None:
                return self._not_found(slot_id)
            if slot.status in TERMINAL_STATUSES:
                return SlotOutcome.fail(
                    ErrorKind.INVALID_TRANSITION,
                    f"Slot {slot_id} is already {slot.status}",
                    slot=slot,
                )
            if not slot.is_booked:
                return SlotOutcome.fail(
                    ErrorKind.INVALID_TRANSITION,
                    f"Slot {slot_id} has no booking to cancel",
                    slot=slot,
                )

            if await self._blocked_by_ledger(slot, role):
                logger.info(f"Cancel of slot {slot_id} blocked by a linked transaction")
                return SlotOutcome.fail(
                    ErrorKind.HAS_LINKED_TRANSACTION,
                    "Slot has a linked transaction; move it instead",
                    alternative_action=MOVE_ACTION,
                    slot=slot,
                )

            retain = slot.payment_status == PaymentStatus.PAID or keep_history
            if retain:
                action = "cancelled"
                data: Dict[str, Any] = {"status": SlotStatus.CANCELLED}
            else:
                action = "released"
                data = {field: None for field in CLIENT_FIELDS}
                data.update(
                    {
                        "status": SlotStatus.PENDING,
                        "payment_status": PaymentStatus.UNPAID,
                        "suspended_by": None,
                        "cancellation_reason": None,
                    }
                )

            updated = await self.db.update_slot(
                slot_id, data, conditions={"status": slot.status, "client_id": NOT_NULL}
            )
            if updated is None:
                return await self._lost_race(slot_id, "cancel")
        except DatabaseError as e:
            return self._store_failed("cancel", slot_id, e)

        logger.info(f"Slot {slot_id} {action} by {role.value}")
        _, reactivation = await self._apply_transition(slot, updated)

        # Sent from the pre-cancel snapshot: a released slot no longer has a client
        await self._notify(slot, NotificationKind.CANCELLATION)

        return SlotOutcome.ok(action, updated, reactivation=reactivation)

    async def complete(self, slot_id: str) -> SlotOutcome:
        """Mark a booked slot as completed. No suspension side effects."""
        try:
            slot = await self._load(slot_id)
            if slot is None:
                return self._not_found(slot_id)
            if not slot.is_booked or slot.status in TERMINAL_STATUSES:
                return SlotOutcome.fail(
                    ErrorKind.INVALID_TRANSITION,
                    f"Only a booked, active slot can be completed (slot is {slot.status}"
                    f"{', unbooked' if not slot.is_booked else ''})",
                    slot=slot,
                )

            updated = await self.db.update_slot(
                slot_id, {"status": SlotStatus.COMPLETED}, conditions={"status": slot.status}
            )
            if updated is None:
                return await self._lost_race(slot_id, "complete")
        except DatabaseError as e:
            return self._store_failed("complete", slot_id, e)

        logger.info(f"Slot {slot_id} completed")
        await self._apply_transition(slot, updated)
        return SlotOutcome.ok("completed", updated)

    async def delete_slot(
        self, slot_id: str, actor_role: ActorRole = ActorRole.PRACTITIONER
    ) -> SlotOutcome:
        """
        Delete a slot.

        Unbooked slots may be deleted by anyone with access. Booked slots only
        by an admin. Deleting a confirmed slot reactivates what it suspended.
        """
        role = ActorRole(actor_role)

        try:
            slot = await self._load(slot_id)
            if slot is None:
                return self._not_found(slot_id)

            if slot.is_booked and not role.is_privileged:
                return SlotOutcome.fail(
                    ErrorKind.ALREADY_BOOKED,
                    "Only an admin can delete a booked slot",
                    slot=slot,
                )

            if await self._blocked_by_ledger(slot, role):
                return SlotOutcome.fail(
                    ErrorKind.HAS_LINKED_TRANSACTION,
                    "Slot has a linked transaction; move it instead",
                    alternative_action=MOVE_ACTION,
                    slot=slot,
                )

            # Unbooked deletes must not race a concurrent booking
            conditions = {"status": slot.status}
            if not slot.is_booked:
                conditions["client_id"] = None

            deleted = await self.db.delete_slot(slot_id, conditions=conditions)
            if not deleted:
                current = await self._load(slot_id)
                if current is None:
                    return self._not_found(slot_id)
                return SlotOutcome.fail(
                    ErrorKind.ALREADY_BOOKED if current.is_booked else ErrorKind.INVALID_TRANSITION,
                    f"Slot {slot_id} was modified by another request",
                    slot=current,
                )
        except DatabaseError as e:
            return self._store_failed("delete", slot_id, e)

        logger.info(f"Slot {slot_id} deleted by {role.value}")
        _, reactivation = await self._apply_transition(slot, None)

        if slot.is_booked and slot.status not in TERMINAL_STATUSES:
            await self._notify(slot, NotificationKind.CANCELLATION)

        return SlotOutcome.ok("deleted", slot, reactivation=reactivation)
