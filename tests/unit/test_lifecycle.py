"""
Unit tests for the booking lifecycle (create, book, edit, cancel, complete, delete).
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from models.slot import BookingExtra, PaymentStatus, SlotCreate, SlotPatch, SlotStatus
from notifications.templates import NotificationKind
from utils.exceptions import BackingStoreUnavailableError

# Same reference instant as the make_slot defaults
T0 = datetime(2030, 1, 15, 10, 0, tzinfo=timezone.utc)


def at(hours: float = 0, minutes: int = 0) -> datetime:
    return T0 + timedelta(hours=hours, minutes=minutes)


@pytest.fixture
def booked(make_slot):
    """Confirmed svc-a slot of client-1 at 10:00-10:30."""
    return make_slot(client_id="client-1", status=SlotStatus.CONFIRMED)


class TestBook:
    @pytest.mark.asyncio
    async def test_book_claims_slot_and_notifies_both_parties(self, engine, store, dispatcher, make_slot):
        slot = make_slot()

        outcome = await engine.book(slot.id, "client-1")

        assert outcome.success
        assert outcome.action == "booked"
        assert outcome.slot.client_id == "client-1"
        assert outcome.slot.status == "confirmed"
        assert store.get(slot.id).status == "confirmed"
        dispatcher.notify_parties.assert_awaited_once()
        assert dispatcher.notify_parties.await_args.args[1] == NotificationKind.CONFIRMATION

    @pytest.mark.asyncio
    async def test_booked_slot_is_already_booked(self, engine, booked):
        outcome = await engine.book(booked.id, "client-2")

        assert not outcome.success
        assert outcome.error.kind == "already_booked"

    @pytest.mark.asyncio
    async def test_cancelled_slot_is_not_bookable(self, engine, make_slot):
        slot = make_slot(status=SlotStatus.CANCELLED)

        outcome = await engine.book(slot.id, "client-1")

        assert outcome.error.kind == "already_booked"

    @pytest.mark.asyncio
    async def test_losing_the_claim_race(self, engine, store, make_slot, dispatcher):
        slot = make_slot()
        store.claim_slot = AsyncMock(return_value=None)

        outcome = await engine.book(slot.id, "client-1")

        assert not outcome.success
        assert outcome.error.kind == "already_booked"
        dispatcher.notify_parties.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_slot(self, engine):
        outcome = await engine.book("missing", "client-1")

        assert outcome.error.kind == "not_found"

    @pytest.mark.asyncio
    async def test_same_service_overlap_stays_bookable(self, engine, store, make_slot):
        first = make_slot()
        neighbour = make_slot(start_time=at(0, 15), end_time=at(0, 45))

        await engine.book(first.id, "client-1")

        assert store.get(neighbour.id).status == "pending"
        second = await engine.book(neighbour.id, "client-2")
        assert second.success

    @pytest.mark.asyncio
    async def test_booking_suspends_other_services(self, engine, store, make_slot):
        slot = make_slot()
        other = make_slot(service_id="svc-b", end_time=at(1))
        later = make_slot(service_id="svc-b", start_time=at(0, 30), end_time=at(1, 30))

        outcome = await engine.book(slot.id, "client-1")

        assert outcome.suspension.changed_slot_ids == [other.id]
        suspended = store.get(other.id)
        assert suspended.status == "cancelled"
        assert suspended.suspended_by == slot.id
        assert store.get(later.id).status == "pending"

    @pytest.mark.asyncio
    async def test_awaiting_payment_defers_confirmation(self, engine, dispatcher, make_slot):
        slot = make_slot()

        outcome = await engine.book(slot.id, "client-1", BookingExtra(awaiting_payment=True))

        assert outcome.success
        assert outcome.notification_deferred
        dispatcher.notify_parties.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_booking_payload_is_stored(self, engine, store, make_slot):
        slot = make_slot()
        extra = BookingExtra(
            payment_status=PaymentStatus.PAID,
            payment_id="pi_123",
            notes="  first visit \x00",
            beneficiary_first_name="Lea",
        )

        await engine.book(slot.id, "client-1", extra)

        stored = store.get(slot.id)
        assert stored.payment_status == "paid"
        assert stored.payment_id == "pi_123"
        assert stored.notes == "first visit"
        assert stored.beneficiary_first_name == "Lea"

    @pytest.mark.asyncio
    async def test_claim_failure_is_not_retried(self, engine, store, make_slot):
        slot = make_slot()
        store.fail("update_slot", BackingStoreUnavailableError("timeout"))

        outcome = await engine.book(slot.id, "client-1")

        assert not outcome.success
        assert outcome.error.kind == "backing_store_unavailable"
        assert store.calls.count("update_slot") == 1
        assert store.get(slot.id).client_id is None


class TestCancel:
    @pytest.mark.asyncio
    async def test_unpaid_booking_is_released(self, engine, store, dispatcher, make_slot):
        slot = make_slot()
        await engine.book(
            slot.id, "client-1", BookingExtra(notes="hello", beneficiary_first_name="Lea")
        )

        outcome = await engine.cancel(slot.id)

        assert outcome.success
        assert outcome.action == "released"
        released = store.get(slot.id)
        assert released.status == "pending"
        assert released.client_id is None
        assert released.notes is None
        assert released.beneficiary_first_name is None
        # The cancellation goes to the client the slot had before release
        notified = dispatcher.notify_client.await_args.args[0]
        assert notified.client_id == "client-1"
        assert dispatcher.notify_client.await_args.args[1] == NotificationKind.CANCELLATION

    @pytest.mark.asyncio
    async def test_paid_booking_is_retained(self, engine, store, make_slot):
        slot = make_slot(
            client_id="client-1", status=SlotStatus.CONFIRMED, payment_status=PaymentStatus.PAID
        )

        outcome = await engine.cancel(slot.id)

        assert outcome.action == "cancelled"
        assert store.get(slot.id).status == "cancelled"
        assert store.get(slot.id).client_id == "client-1"

    @pytest.mark.asyncio
    async def test_keep_history_retains_unpaid_booking(self, engine, store, booked):
        outcome = await engine.cancel(booked.id, keep_history=True)

        assert outcome.action == "cancelled"
        assert store.get(booked.id).client_id == "client-1"

    @pytest.mark.asyncio
    async def test_refunded_booking_is_released(self, engine, store, make_slot):
        slot = make_slot(
            client_id="client-1",
            status=SlotStatus.CONFIRMED,
            payment_status=PaymentStatus.REFUNDED,
        )

        outcome = await engine.cancel(slot.id)

        assert outcome.action == "released"
        assert store.get(slot.id).payment_status == "unpaid"

    @pytest.mark.asyncio
    async def test_cancel_reactivates_suspended_slots(self, engine, store, make_slot):
        slot = make_slot()
        other = make_slot(service_id="svc-b", end_time=at(1))
        await engine.book(slot.id, "client-1")
        assert store.get(other.id).status == "cancelled"

        outcome = await engine.cancel(slot.id)

        assert outcome.reactivation.changed_slot_ids == [other.id]
        restored = store.get(other.id)
        assert restored.status == "pending"
        assert restored.suspended_by is None
        assert restored.cancellation_reason is None

    @pytest.mark.asyncio
    async def test_linked_transaction_blocks_client(self, engine, store, booked):
        store.transactions[booked.id] = [{"id": "tx-1", "status": "succeeded"}]

        outcome = await engine.cancel(booked.id, actor_role="client")

        assert not outcome.success
        assert outcome.error.kind == "has_linked_transaction"
        assert outcome.error.alternative_action == "move"
        assert store.get(booked.id).status == "confirmed"

    @pytest.mark.asyncio
    async def test_failed_transaction_does_not_block(self, engine, store, booked):
        store.transactions[booked.id] = [{"id": "tx-1", "status": "failed"}]

        outcome = await engine.cancel(booked.id)

        assert outcome.success

    @pytest.mark.asyncio
    async def test_admin_overrides_linked_transaction(self, engine, store, booked):
        store.transactions[booked.id] = [{"id": "tx-1", "status": "succeeded"}]

        outcome = await engine.cancel(booked.id, actor_role="admin")

        assert outcome.success
        assert "get_linked_transactions" not in store.calls

    @pytest.mark.asyncio
    async def test_terminal_slot_cannot_be_cancelled(self, engine, make_slot):
        slot = make_slot(client_id="client-1", status=SlotStatus.COMPLETED)

        outcome = await engine.cancel(slot.id)

        assert outcome.error.kind == "invalid_transition"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("keep_history", [False, True])
    async def test_unbooked_slot_cannot_be_cancelled(
        self, engine, store, dispatcher, make_slot, keep_history
    ):
        slot = make_slot()

        outcome = await engine.cancel(slot.id, keep_history=keep_history)

        assert outcome.error.kind == "invalid_transition"
        assert store.get(slot.id).status == "pending"
        dispatcher.notify_client.assert_not_awaited()

        reaped = await engine.reap("prac-1", now=at(48))
        assert reaped.deleted_count == 1
        assert store.get(slot.id) is None

    @pytest.mark.asyncio
    async def test_cancel_loses_to_a_concurrent_release(self, engine, store, booked):
        original = store.get_slot_by_id
        calls = {"n": 0}

        async def stale_read(slot_id):
            calls["n"] += 1
            snapshot = await original(slot_id)
            if calls["n"] == 1:
                # Released by another request right after this read
                store.slots[slot_id] = store.slots[slot_id].model_copy(
                    update={"client_id": None}
                )
            return snapshot

        store.get_slot_by_id = stale_read

        outcome = await engine.cancel(booked.id, keep_history=True)

        assert outcome.error.kind == "invalid_transition"
        assert store.get(booked.id).status == "confirmed"


class TestComplete:
    @pytest.mark.asyncio
    async def test_complete_booked_slot(self, engine, store, booked):
        outcome = await engine.complete(booked.id)

        assert outcome.success
        assert store.get(booked.id).status == "completed"

    @pytest.mark.asyncio
    async def test_unbooked_slot_cannot_be_completed(self, engine, make_slot):
        slot = make_slot()

        outcome = await engine.complete(slot.id)

        assert outcome.error.kind == "invalid_transition"

    @pytest.mark.asyncio
    async def test_suspended_slots_stay_cancelled(self, engine, store, make_slot):
        slot = make_slot()
        other = make_slot(service_id="svc-b", end_time=at(1))
        await engine.book(slot.id, "client-1")

        await engine.complete(slot.id)

        assert store.get(other.id).status == "cancelled"
        assert "find_suspended_by" not in store.calls

    @pytest.mark.asyncio
    async def test_completed_slot_releases_its_time_range(self, engine, store, booked):
        await engine.complete(booked.id)

        outcome = await engine.check_conflict("prac-1", "svc-a", at(0), at(0, 30))

        assert not outcome.has_conflict


class TestEdit:
    @pytest.mark.asyncio
    async def test_empty_patch_is_unchanged(self, engine, make_slot):
        slot = make_slot()

        outcome = await engine.edit_slot(slot.id, SlotPatch())

        assert outcome.action == "unchanged"

    @pytest.mark.asyncio
    async def test_move_confirmed_slot_swaps_suspensions(self, engine, store, make_slot):
        slot = make_slot()
        old_rival = make_slot(service_id="svc-b", end_time=at(1))
        new_rival = make_slot(service_id="svc-b", start_time=at(2), end_time=at(3))
        await engine.book(slot.id, "client-1")

        outcome = await engine.edit_slot(
            slot.id, SlotPatch(start_time=at(2), end_time=at(2, 30))
        )

        assert outcome.success
        assert outcome.reactivation.changed_slot_ids == [old_rival.id]
        assert outcome.suspension.changed_slot_ids == [new_rival.id]
        assert store.get(old_rival.id).status == "pending"
        assert store.get(new_rival.id).suspended_by == slot.id

    @pytest.mark.asyncio
    async def test_move_onto_same_service_slot_is_rejected(self, engine, store, booked, make_slot):
        blocker = make_slot(start_time=at(2), end_time=at(2, 30))

        outcome = await engine.edit_slot(
            booked.id, SlotPatch(start_time=at(2, 15), end_time=at(2, 45))
        )

        assert not outcome.success
        assert outcome.error.kind == "validation_failed"
        assert outcome.error.details["conflicting_slot_id"] == blocker.id
        assert store.get(booked.id).start_time == at(0)

    @pytest.mark.asyncio
    async def test_admin_override_allows_conflicting_move(
        self, engine, booked, make_slot, monkeypatch
    ):
        from config import settings

        monkeypatch.setattr(settings, "allow_operator_conflict_override", True)
        make_slot(start_time=at(2), end_time=at(2, 30))

        practitioner = await engine.edit_slot(
            booked.id, SlotPatch(start_time=at(2), end_time=at(2, 30))
        )
        admin = await engine.edit_slot(
            booked.id, SlotPatch(start_time=at(2), end_time=at(2, 30)), actor_role="admin"
        )

        assert not practitioner.success
        assert admin.success

    @pytest.mark.asyncio
    async def test_inverted_interval_is_rejected(self, engine, make_slot):
        slot = make_slot()

        outcome = await engine.edit_slot(slot.id, SlotPatch(end_time=at(-1)))

        assert outcome.error.kind == "validation_failed"

    @pytest.mark.asyncio
    async def test_custom_price_below_catalog_needs_admin(self, engine, store, make_slot):
        slot = make_slot()

        practitioner = await engine.edit_slot(slot.id, SlotPatch(custom_price=40.0))
        admin = await engine.edit_slot(slot.id, SlotPatch(custom_price=40.0), actor_role="admin")

        assert practitioner.error.kind == "validation_failed"
        assert admin.success
        assert store.get(slot.id).custom_price == 40.0

    @pytest.mark.asyncio
    async def test_terminal_status_cannot_be_left(self, engine, make_slot):
        slot = make_slot(client_id="client-1", status=SlotStatus.CANCELLED)

        outcome = await engine.edit_slot(slot.id, SlotPatch(status=SlotStatus.CONFIRMED))

        assert outcome.error.kind == "invalid_transition"

    @pytest.mark.asyncio
    async def test_suspended_slot_can_be_reinstated(self, engine, store, make_slot):
        slot = make_slot()
        other = make_slot(service_id="svc-b", end_time=at(1))
        await engine.book(slot.id, "client-1")
        assert store.get(other.id).suspended_by == slot.id

        outcome = await engine.edit_slot(other.id, SlotPatch(status=SlotStatus.PENDING))

        assert outcome.success
        reinstated = store.get(other.id)
        assert reinstated.status == "pending"
        assert reinstated.suspended_by is None
        assert reinstated.cancellation_reason is None

        booked = await engine.book(other.id, "client-2")
        assert booked.success

    @pytest.mark.asyncio
    async def test_suspended_slot_only_returns_to_pending(self, engine, store, make_slot):
        slot = make_slot()
        other = make_slot(service_id="svc-b", end_time=at(1))
        await engine.book(slot.id, "client-1")

        outcome = await engine.edit_slot(other.id, SlotPatch(status=SlotStatus.COMPLETED))

        assert outcome.error.kind == "invalid_transition"
        assert store.get(other.id).suspended_by == slot.id

    @pytest.mark.asyncio
    async def test_terminal_slot_cannot_be_rescheduled(self, engine, make_slot):
        slot = make_slot(client_id="client-1", status=SlotStatus.COMPLETED)

        outcome = await engine.edit_slot(slot.id, SlotPatch(start_time=at(3), end_time=at(3, 30)))

        assert outcome.error.kind == "invalid_transition"

    @pytest.mark.asyncio
    async def test_unconfirming_reactivates(self, engine, store, make_slot):
        slot = make_slot()
        other = make_slot(service_id="svc-b", end_time=at(1))
        await engine.book(slot.id, "client-1")

        outcome = await engine.edit_slot(slot.id, SlotPatch(status=SlotStatus.PENDING))

        assert outcome.success
        assert store.get(other.id).status == "pending"
        assert store.get(slot.id).client_id == "client-1"

    @pytest.mark.asyncio
    async def test_confirm_without_client_violates_invariant(self, engine, make_slot):
        slot = make_slot()

        outcome = await engine.edit_slot(slot.id, SlotPatch(status=SlotStatus.CONFIRMED))

        assert outcome.error.kind == "validation_failed"

    @pytest.mark.asyncio
    async def test_cancel_by_edit_respects_linked_transaction(self, engine, store, booked):
        store.transactions[booked.id] = [{"id": "tx-1", "status": "pending"}]

        outcome = await engine.edit_slot(
            booked.id, SlotPatch(status=SlotStatus.CANCELLED), actor_role="client"
        )

        assert outcome.error.kind == "has_linked_transaction"
        assert outcome.error.alternative_action == "move"

    @pytest.mark.asyncio
    async def test_cancel_by_edit_notifies_client(self, engine, dispatcher, booked):
        outcome = await engine.edit_slot(booked.id, SlotPatch(status=SlotStatus.CANCELLED))

        assert outcome.success
        dispatcher.notify_client.assert_awaited_once()
        assert dispatcher.notify_client.await_args.args[1] == NotificationKind.CANCELLATION

    @pytest.mark.asyncio
    async def test_concurrent_change_is_reported(self, engine, store, make_slot):
        slot = make_slot()
        store.update_slot = AsyncMock(return_value=None)

        outcome = await engine.edit_slot(slot.id, SlotPatch(notes="moved"))

        assert outcome.error.kind == "invalid_transition"
        assert "another request" in outcome.error.message


class TestDelete:
    @pytest.mark.asyncio
    async def test_unbooked_slot_is_deleted(self, engine, store, make_slot):
        slot = make_slot()

        outcome = await engine.delete_slot(slot.id)

        assert outcome.success
        assert store.get(slot.id) is None

    @pytest.mark.asyncio
    async def test_booked_slot_needs_admin(self, engine, store, booked):
        outcome = await engine.delete_slot(booked.id)

        assert outcome.error.kind == "already_booked"
        assert store.get(booked.id) is not None

    @pytest.mark.asyncio
    async def test_admin_delete_reactivates_and_notifies(self, engine, store, dispatcher, make_slot):
        slot = make_slot()
        other = make_slot(service_id="svc-b", end_time=at(1))
        await engine.book(slot.id, "client-1")

        outcome = await engine.delete_slot(slot.id, actor_role="admin")

        assert outcome.success
        assert outcome.reactivation.changed_slot_ids == [other.id]
        assert store.get(other.id).status == "pending"
        assert dispatcher.notify_client.await_args.args[1] == NotificationKind.CANCELLATION

    @pytest.mark.asyncio
    async def test_delete_races_a_booking(self, engine, store, make_slot):
        slot = make_slot()
        original = store.delete_slot

        async def booked_meanwhile(slot_id, conditions=None):
            await store.update_slot(slot_id, {"client_id": "client-2", "status": "confirmed"})
            return await original(slot_id, conditions)

        store.delete_slot = booked_meanwhile

        outcome = await engine.delete_slot(slot.id)

        assert outcome.error.kind == "already_booked"
        assert store.get(slot.id).client_id == "client-2"


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_pending_slot(self, engine, store):
        outcome = await engine.create_slot(
            SlotCreate(
                practitioner_id="prac-1", service_id="svc-a", start_time=at(0), end_time=at(0, 30)
            )
        )

        assert outcome.success
        assert outcome.action == "created"
        assert store.get(outcome.slot.id).status == "pending"

    @pytest.mark.asyncio
    async def test_create_rejects_overlap(self, engine, make_slot):
        existing = make_slot()

        outcome = await engine.create_slot(
            SlotCreate(
                practitioner_id="prac-1",
                service_id="svc-a",
                start_time=at(0, 15),
                end_time=at(0, 45),
            )
        )

        assert outcome.error.kind == "validation_failed"
        assert outcome.error.details["conflicting_slot_id"] == existing.id

    @pytest.mark.asyncio
    async def test_create_rejects_unknown_service(self, engine):
        outcome = await engine.create_slot(
            SlotCreate(
                practitioner_id="prac-1", service_id="nope", start_time=at(0), end_time=at(0, 30)
            )
        )

        assert outcome.error.kind == "validation_failed"

    @pytest.mark.asyncio
    async def test_create_confirmed_without_client_is_rejected(self, engine):
        outcome = await engine.create_slot(
            SlotCreate(
                practitioner_id="prac-1",
                service_id="svc-a",
                start_time=at(0),
                end_time=at(0, 30),
                status=SlotStatus.CONFIRMED,
            )
        )

        assert outcome.error.kind == "validation_failed"

    @pytest.mark.asyncio
    async def test_create_confirmed_suspends_and_notifies(self, engine, store, dispatcher, make_slot):
        other = make_slot(service_id="svc-b", end_time=at(1))

        outcome = await engine.create_slot(
            SlotCreate(
                practitioner_id="prac-1",
                service_id="svc-a",
                start_time=at(0),
                end_time=at(0, 30),
                client_id="client-1",
                status=SlotStatus.CONFIRMED,
            )
        )

        assert outcome.success
        assert store.get(other.id).suspended_by == outcome.slot.id
        dispatcher.notify_parties.assert_awaited_once()


class TestAvailableSlots:
    @pytest.mark.asyncio
    async def test_lists_unbooked_slots_by_start(self, engine, make_slot):
        late = make_slot(start_time=at(2), end_time=at(2, 30))
        early = make_slot()
        make_slot(start_time=at(1), end_time=at(1, 30), client_id="client-1", status="confirmed")
        make_slot(start_time=at(3), end_time=at(3, 30), status=SlotStatus.CANCELLED)

        outcome = await engine.available_slots("svc-a", at(-1), at(4))

        assert [s.id for s in outcome.slots] == [early.id, late.id]

    @pytest.mark.asyncio
    async def test_inverted_range(self, engine):
        outcome = await engine.available_slots("svc-a", at(2), at(1))

        assert outcome.error.kind == "validation_failed"

    @pytest.mark.asyncio
    async def test_store_failure(self, engine, store):
        store.fail("get_available_slots", BackingStoreUnavailableError("down"))

        outcome = await engine.available_slots("svc-a", at(0), at(1))

        assert outcome.error.kind == "backing_store_unavailable"
