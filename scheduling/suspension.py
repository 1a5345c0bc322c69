"""
Suspension coordinator.

When a slot is confirmed, overlapping slots of the same practitioner for
other services are cancelled and tagged with ``suspended_by``. When the
confirming slot loses its confirmed status (or is deleted), every slot it
suspended goes back to pending.

Both passes are idempotent: their search predicates are empty once a pass
has completed. Neither pass raises; failures are counted in the returned
SweepSummary and logged, and the primary operation stands.
"""

import logging
from typing import List, Optional

from db.supabase_client import SupabaseClient
from models.outcomes import SweepSummary
from models.slot import Slot, SlotStatus
from notifications.dispatcher import NotificationDispatcher
from notifications.templates import NotificationKind
from scheduling.overlap import overlaps
from utils.constants import SUSPENSION_REASON
from utils.exceptions import DatabaseError
from utils.retry import retry_transient

logger = logging.getLogger(__name__)

# Completed slots are history and never suspended
SUSPENDABLE_STATUSES = (SlotStatus.PENDING, SlotStatus.CONFIRMED)


class SuspensionCoordinator:
    def __init__(
        self,
        db: SupabaseClient,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.db = db
        self.dispatcher = dispatcher

    async def _search(self, slot: Slot) -> List[Slot]:
        candidates = await retry_transient(
            lambda: self.db.find_overlapping_slots(
                slot.practitioner_id,
                slot.start_time,
                slot.end_time,
                exclude_service_id=slot.service_id,
                exclude_id=slot.id,
                statuses=SUSPENDABLE_STATUSES,
            ),
            f"suspension search for slot {slot.id}",
        )
        return [
            c
            for c in candidates
            if c.id != slot.id
            and c.service_id != slot.service_id
            and c.status in SUSPENDABLE_STATUSES
            and overlaps(c, slot)
        ]

    async def suspend(self, slot: Slot) -> SweepSummary:
        """
        Cancel competing different-service slots overlapping a confirmed slot.

        A competing slot that was itself confirmed gives back what it had
        suspended. Those slots are pending again, so the search runs once
        more to catch the ones that also overlap ``slot``.

        Args:
            slot: The slot that just became confirmed

        Returns:
            Counts of matched, suspended and failed slots
        """
        summary = SweepSummary(trigger_slot_id=slot.id or "")
        if not slot.id:
            return summary

        released = True
        while released:
            released = False
            try:
                matches = await self._search(slot)
            except DatabaseError as e:
                summary.error = str(e)
                logger.warning(f"Suspension pass for slot {slot.id} could not run: {e}")
                return summary

            summary.matched += len(matches)

            for match in matches:
                suspended = await self._suspend_one(slot, match, summary)
                if suspended is None or match.status != SlotStatus.CONFIRMED:
                    continue

                reactivation = await self.reactivate(match.id)
                summary.failed += reactivation.failed
                summary.reactivated_slot_ids.extend(reactivation.changed_slot_ids)
                if reactivation.error:
                    summary.failed += 1
                if reactivation.changed:
                    released = True

        if summary.partial:
            logger.warning(
                f"Suspension pass for slot {slot.id} partially failed: "
                f"{summary.changed}/{summary.matched} suspended, {summary.failed} failed"
            )
        elif summary.changed:
            logger.info(f"Slot {slot.id} suspended {summary.changed} competing slot(s)")

        return summary

    async def _suspend_one(
        self, slot: Slot, match: Slot, summary: SweepSummary
    ) -> Optional[Slot]:
        try:
            suspended = await retry_transient(
                lambda: self.db.update_slot(
                    match.id,
                    {
                        "status": SlotStatus.CANCELLED,
                        "suspended_by": slot.id,
                        "cancellation_reason": SUSPENSION_REASON,
                    },
                    conditions={"status": match.status},
                ),
                f"suspending slot {match.id}",
            )
        except DatabaseError as e:
            summary.failed += 1
            logger.warning(f"Could not suspend slot {match.id} for {slot.id}: {e}")
            return None

        if suspended is None:
            # Changed by a concurrent request since the search; nothing to do
            logger.info(f"Slot {match.id} changed before it could be suspended, skipping")
            return None

        summary.changed += 1
        summary.changed_slot_ids.append(suspended.id)

        if suspended.client_id and self.dispatcher:
            await self.dispatcher.notify_client(suspended, NotificationKind.SUSPENSION)
        return suspended

    async def reactivate(self, slot_id: str) -> SweepSummary:
        """
        Undo every suspension caused by ``slot_id``.

        Reactivated slots return to pending with no suspension tag, and are
        independently bookable again.
        """
        summary = SweepSummary(trigger_slot_id=slot_id)

        try:
            suspended = await retry_transient(
                lambda: self.db.find_suspended_by(slot_id),
                f"reactivation search for slot {slot_id}",
            )
        except DatabaseError as e:
            summary.error = str(e)
            logger.warning(f"Reactivation pass for slot {slot_id} could not run: {e}")
            return summary

        summary.matched = len(suspended)

        for victim in suspended:
            try:
                restored = await retry_transient(
                    lambda v=victim: self.db.update_slot(
                        v.id,
                        {
                            "status": SlotStatus.PENDING,
                            "suspended_by": None,
                            "cancellation_reason": None,
                        },
                        conditions={
                            "suspended_by": slot_id,
                            "status": SlotStatus.CANCELLED,
                        },
                    ),
                    f"reactivating slot {victim.id}",
                )
            except DatabaseError as e:
                summary.failed += 1
                logger.warning(f"Could not reactivate slot {victim.id} after {slot_id}: {e}")
                continue

            if restored is None:
                continue

            summary.changed += 1
            summary.changed_slot_ids.append(restored.id)

        if summary.partial:
            logger.warning(
                f"Reactivation pass for slot {slot_id} partially failed: "
                f"{summary.changed}/{summary.matched} reactivated, {summary.failed} failed"
            )
        elif summary.changed:
            logger.info(f"{summary.changed} slot(s) reactivated after slot {slot_id}")

        return summary
