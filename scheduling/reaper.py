"""
Stale-slot reaper.

Removes slots nobody can book anymore: never-booked pending slots whose
start has passed, and auto-suspended ghosts (unbooked, cancelled, tagged
with ``suspended_by``) in the past. A slot with a client is never deleted.
"""

from datetime import datetime
from typing import List, Optional

from db.supabase_client import SupabaseClient
from models.outcomes import ReapOutcome, store_failure
from utils.datetime_utils import ensure_aware, utc_now
from utils.exceptions import DatabaseError
from utils.logging_config import setup_logging
from utils.retry import retry_transient

logger = setup_logging(name=__name__, log_file="reaper.log")


class SlotReaper:
    def __init__(self, db: SupabaseClient):
        self.db = db

    async def reap(self, practitioner_id: str, now: Optional[datetime] = None) -> ReapOutcome:
        """
        Delete stale unbooked slots of one practitioner.

        Args:
            practitioner_id: Practitioner whose calendar is cleaned
            now: Reference instant (defaults to current UTC time)

        Returns:
            ReapOutcome with the number of deleted slots
        """
        cutoff = ensure_aware(now) if now else utc_now()

        try:
            stale = await retry_transient(
                lambda: self.db.delete_stale_unbooked(practitioner_id, cutoff),
                f"reaping unbooked slots of {practitioner_id}",
            )
            ghosts = await retry_transient(
                lambda: self.db.delete_stale_suspended(practitioner_id, cutoff),
                f"reaping suspended slots of {practitioner_id}",
            )
        except DatabaseError as e:
            logger.error(f"Reaper failed for practitioner {practitioner_id}: {e}")
            return ReapOutcome(
                success=False, practitioner_id=practitioner_id, error=store_failure(e)
            )

        deleted = stale + ghosts
        if deleted:
            logger.info(
                f"Reaped {deleted} slot(s) for practitioner {practitioner_id} "
                f"({stale} unbooked, {ghosts} suspended)"
            )
        return ReapOutcome(success=True, practitioner_id=practitioner_id, deleted_count=deleted)

    async def reap_all(self, now: Optional[datetime] = None) -> List[ReapOutcome]:
        """Reap every active practitioner. One failure does not stop the others."""
        try:
            practitioners = await self.db.get_active_practitioners()
        except DatabaseError as e:
            logger.error(f"Could not list practitioners for reaping: {e}")
            return []

        outcomes = []
        for practitioner in practitioners:
            outcomes.append(await self.reap(practitioner.id, now))

        total = sum(o.deleted_count for o in outcomes)
        failed = sum(1 for o in outcomes if not o.success)
        logger.info(
            f"Reaper run finished: {total} slot(s) deleted across "
            f"{len(outcomes)} practitioner(s), {failed} failed"
        )
        return outcomes
