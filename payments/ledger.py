"""
Read-only view of the payment ledger.

Transactions are written by the payment collaborators (Stripe checkout and
payouts); the slot engine only asks whether a slot has one attached.
"""

import logging

from db.supabase_client import SupabaseClient

logger = logging.getLogger(__name__)


class PaymentLedger:
    def __init__(self, db: SupabaseClient):
        self.db = db

    async def has_linked_transaction(self, slot_id: str) -> bool:
        """
        True if a transaction that is neither failed nor cancelled references the slot.

        Raises:
            DatabaseError: If the ledger cannot be read
        """
        transactions = await self.db.get_linked_transactions(slot_id)
        if transactions:
            logger.debug(
                f"Slot {slot_id} has {len(transactions)} linked transaction(s): "
                f"{[t.get('id') for t in transactions]}"
            )
        return bool(transactions)
