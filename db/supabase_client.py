"""
Supabase database client for the slot store.
Handles all backing store access: slots, services, contacts, and the
read-only view of payment transactions.

Row Level Security (RLS) Notes:
==============================
This client uses the service key which bypasses RLS. Practitioner and client
scoping is enforced by the lifecycle layer (actor roles) and, for
user-facing reads, by RLS policies configured in the Supabase dashboard.

Concurrency Notes:
==================
Claims and status changes are conditional updates: the filter carries the
precondition ("client_id is still null", "status is still X") and an empty
result means another request won the race. There is never a separate read
followed by an unconditional write.
"""

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx
from postgrest.exceptions import APIError
from supabase import Client as SupabaseClientType
from supabase import ClientOptions, create_client

from config import settings
from models.client import Client, Practitioner
from models.service import Service
from models.slot import PaymentStatus, Slot, SlotCreate, SlotStatus
from utils.constants import (
    CLIENTS_TABLE,
    INACTIVE_TRANSACTION_STATUSES,
    PRACTITIONERS_TABLE,
    SERVICES_TABLE,
    SLOTS_TABLE,
    TRANSACTIONS_TABLE,
)
from utils.datetime_utils import parse_iso_datetime, to_iso_string, utc_now
from utils.exceptions import BackingStoreUnavailableError, DatabaseError

# Postgres "query_canceled", raised when statement_timeout fires
_STATEMENT_TIMEOUT_CODE = "57014"


class _NotNull:
    """Condition marker: column must be non-null."""

    def __repr__(self) -> str:
        return "NOT_NULL"


NOT_NULL = _NotNull()


def _store_error(action: str, error: Exception) -> DatabaseError:
    """Classify a client-library failure as transient or permanent."""
    if isinstance(error, DatabaseError):
        return error
    if isinstance(error, httpx.TransportError):
        return BackingStoreUnavailableError(f"Failed to {action}: {error}")
    if isinstance(error, APIError) and error.code == _STATEMENT_TIMEOUT_CODE:
        return BackingStoreUnavailableError(f"Failed to {action}: {error.message}")
    return DatabaseError(f"Failed to {action}: {error}")


def _serialize_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso_string(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _serialize(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: _serialize_value(value) for key, value in data.items()}


class SupabaseClient:
    """
    Supabase slot store.

    Uses service_role key which bypasses RLS for admin operations.
    Every PostgREST call is bounded by ``settings.backing_store_timeout_seconds``.

    Includes simple in-memory cache for the service catalog and practitioner
    profiles, which change rarely and are read on every notification.
    """

    def __init__(self):
        self.client: SupabaseClientType = create_client(
            settings.supabase_url,
            settings.supabase_key,
            options=ClientOptions(
                postgrest_client_timeout=settings.backing_store_timeout_seconds
            ),
        )

        # Format: {cache_key: (data, expiry_time)}
        self._cache: Dict[str, Tuple[Any, datetime]] = {}
        self._cache_ttl = timedelta(minutes=5)

    # ========== Cache Helpers ==========

    def _get_from_cache(self, key: str) -> Optional[Any]:
        """Get value from cache if not expired."""
        if key not in self._cache:
            return None

        data, expiry = self._cache[key]
        if utc_now() > expiry:
            del self._cache[key]
            return None

        return data

    def _set_cache(self, key: str, value: Any) -> None:
        expiry = utc_now() + self._cache_ttl
        self._cache[key] = (value, expiry)

    # ========== Query Helpers ==========

    @staticmethod
    def _apply_conditions(query, conditions: Optional[Dict[str, Any]]):
        """
        Add precondition filters to a query.

        ``None`` means "is null", ``NOT_NULL`` means "is not null", anything
        else is an equality check.
        """
        for column, expected in (conditions or {}).items():
            if expected is None:
                query = query.is_(column, "null")
            elif expected is NOT_NULL:
                query = query.not_.is_(column, "null")
            else:
                query = query.eq(column, _serialize_value(expected))
        return query

    # ========== Slot Reads ==========

    async def get_slot_by_id(self, slot_id: str) -> Optional[Slot]:
        """Get slot by ID."""
        try:
            response = (
                self.client.table(SLOTS_TABLE).select("*").eq("id", slot_id).execute()
            )
        except Exception as e:
            raise _store_error("get slot", e) from e

        if response.data:
            return self._parse_slot(response.data[0])
        return None

    async def find_overlapping_slots(
        self,
        practitioner_id: str,
        start: datetime,
        end: datetime,
        *,
        service_id: Optional[str] = None,
        exclude_service_id: Optional[str] = None,
        exclude_id: Optional[str] = None,
        statuses: Optional[Sequence[SlotStatus]] = None,
    ) -> List[Slot]:
        """
        Slots of one practitioner whose interval intersects ``[start, end)``.

        Args:
            practitioner_id: Practitioner whose calendar is searched
            start: Interval start (inclusive)
            end: Interval end (exclusive)
            service_id: Only this service
            exclude_service_id: Every service except this one
            exclude_id: Skip this slot (the one being edited)
            statuses: Restrict to these statuses
        """
        try:
            query = (
                self.client.table(SLOTS_TABLE)
                .select("*")
                .eq("practitioner_id", practitioner_id)
                .lt("start_time", to_iso_string(end))
                .gt("end_time", to_iso_string(start))
            )
            if service_id:
                query = query.eq("service_id", service_id)
            if exclude_service_id:
                query = query.neq("service_id", exclude_service_id)
            if exclude_id:
                query = query.neq("id", exclude_id)
            if statuses:
                query = query.in_("status", [_serialize_value(s) for s in statuses])

            response = query.order("start_time", desc=False).execute()
        except Exception as e:
            raise _store_error("find overlapping slots", e) from e

        return [self._parse_slot(item) for item in response.data]

    async def find_suspended_by(self, slot_id: str) -> List[Slot]:
        """Cancelled slots whose suspension was caused by ``slot_id``."""
        try:
            response = (
                self.client.table(SLOTS_TABLE)
                .select("*")
                .eq("suspended_by", slot_id)
                .eq("status", SlotStatus.CANCELLED.value)
                .execute()
            )
        except Exception as e:
            raise _store_error("find suspended slots", e) from e

        return [self._parse_slot(item) for item in response.data]

    async def get_available_slots(
        self,
        service_id: str,
        start: datetime,
        end: datetime,
        practitioner_id: Optional[str] = None,
    ) -> List[Slot]:
        """Unbooked, non-cancelled slots of a service starting within ``[start, end]``."""
        try:
            query = (
                self.client.table(SLOTS_TABLE)
                .select("*")
                .is_("client_id", "null")
                .neq("status", SlotStatus.CANCELLED.value)
                .eq("service_id", service_id)
                .gte("start_time", to_iso_string(start))
                .lte("start_time", to_iso_string(end))
            )
            if practitioner_id:
                query = query.eq("practitioner_id", practitioner_id)

            response = query.order("start_time", desc=False).execute()
        except Exception as e:
            raise _store_error("get available slots", e) from e

        return [self._parse_slot(item) for item in response.data]

    async def get_slots_for_reminder(self, hours_before: int) -> List[Slot]:
        """Confirmed slots starting within the next ``hours_before`` hours, not yet reminded."""
        now = utc_now()
        target = now + timedelta(hours=hours_before)
        try:
            response = (
                self.client.table(SLOTS_TABLE)
                .select("*")
                .eq("status", SlotStatus.CONFIRMED.value)
                .not_.is_("client_id", "null")
                .is_("reminder_sent_at", "null")
                .gte("start_time", to_iso_string(now))
                .lte("start_time", to_iso_string(target))
                .order("start_time", desc=False)
                .execute()
            )
        except Exception as e:
            raise _store_error("get slots for reminder", e) from e

        return [self._parse_slot(item) for item in response.data]

    # ========== Slot Writes ==========

    async def create_slot(self, slot_data: SlotCreate) -> Slot:
        """Insert a single slot."""
        try:
            data = _serialize(slot_data.model_dump(exclude_none=True))
            response = self.client.table(SLOTS_TABLE).insert(data).execute()
        except Exception as e:
            raise _store_error("create slot", e) from e

        if not response.data:
            raise DatabaseError("Failed to create slot: no data returned")
        return self._parse_slot(response.data[0])

    async def bulk_insert_slots(self, slots: Iterable[SlotCreate]) -> List[Slot]:
        """Insert many slots in one request. Returns the stored rows."""
        rows = [_serialize(s.model_dump(exclude_none=True)) for s in slots]
        if not rows:
            return []

        try:
            response = self.client.table(SLOTS_TABLE).insert(rows).execute()
        except Exception as e:
            raise _store_error("bulk insert slots", e) from e

        return [self._parse_slot(item) for item in response.data]

    async def update_slot(
        self,
        slot_id: str,
        data: Dict[str, Any],
        conditions: Optional[Dict[str, Any]] = None,
        exclude_status: Optional[SlotStatus] = None,
    ) -> Optional[Slot]:
        """
        Conditionally update one slot.

        Args:
            slot_id: Slot to update
            data: Column values to write
            conditions: Preconditions that must still hold (see _apply_conditions)
            exclude_status: Precondition that the status is not this value

        Returns:
            The updated slot, or None if the slot is gone or a precondition failed
        """
        payload = _serialize(data)
        payload["updated_at"] = to_iso_string(utc_now())

        try:
            query = self.client.table(SLOTS_TABLE).update(payload).eq("id", slot_id)
            query = self._apply_conditions(query, conditions)
            if exclude_status is not None:
                query = query.neq("status", _serialize_value(exclude_status))
            response = query.execute()
        except Exception as e:
            raise _store_error("update slot", e) from e

        if not response.data:
            return None
        return self._parse_slot(response.data[0])

    async def claim_slot(self, slot_id: str, data: Dict[str, Any]) -> Optional[Slot]:
        """
        Book a slot iff it is still unbooked and not cancelled.

        Returns:
            The booked slot, or None if another request claimed it first
        """
        return await self.update_slot(
            slot_id,
            data,
            conditions={"client_id": None},
            exclude_status=SlotStatus.CANCELLED,
        )

    async def mark_payment(
        self,
        slot_id: str,
        payment_status: PaymentStatus,
        payment_id: Optional[str] = None,
    ) -> Optional[Slot]:
        """Record a payment status change reported by the payment collaborator."""
        data: Dict[str, Any] = {"payment_status": payment_status}
        if payment_id:
            data["payment_id"] = payment_id
        return await self.update_slot(slot_id, data, conditions={"client_id": NOT_NULL})

    async def mark_reminder_sent(self, slot_id: str) -> Optional[Slot]:
        """Mark reminder as sent for a slot."""
        return await self.update_slot(slot_id, {"reminder_sent_at": utc_now()})

    async def delete_slot(
        self, slot_id: str, conditions: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Delete a slot, optionally only while preconditions hold.

        Returns:
            True if a row was deleted
        """
        try:
            query = self.client.table(SLOTS_TABLE).delete().eq("id", slot_id)
            query = self._apply_conditions(query, conditions)
            response = query.execute()
        except Exception as e:
            raise _store_error("delete slot", e) from e

        return len(response.data) > 0

    async def delete_slots_by_ids(self, slot_ids: List[str]) -> int:
        """Delete the given slots. Used to undo a partially inserted batch."""
        if not slot_ids:
            return 0
        try:
            response = (
                self.client.table(SLOTS_TABLE).delete().in_("id", slot_ids).execute()
            )
        except Exception as e:
            raise _store_error("delete slots by IDs", e) from e

        return len(response.data)

    async def delete_unbooked_in_range(
        self,
        practitioner_id: str,
        start: datetime,
        end: datetime,
        exclude_ids: Optional[List[str]] = None,
    ) -> int:
        """
        Delete unbooked slots of a practitioner starting within ``[start, end)``.

        Rows listed in ``exclude_ids`` are kept.
        """
        try:
            query = (
                self.client.table(SLOTS_TABLE)
                .delete()
                .eq("practitioner_id", practitioner_id)
                .is_("client_id", "null")
                .gte("start_time", to_iso_string(start))
                .lt("start_time", to_iso_string(end))
            )
            if exclude_ids:
                query = query.not_.in_("id", exclude_ids)
            response = query.execute()
        except Exception as e:
            raise _store_error("delete unbooked slots", e) from e

        return len(response.data)

    async def delete_stale_unbooked(self, practitioner_id: str, before: datetime) -> int:
        """Delete never-booked pending slots that started before ``before``."""
        try:
            response = (
                self.client.table(SLOTS_TABLE)
                .delete()
                .eq("practitioner_id", practitioner_id)
                .is_("client_id", "null")
                .eq("status", SlotStatus.PENDING.value)
                .lt("start_time", to_iso_string(before))
                .execute()
            )
        except Exception as e:
            raise _store_error("delete stale unbooked slots", e) from e

        return len(response.data)

    async def delete_stale_suspended(self, practitioner_id: str, before: datetime) -> int:
        """Delete unbooked auto-suspended slots that started before ``before``."""
        try:
            response = (
                self.client.table(SLOTS_TABLE)
                .delete()
                .eq("practitioner_id", practitioner_id)
                .is_("client_id", "null")
                .eq("status", SlotStatus.CANCELLED.value)
                .not_.is_("suspended_by", "null")
                .lt("start_time", to_iso_string(before))
                .execute()
            )
        except Exception as e:
            raise _store_error("delete stale suspended slots", e) from e

        return len(response.data)

    # ========== Catalog & Contacts ==========

    async def get_service_by_id(self, service_id: str) -> Optional[Service]:
        cache_key = f"service:{service_id}"
        cached = self._get_from_cache(cache_key)
        if cached is not None:
            return cached

        try:
            response = (
                self.client.table(SERVICES_TABLE)
                .select("*")
                .eq("id", service_id)
                .execute()
            )
        except Exception as e:
            raise _store_error("get service", e) from e

        if not response.data:
            return None
        service = Service(**response.data[0])
        self._set_cache(cache_key, service)
        return service

    async def get_client_by_id(self, client_id: str) -> Optional[Client]:
        try:
            response = (
                self.client.table(CLIENTS_TABLE).select("*").eq("id", client_id).execute()
            )
        except Exception as e:
            raise _store_error("get client", e) from e

        if response.data:
            return Client(**response.data[0])
        return None

    async def get_practitioner_by_id(self, practitioner_id: str) -> Optional[Practitioner]:
        cache_key = f"practitioner:{practitioner_id}"
        cached = self._get_from_cache(cache_key)
        if cached is not None:
            return cached

        try:
            response = (
                self.client.table(PRACTITIONERS_TABLE)
                .select("*")
                .eq("id", practitioner_id)
                .execute()
            )
        except Exception as e:
            raise _store_error("get practitioner", e) from e

        if not response.data:
            return None
        practitioner = Practitioner(**response.data[0])
        self._set_cache(cache_key, practitioner)
        return practitioner

    async def get_active_practitioners(self) -> List[Practitioner]:
        try:
            response = (
                self.client.table(PRACTITIONERS_TABLE)
                .select("*")
                .eq("is_active", True)
                .execute()
            )
        except Exception as e:
            raise _store_error("get active practitioners", e) from e

        return [Practitioner(**item) for item in response.data]

    # ========== Payment Ledger (read-only) ==========

    async def get_linked_transactions(self, slot_id: str) -> List[Dict[str, Any]]:
        """Transactions attached to a slot that are not failed or cancelled."""
        try:
            response = (
                self.client.table(TRANSACTIONS_TABLE)
                .select("id, status")
                .eq("appointment_id", slot_id)
                .not_.in_("status", list(INACTIVE_TRANSACTION_STATUSES))
                .execute()
            )
        except Exception as e:
            raise _store_error("get linked transactions", e) from e

        return list(response.data)

    # ========== Helper Methods ==========

    def _parse_slot(self, item: dict) -> Slot:
        """
        Parse slot data from database response.

        Args:
            item: Raw slot data from database

        Returns:
            Parsed Slot object
        """
        item = item.copy()
        for field in ["start_time", "end_time", "reminder_sent_at", "created_at", "updated_at"]:
            if item.get(field):
                item[field] = parse_iso_datetime(item[field])
        return Slot(**item)


# Global database client instance
_db_client: Optional[SupabaseClient] = None


def get_db_client() -> SupabaseClient:
    """Get or create database client instance."""
    global _db_client
    if _db_client is None:
        _db_client = SupabaseClient()
    return _db_client
