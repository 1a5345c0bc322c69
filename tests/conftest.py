"""
Pytest configuration and shared fixtures.

Engine tests run against FakeSlotStore, an in-memory implementation of the
SupabaseClient interface with the same conditional-update semantics.
Store tests mock the Supabase query builder chain instead.
"""

import itertools
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from config import settings
from db.supabase_client import NOT_NULL
from models.client import Client, Practitioner
from models.service import Service
from models.slot import PaymentStatus, Slot, SlotStatus
from notifications.dispatcher import NotificationDispatcher
from scheduling.engine import SlotEngine
from utils.constants import INACTIVE_TRANSACTION_STATUSES
from utils.datetime_utils import utc_now

# A Tuesday far enough ahead to stay in the future
BASE_TIME = datetime(2030, 1, 15, 10, 0, tzinfo=timezone.utc)


def at(hours: float = 0, minutes: int = 0) -> datetime:
    """BASE_TIME shifted by the given offset."""
    return BASE_TIME + timedelta(hours=hours, minutes=minutes)


def _value(v: Any) -> Any:
    return v.value if isinstance(v, Enum) else v


class FakeSlotStore:
    """In-memory slot store used by engine tests."""

    def __init__(self):
        self.slots: Dict[str, Slot] = {}
        self.services: Dict[str, Service] = {}
        self.clients: Dict[str, Client] = {}
        self.practitioners: Dict[str, Practitioner] = {}
        self.transactions: Dict[str, List[dict]] = {}
        self.failures: Dict[str, List[Exception]] = {}
        self.calls: List[str] = []
        self._ids = itertools.count(1)

    # ----- test helpers -----

    def fail(self, method: str, *errors: Exception) -> None:
        """Make the next calls of ``method`` raise ``errors`` in order."""
        self.failures.setdefault(method, []).extend(errors)

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        queue = self.failures.get(method)
        if queue:
            raise queue.pop(0)

    def add(self, **fields: Any) -> Slot:
        slot_id = fields.pop("id", None) or f"slot-{next(self._ids)}"
        slot = Slot(id=slot_id, **fields)
        self.slots[slot_id] = slot
        return slot.model_copy(deep=True)

    def get(self, slot_id: str) -> Optional[Slot]:
        return self.slots.get(slot_id)

    @staticmethod
    def _matches(slot: Slot, conditions: Optional[Dict[str, Any]]) -> bool:
        for column, expected in (conditions or {}).items():
            actual = getattr(slot, column)
            if expected is None:
                if actual is not None:
                    return False
            elif expected is NOT_NULL:
                if actual is None:
                    return False
            elif _value(actual) != _value(expected):
                return False
        return True

    def _copy(self, slots) -> List[Slot]:
        return [s.model_copy(deep=True) for s in sorted(slots, key=lambda s: s.start_time)]

    # ----- reads -----

    async def get_slot_by_id(self, slot_id: str) -> Optional[Slot]:
        self._enter("get_slot_by_id")
        slot = self.slots.get(slot_id)
        return slot.model_copy(deep=True) if slot else None

    async def find_overlapping_slots(
        self,
        practitioner_id,
        start,
        end,
        *,
        service_id=None,
        exclude_service_id=None,
        exclude_id=None,
        statuses=None,
    ) -> List[Slot]:
        self._enter("find_overlapping_slots")
        wanted = {_value(s) for s in statuses} if statuses else None
        return self._copy(
            s
            for s in self.slots.values()
            if s.practitioner_id == practitioner_id
            and s.start_time < end
            and s.end_time > start
            and (service_id is None or s.service_id == service_id)
            and (exclude_service_id is None or s.service_id != exclude_service_id)
            and (exclude_id is None or s.id != exclude_id)
            and (wanted is None or _value(s.status) in wanted)
        )

    async def find_suspended_by(self, slot_id: str) -> List[Slot]:
        self._enter("find_suspended_by")
        return self._copy(
            s
            for s in self.slots.values()
            if s.suspended_by == slot_id and s.status == SlotStatus.CANCELLED
        )

    async def get_available_slots(self, service_id, start, end, practitioner_id=None):
        self._enter("get_available_slots")
        return self._copy(
            s
            for s in self.slots.values()
            if s.client_id is None
            and s.status != SlotStatus.CANCELLED
            and s.service_id == service_id
            and start <= s.start_time <= end
            and (practitioner_id is None or s.practitioner_id == practitioner_id)
        )

    async def get_slots_for_reminder(self, hours_before: int) -> List[Slot]:
        self._enter("get_slots_for_reminder")
        now = utc_now()
        target = now + timedelta(hours=hours_before)
        return self._copy(
            s
            for s in self.slots.values()
            if s.status == SlotStatus.CONFIRMED
            and s.client_id is not None
            and s.reminder_sent_at is None
            and now <= s.start_time <= target
        )

    # ----- writes -----

    async def create_slot(self, slot_data) -> Slot:
        self._enter("create_slot")
        return self.add(**slot_data.model_dump(exclude_none=True))

    async def bulk_insert_slots(self, slots) -> List[Slot]:
        self._enter("bulk_insert_slots")
        return [self.add(**s.model_dump(exclude_none=True)) for s in slots]

    async def update_slot(self, slot_id, data, conditions=None, exclude_status=None):
        self._enter("update_slot")
        slot = self.slots.get(slot_id)
        if slot is None or not self._matches(slot, conditions):
            return None
        if exclude_status is not None and _value(slot.status) == _value(exclude_status):
            return None

        merged = slot.model_dump()
        merged.update({key: _value(value) for key, value in data.items()})
        merged["updated_at"] = utc_now()
        updated = Slot(**merged)
        self.slots[slot_id] = updated
        return updated.model_copy(deep=True)

    async def claim_slot(self, slot_id, data):
        return await self.update_slot(
            slot_id, data, conditions={"client_id": None}, exclude_status=SlotStatus.CANCELLED
        )

    async def mark_payment(self, slot_id, payment_status, payment_id=None):
        data = {"payment_status": payment_status}
        if payment_id:
            data["payment_id"] = payment_id
        return await self.update_slot(slot_id, data, conditions={"client_id": NOT_NULL})

    async def mark_reminder_sent(self, slot_id):
        return await self.update_slot(slot_id, {"reminder_sent_at": utc_now()})

    async def delete_slot(self, slot_id, conditions=None) -> bool:
        self._enter("delete_slot")
        slot = self.slots.get(slot_id)
        if slot is None or not self._matches(slot, conditions):
            return False
        del self.slots[slot_id]
        return True

    def _delete_where(self, predicate) -> int:
        doomed = [i for i, s in self.slots.items() if predicate(s)]
        for slot_id in doomed:
            del self.slots[slot_id]
        return len(doomed)

    async def delete_slots_by_ids(self, slot_ids) -> int:
        self._enter("delete_slots_by_ids")
        ids = set(slot_ids)
        return self._delete_where(lambda s: s.id in ids)

    async def delete_unbooked_in_range(self, practitioner_id, start, end, exclude_ids=None) -> int:
        self._enter("delete_unbooked_in_range")
        kept = set(exclude_ids or ())
        return self._delete_where(
            lambda s: s.practitioner_id == practitioner_id
            and s.client_id is None
            and start <= s.start_time < end
            and s.id not in kept
        )

    async def delete_stale_unbooked(self, practitioner_id, before) -> int:
        self._enter("delete_stale_unbooked")
        return self._delete_where(
            lambda s: s.practitioner_id == practitioner_id
            and s.client_id is None
            and s.status == SlotStatus.PENDING
            and s.start_time < before
        )

    async def delete_stale_suspended(self, practitioner_id, before) -> int:
        self._enter("delete_stale_suspended")
        return self._delete_where(
            lambda s: s.practitioner_id == practitioner_id
            and s.client_id is None
            and s.status == SlotStatus.CANCELLED
            and s.suspended_by is not None
            and s.start_time < before
        )

    # ----- catalog & contacts -----

    async def get_service_by_id(self, service_id):
        self._enter("get_service_by_id")
        return self.services.get(service_id)

    async def get_client_by_id(self, client_id):
        self._enter("get_client_by_id")
        return self.clients.get(client_id)

    async def get_practitioner_by_id(self, practitioner_id):
        self._enter("get_practitioner_by_id")
        return self.practitioners.get(practitioner_id)

    async def get_active_practitioners(self):
        self._enter("get_active_practitioners")
        return [p for p in self.practitioners.values() if p.is_active]

    async def get_linked_transactions(self, slot_id):
        self._enter("get_linked_transactions")
        return [
            t
            for t in self.transactions.get(slot_id, [])
            if t.get("status") not in INACTIVE_TRANSACTION_STATUSES
        ]


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """No waiting between retry attempts in tests."""
    monkeypatch.setattr(settings, "secondary_retry_delay_seconds", 0.0)


@pytest.fixture
def service_a() -> Service:
    return Service(id="svc-a", name="Consultation", price=60.0, duration_minutes=30)


@pytest.fixture
def service_b() -> Service:
    return Service(id="svc-b", name="Coaching", price=90.0, duration_minutes=60)


@pytest.fixture
def store(service_a, service_b) -> FakeSlotStore:
    fake = FakeSlotStore()
    fake.services = {service_a.id: service_a, service_b.id: service_b}
    fake.practitioners = {
        "prac-1": Practitioner(id="prac-1", display_name="Dr. One", telegram_id=1001),
        "prac-2": Practitioner(id="prac-2", display_name="Dr. Two", telegram_id=1002),
    }
    fake.clients = {
        "client-1": Client(id="client-1", telegram_id=2001, first_name="Ana"),
        "client-2": Client(id="client-2", telegram_id=2002, first_name="Ben"),
    }
    return fake


@pytest.fixture
def dispatcher() -> MagicMock:
    """Dispatcher double recording notifications."""
    mock = MagicMock(spec=NotificationDispatcher)
    mock.notify_client = AsyncMock(return_value=True)
    mock.notify_practitioner = AsyncMock(return_value=True)
    mock.notify_parties = AsyncMock(return_value=2)
    mock.dispatch = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def engine(store, dispatcher) -> SlotEngine:
    return SlotEngine(store, dispatcher=dispatcher)


@pytest.fixture
def mock_supabase_client():
    """Create a mock Supabase client."""
    mock_client = MagicMock()
    mock_table = MagicMock()
    mock_client.table.return_value = mock_table
    return mock_client, mock_table


@pytest.fixture
def supabase_client(mock_supabase_client):
    """SupabaseClient wired to the mocked Supabase client."""
    from db.supabase_client import SupabaseClient

    mock_client, _ = mock_supabase_client
    with patch("db.supabase_client.create_client", return_value=mock_client):
        client = SupabaseClient()
    client.client = mock_client
    return client


def _make_slot(store: FakeSlotStore, **fields: Any) -> Slot:
    """Add a slot with sensible defaults (prac-1, svc-a, 10:00-10:30)."""
    defaults = {
        "practitioner_id": "prac-1",
        "service_id": "svc-a",
        "start_time": at(0),
        "end_time": at(0, 30),
        "status": SlotStatus.PENDING,
        "payment_status": PaymentStatus.UNPAID,
    }
    defaults.update(fields)
    return store.add(**defaults)


@pytest.fixture
def make_slot(store):
    """Factory adding slots to the fake store."""

    def factory(**fields: Any) -> Slot:
        return _make_slot(store, **fields)

    return factory
