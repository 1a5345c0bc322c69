"""Slot lifecycle and conflict-resolution engine."""

from .engine import SlotEngine, get_engine
from .generator import SlotGenerator, count_per_day, expand_template
from .lifecycle import BookingService
from .overlap import ConflictDetector, overlaps
from .reaper import SlotReaper
from .suspension import SuspensionCoordinator

__all__ = [
    "BookingService",
    "ConflictDetector",
    "SlotEngine",
    "SlotGenerator",
    "SlotReaper",
    "SuspensionCoordinator",
    "count_per_day",
    "expand_template",
    "get_engine",
    "overlaps",
]
