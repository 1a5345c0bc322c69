"""Weekly availability template used to generate slots."""

from datetime import date, time
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from models.service import Service
from utils.constants import MAX_GAP_MINUTES, MAX_GENERATION_DAYS


class Weekday(int, Enum):
    """ISO weekday numbers, matching ``date.isoweekday()``."""

    MONDAY = 1
    TUESDAY = 2
    WEDNESDAY = 3
    THURSDAY = 4
    FRIDAY = 5
    SATURDAY = 6
    SUNDAY = 7


class GenerationMode(str, Enum):
    """Whether generation first clears unbooked slots in the range."""

    REPLACE = "replace"
    APPEND = "append"


class AvailabilityWindow(BaseModel):
    """Wall-clock window (practitioner's timezone) in which slots are placed."""

    start: time
    end: time

    @property
    def is_empty(self) -> bool:
        return self.start >= self.end


class DayAvailability(BaseModel):
    enabled: bool = False
    windows: List[AvailabilityWindow] = Field(default_factory=list)


class WeeklyTemplate(BaseModel):
    """
    Everything the generator needs besides the date range.

    ``days`` maps weekdays to their availability; missing weekdays are
    treated as disabled.
    """

    practitioner_id: str
    days: Dict[Weekday, DayAvailability] = Field(default_factory=dict)
    services: List[Service] = Field(default_factory=list)
    gap_minutes: int = Field(default=0, ge=0, le=MAX_GAP_MINUTES)
    timezone: str = "UTC"

    def day(self, weekday: Weekday) -> DayAvailability:
        return self.days.get(weekday) or DayAvailability()


class DateRange(BaseModel):
    """Inclusive range of calendar dates."""

    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def validation_error(self) -> Optional[str]:
        if self.start > self.end:
            return "Date range start must not be after its end"
        if self.days > MAX_GENERATION_DAYS:
            return f"Date range may span at most {MAX_GENERATION_DAYS} days"
        return None
