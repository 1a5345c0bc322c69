"""
Slot generator.

Expands a practitioner's weekly availability template over a date range
into concrete slots and writes them to the store in batches.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import settings
from db.supabase_client import SupabaseClient
from models.outcomes import ErrorKind, GenerationOutcome, failure, store_failure
from models.schedule import DateRange, GenerationMode, Weekday, WeeklyTemplate
from models.slot import PaymentStatus, SlotCreate, SlotStatus
from utils.datetime_utils import iter_days, local_day_bounds
from utils.exceptions import DatabaseError, ValidationError
from utils.logging_config import setup_logging
from utils.retry import retry_transient

logger = setup_logging(name=__name__, log_file="generator.log")


def _zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError(f"Unknown timezone: {tz_name}") from e


def validate_template(template: WeeklyTemplate, date_range: DateRange) -> None:
    """
    Raise ValidationError for an unusable template or range.

    Empty templates (no services, no enabled day) are valid: they simply
    produce nothing.
    """
    if not template.practitioner_id:
        raise ValidationError("Template has no practitioner")

    range_error = date_range.validation_error()
    if range_error:
        raise ValidationError(range_error)

    _zone(template.timezone)

    for weekday, day in template.days.items():
        if not day.enabled:
            continue
        for window in day.windows:
            if window.is_empty:
                raise ValidationError(
                    f"Availability window {window.start.isoformat()}-{window.end.isoformat()} "
                    f"on {Weekday(weekday).name.title()} is empty or inverted"
                )


def expand_template(template: WeeklyTemplate, date_range: DateRange) -> List[SlotCreate]:
    """
    Compute the slots a template produces over a date range, without touching the store.

    Each service is laid out independently in every window: a slot starts at
    the window start and the cursor advances by duration plus gap until the
    next slot would end after the window end. Sequences of different
    services may overlap.

    Args:
        template: Weekly availability template
        date_range: Inclusive range of calendar dates

    Returns:
        New pending, unbooked slots ordered by day, window and service

    Raises:
        ValidationError: If the template or range is invalid
    """
    validate_template(template, date_range)
    zone = _zone(template.timezone)
    gap = timedelta(minutes=template.gap_minutes)
    slots: List[SlotCreate] = []

    for day in iter_days(date_range.start, date_range.end):
        availability = template.day(Weekday(day.isoweekday()))
        if not availability.enabled:
            continue

        for window in availability.windows:
            # Local wall-clock bounds, UTC stepping
            window_start = datetime.combine(day, window.start, tzinfo=zone).astimezone(timezone.utc)
            window_end = datetime.combine(day, window.end, tzinfo=zone).astimezone(timezone.utc)

            for service in template.services:
                duration = timedelta(minutes=service.duration_minutes)
                cursor = window_start
                while cursor + duration <= window_end:
                    slots.append(
                        SlotCreate(
                            practitioner_id=template.practitioner_id,
                            service_id=service.id,
                            start_time=cursor,
                            end_time=cursor + duration,
                            status=SlotStatus.PENDING,
                            payment_status=PaymentStatus.UNPAID,
                        )
                    )
                    cursor += duration + gap

    return slots


def count_per_day(slots: Iterable[SlotCreate], tz_name: str) -> Dict[str, int]:
    """Number of slots per local calendar day (ISO date keys), for previews."""
    zone = _zone(tz_name)
    counts: Dict[str, int] = {}
    for slot in slots:
        key = slot.start_time.astimezone(zone).date().isoformat()
        counts[key] = counts.get(key, 0) + 1
    return counts


def _chunks(items: List[SlotCreate], size: int) -> Iterable[List[SlotCreate]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class SlotGenerator:
    """Writes expanded templates to the slot store."""

    def __init__(self, db: SupabaseClient, batch_size: Optional[int] = None):
        self.db = db
        self.batch_size = max(1, batch_size or settings.generation_batch_size)

    def preview(self, template: WeeklyTemplate, date_range: DateRange) -> GenerationOutcome:
        """Per-day counts of what ``generate`` would create. Nothing is written."""
        try:
            slots = expand_template(template, date_range)
        except ValidationError as e:
            return GenerationOutcome(
                success=False, error=failure(ErrorKind.VALIDATION_FAILED, str(e))
            )

        return GenerationOutcome(
            success=True,
            nothing_to_generate=not slots,
            per_day=count_per_day(slots, template.timezone),
        )

    async def generate(
        self,
        template: WeeklyTemplate,
        date_range: DateRange,
        mode: GenerationMode = GenerationMode.APPEND,
    ) -> GenerationOutcome:
        """
        Generate slots for a date range.

        Inserts are chunked by ``batch_size``. If a chunk fails, rows already
        inserted by this run are deleted again and the outcome is a failure.
        In replace mode, once every chunk is in, the unbooked slots of the
        practitioner that were already in the range are deleted; booked slots
        are never touched.

        Args:
            template: Weekly availability template
            date_range: Inclusive range of calendar dates
            mode: Replace or append

        Returns:
            GenerationOutcome with created and deleted counts
        """
        try:
            slots = expand_template(template, date_range)
        except ValidationError as e:
            logger.warning(f"Rejected generation request for {template.practitioner_id}: {e}")
            return GenerationOutcome(
                success=False, error=failure(ErrorKind.VALIDATION_FAILED, str(e))
            )

        if not slots:
            logger.info(
                f"Nothing to generate for practitioner {template.practitioner_id} "
                f"between {date_range.start} and {date_range.end}"
            )
            return GenerationOutcome(success=True, nothing_to_generate=True)

        inserted_ids: List[str] = []
        try:
            for chunk in _chunks(slots, self.batch_size):
                rows = await self.db.bulk_insert_slots(chunk)
                inserted_ids.extend(row.id for row in rows if row.id)
        except DatabaseError as e:
            logger.error(
                f"Slot generation failed for {template.practitioner_id} after "
                f"{len(inserted_ids)} row(s): {e}"
            )
            return await self._fail(e, inserted_ids)

        # Replace mode clears old rows only after every new row is in
        deleted = 0
        if GenerationMode(mode) == GenerationMode.REPLACE:
            start, end = local_day_bounds(date_range.start, date_range.end, template.timezone)
            try:
                deleted = await self.db.delete_unbooked_in_range(
                    template.practitioner_id, start, end, exclude_ids=inserted_ids
                )
            except DatabaseError as e:
                logger.error(f"Replace-mode cleanup failed for {template.practitioner_id}: {e}")
                return await self._fail(e, inserted_ids)

        logger.info(
            f"Generated {len(inserted_ids)} slot(s) for practitioner {template.practitioner_id} "
            f"({date_range.start} to {date_range.end}, mode={GenerationMode(mode).value}, "
            f"replaced {deleted})"
        )
        return GenerationOutcome(
            success=True,
            created_count=len(inserted_ids),
            deleted_count=deleted,
            per_day=count_per_day(slots, template.timezone),
        )

    async def _fail(self, error: DatabaseError, inserted_ids: List[str]) -> GenerationOutcome:
        rolled_back = await self._compensate(inserted_ids)
        outcome_error = store_failure(error)
        outcome_error.details.update(
            {"inserted_before_failure": len(inserted_ids), "rolled_back": rolled_back}
        )
        return GenerationOutcome(success=False, error=outcome_error)

    async def _compensate(self, inserted_ids: List[str]) -> int:
        """Delete the rows a failed run already inserted. Returns how many went away."""
        if not inserted_ids:
            return 0
        try:
            removed = await retry_transient(
                lambda: self.db.delete_slots_by_ids(inserted_ids),
                f"rolling back {len(inserted_ids)} generated slot(s)",
            )
        except DatabaseError as e:
            logger.error(
                f"Could not roll back {len(inserted_ids)} generated slot(s): {e}. "
                f"IDs: {inserted_ids}",
                exc_info=True,
            )
            return 0
        logger.info(f"Rolled back {removed} generated slot(s)")
        return removed
