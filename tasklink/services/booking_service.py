"""Provider calendar: time slots, atomic slot booking, and bookings."""

import logging
from collections.abc import Iterable
from datetime import date, datetime, timedelta
from typing import Any

from tasklink.core.config import constants
from tasklink.core.errors import NotFoundError, SlotConflictError
from tasklink.core.logging import span
from tasklink.core.repository import DuplicateRecordError, RecordNotFoundError, Repository
from tasklink.domain.notification import NotificationPayload, NotificationType
from tasklink.domain.task import Booking, BookingStatus, TimeSlot, WeeklyAvailability
from tasklink.models.service_models import ProviderSchedule
from tasklink.services.notification_service import NotificationSink


logger = logging.getLogger(__name__)

# Bookings still holding their slot
ACTIVE_BOOKING_STATUSES = {BookingStatus.CONFIRMED, BookingStatus.RESCHEDULED}

# Slot state required for a booking to succeed
_BOOKABLE = {"is_booked": False, "is_available": True}


def _slot_sort_key(slot: TimeSlot) -> tuple[str, str]:
    return slot.date, slot.start_time


def _append_note(notes: str, line: str) -> str:
    return f"{notes}\n{line}" if notes else line


async def get_provider_availability(
    *,
    repository: Repository,
    provider_id: str,
    start_date: str,
    end_date: str,
) -> list[TimeSlot]:
    """Return every slot of a provider between two dates (inclusive), in calendar order."""
    with span("booking_service.get_provider_availability"):
        records = await repository.get("time_slots", {"provider_id": provider_id})
        slots = [TimeSlot.model_validate(r) for r in records if start_date <= r["date"] <= end_date]
        return sorted(slots, key=_slot_sort_key)


async def get_available_slots(
    *,
    repository: Repository,
    provider_id: str,
    start_date: str,
    end_date: str,
) -> list[TimeSlot]:
    """Return the provider's slots that can still be booked."""
    slots = await get_provider_availability(
        repository=repository, provider_id=provider_id, start_date=start_date, end_date=end_date
    )
    return [slot for slot in slots if slot.is_available and not slot.is_booked]


async def find_slot(
    *,
    repository: Repository,
    provider_id: str,
    date: str,
    start_time: str,
    end_time: str,
) -> dict[str, Any] | None:
    """Look a slot up by its natural key (provider, date, start, end)."""
    records = await repository.get(
        "time_slots",
        {"provider_id": provider_id, "date": date, "start_time": start_time, "end_time": end_time},
    )
    return records[0] if records else None


async def _insert_slot(*, repository: Repository, slot: TimeSlot) -> dict[str, Any]:
    """Insert a slot, returning the stored one when another writer created it first."""
    try:
        return await repository.insert("time_slots", slot.model_dump(exclude={"id", "version"}, exclude_none=True))
    except DuplicateRecordError:
        existing = await find_slot(
            repository=repository,
            provider_id=slot.provider_id,
            date=slot.date,
            start_time=slot.start_time,
            end_time=slot.end_time,
        )
        if existing is None:
            raise
        logger.debug("Slot %s %s-%s already created as %s", slot.date, slot.start_time, slot.end_time, existing["id"])
        return existing


async def upsert_time_slots(
    *,
    repository: Repository,
    provider_id: str,
    slots: Iterable[TimeSlot],
) -> list[TimeSlot]:
    """Create or update a provider's slots keyed by (provider, date, start, end).

    Booked slots are left untouched so a schedule change never frees a held slot.
    """
    with span("booking_service.upsert_time_slots"):
        stored: list[TimeSlot] = []
        for slot in slots:
            slot = slot.model_copy(update={"provider_id": provider_id})
            existing = await find_slot(
                repository=repository,
                provider_id=provider_id,
                date=slot.date,
                start_time=slot.start_time,
                end_time=slot.end_time,
            )
            if existing is None:
                record = await _insert_slot(repository=repository, slot=slot)
            elif existing.get("is_booked"):
                record = existing
            else:
                record = await repository.update("time_slots", existing["id"], {"is_available": slot.is_available})
            stored.append(TimeSlot.model_validate(record))

        logger.info("Upserted %d time slots for provider %s", len(stored), provider_id)
        return stored


def generate_time_slots_from_schedule(
    *,
    provider_id: str,
    weekly_schedule: Iterable[WeeklyAvailability],
    days_ahead: int = constants.SCHEDULE_GENERATION_DAYS,
    today: date | None = None,
) -> list[TimeSlot]:
    """Expand weekly opening hours into fixed-length slots for the coming days.

    A trailing interval shorter than the slot length is dropped.
    """
    today = today or date.today()
    by_day = {entry.day_of_week: entry for entry in weekly_schedule}
    length = timedelta(hours=constants.SLOT_LENGTH_HOURS)

    slots: list[TimeSlot] = []
    for offset in range(days_ahead):
        day = today + timedelta(days=offset)
        # date.weekday() is Monday=0; schedules use Sunday=0
        entry = by_day.get((day.weekday() + 1) % 7)
        if entry is None or not entry.is_available:
            continue

        start = datetime.combine(day, datetime.strptime(entry.start_time, "%H:%M").time())
        end = datetime.combine(day, datetime.strptime(entry.end_time, "%H:%M").time())
        while start + length <= end:
            slots.append(
                TimeSlot(
                    provider_id=provider_id,
                    date=day.isoformat(),
                    start_time=start.strftime("%H:%M"),
                    end_time=(start + length).strftime("%H:%M"),
                )
            )
            start += length
    return slots


async def update_weekly_availability(
    *,
    repository: Repository,
    provider_id: str,
    weekly_schedule: list[WeeklyAvailability],
    today: date | None = None,
) -> list[TimeSlot]:
    """Store a provider's weekly hours and regenerate slots for the coming month."""
    with span("booking_service.update_weekly_availability"):
        existing = {
            record["day_of_week"]: record
            for record in await repository.get("availability_schedules", {"provider_id": provider_id})
        }
        for entry in weekly_schedule:
            data = {"provider_id": provider_id, "timezone": "UTC", **entry.model_dump()}
            if entry.day_of_week in existing:
                await repository.update("availability_schedules", existing[entry.day_of_week]["id"], data)
            else:
                await repository.insert("availability_schedules", data)

        slots = generate_time_slots_from_schedule(
            provider_id=provider_id, weekly_schedule=weekly_schedule, today=today
        )
        return await upsert_time_slots(repository=repository, provider_id=provider_id, slots=slots)


async def ensure_slot(*, repository: Repository, slot: TimeSlot) -> dict[str, Any]:
    """Return the stored record for a slot, creating it when it doesn't exist yet."""
    if slot.id:
        try:
            return await repository.get_one("time_slots", slot.id)
        except RecordNotFoundError as e:
            msg = f"Time slot not found: {slot.id}"
            raise NotFoundError(msg) from e

    existing = await find_slot(
        repository=repository,
        provider_id=slot.provider_id,
        date=slot.date,
        start_time=slot.start_time,
        end_time=slot.end_time,
    )
    if existing is not None:
        return existing
    return await _insert_slot(repository=repository, slot=slot)


async def book_slot(*, repository: Repository, slot_id: str, task_id: str) -> TimeSlot:
    """Atomically mark a slot booked for a task.

    Raises:
        SlotConflictError: If the slot is already booked or not offered
    """
    with span("booking_service.book_slot"):
        record = await repository.update_if(
            "time_slots",
            slot_id,
            _BOOKABLE,
            {"is_booked": True, "is_available": False, "task_id": task_id},
        )
        if record is None:
            msg = f"Time slot {slot_id} is no longer available"
            raise SlotConflictError(msg)

        logger.info("Booked slot %s for task %s", slot_id, task_id)
        return TimeSlot.model_validate(record)


async def release_slot(*, repository: Repository, slot_id: str) -> TimeSlot:
    """Free a slot so it can be booked again."""
    with span("booking_service.release_slot"):
        record = await repository.update(
            "time_slots", slot_id, {"is_booked": False, "is_available": True, "task_id": None}
        )
        logger.info("Released slot %s", slot_id)
        return TimeSlot.model_validate(record)


async def release_slot_held_by(*, repository: Repository, slot_id: str, task_id: str) -> bool:
    """Free a slot only while it is still booked for `task_id`.

    Returns:
        True if the slot was released
    """
    with span("booking_service.release_slot_held_by"):
        record = await repository.update_if(
            "time_slots",
            slot_id,
            {"task_id": task_id, "is_booked": True},
            {"is_booked": False, "is_available": True, "task_id": None},
        )
        if record is None:
            return False
        logger.info("Released slot %s held by task %s", slot_id, task_id)
        return True


async def check_booking_conflicts(
    *,
    repository: Repository,
    provider_id: str,
    date: str,
    start_time: str,
    end_time: str,
    exclude_booking_id: str | None = None,
) -> list[Booking]:
    """Return the provider's non-cancelled bookings overlapping an interval."""
    records = await repository.get("bookings", {"provider_id": provider_id, "date": date})
    return [
        Booking.model_validate(r)
        for r in records
        if r["status"] != BookingStatus.CANCELLED
        and r["id"] != exclude_booking_id
        and r["start_time"] < end_time
        and r["end_time"] > start_time
    ]


async def create_booking(
    *,
    repository: Repository,
    task_id: str,
    client_id: str,
    provider_id: str,
    date: str,
    start_time: str,
    end_time: str,
    slot_id: str | None = None,
    notes: str = "",
    check_conflicts: bool = True,
) -> Booking:
    """Create a confirmed booking, rejecting overlaps with the provider's other bookings.

    Pass check_conflicts=False when the caller already holds the slot through book_slot().

    Raises:
        SlotConflictError: If an active booking overlaps the interval
    """
    with span("booking_service.create_booking"):
        if check_conflicts:
            conflicts = await check_booking_conflicts(
                repository=repository, provider_id=provider_id, date=date, start_time=start_time, end_time=end_time
            )
            if conflicts:
                msg = f"Provider {provider_id} already has a booking overlapping {date} {start_time}-{end_time}"
                raise SlotConflictError(msg)

        record = await repository.insert(
            "bookings",
            {
                "task_id": task_id,
                "client_id": client_id,
                "provider_id": provider_id,
                "slot_id": slot_id,
                "date": date,
                "start_time": start_time,
                "end_time": end_time,
                "status": BookingStatus.CONFIRMED,
                "notes": notes,
            },
        )
        logger.info("Created booking %s for task %s", record["id"], task_id)
        return Booking.model_validate(record)


async def get_active_booking(*, repository: Repository, task_id: str) -> Booking | None:
    """Return the booking currently holding a slot for a task, if any."""
    records = await repository.get("bookings", {"task_id": task_id})
    for record in records:
        if record["status"] in ACTIVE_BOOKING_STATUSES:
            return Booking.model_validate(record)
    return None


async def _release_booking_slot(*, repository: Repository, booking: Booking) -> None:
    slot_id = booking.slot_id
    if slot_id is None:
        existing = await find_slot(
            repository=repository,
            provider_id=booking.provider_id,
            date=booking.date,
            start_time=booking.start_time,
            end_time=booking.end_time,
        )
        slot_id = existing["id"] if existing else None
    if slot_id is not None:
        await release_slot(repository=repository, slot_id=slot_id)


async def cancel_booking(
    *,
    repository: Repository,
    booking_id: str,
    reason: str,
    cancelled_by: str | None = None,
) -> Booking:
    """Mark a booking cancelled with the reason attached and free its slot."""
    with span("booking_service.cancel_booking"):
        try:
            current = Booking.model_validate(await repository.get_one("bookings", booking_id))
        except RecordNotFoundError as e:
            msg = f"Booking not found: {booking_id}"
            raise NotFoundError(msg) from e

        note = f"Cancelled by {cancelled_by}: {reason}" if cancelled_by else f"Cancelled: {reason}"
        record = await repository.update(
            "bookings",
            booking_id,
            {"status": BookingStatus.CANCELLED, "notes": _append_note(current.notes, note)},
        )
        await _release_booking_slot(repository=repository, booking=current)

        logger.info("Cancelled booking %s (task %s)", booking_id, current.task_id)
        return Booking.model_validate(record)


async def reschedule_booking(
    *,
    repository: Repository,
    booking_id: str,
    new_date: str,
    new_start_time: str,
    new_end_time: str,
    reason: str | None = None,
    notifier: NotificationSink | None = None,
) -> Booking:
    """Move a booking to a new interval.

    The new slot is booked before the old one is released, so a conflict
    leaves the original booking intact.

    Raises:
        NotFoundError: If the booking doesn't exist
        SlotConflictError: If the new interval overlaps another booking or its slot is taken
    """
    with span("booking_service.reschedule_booking"):
        try:
            current = Booking.model_validate(await repository.get_one("bookings", booking_id))
        except RecordNotFoundError as e:
            msg = f"Booking not found: {booking_id}"
            raise NotFoundError(msg) from e

        conflicts = await check_booking_conflicts(
            repository=repository,
            provider_id=current.provider_id,
            date=new_date,
            start_time=new_start_time,
            end_time=new_end_time,
            exclude_booking_id=booking_id,
        )
        if conflicts:
            msg = f"New time {new_date} {new_start_time}-{new_end_time} conflicts with another booking"
            raise SlotConflictError(msg)

        new_slot = TimeSlot(
            provider_id=current.provider_id,
            date=new_date,
            start_time=new_start_time,
            end_time=new_end_time,
        )
        slot_record = await ensure_slot(repository=repository, slot=new_slot)
        booked = await book_slot(repository=repository, slot_id=slot_record["id"], task_id=current.task_id)
        await _release_booking_slot(repository=repository, booking=current)

        record = await repository.update(
            "bookings",
            booking_id,
            {
                "date": new_date,
                "start_time": new_start_time,
                "end_time": new_end_time,
                "slot_id": booked.id,
                "status": BookingStatus.RESCHEDULED,
                "notes": _append_note(current.notes, f"Rescheduled: {reason or 'No reason given'}"),
            },
        )
        await repository.update("tasks", current.task_id, {"scheduled_slot": booked.model_dump()})

        if notifier is not None:
            payload = NotificationPayload(
                title="Booking rescheduled",
                message=f"Your booking was moved to {new_date} at {new_start_time}",
                type=NotificationType.TASK_UPDATE,
                data={
                    "task_id": current.task_id,
                    "booking_id": booking_id,
                    "old_date": current.date,
                    "old_time": f"{current.start_time} - {current.end_time}",
                    "new_date": new_date,
                    "new_time": f"{new_start_time} - {new_end_time}",
                    "reason": reason,
                },
            )
            try:
                await notifier.notify(current.client_id, payload)
            except Exception:
                logger.exception("Failed to notify client %s of reschedule", current.client_id)

        logger.info("Rescheduled booking %s to %s %s", booking_id, new_date, new_start_time)
        return Booking.model_validate(record)


async def get_provider_bookings(
    *,
    repository: Repository,
    provider_id: str,
    start_date: str | None = None,
    end_date: str | None = None,
) -> list[Booking]:
    """Return a provider's bookings in calendar order, optionally within a date range."""
    records = await repository.get("bookings", {"provider_id": provider_id})
    bookings = [
        Booking.model_validate(r)
        for r in records
        if (start_date is None or r["date"] >= start_date) and (end_date is None or r["date"] <= end_date)
    ]
    return sorted(bookings, key=lambda b: (b.date, b.start_time))


async def get_provider_schedule(
    *,
    repository: Repository,
    provider_id: str,
    start_date: str,
    end_date: str,
) -> ProviderSchedule:
    """Calendar view combining a provider's slots and bookings."""
    with span("booking_service.get_provider_schedule"):
        availability = await get_provider_availability(
            repository=repository, provider_id=provider_id, start_date=start_date, end_date=end_date
        )
        bookings = await get_provider_bookings(
            repository=repository, provider_id=provider_id, start_date=start_date, end_date=end_date
        )
        return ProviderSchedule(availability=availability, bookings=bookings)
