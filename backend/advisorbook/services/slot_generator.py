"""Turns a weekly availability window into the bookable slots of one date.

Everything here is pure computation over already-fetched data; nothing
touches storage, so previews can call it as often as they like.
"""

from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Iterable, List, Optional

from advisorbook.models import AvailabilityWindow, Booking, Slot

# Statuses whose interval still blocks the advisor's calendar. A rescheduled
# row hands its time over to the replacement booking.
OCCUPYING_STATUSES = frozenset({"booked", "completed"})


def intervals_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open intervals ``[start, end)`` overlap when each starts before the other ends."""
    return start_a < end_b and start_b < end_a


def generate_slots(
    window: Optional[AvailabilityWindow],
    duration_minutes: int,
    bookings: Iterable[Booking],
    on_date: date,
    tz: tzinfo,
) -> List[Slot]:
    """Step through ``window`` on ``on_date`` in ``duration_minutes`` increments.

    A candidate is emitted only if it finishes by the window's end time, and is
    marked unavailable when its interval overlaps any occupying booking. Booking
    intervals are compared as absolute instants, so bookings made with other
    package durations, or lying partly outside the window, still count.
    """
    if window is None or not window.is_active or duration_minutes <= 0:
        return []
    if window.start_time >= window.end_time:
        return []

    occupied = [
        (booking.scheduled_at, booking.ends_at)
        for booking in bookings
        if booking.status in OCCUPYING_STATUSES
    ]
    # Step in UTC: wall-clock arithmetic on an aware datetime ignores DST shifts.
    step = timedelta(minutes=duration_minutes)
    candidate = datetime.combine(on_date, window.start_time, tzinfo=tz).astimezone(timezone.utc)
    closing = datetime.combine(on_date, window.end_time, tzinfo=tz).astimezone(timezone.utc)

    slots: List[Slot] = []
    while candidate + step <= closing:
        slot_end = candidate + step
        taken = any(intervals_overlap(candidate, slot_end, start, end) for start, end in occupied)
        local_start = candidate.astimezone(tz)
        slots.append(
            Slot(
                time=local_start.strftime("%H:%M"),
                starts_at=local_start,
                ends_at=slot_end.astimezone(tz),
                available=not taken,
            )
        )
        candidate = slot_end
    return slots


def fits_window(window: Optional[AvailabilityWindow], starts_at: datetime, duration_minutes: int) -> bool:
    """True when ``[starts_at, starts_at + duration)`` lies inside ``window`` on the same local day.

    ``starts_at`` must already be expressed in the advisor's timezone.
    """
    if window is None or not window.is_active:
        return False
    start = starts_at.astimezone(timezone.utc)
    ends_at = start + timedelta(minutes=duration_minutes)
    opening = datetime.combine(starts_at.date(), window.start_time, tzinfo=starts_at.tzinfo).astimezone(timezone.utc)
    closing = datetime.combine(starts_at.date(), window.end_time, tzinfo=starts_at.tzinfo).astimezone(timezone.utc)
    return opening <= start and ends_at <= closing
