from datetime import datetime, time, timedelta, timezone

import pytest

from advisorbook.models import Advisor, AvailabilityWindow, BookingRequest, Package
from advisorbook.services.errors import (
    BookingValidationError,
    NotFoundError,
    PreconditionFailedError,
    SlotConflictError,
    UnauthorizedError,
)
from conftest import ADVISOR_ID, ADVISOR_USER, CUSTOMER, OTHER_CUSTOMER, at, upcoming

PKG_30 = f"{ADVISOR_ID}_30"
PKG_45 = f"{ADVISOR_ID}_45"
PKG_60 = f"{ADVISOR_ID}_60"


def _book(service, when, package_id=PKG_30, customer_id=CUSTOMER):
    return service.create_booking(
        BookingRequest(advisor_id=ADVISOR_ID, customer_id=customer_id, package_id=package_id, scheduled_at=when)
    )


def _summary(slots):
    return [(slot.time, slot.available) for slot in slots]


def _narrow_monday(service):
    service.availability.set_window(
        AvailabilityWindow(advisor_id=ADVISOR_ID, day_of_week="monday", start_time=time(9, 0), end_time=time(10, 0))
    )


def test_list_slots_for_empty_hour_window(service):
    _narrow_monday(service)
    monday = upcoming("monday")
    slots = service.list_slots(ADVISOR_ID, monday.isoformat(), PKG_30)
    assert _summary(slots) == [("09:00", True), ("09:30", True)]


def test_list_slots_marks_booked_interval(service):
    _narrow_monday(service)
    monday = upcoming("monday")
    _book(service, at(monday, "09:00"))
    slots = service.list_slots(ADVISOR_ID, monday, PKG_30)
    assert _summary(slots) == [("09:00", False), ("09:30", True)]


def test_longer_booking_blocks_overlapping_shorter_slots(service):
    tuesday = upcoming("tuesday")
    _book(service, at(tuesday, "09:15"), package_id=PKG_45)
    slots = service.list_slots(ADVISOR_ID, tuesday, PKG_30)
    assert _summary(slots)[:4] == [("09:00", False), ("09:30", False), ("10:00", True), ("10:30", True)]


def test_list_slots_ignores_other_dates(service):
    tuesday = upcoming("tuesday")
    _book(service, at(tuesday + timedelta(days=7), "09:00"))
    slots = service.list_slots(ADVISOR_ID, tuesday, PKG_30)
    assert all(slot.available for slot in slots)


def test_list_slots_on_inactive_day_is_empty(service):
    assert service.list_slots(ADVISOR_ID, upcoming("sunday"), PKG_30) == []


def test_list_slots_unknown_advisor_or_package(service):
    day = upcoming("monday")
    with pytest.raises(NotFoundError):
        service.list_slots("missing", day, PKG_30)
    with pytest.raises(NotFoundError):
        service.list_slots(ADVISOR_ID, day, "missing")


def test_list_slots_rejects_bad_date(service):
    with pytest.raises(BookingValidationError):
        service.list_slots(ADVISOR_ID, "03/02/2031", PKG_30)


def test_create_booking_copies_package_duration(service):
    wednesday = upcoming("wednesday")
    booking = _book(service, at(wednesday, "10:00"), package_id=PKG_60)
    assert booking.status == "booked"
    assert booking.duration == 60
    assert booking.ends_at == at(wednesday, "11:00")
    assert service.get_booking(booking.id, CUSTOMER).id == booking.id


def test_create_booking_outside_window_is_rejected(service):
    thursday = upcoming("thursday")
    with pytest.raises(BookingValidationError):
        _book(service, at(thursday, "08:30"))
    with pytest.raises(BookingValidationError):
        _book(service, at(thursday, "11:30"), package_id=PKG_60)
    with pytest.raises(BookingValidationError):
        _book(service, at(upcoming("sunday"), "09:00"))


def test_create_booking_in_the_past_is_rejected(service):
    last_week = upcoming("monday", weeks_ahead=-2)
    with pytest.raises(BookingValidationError):
        _book(service, at(last_week, "09:00"))


def test_create_booking_with_foreign_package_is_not_found(service):
    with pytest.raises(NotFoundError):
        _book(service, at(upcoming("monday"), "09:00"), package_id="someone_elses_package")


def test_overlapping_booking_is_a_conflict(service):
    friday = upcoming("friday")
    _book(service, at(friday, "09:15"), package_id=PKG_45)
    with pytest.raises(SlotConflictError):
        _book(service, at(friday, "09:30"), customer_id=OTHER_CUSTOMER)
    # Adjacent interval is still free.
    assert _book(service, at(friday, "10:00"), customer_id=OTHER_CUSTOMER).status == "booked"


def test_naive_time_is_read_in_advisor_timezone(service):
    monday = upcoming("monday")
    naive = at(monday, "09:00").replace(tzinfo=None)
    booking = _book(service, naive)
    assert booking.scheduled_at == at(monday, "09:00")


def test_cancel_frees_the_slot(service):
    monday = upcoming("monday")
    booking = _book(service, at(monday, "09:00"))
    assert _summary(service.list_slots(ADVISOR_ID, monday, PKG_30))[0] == ("09:00", False)

    cancelled = service.cancel_booking(booking.id, CUSTOMER)
    assert cancelled.status == "cancelled"
    assert _summary(service.list_slots(ADVISOR_ID, monday, PKG_30))[0] == ("09:00", True)
    assert _book(service, at(monday, "09:00"), customer_id=OTHER_CUSTOMER).status == "booked"


def test_advisor_may_cancel_but_strangers_may_not(service):
    monday = upcoming("monday")
    first = _book(service, at(monday, "09:00"))
    with pytest.raises(UnauthorizedError):
        service.cancel_booking(first.id, OTHER_CUSTOMER)
    assert service.cancel_booking(first.id, ADVISOR_USER).status == "cancelled"


def test_cancel_twice_fails_precondition(service):
    booking = _book(service, at(upcoming("monday"), "09:00"))
    service.cancel_booking(booking.id, CUSTOMER)
    with pytest.raises(PreconditionFailedError):
        service.cancel_booking(booking.id, CUSTOMER)


def test_cancel_unknown_booking(service):
    with pytest.raises(NotFoundError):
        service.cancel_booking("bk_missing", CUSTOMER)


def test_reschedule_keeps_original_for_history(service):
    monday = upcoming("monday")
    original = _book(service, at(monday, "09:00"))
    replacement = service.reschedule_booking(original.id, CUSTOMER, at(monday, "10:00"))

    assert replacement.id != original.id
    assert replacement.status == "booked"
    assert replacement.rescheduled_from == original.id
    assert service.get_booking(original.id, CUSTOMER).status == "rescheduled"
    slots = dict(_summary(service.list_slots(ADVISOR_ID, monday, PKG_30)))
    assert slots["09:00"] is True
    assert slots["10:00"] is False


def test_reschedule_into_overlapping_own_slot_is_allowed(service):
    monday = upcoming("monday")
    original = _book(service, at(monday, "09:00"), package_id=PKG_60)
    replacement = service.reschedule_booking(original.id, CUSTOMER, at(monday, "09:30"))
    assert replacement.scheduled_at == at(monday, "09:30")


def test_reschedule_conflict_leaves_original_untouched(service):
    monday = upcoming("monday")
    original = _book(service, at(monday, "09:00"))
    _book(service, at(monday, "10:00"), customer_id=OTHER_CUSTOMER)

    with pytest.raises(SlotConflictError):
        service.reschedule_booking(original.id, CUSTOMER, at(monday, "10:00"))
    assert service.get_booking(original.id, CUSTOMER).status == "booked"
    assert [b.id for b in service.list_customer_bookings(CUSTOMER)] == [original.id]


def test_reschedule_requires_customer_and_booked_status(service):
    monday = upcoming("monday")
    booking = _book(service, at(monday, "09:00"))
    with pytest.raises(UnauthorizedError):
        service.reschedule_booking(booking.id, ADVISOR_USER, at(monday, "10:00"))
    service.cancel_booking(booking.id, CUSTOMER)
    with pytest.raises(PreconditionFailedError):
        service.reschedule_booking(booking.id, CUSTOMER, at(monday, "10:00"))


def test_reschedule_outside_window_is_rejected(service):
    monday = upcoming("monday")
    booking = _book(service, at(monday, "09:00"))
    with pytest.raises(BookingValidationError):
        service.reschedule_booking(booking.id, CUSTOMER, at(monday, "18:00"))
    assert service.get_booking(booking.id, CUSTOMER).status == "booked"


def test_complete_requires_advisor_or_system(service):
    booking = _book(service, at(upcoming("monday"), "09:00"))
    with pytest.raises(UnauthorizedError):
        service.update_status(booking.id, CUSTOMER, "completed")
    completed = service.update_status(booking.id, ADVISOR_USER, "completed")
    assert completed.status == "completed"
    with pytest.raises(PreconditionFailedError):
        service.update_status(booking.id, ADVISOR_USER, "cancelled")


def test_update_status_rejects_direct_reschedule_and_rebooking(service):
    booking = _book(service, at(upcoming("monday"), "09:00"))
    with pytest.raises(BookingValidationError):
        service.update_status(booking.id, CUSTOMER, "rescheduled")
    with pytest.raises(BookingValidationError):
        service.update_status(booking.id, CUSTOMER, "booked")


def test_complete_elapsed_bookings(service):
    monday = upcoming("monday")
    ended = _book(service, at(monday, "09:00"))
    later = _book(service, at(monday, "11:00"))

    assert service.complete_elapsed_bookings(now=at(monday, "10:00")) == 1
    assert service.get_booking(ended.id, CUSTOMER).status == "completed"
    assert service.get_booking(later.id, CUSTOMER).status == "booked"
    assert service.complete_elapsed_bookings(now=at(monday, "10:00")) == 0


def test_rating_requires_completed_status(service):
    booking = _book(service, at(upcoming("monday"), "09:00"))
    with pytest.raises(PreconditionFailedError):
        service.submit_rating(booking.id, CUSTOMER, 5)


def test_rating_is_last_write_wins(service):
    booking = _book(service, at(upcoming("monday"), "09:00"))
    service.update_status(booking.id, "system", "completed")

    assert service.submit_rating(booking.id, CUSTOMER, 4).rating == 4
    assert service.submit_rating(booking.id, CUSTOMER, 2).rating == 2
    assert service.get_booking(booking.id, CUSTOMER).rating == 2


def test_rating_validation_and_ownership(service):
    booking = _book(service, at(upcoming("monday"), "09:00"))
    service.update_status(booking.id, ADVISOR_USER, "completed")
    for bad in (0, 6, -1):
        with pytest.raises(BookingValidationError):
            service.submit_rating(booking.id, CUSTOMER, bad)
    with pytest.raises(UnauthorizedError):
        service.submit_rating(booking.id, OTHER_CUSTOMER, 5)
    with pytest.raises(UnauthorizedError):
        service.submit_rating(booking.id, ADVISOR_USER, 5)


def test_average_rating_over_completed_bookings(service):
    monday = upcoming("monday")
    for hhmm, rating in (("09:00", 4), ("09:30", 5), ("10:00", 3)):
        booking = _book(service, at(monday, hhmm))
        service.update_status(booking.id, ADVISOR_USER, "completed")
        service.submit_rating(booking.id, CUSTOMER, rating)
    # Completed but unrated, and still booked: neither counts.
    unrated = _book(service, at(monday, "10:30"))
    service.update_status(unrated.id, ADVISOR_USER, "completed")
    _book(service, at(monday, "11:00"))

    summary = service.average_rating(ADVISOR_ID)
    assert (summary.mean, summary.count) == (4.0, 3)


def test_average_rating_without_ratings_is_zero(service):
    summary = service.average_rating(ADVISOR_ID)
    assert (summary.mean, summary.count) == (0.0, 0)
    with pytest.raises(NotFoundError):
        service.average_rating("missing")


def test_customer_booking_scopes(service):
    monday = upcoming("monday")
    first = _book(service, at(monday, "10:00"))
    second = _book(service, at(monday, "09:00"))
    done = _book(service, at(monday, "11:00"))
    service.update_status(done.id, ADVISOR_USER, "completed")

    upcoming_ids = [b.id for b in service.list_customer_bookings(CUSTOMER, "upcoming")]
    history_ids = [b.id for b in service.list_customer_bookings(CUSTOMER, "history")]
    assert upcoming_ids == [second.id, first.id]
    assert history_ids == [done.id]
    assert len(service.list_customer_bookings(CUSTOMER, "all")) == 3
    with pytest.raises(BookingValidationError):
        service.list_customer_bookings(CUSTOMER, "everything")


def test_status_history_records_each_change(service):
    monday = upcoming("monday")
    booking = _book(service, at(monday, "09:00"))
    replacement = service.reschedule_booking(booking.id, CUSTOMER, at(monday, "10:00"))
    service.cancel_booking(replacement.id, ADVISOR_USER, note="advisor unavailable")

    original_changes = [(c.from_status, c.to_status) for c in service.list_status_history(booking.id, CUSTOMER)]
    replacement_changes = service.list_status_history(replacement.id, CUSTOMER)
    assert original_changes == [("none", "booked"), ("booked", "rescheduled")]
    assert [(c.from_status, c.to_status) for c in replacement_changes] == [("none", "booked"), ("booked", "cancelled")]
    assert replacement_changes[-1].note == "advisor unavailable"
    with pytest.raises(UnauthorizedError):
        service.list_status_history(booking.id, OTHER_CUSTOMER)


def test_advisor_details_bundle_catalog_and_rating(service):
    details = service.get_advisor_details(ADVISOR_ID)
    assert details.advisor.user_id == ADVISOR_USER
    assert [p.duration for p in details.packages] == [30, 45, 60]
    assert [w.day_of_week for w in details.windows][0] == "monday"
    assert details.rating.count == 0


def _zoned_advisor(service, advisor_id, tz_name, day, start, end):
    service.availability.add_advisor(
        Advisor(id=advisor_id, user_id=f"user_{advisor_id}", name="Zoned Advisor", timezone=tz_name)
    )
    for duration in (30, 60):
        service.availability.add_package(
            Package(id=f"{advisor_id}_{duration}", advisor_id=advisor_id, title="Call", duration=duration, price=50.0)
        )
    service.availability.set_window(
        AvailabilityWindow(
            advisor_id=advisor_id,
            day_of_week=day,
            start_time=time.fromisoformat(start),
            end_time=time.fromisoformat(end),
        )
    )


def _zoned_request(advisor_id, when, duration=30):
    return BookingRequest(
        advisor_id=advisor_id,
        customer_id=CUSTOMER,
        package_id=f"{advisor_id}_{duration}",
        scheduled_at=when,
    )


def test_spring_forward_gap_cannot_be_booked(service):
    _zoned_advisor(service, "adv_ny", "America/New_York", "sunday", "01:00", "04:00")
    slots = service.list_slots("adv_ny", "2031-03-09", "adv_ny_30")
    assert [slot.time for slot in slots] == ["01:00", "01:30", "03:00", "03:30"]

    with pytest.raises(BookingValidationError):
        service.create_booking(_zoned_request("adv_ny", datetime(2031, 3, 9, 2, 30)))


def test_session_across_spring_forward_lasts_its_full_duration(service):
    _zoned_advisor(service, "adv_ny", "America/New_York", "sunday", "01:00", "04:00")
    booking = service.create_booking(_zoned_request("adv_ny", datetime(2031, 3, 9, 1, 30), duration=60))
    assert booking.scheduled_at == datetime(2031, 3, 9, 6, 30, tzinfo=timezone.utc)
    assert booking.ends_at == datetime(2031, 3, 9, 7, 30, tzinfo=timezone.utc)

    slots = service.list_slots("adv_ny", "2031-03-09", "adv_ny_30")
    assert _summary(slots) == [("01:00", True), ("01:30", False), ("03:00", False), ("03:30", True)]


def test_created_booking_matches_its_stored_form(service):
    _zoned_advisor(service, "adv_ist", "Asia/Kolkata", "tuesday", "09:00", "12:00")
    tuesday = upcoming("tuesday")
    created = service.create_booking(_zoned_request("adv_ist", datetime.combine(tuesday, time(10, 0))))
    assert created.scheduled_at.utcoffset() == timedelta(0)
    assert created.model_dump_json() == service.get_booking(created.id, CUSTOMER).model_dump_json()

    moved = service.reschedule_booking(created.id, CUSTOMER, datetime.combine(tuesday, time(11, 0)))
    assert moved.model_dump_json() == service.get_booking(moved.id, CUSTOMER).model_dump_json()
    assert moved.scheduled_at == datetime.combine(tuesday, time(5, 30), tzinfo=timezone.utc)
