from typing import Optional

from fastapi import APIRouter, Header, Query

from advisorbook.auth import assert_caller_authorized
from advisorbook.models import (
    Booking,
    BookingCancelRequest,
    BookingCreated,
    BookingRequest,
    BookingRescheduleRequest,
    BookingStatusChange,
    BookingStatusUpdateRequest,
    RatingSubmitRequest,
)
from advisorbook.services.booking_service import booking_service

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("", response_model=BookingCreated)
def create_booking(request: BookingRequest, authorization: Optional[str] = Header(default=None)):
    assert_caller_authorized(caller_id=request.customer_id, authorization=authorization)
    booking = booking_service.create_booking(request)
    return BookingCreated(booking_id=booking.id, booking=booking)


@router.get("", response_model=list[Booking])
def list_bookings(
    customer_id: str = Query(...),
    scope: str = Query(default="all"),
    authorization: Optional[str] = Header(default=None),
):
    assert_caller_authorized(caller_id=customer_id, authorization=authorization)
    return booking_service.list_customer_bookings(customer_id=customer_id, scope=scope)


@router.get("/{booking_id}", response_model=Booking)
def get_booking(
    booking_id: str,
    caller_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_caller_authorized(caller_id=caller_id, authorization=authorization)
    return booking_service.get_booking(booking_id=booking_id, caller_id=caller_id)


@router.get("/{booking_id}/history", response_model=list[BookingStatusChange])
def list_status_history(
    booking_id: str,
    caller_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_caller_authorized(caller_id=caller_id, authorization=authorization)
    return booking_service.list_status_history(booking_id=booking_id, caller_id=caller_id)


@router.post("/{booking_id}/cancel", response_model=Booking)
def cancel_booking(
    booking_id: str,
    request: BookingCancelRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_caller_authorized(caller_id=request.caller_id, authorization=authorization)
    return booking_service.cancel_booking(booking_id=booking_id, caller_id=request.caller_id, note=request.note)


@router.post("/{booking_id}/reschedule", response_model=BookingCreated)
def reschedule_booking(
    booking_id: str,
    request: BookingRescheduleRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_caller_authorized(caller_id=request.caller_id, authorization=authorization)
    booking = booking_service.reschedule_booking(
        booking_id=booking_id,
        caller_id=request.caller_id,
        new_scheduled_at=request.scheduled_at,
    )
    return BookingCreated(booking_id=booking.id, booking=booking)


@router.post("/{booking_id}/status", response_model=Booking)
def update_booking_status(
    booking_id: str,
    request: BookingStatusUpdateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_caller_authorized(caller_id=request.caller_id, authorization=authorization)
    return booking_service.update_status(
        booking_id=booking_id,
        caller_id=request.caller_id,
        new_status=request.status,
        note=request.note,
    )


@router.post("/{booking_id}/rating", response_model=Booking)
def submit_rating(
    booking_id: str,
    request: RatingSubmitRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_caller_authorized(caller_id=request.caller_id, authorization=authorization)
    return booking_service.submit_rating(booking_id=booking_id, caller_id=request.caller_id, rating=request.rating)
