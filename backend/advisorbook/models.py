from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

DayOfWeek = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
BookingStatus = Literal["booked", "completed", "cancelled", "rescheduled"]
BookingScope = Literal["upcoming", "history", "all"]


def weekday_name(value: datetime) -> str:
    return WEEKDAYS[value.weekday()]


class Advisor(BaseModel):
    id: str
    user_id: str
    name: str
    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @property
    def tz(self) -> tzinfo:
        return ZoneInfo(self.timezone)


class Package(BaseModel):
    id: str
    advisor_id: str
    title: str
    duration: int = Field(gt=0, le=24 * 60)
    price: float = Field(ge=0)


class AvailabilityWindow(BaseModel):
    advisor_id: str
    day_of_week: DayOfWeek
    start_time: time
    end_time: time
    is_active: bool = True

    @model_validator(mode="after")
    def _ordered_when_active(self) -> "AvailabilityWindow":
        if self.is_active and self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time for an active window")
        return self


class Slot(BaseModel):
    time: str
    starts_at: datetime
    ends_at: datetime
    available: bool


class Booking(BaseModel):
    id: str
    advisor_id: str
    customer_id: str
    package_id: str
    scheduled_at: datetime
    duration: int = Field(gt=0)
    status: BookingStatus = "booked"
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    rescheduled_from: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _rating_requires_completion(self) -> "Booking":
        if self.rating is not None and self.status != "completed":
            raise ValueError("rating is only allowed on completed bookings")
        return self

    @computed_field  # type: ignore[misc]
    @property
    def ends_at(self) -> datetime:
        start = self.scheduled_at
        if start.tzinfo is None:
            return start + timedelta(minutes=self.duration)
        # Absolute duration, so a session spanning a DST change still lasts ``duration``.
        return (start.astimezone(timezone.utc) + timedelta(minutes=self.duration)).astimezone(start.tzinfo)


class BookingStatusChange(BaseModel):
    id: str
    booking_id: str
    actor_user_id: str
    from_status: str
    to_status: str
    note: str = ""
    created_at: datetime


class RatingSummary(BaseModel):
    advisor_id: str
    mean: float
    count: int


class AdvisorDetails(BaseModel):
    advisor: Advisor
    packages: list[Package]
    windows: list[AvailabilityWindow]
    rating: RatingSummary


class BookingRequest(BaseModel):
    advisor_id: str
    customer_id: str
    package_id: str
    scheduled_at: datetime


class BookingCreated(BaseModel):
    booking_id: str
    booking: Booking


class BookingCancelRequest(BaseModel):
    caller_id: str
    note: str = ""


class BookingRescheduleRequest(BaseModel):
    caller_id: str
    scheduled_at: datetime


class BookingStatusUpdateRequest(BaseModel):
    caller_id: str
    status: BookingStatus
    note: str = ""


class RatingSubmitRequest(BaseModel):
    caller_id: str
    # Range is checked by the booking service so it surfaces as a typed validation error.
    rating: int
