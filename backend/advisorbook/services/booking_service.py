import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set, Union
from uuid import uuid4

from advisorbook import config
from advisorbook.models import (
    Advisor,
    AdvisorDetails,
    Booking,
    BookingRequest,
    BookingStatusChange,
    Package,
    RatingSummary,
    Slot,
    weekday_name,
)
from advisorbook.services.availability_store import AvailabilityStore
from advisorbook.services.booking_ledger import BookingLedger
from advisorbook.services.database import Database, utc_now
from advisorbook.services.errors import (
    BookingValidationError,
    NotFoundError,
    PreconditionFailedError,
    UnauthorizedError,
)
from advisorbook.services.rating_aggregator import RatingAggregator
from advisorbook.services.slot_generator import fits_window, generate_slots

logger = logging.getLogger(__name__)

# booked is the only non-terminal status; completed and cancelled are final and
# a rescheduled row is final once its replacement exists.
ALLOWED_TRANSITIONS: Dict[str, Set[str]] = {
    "booked": {"completed", "cancelled", "rescheduled"},
}

BOOKING_SCOPES = {"upcoming", "history", "all"}


class BookingService:
    def __init__(
        self,
        availability: AvailabilityStore,
        ledger: BookingLedger,
        clock: Callable[[], datetime] = utc_now,
        min_lead_minutes: int = config.BOOKING_MIN_LEAD_MINUTES,
        system_actor_id: str = config.SYSTEM_ACTOR_ID,
    ) -> None:
        self.availability = availability
        self.ledger = ledger
        self.ratings = RatingAggregator(availability, ledger)
        self.clock = clock
        self.min_lead_minutes = min_lead_minutes
        self.system_actor_id = system_actor_id

    def _parse_iso_date(self, value: Union[str, date], *, field: str = "date") -> date:
        if isinstance(value, date):
            return value
        try:
            return date.fromisoformat(value)
        except ValueError as exc:
            raise BookingValidationError(f"Invalid {field}; expected YYYY-MM-DD") from exc

    def _resolve_package(self, advisor: Advisor, package_id: str) -> Package:
        package = self.availability.get_package(package_id)
        if package is None or package.advisor_id != advisor.id:
            raise NotFoundError("Package not found")
        return package

    def _localize(self, advisor: Advisor, scheduled_at: datetime) -> datetime:
        if scheduled_at.tzinfo is None:
            local = scheduled_at.replace(tzinfo=advisor.tz)
            # Wall times skipped by a DST jump do not survive a round trip through UTC.
            if local.astimezone(timezone.utc).astimezone(advisor.tz).replace(tzinfo=None) != scheduled_at:
                raise BookingValidationError("scheduled_at does not exist in the advisor's timezone")
            return local
        return scheduled_at.astimezone(advisor.tz)

    def _validate_start(self, advisor: Advisor, package: Package, scheduled_at: datetime) -> datetime:
        local_start = self._localize(advisor, scheduled_at)
        earliest = self.clock() + timedelta(minutes=self.min_lead_minutes)
        if local_start < earliest:
            raise BookingValidationError("scheduled_at must be in the future")
        window = self.availability.get_window(advisor.id, weekday_name(local_start))
        if not fits_window(window, local_start, package.duration):
            raise BookingValidationError("Requested time is outside the advisor's availability")
        return local_start

    def _load_booking_context(self, booking_id: str) -> tuple[Booking, Advisor]:
        booking = self.ledger.get(booking_id)
        return booking, self.availability.require_advisor(booking.advisor_id)

    def _assert_party(self, booking: Booking, advisor: Advisor, caller_id: str) -> None:
        if caller_id not in {booking.customer_id, advisor.user_id}:
            raise UnauthorizedError("Only the customer or the advisor can access this booking")

    def _require_status(self, booking: Booking, next_status: str) -> None:
        if next_status not in ALLOWED_TRANSITIONS.get(booking.status, set()):
            raise PreconditionFailedError(f"Booking is {booking.status}; cannot move to {next_status}")

    def list_slots(self, advisor_id: str, slot_date: Union[str, date], package_id: str) -> List[Slot]:
        on_date = self._parse_iso_date(slot_date)
        advisor = self.availability.require_advisor(advisor_id)
        package = self._resolve_package(advisor, package_id)
        tz = advisor.tz
        day_start = datetime.combine(on_date, time.min, tzinfo=tz)
        day_end = datetime.combine(on_date + timedelta(days=1), time.min, tzinfo=tz)

        window = self.availability.get_window(advisor.id, weekday_name(day_start))
        bookings = self.ledger.list_occupying(advisor.id, day_start, day_end)
        return generate_slots(window, package.duration, bookings, on_date, tz)

    def create_booking(self, request: BookingRequest) -> Booking:
        advisor = self.availability.require_advisor(request.advisor_id)
        package = self._resolve_package(advisor, request.package_id)
        local_start = self._validate_start(advisor, package, request.scheduled_at)

        booking = Booking(
            id=f"bk_{uuid4().hex[:12]}",
            advisor_id=advisor.id,
            customer_id=request.customer_id,
            package_id=package.id,
            scheduled_at=local_start,
            duration=package.duration,
            status="booked",
        )
        stored = self.ledger.insert_if_free(booking, actor_user_id=request.customer_id)
        logger.info(
            "Booking %s created: advisor=%s customer=%s at %s for %s min",
            stored.id,
            stored.advisor_id,
            stored.customer_id,
            stored.scheduled_at.isoformat(),
            stored.duration,
        )
        return stored

    def get_booking(self, booking_id: str, caller_id: str) -> Booking:
        booking, advisor = self._load_booking_context(booking_id)
        self._assert_party(booking, advisor, caller_id)
        return booking

    def list_status_history(self, booking_id: str, caller_id: str) -> List[BookingStatusChange]:
        self.get_booking(booking_id, caller_id)
        return self.ledger.list_status_history(booking_id)

    def cancel_booking(self, booking_id: str, caller_id: str, note: str = "") -> Booking:
        _, advisor = self._load_booking_context(booking_id)

        def guard(current: Booking) -> None:
            self._assert_party(current, advisor, caller_id)
            self._require_status(current, "cancelled")

        cancelled = self.ledger.transition(booking_id, "cancelled", caller_id, guard, note=note or "cancelled")
        logger.info("Booking %s cancelled by %s", booking_id, caller_id)
        return cancelled

    def reschedule_booking(self, booking_id: str, caller_id: str, new_scheduled_at: datetime) -> Booking:
        """Replace a booked session with one at ``new_scheduled_at``.

        The original row is kept with status ``rescheduled``. Marking it and
        inserting the replacement happen in one ledger transaction, so a lost
        race on the new slot leaves the original booking as it was.
        """
        original, advisor = self._load_booking_context(booking_id)
        if caller_id != original.customer_id:
            raise UnauthorizedError("Only the customer can reschedule this booking")
        self._require_status(original, "rescheduled")
        package = self._resolve_package(advisor, original.package_id)
        local_start = self._validate_start(advisor, package, new_scheduled_at)

        replacement = Booking(
            id=f"bk_{uuid4().hex[:12]}",
            advisor_id=advisor.id,
            customer_id=original.customer_id,
            package_id=package.id,
            scheduled_at=local_start,
            duration=package.duration,
            status="booked",
            rescheduled_from=original.id,
        )

        def guard(current: Booking) -> None:
            if caller_id != current.customer_id:
                raise UnauthorizedError("Only the customer can reschedule this booking")
            self._require_status(current, "rescheduled")

        stored = self.ledger.replace(booking_id, replacement, caller_id, guard)
        logger.info("Booking %s rescheduled to %s at %s", booking_id, stored.id, stored.scheduled_at.isoformat())
        return stored

    def update_status(self, booking_id: str, caller_id: str, new_status: str, note: str = "") -> Booking:
        if new_status == "rescheduled":
            raise BookingValidationError("Use the reschedule operation to move a booking")
        if new_status == "cancelled":
            return self.cancel_booking(booking_id, caller_id, note=note)
        if new_status != "completed":
            raise BookingValidationError(f"Invalid status transition target: {new_status}")

        _, advisor = self._load_booking_context(booking_id)

        def guard(current: Booking) -> None:
            if caller_id not in {advisor.user_id, self.system_actor_id}:
                raise UnauthorizedError("Only the advisor can mark a booking completed")
            self._require_status(current, "completed")

        completed = self.ledger.transition(booking_id, "completed", caller_id, guard, note=note or "completed")
        logger.info("Booking %s completed by %s", booking_id, caller_id)
        return completed

    def complete_elapsed_bookings(self, now: Optional[datetime] = None) -> int:
        completed = self.ledger.complete_elapsed(now or self.clock(), actor_user_id=self.system_actor_id)
        if completed:
            logger.info("Marked %s elapsed bookings completed", len(completed))
        return len(completed)

    def submit_rating(self, booking_id: str, caller_id: str, rating: int) -> Booking:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise BookingValidationError("rating must be an integer between 1 and 5")

        def guard(current: Booking) -> None:
            if caller_id != current.customer_id:
                raise UnauthorizedError("Only the customer can rate this booking")
            if current.status != "completed":
                raise PreconditionFailedError("Only completed bookings can be rated")

        rated = self.ledger.set_rating(booking_id, rating, guard)
        logger.info("Booking %s rated %s by %s", booking_id, rating, caller_id)
        return rated

    def average_rating(self, advisor_id: str) -> RatingSummary:
        return self.ratings.average_rating(advisor_id)

    def list_customer_bookings(self, customer_id: str, scope: str = "all") -> List[Booking]:
        normalized = scope.strip().lower()
        if normalized not in BOOKING_SCOPES:
            raise BookingValidationError("Invalid scope value. Allowed: upcoming, history, all")
        return self.ledger.list_for_customer(customer_id, normalized, self.clock())

    def list_packages(self, advisor_id: str) -> List[Package]:
        self.availability.require_advisor(advisor_id)
        return self.availability.list_packages(advisor_id)

    def get_advisor_details(self, advisor_id: str) -> AdvisorDetails:
        advisor = self.availability.require_advisor(advisor_id)
        return AdvisorDetails(
            advisor=advisor,
            packages=self.availability.list_packages(advisor_id),
            windows=self.availability.list_windows(advisor_id),
            rating=self.ratings.average_rating(advisor_id),
        )


def build_booking_service(db_path: str, *, seed: bool = config.SEED_DEMO_DATA) -> BookingService:
    database = Database(db_path=db_path)
    availability = AvailabilityStore(database)
    if seed:
        availability.seed_if_needed()
    return BookingService(availability=availability, ledger=BookingLedger(database))


booking_service = build_booking_service(config.DB_PATH)
