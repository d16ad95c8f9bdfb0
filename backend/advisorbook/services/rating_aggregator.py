from typing import Iterable

from advisorbook.models import RatingSummary
from advisorbook.services.availability_store import AvailabilityStore
from advisorbook.services.booking_ledger import BookingLedger


def summarize_ratings(advisor_id: str, ratings: Iterable[int]) -> RatingSummary:
    values = list(ratings)
    if not values:
        return RatingSummary(advisor_id=advisor_id, mean=0.0, count=0)
    return RatingSummary(advisor_id=advisor_id, mean=sum(values) / len(values), count=len(values))


class RatingAggregator:
    """Displayed rating of an advisor: mean over completed bookings that carry a rating."""

    def __init__(self, availability: AvailabilityStore, ledger: BookingLedger) -> None:
        self.availability = availability
        self.ledger = ledger

    def average_rating(self, advisor_id: str) -> RatingSummary:
        self.availability.require_advisor(advisor_id)
        return summarize_ratings(advisor_id, self.ledger.completed_ratings(advisor_id))
