from fastapi import APIRouter, Query

from advisorbook.models import AdvisorDetails, Package, RatingSummary, Slot
from advisorbook.services.booking_service import booking_service

router = APIRouter(prefix="/advisors", tags=["advisors"])


@router.get("/{advisor_id}", response_model=AdvisorDetails)
def get_advisor(advisor_id: str):
    return booking_service.get_advisor_details(advisor_id)


@router.get("/{advisor_id}/packages", response_model=list[Package])
def list_packages(advisor_id: str):
    return booking_service.list_packages(advisor_id)


@router.get("/{advisor_id}/slots", response_model=list[Slot])
def list_slots(
    advisor_id: str,
    date: str = Query(...),
    package_id: str = Query(...),
):
    return booking_service.list_slots(advisor_id=advisor_id, slot_date=date, package_id=package_id)


@router.get("/{advisor_id}/rating", response_model=RatingSummary)
def average_rating(advisor_id: str):
    return booking_service.average_rating(advisor_id)
