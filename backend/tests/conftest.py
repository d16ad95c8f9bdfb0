import base64
import importlib
import os
import sys
import tempfile
from datetime import date, datetime, time, timedelta, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
os.environ.setdefault(
    "ADVISORBOOK_DB_PATH",
    os.path.join(tempfile.mkdtemp(prefix="advisorbook-tests-"), "advisorbook.sqlite3"),
)

import pytest  # noqa: E402

from advisorbook.models import WEEKDAYS, Advisor, AvailabilityWindow, Package  # noqa: E402
from advisorbook.services.booking_service import build_booking_service  # noqa: E402

ADVISOR_ID = "adv_test"
ADVISOR_USER = "advisor_user"
CUSTOMER = "customer_1"
OTHER_CUSTOMER = "customer_2"


def upcoming(weekday: str, weeks_ahead: int = 4) -> date:
    """A date falling on ``weekday`` safely in the future."""
    today = date.today()
    offset = (WEEKDAYS.index(weekday) - today.weekday()) % 7
    return today + timedelta(days=offset + 7 * weeks_ahead)


def at(day: date, hhmm: str) -> datetime:
    return datetime.combine(day, time.fromisoformat(hhmm), tzinfo=timezone.utc)


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def issue_token(user_id: str, ttl_hours: float = 1) -> str:
    """Mint a bearer token the way the customer-facing app does."""
    auth = importlib.import_module("advisorbook.auth")
    expiry = datetime.now(timezone.utc) + timedelta(hours=ttl_hours)
    payload = f"{user_id}|{int(expiry.timestamp())}".encode("utf-8")
    return f"{_b64url(payload)}.{_b64url(auth.sign_payload(payload))}"


def seed_advisor(service, advisor_id: str = ADVISOR_ID, user_id: str = ADVISOR_USER) -> None:
    service.availability.add_advisor(Advisor(id=advisor_id, user_id=user_id, name="Test Advisor"))
    for package_id, duration in ((f"{advisor_id}_30", 30), (f"{advisor_id}_45", 45), (f"{advisor_id}_60", 60)):
        service.availability.add_package(
            Package(id=package_id, advisor_id=advisor_id, title=f"{duration} minute call", duration=duration, price=100.0)
        )
    for day in WEEKDAYS:
        service.availability.set_window(
            AvailabilityWindow(
                advisor_id=advisor_id,
                day_of_week=day,
                start_time=time(9, 0),
                end_time=time(12, 0),
                is_active=day != "sunday",
            )
        )


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "ledger.sqlite3")


@pytest.fixture
def service(db_path):
    svc = build_booking_service(db_path, seed=False)
    seed_advisor(svc)
    return svc
