import logging
import sqlite3
from datetime import time
from threading import Lock
from time import monotonic
from typing import Dict, List, Optional, Tuple

from advisorbook import config
from advisorbook.models import WEEKDAYS, Advisor, AvailabilityWindow, Package
from advisorbook.services.database import Database
from advisorbook.services.errors import NotFoundError

logger = logging.getLogger(__name__)

DEMO_ADVISORS = [
    {
        "advisor": {"id": "adv_1", "user_id": "user_advisor_1", "name": "Priya Raman", "timezone": "Asia/Kolkata"},
        "packages": [
            {"id": "pkg_1_intro", "title": "Portfolio check-in", "duration": 30, "price": 999.0},
            {"id": "pkg_1_deep", "title": "Retirement planning deep dive", "duration": 60, "price": 2499.0},
        ],
        "hours": ("09:00", "17:00"),
        "days": WEEKDAYS[:5],
    },
    {
        "advisor": {"id": "adv_2", "user_id": "user_advisor_2", "name": "Arjun Mehta", "timezone": "Asia/Kolkata"},
        "packages": [
            {"id": "pkg_2_tax", "title": "Tax saving review", "duration": 45, "price": 1499.0},
        ],
        "hours": ("10:00", "14:00"),
        "days": ("monday", "wednesday", "saturday"),
    },
]


class AvailabilityStore:
    """Read-mostly catalog: advisors, their packages and weekly availability windows.

    Window lookups are cached per ``(advisor_id, day_of_week)``; every write
    through this store drops the advisor's cached entries.
    """

    def __init__(self, database: Database, cache_ttl_seconds: float = config.AVAILABILITY_CACHE_TTL_SECONDS) -> None:
        self.database = database
        self.cache_ttl_seconds = cache_ttl_seconds
        self._cache_lock = Lock()
        self._window_cache: Dict[Tuple[str, str], Tuple[float, Optional[AvailabilityWindow]]] = {}
        self._generations: Dict[str, int] = {}

    def _row_to_advisor(self, row: sqlite3.Row) -> Advisor:
        return Advisor(id=row["id"], user_id=row["user_id"], name=row["name"], timezone=row["timezone"])

    def _row_to_package(self, row: sqlite3.Row) -> Package:
        return Package(
            id=row["id"],
            advisor_id=row["advisor_id"],
            title=row["title"],
            duration=row["duration"],
            price=row["price"],
        )

    def _row_to_window(self, row: sqlite3.Row) -> AvailabilityWindow:
        return AvailabilityWindow(
            advisor_id=row["advisor_id"],
            day_of_week=row["day_of_week"],
            start_time=time.fromisoformat(row["start_time"]),
            end_time=time.fromisoformat(row["end_time"]),
            is_active=bool(row["is_active"]),
        )

    def _invalidate(self, advisor_id: str) -> None:
        with self._cache_lock:
            self._generations[advisor_id] = self._generations.get(advisor_id, 0) + 1
            for key in [key for key in self._window_cache if key[0] == advisor_id]:
                del self._window_cache[key]

    def add_advisor(self, advisor: Advisor) -> Advisor:
        def insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO advisors (id, user_id, name, timezone) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET user_id = excluded.user_id, name = excluded.name, timezone = excluded.timezone
                """,
                (advisor.id, advisor.user_id, advisor.name, advisor.timezone),
            )

        self.database.write(insert)
        self._invalidate(advisor.id)
        return advisor

    def add_package(self, package: Package) -> Package:
        def insert(conn: sqlite3.Connection) -> None:
            if not conn.execute("SELECT 1 FROM advisors WHERE id = ?", (package.advisor_id,)).fetchone():
                raise NotFoundError("Advisor not found")
            conn.execute(
                """
                INSERT INTO packages (id, advisor_id, title, duration, price) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET title = excluded.title, duration = excluded.duration, price = excluded.price
                """,
                (package.id, package.advisor_id, package.title, package.duration, package.price),
            )

        self.database.write(insert)
        return package

    def set_window(self, window: AvailabilityWindow) -> AvailabilityWindow:
        def upsert(conn: sqlite3.Connection) -> None:
            if not conn.execute("SELECT 1 FROM advisors WHERE id = ?", (window.advisor_id,)).fetchone():
                raise NotFoundError("Advisor not found")
            conn.execute(
                """
                INSERT INTO availability_windows (advisor_id, day_of_week, start_time, end_time, is_active)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(advisor_id, day_of_week) DO UPDATE SET
                    start_time = excluded.start_time,
                    end_time = excluded.end_time,
                    is_active = excluded.is_active
                """,
                (
                    window.advisor_id,
                    window.day_of_week,
                    window.start_time.isoformat(),
                    window.end_time.isoformat(),
                    int(window.is_active),
                ),
            )

        self.database.write(upsert)
        self._invalidate(window.advisor_id)
        return window

    def get_advisor(self, advisor_id: str) -> Optional[Advisor]:
        row = self.database.read(lambda conn: conn.execute("SELECT * FROM advisors WHERE id = ?", (advisor_id,)).fetchone())
        return self._row_to_advisor(row) if row else None

    def require_advisor(self, advisor_id: str) -> Advisor:
        advisor = self.get_advisor(advisor_id)
        if advisor is None:
            raise NotFoundError("Advisor not found")
        return advisor

    def get_package(self, package_id: str) -> Optional[Package]:
        row = self.database.read(lambda conn: conn.execute("SELECT * FROM packages WHERE id = ?", (package_id,)).fetchone())
        return self._row_to_package(row) if row else None

    def list_packages(self, advisor_id: str) -> List[Package]:
        rows = self.database.read(
            lambda conn: conn.execute(
                "SELECT * FROM packages WHERE advisor_id = ? ORDER BY duration, id",
                (advisor_id,),
            ).fetchall()
        )
        return [self._row_to_package(row) for row in rows]

    def list_windows(self, advisor_id: str) -> List[AvailabilityWindow]:
        rows = self.database.read(
            lambda conn: conn.execute(
                "SELECT * FROM availability_windows WHERE advisor_id = ?",
                (advisor_id,),
            ).fetchall()
        )
        windows = [self._row_to_window(row) for row in rows]
        return sorted(windows, key=lambda window: WEEKDAYS.index(window.day_of_week))

    def get_window(self, advisor_id: str, day_of_week: str) -> Optional[AvailabilityWindow]:
        """Return the advisor's window for ``day_of_week``, or ``None`` when none is published."""
        key = (advisor_id, day_of_week)
        now = monotonic()
        with self._cache_lock:
            cached = self._window_cache.get(key)
            if cached and cached[0] > now:
                return cached[1]
            generation = self._generations.get(advisor_id, 0)

        row = self.database.read(
            lambda conn: conn.execute(
                "SELECT * FROM availability_windows WHERE advisor_id = ? AND day_of_week = ?",
                (advisor_id, day_of_week),
            ).fetchone()
        )
        window = self._row_to_window(row) if row else None
        if self.cache_ttl_seconds > 0:
            with self._cache_lock:
                # Skip the store when a write invalidated this advisor during the read.
                if self._generations.get(advisor_id, 0) == generation:
                    self._window_cache[key] = (now + self.cache_ttl_seconds, window)
        return window

    def seed_if_needed(self) -> None:
        existing = self.database.read(lambda conn: conn.execute("SELECT COUNT(*) FROM advisors").fetchone()[0])
        if existing:
            return
        for entry in DEMO_ADVISORS:
            advisor = self.add_advisor(Advisor(**entry["advisor"]))
            for package in entry["packages"]:
                self.add_package(Package(advisor_id=advisor.id, **package))
            start, end = entry["hours"]
            for day in WEEKDAYS:
                self.set_window(
                    AvailabilityWindow(
                        advisor_id=advisor.id,
                        day_of_week=day,
                        start_time=time.fromisoformat(start),
                        end_time=time.fromisoformat(end),
                        is_active=day in entry["days"],
                    )
                )
        logger.info("Seeded %s demo advisors", len(DEMO_ADVISORS))
