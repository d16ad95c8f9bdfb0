import logging
import sqlite3
from datetime import datetime
from typing import Callable, List
from uuid import uuid4

from advisorbook.models import Booking, BookingStatusChange
from advisorbook.services.database import Database, from_db_time, to_db_time, utc_now
from advisorbook.services.errors import NotFoundError, SlotConflictError
from advisorbook.services.slot_generator import OCCUPYING_STATUSES

logger = logging.getLogger(__name__)

BookingGuard = Callable[[Booking], None]

_OCCUPYING_PLACEHOLDERS = ", ".join("?" for _ in OCCUPYING_STATUSES)


class BookingLedger:
    """Committed bookings, keyed by advisor and scheduled start.

    Every mutation runs inside a single ``Database.write`` transaction. Guards
    passed in by the booking service are evaluated against the row as read
    inside that transaction, so validation and the write see the same state.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    def _row_to_booking(self, row: sqlite3.Row) -> Booking:
        return Booking(
            id=row["id"],
            advisor_id=row["advisor_id"],
            customer_id=row["customer_id"],
            package_id=row["package_id"],
            scheduled_at=from_db_time(row["scheduled_at"]),
            duration=row["duration"],
            status=row["status"],
            rating=row["rating"],
            rescheduled_from=row["rescheduled_from"],
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )

    def _fetch(self, conn: sqlite3.Connection, booking_id: str) -> Booking:
        row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        if not row:
            raise NotFoundError("Booking not found")
        return self._row_to_booking(row)

    def _occupying_rows(
        self,
        conn: sqlite3.Connection,
        advisor_id: str,
        start: datetime,
        end: datetime,
    ) -> List[sqlite3.Row]:
        return conn.execute(
            f"""
            SELECT * FROM bookings
            WHERE advisor_id = ?
              AND status IN ({_OCCUPYING_PLACEHOLDERS})
              AND scheduled_at < ?
              AND ends_at > ?
            ORDER BY scheduled_at
            """,
            (advisor_id, *sorted(OCCUPYING_STATUSES), to_db_time(end), to_db_time(start)),
        ).fetchall()

    def _record_status_change(
        self,
        conn: sqlite3.Connection,
        booking_id: str,
        actor_user_id: str,
        from_status: str,
        to_status: str,
        note: str,
        at: datetime,
    ) -> None:
        conn.execute(
            """
            INSERT INTO booking_status_history (id, booking_id, actor_user_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (f"bsh_{uuid4().hex[:10]}", booking_id, actor_user_id, from_status, to_status, note, to_db_time(at)),
        )

    def _insert_if_free(self, conn: sqlite3.Connection, booking: Booking, actor_user_id: str, note: str) -> Booking:
        clashes = self._occupying_rows(conn, booking.advisor_id, booking.scheduled_at, booking.ends_at)
        if clashes:
            logger.warning(
                "Slot conflict for advisor %s at %s (held by %s)",
                booking.advisor_id,
                booking.scheduled_at.isoformat(),
                clashes[0]["id"],
            )
            raise SlotConflictError("That time was just booked by someone else; please pick another slot")

        now = utc_now()
        stored = booking.model_copy(update={"created_at": now, "updated_at": now})
        conn.execute(
            """
            INSERT INTO bookings (
                id, advisor_id, customer_id, package_id, scheduled_at, ends_at, duration,
                status, rating, rescheduled_from, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                stored.id,
                stored.advisor_id,
                stored.customer_id,
                stored.package_id,
                to_db_time(stored.scheduled_at),
                to_db_time(stored.ends_at),
                stored.duration,
                stored.status,
                stored.rating,
                stored.rescheduled_from,
                to_db_time(now),
                to_db_time(now),
            ),
        )
        self._record_status_change(conn, stored.id, actor_user_id, "none", stored.status, note, now)
        return self._fetch(conn, stored.id)

    def get(self, booking_id: str) -> Booking:
        return self.database.read(lambda conn: self._fetch(conn, booking_id))

    def list_occupying(self, advisor_id: str, start: datetime, end: datetime) -> List[Booking]:
        """Bookings still holding time that overlaps ``[start, end)``."""
        rows = self.database.read(lambda conn: self._occupying_rows(conn, advisor_id, start, end))
        return [self._row_to_booking(row) for row in rows]

    def insert_if_free(self, booking: Booking, actor_user_id: str, note: str = "booking created") -> Booking:
        """Atomically re-check for overlapping bookings and insert ``booking``.

        Raises ``SlotConflictError`` without writing anything when another
        occupying booking overlaps the requested interval.
        """
        return self.database.write(lambda conn: self._insert_if_free(conn, booking, actor_user_id, note))

    def transition(
        self,
        booking_id: str,
        to_status: str,
        actor_user_id: str,
        guard: BookingGuard,
        note: str = "",
    ) -> Booking:
        def apply(conn: sqlite3.Connection) -> Booking:
            current = self._fetch(conn, booking_id)
            guard(current)
            now = utc_now()
            conn.execute(
                "UPDATE bookings SET status = ?, updated_at = ? WHERE id = ?",
                (to_status, to_db_time(now), booking_id),
            )
            self._record_status_change(conn, booking_id, actor_user_id, current.status, to_status, note, now)
            return self._fetch(conn, booking_id)

        return self.database.write(apply)

    def replace(
        self,
        original_id: str,
        replacement: Booking,
        actor_user_id: str,
        guard: BookingGuard,
    ) -> Booking:
        """Mark ``original_id`` rescheduled and insert ``replacement`` in one transaction.

        If the replacement interval is taken the whole transaction rolls back,
        leaving the original booking untouched.
        """

        def apply(conn: sqlite3.Connection) -> Booking:
            original = self._fetch(conn, original_id)
            guard(original)
            now = utc_now()
            conn.execute(
                "UPDATE bookings SET status = 'rescheduled', updated_at = ? WHERE id = ?",
                (to_db_time(now), original_id),
            )
            self._record_status_change(
                conn, original_id, actor_user_id, original.status, "rescheduled", f"replaced by {replacement.id}", now
            )
            return self._insert_if_free(conn, replacement, actor_user_id, f"rescheduled from {original_id}")

        return self.database.write(apply)

    def set_rating(self, booking_id: str, rating: int, guard: BookingGuard) -> Booking:
        def apply(conn: sqlite3.Connection) -> Booking:
            guard(self._fetch(conn, booking_id))
            conn.execute(
                "UPDATE bookings SET rating = ?, updated_at = ? WHERE id = ?",
                (rating, to_db_time(utc_now()), booking_id),
            )
            return self._fetch(conn, booking_id)

        return self.database.write(apply)

    def complete_elapsed(self, now: datetime, actor_user_id: str) -> List[str]:
        """Move every ``booked`` booking whose session has ended to ``completed``."""

        def apply(conn: sqlite3.Connection) -> List[str]:
            rows = conn.execute(
                "SELECT id FROM bookings WHERE status = 'booked' AND ends_at <= ? ORDER BY ends_at",
                (to_db_time(now),),
            ).fetchall()
            changed_at = utc_now()
            booking_ids = [row["id"] for row in rows]
            for booking_id in booking_ids:
                conn.execute(
                    "UPDATE bookings SET status = 'completed', updated_at = ? WHERE id = ?",
                    (to_db_time(changed_at), booking_id),
                )
                self._record_status_change(
                    conn, booking_id, actor_user_id, "booked", "completed", "session time elapsed", changed_at
                )
            return booking_ids

        return self.database.write(apply)

    def list_for_customer(self, customer_id: str, scope: str, now: datetime) -> List[Booking]:
        def query(conn: sqlite3.Connection) -> List[sqlite3.Row]:
            if scope == "upcoming":
                return conn.execute(
                    """
                    SELECT * FROM bookings
                    WHERE customer_id = ? AND status = 'booked' AND scheduled_at >= ?
                    ORDER BY scheduled_at
                    """,
                    (customer_id, to_db_time(now)),
                ).fetchall()
            if scope == "history":
                return conn.execute(
                    """
                    SELECT * FROM bookings
                    WHERE customer_id = ? AND NOT (status = 'booked' AND scheduled_at >= ?)
                    ORDER BY scheduled_at DESC
                    """,
                    (customer_id, to_db_time(now)),
                ).fetchall()
            return conn.execute(
                "SELECT * FROM bookings WHERE customer_id = ? ORDER BY scheduled_at DESC",
                (customer_id,),
            ).fetchall()

        return [self._row_to_booking(row) for row in self.database.read(query)]

    def completed_ratings(self, advisor_id: str) -> List[int]:
        rows = self.database.read(
            lambda conn: conn.execute(
                """
                SELECT rating FROM bookings
                WHERE advisor_id = ? AND status = 'completed' AND rating IS NOT NULL
                """,
                (advisor_id,),
            ).fetchall()
        )
        return [int(row["rating"]) for row in rows]

    def list_status_history(self, booking_id: str) -> List[BookingStatusChange]:
        rows = self.database.read(
            lambda conn: conn.execute(
                "SELECT * FROM booking_status_history WHERE booking_id = ? ORDER BY created_at, rowid",
                (booking_id,),
            ).fetchall()
        )
        return [
            BookingStatusChange(
                id=row["id"],
                booking_id=row["booking_id"],
                actor_user_id=row["actor_user_id"],
                from_status=row["from_status"],
                to_status=row["to_status"],
                note=row["note"],
                created_at=from_db_time(row["created_at"]),
            )
            for row in rows
        ]
