import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Callable, Iterator, TypeVar

from advisorbook import config
from advisorbook.services.errors import PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS advisors (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        timezone TEXT NOT NULL DEFAULT 'UTC'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS packages (
        id TEXT PRIMARY KEY,
        advisor_id TEXT NOT NULL,
        title TEXT NOT NULL,
        duration INTEGER NOT NULL CHECK (duration > 0),
        price REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS availability_windows (
        advisor_id TEXT NOT NULL,
        day_of_week TEXT NOT NULL,
        start_time TEXT NOT NULL,
        end_time TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        PRIMARY KEY (advisor_id, day_of_week)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bookings (
        id TEXT PRIMARY KEY,
        advisor_id TEXT NOT NULL,
        customer_id TEXT NOT NULL,
        package_id TEXT NOT NULL,
        scheduled_at TEXT NOT NULL,
        ends_at TEXT NOT NULL,
        duration INTEGER NOT NULL,
        status TEXT NOT NULL,
        rating INTEGER,
        rescheduled_from TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_bookings_advisor_time ON bookings(advisor_id, scheduled_at)",
    "CREATE INDEX IF NOT EXISTS idx_bookings_customer ON bookings(customer_id)",
    """
    CREATE TABLE IF NOT EXISTS booking_status_history (
        id TEXT PRIMARY KEY,
        booking_id TEXT NOT NULL,
        actor_user_id TEXT NOT NULL,
        from_status TEXT NOT NULL,
        to_status TEXT NOT NULL,
        note TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
)


def to_db_time(value: datetime) -> str:
    # Fixed-width UTC text, so string order in SQL is chronological order.
    if value.tzinfo is None:
        raise ValueError("timestamps must be timezone-aware")
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(raw: str) -> datetime:
    return datetime.fromisoformat(raw)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Database:
    """One sqlite file shared by the availability store and the booking ledger.

    Writers are serialized in-process by ``_lock`` and across processes by
    ``BEGIN IMMEDIATE``, which takes sqlite's reserved lock before the first read
    of the transaction. A check-then-write done inside :meth:`write` therefore
    cannot interleave with another writer.
    """

    db_path: str
    max_attempts: int = config.LEDGER_MAX_ATTEMPTS
    retry_backoff_seconds: float = config.LEDGER_RETRY_BACKOFF_SECONDS
    busy_timeout_seconds: float = config.LEDGER_BUSY_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self.write(self._init_schema)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout_seconds,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        for statement in SCHEMA:
            conn.execute(statement)

    @contextmanager
    def transaction(self, *, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        # Same bound as sqlite's busy handler, which never sees waiters in this process.
        if not self._lock.acquire(timeout=self.busy_timeout_seconds):
            raise sqlite3.OperationalError("ledger lock timeout")
        try:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()
        finally:
            self._lock.release()

    def _run(self, operation: Callable[[sqlite3.Connection], T], *, immediate: bool) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                with self.transaction(immediate=immediate) as conn:
                    return operation(conn)
            except sqlite3.OperationalError as exc:
                if attempt >= self.max_attempts:
                    logger.exception("Ledger transaction failed after %s attempts", attempt)
                    raise PersistenceError("Storage is temporarily unavailable, please try again") from exc
                delay = self.retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning("Ledger transaction attempt %s failed (%s); retrying in %.3fs", attempt, exc, delay)
                time.sleep(delay)

    def write(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``operation`` in one write transaction, retrying transient sqlite failures.

        Exceptions raised by ``operation`` itself roll back the transaction and
        propagate unchanged.
        """
        return self._run(operation, immediate=True)

    def read(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        return self._run(operation, immediate=False)
