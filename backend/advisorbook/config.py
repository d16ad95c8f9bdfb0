import os
from pathlib import Path
from typing import Callable, Optional, TypeVar

T = TypeVar("T")


def _env_number(name: str, default: T, cast: Callable[[str], T], minimum: Optional[T] = None) -> T:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = cast(raw.strip())
    except ValueError:
        return default
    if minimum is not None and value < minimum:  # type: ignore[operator]
        return default
    return value


def env_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    return _env_number(name, default, int, minimum)


def env_float(name: str, default: float, minimum: Optional[float] = None) -> float:
    return _env_number(name, default, float, minimum)


def env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_csv(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


DEFAULT_DB_PATH = str(Path(__file__).resolve().parents[1] / "data" / "advisorbook.sqlite3")

DB_PATH = os.getenv("ADVISORBOOK_DB_PATH", DEFAULT_DB_PATH)
SEED_DEMO_DATA = env_flag("SEED_DEMO_DATA", True)

LEDGER_MAX_ATTEMPTS = env_int("LEDGER_MAX_ATTEMPTS", 3, minimum=1)
LEDGER_RETRY_BACKOFF_SECONDS = env_float("LEDGER_RETRY_BACKOFF_SECONDS", 0.05, minimum=0.0)
LEDGER_BUSY_TIMEOUT_SECONDS = env_float("LEDGER_BUSY_TIMEOUT_SECONDS", 5.0, minimum=0.0)
AVAILABILITY_CACHE_TTL_SECONDS = env_float("AVAILABILITY_CACHE_TTL_SECONDS", 30.0, minimum=0.0)

BOOKING_MIN_LEAD_MINUTES = env_int("BOOKING_MIN_LEAD_MINUTES", 0, minimum=0)
SYSTEM_ACTOR_ID = os.getenv("SYSTEM_ACTOR_ID", "system")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
