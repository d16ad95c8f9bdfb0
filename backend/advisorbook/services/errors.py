class BookingError(ValueError):
    """Base class for user-visible scheduling errors."""

    code = "booking_error"
    retryable = False


class NotFoundError(BookingError):
    code = "not_found"


class BookingValidationError(BookingError):
    code = "validation_error"


class SlotConflictError(BookingError):
    """Another booking already holds an overlapping interval.

    Never retried automatically; the caller has to list slots again and pick.
    """

    code = "slot_conflict"


class PreconditionFailedError(BookingError):
    code = "precondition_failed"


class UnauthorizedError(BookingError):
    code = "unauthorized"


class AuthenticationRequiredError(BookingError):
    code = "authentication_required"


class PersistenceError(BookingError):
    """The ledger could not complete a transaction; safe to retry with backoff."""

    code = "persistence_error"
    retryable = True
