import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.trustedhost import TrustedHostMiddleware

from advisorbook import config
from advisorbook.routers import advisors, bookings
from advisorbook.services.booking_service import booking_service
from advisorbook.services.errors import (
    AuthenticationRequiredError,
    BookingError,
    NotFoundError,
    PersistenceError,
    PreconditionFailedError,
    SlotConflictError,
    UnauthorizedError,
)

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Advisorbook API", version="0.1.0")

HTTP_STATUS_BY_ERROR = (
    (NotFoundError, 404),
    (AuthenticationRequiredError, 401),
    (UnauthorizedError, 403),
    (SlotConflictError, 409),
    (PreconditionFailedError, 412),
    (PersistenceError, 503),
)

cors_origins = config.env_csv("CORS_ORIGINS", "*")
allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

trusted_hosts = config.env_csv("TRUSTED_HOSTS", "*")
if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

app.include_router(advisors.router)
app.include_router(bookings.router)


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    status_code = next((code for error_type, code in HTTP_STATUS_BY_ERROR if isinstance(exc, error_type)), 400)
    headers = {"Retry-After": "1"} if exc.retryable else None
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "code": exc.code, "retryable": exc.retryable},
        headers=headers,
    )


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    booking_service.availability.database.read(lambda conn: conn.execute("SELECT 1").fetchone())
    return {"status": "ready"}
