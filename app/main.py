import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import appointments, auth, notifications, patients, slots, sync, users
from app.core.config import _ENV_FILE, settings
from app.core.db import async_session_maker, engine, init_db
from app.core.errors import (
    ClinicHoursError,
    ConflictError,
    NotFoundError,
    PersistenceError,
    SchedulingError,
    ValidationError,
)
from app.services.auth_service import bootstrap_admin
from app.services.clinic import ClinicServices, build_services

if settings.env != "production":
    logging.basicConfig(level=logging.DEBUG)
else:
    logging.basicConfig(
        level=logging.INFO,
        format='{"time": "%(asctime)s", "level": "%(levelname)s", "message": "%(message)s"}',
    )
logger = logging.getLogger(__name__)

_ERROR_STATUS: list[tuple[type[SchedulingError], int]] = [
    (ValidationError, 422),
    (ConflictError, 409),
    (ClinicHoursError, 422),
    (PersistenceError, 503),
    (NotFoundError, 404),
]


async def _run_notification_diff(clinic: ClinicServices) -> None:
    try:
        n = await clinic.refresh_all_notifications()
        if n:
            logger.info("Notification diff: %d new notification(s)", n)
    except Exception as e:
        logger.exception("Notification diff failed: %s", e)


async def _notification_loop(clinic: ClinicServices) -> None:
    while True:
        await asyncio.sleep(settings.notification_poll_seconds)
        await _run_notification_diff(clinic)


async def _bootstrap() -> None:
    async with async_session_maker() as session:
        try:
            await bootstrap_admin(session)
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Loading .env from: %s (exists: %s)", _ENV_FILE, _ENV_FILE.exists())
    await init_db()
    await _bootstrap()
    clinic = build_services(async_session_maker)
    app.state.clinic = clinic
    await clinic.appointments.start()
    if clinic.appointments.warnings:
        logger.warning("Startup load dropped %d appointment record(s)", len(clinic.appointments.warnings))
    logger.info(
        "Clinic hours %s (%s); Medplum sync %s",
        clinic.clinic_hours.label,
        settings.clinic_timezone,
        "configured" if clinic.medplum.configured else "NOT configured",
    )
    task = None
    if settings.notification_poll_seconds > 0:
        task = asyncio.create_task(_notification_loop(clinic))
    yield
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    clinic.appointments.stop()
    await clinic.medplum.aclose()
    await engine.dispose()


app = FastAPI(
    title="Clinic Scheduling API",
    description="Appointments, double-booking checks and change notifications for therapy clinics",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Refresh-Token"],
)

app.include_router(auth.router, prefix="/api/v1")
app.include_router(users.router, prefix="/api/v1")
app.include_router(appointments.router, prefix="/api/v1")
app.include_router(slots.router, prefix="/api/v1")
app.include_router(notifications.router, prefix="/api/v1")
app.include_router(patients.router, prefix="/api/v1")
app.include_router(sync.router, prefix="/api/v1")


def _cors_headers(origin: str | None) -> dict[str, str]:
    """Add CORS headers to error responses so the browser doesn't block them."""
    headers = {
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Authorization, Content-Type, X-Refresh-Token",
    }
    if origin and origin in settings.cors_origins_list:
        headers["Access-Control-Allow-Origin"] = origin
    elif settings.cors_origins_list:
        headers["Access-Control-Allow-Origin"] = settings.cors_origins_list[0]
    return headers


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    """Domain errors keep their exact message; ``code`` tells the client which kind it was."""
    status_code = next((code for kind, code in _ERROR_STATUS if isinstance(exc, kind)), 400)
    if status_code >= 500:
        logger.error("%s: %s", type(exc).__name__, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code, "field": getattr(exc, "field", None) or None},
        headers=_cors_headers(request.headers.get("origin")),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return actual error in JSON; include CORS so 500 responses are not blocked by browser."""
    origin = request.headers.get("origin")
    headers = _cors_headers(origin)
    if isinstance(exc, HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=headers,
        )
    logger.exception("Unhandled exception: %s", exc)
    detail = f"{type(exc).__name__}: {str(exc)}"
    return JSONResponse(
        status_code=500,
        content={"detail": detail},
        headers=headers,
    )


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}
