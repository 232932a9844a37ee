"""Shared fixtures.

Environment is set before anything under ``app`` is imported so the settings singleton
and the module-level engine pick up the test values.
"""
import os
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

_TMP = Path(tempfile.mkdtemp(prefix="clinic-tests-"))
TEST_DB_PATH = _TMP / "api.db"

os.environ["SECRET_KEY"] = "test-secret-key-not-for-production"
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"
os.environ["ENV"] = "test"
os.environ["CLINIC_TIMEZONE"] = "UTC"
os.environ["CLINIC_START_TIME"] = "07:00"
os.environ["CLINIC_END_TIME"] = "22:00"
os.environ["CLINIC_DAYS"] = "1,2,3,4,5,6,7"
os.environ["NOTIFICATION_POLL_SECONDS"] = "0"
os.environ["NOTIFICATION_COOLDOWN_SECONDS"] = "120"
os.environ["BOOTSTRAP_ADMIN_EMAIL"] = "admin@clinic.org"
os.environ["BOOTSTRAP_ADMIN_PASSWORD"] = "admin-pass-123"
os.environ["MEDPLUM_CLIENT_ID"] = ""
os.environ["MEDPLUM_CLIENT_SECRET"] = ""

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

import app.models  # noqa: E402,F401 - register tables
from app.services.appointment_service import AppointmentService  # noqa: E402
from app.services.appointment_store import AppointmentStore  # noqa: E402
from app.services.clinic_hours import ClinicHours  # noqa: E402
from app.services.kv_store import KVStore  # noqa: E402
from app.services.notification_service import NotificationService  # noqa: E402
from app.services.scheduling_desk import SchedulingDesk  # noqa: E402


class FakeClock:
    """Settable clock for code that takes a ``clock``/``now`` callable."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 6, 1, 8, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def at(hhmm: str, day: str = "2025-06-01") -> datetime:
    """UTC datetime on ``day`` at ``HH:MM``."""
    return datetime.fromisoformat(f"{day}T{hhmm}:00+00:00")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def session_maker():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def kv(session_maker) -> KVStore:
    return KVStore(session_maker)


@pytest.fixture
def store(kv, clock) -> AppointmentStore:
    return AppointmentStore(kv, clock=clock)


@pytest.fixture
async def service(store):
    svc = AppointmentService(store)
    await svc.start()
    yield svc
    svc.stop()


@pytest.fixture
def clinic_hours() -> ClinicHours:
    return ClinicHours()


@pytest.fixture
def desk(service, clinic_hours) -> SchedulingDesk:
    async def names():
        return {"T1": "Dana Levi", "T2": "Noam Katz"}

    return SchedulingDesk(service, clinic_hours, names)


@pytest.fixture
def notifications(kv, clock) -> NotificationService:
    return NotificationService(kv, clock=clock, cooldown_seconds=120, feed_limit=200)
