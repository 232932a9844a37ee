from dataclasses import dataclass
from datetime import date, datetime, timedelta

from app.core.config import settings
from app.models.appointment import Appointment
from app.services.clinic_hours import ClinicHours
from app.services.conflicts import find_therapist_conflict


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime
    available: bool


def _slot_times_for_date(clinic: ClinicHours, d: date, minutes: int) -> list[datetime]:
    """Slot starts on the clinic's wall clock between opening and closing."""
    opens = datetime(d.year, d.month, d.day, tzinfo=clinic.tz) + timedelta(minutes=clinic.start_minutes)
    closes = datetime(d.year, d.month, d.day, tzinfo=clinic.tz) + timedelta(minutes=clinic.end_minutes)
    delta = timedelta(minutes=minutes)
    slots: list[datetime] = []
    current = opens
    while current + delta <= closes:
        slots.append(current)
        current += delta
    return slots


def get_available_slots_for_date(
    appointments: list[Appointment],
    therapist_id: str,
    d: date,
    clinic: ClinicHours,
    minutes: int | None = None,
) -> list[Slot]:
    """Every slot of the day for one therapist, flagged available when the clinic is open
    and the therapist has nothing overlapping it."""
    minutes = minutes or settings.slot_duration_minutes
    out: list[Slot] = []
    for start in _slot_times_for_date(clinic, d, minutes):
        end = start + timedelta(minutes=minutes)
        free = clinic.is_range_within(start, end) and not find_therapist_conflict(
            appointments, therapist_id, start, end
        )
        out.append(Slot(start=start, end=end, available=free))
    return out
