"""Booking conflict rules. Pure functions over already-loaded appointments."""
from dataclasses import dataclass
from datetime import UTC, datetime, tzinfo
from typing import Any, Iterable

from app.models.appointment import Appointment, digits_only


def to_datetime(value: Any) -> datetime | None:
    """Aware UTC datetime, or None when the value is not a date-time."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def overlaps(a_start: Any, a_end: Any, b_start: Any, b_end: Any) -> bool:
    """Half-open [start, end) overlap. Unparsable or empty intervals never overlap."""
    s1, e1, s2, e2 = (to_datetime(v) for v in (a_start, a_end, b_start, b_end))
    if s1 is None or e1 is None or s2 is None or e2 is None:
        return False
    if e1 <= s1 or e2 <= s2:
        return False
    return s2 < e1 and e2 > s1


def find_therapist_conflict(
    appointments: Iterable[Appointment],
    therapist_id: str | None,
    start: Any,
    end: Any,
    ignore_id: str | None = None,
) -> Appointment | None:
    """First appointment of the same therapist overlapping [start, end), skipping ``ignore_id``."""
    tid = (therapist_id or "").strip()
    if not tid:
        return None
    for a in appointments:
        if ignore_id and a.id == ignore_id:
            continue
        if (a.therapist_id or "").strip() != tid:
            continue
        if overlaps(a.start, a.end, start, end):
            return a
    return None


@dataclass(frozen=True)
class PatientScheduleCheck:
    overlap: Appointment | None = None
    same_day: Appointment | None = None

    @property
    def ok(self) -> bool:
        return self.overlap is None and self.same_day is None


def check_patient_schedule(
    appointments: Iterable[Appointment],
    patient_id: str | None,
    therapist_id: str | None,
    start: Any,
    end: Any,
    ignore_id: str | None = None,
    tz: tzinfo = UTC,
) -> PatientScheduleCheck:
    """Look at the patient's appointments with *other* therapists.

    ``overlap`` is the first one overlapping the candidate; otherwise ``same_day`` is the
    first one on the candidate's calendar day in ``tz``.
    """
    pid = digits_only(patient_id)
    tid = (therapist_id or "").strip()
    if not pid or not tid:
        return PatientScheduleCheck()

    others = [
        a
        for a in appointments
        if not (ignore_id and a.id == ignore_id)
        and digits_only(a.patient_id) == pid
        and (a.therapist_id or "").strip()
        and a.therapist_id.strip() != tid
    ]
    if not others:
        return PatientScheduleCheck()

    for a in others:
        if overlaps(a.start, a.end, start, end):
            return PatientScheduleCheck(overlap=a)

    candidate = to_datetime(start)
    if candidate is None:
        return PatientScheduleCheck()
    day = candidate.astimezone(tz).date()
    for a in others:
        other = to_datetime(a.start)
        if other is not None and other.astimezone(tz).date() == day:
            return PatientScheduleCheck(same_day=a)
    return PatientScheduleCheck()
