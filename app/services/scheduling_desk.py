"""Booking desk: turns calendar interactions (select, drag, resize, form save) into
service calls, applying the booking rules that live above the store.

Checks run in a fixed order before anything is written: clinic hours, therapist
resolution, a fast double-booking pre-check on the in-memory view, then the patient
rule. The store re-checks double booking itself.
"""
import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, time, timedelta
from typing import Any

from app.core.errors import ConflictError, PatientOverlapError, SameDayWarning, ValidationError
from app.models.appointment import Appointment, AppointmentInput, parse_input
from app.services.appointment_service import AppointmentService
from app.services.clinic_hours import ClinicHours
from app.services.conflicts import check_patient_schedule, find_therapist_conflict, to_datetime
from app.services.viewer import Viewer

logger = logging.getLogger(__name__)

DEFAULT_SLOT_MINUTES = 30
_DAY_OPENS = time(9, 0)
_LAST_DEFAULT_HOUR = 18

TherapistNames = Callable[[], Awaitable[Mapping[str, str]]]


async def _no_names() -> Mapping[str, str]:
    return {}


class SchedulingDesk:
    def __init__(
        self,
        service: AppointmentService,
        clinic: ClinicHours,
        therapist_names: TherapistNames = _no_names,
    ) -> None:
        self.service = service
        self.clinic = clinic
        self._therapist_names = therapist_names

    async def book(self, viewer: Viewer, values: dict[str, Any], confirm: bool = False) -> Appointment:
        self._gate(values.get("start"), values.get("end"), "created")
        therapist_id = self._resolve_therapist(viewer, values.get("therapist_id"))
        data = parse_input({**values, "therapist_id": therapist_id})
        await self._precheck(data, ignore_id=None, confirm=confirm)
        return await self.service.add(data)

    async def reschedule(
        self, viewer: Viewer, appointment_id: str, start: Any, end: Any, confirm: bool = False
    ) -> Appointment | None:
        """Drag-move or resize. None when the appointment is not visible to ``viewer``."""
        current = self._owned(viewer, appointment_id)
        if current is None:
            return None
        self._gate(start, end, "scheduled")
        data = parse_input({**current.model_dump(), "start": start, "end": end})
        await self._precheck(data, ignore_id=current.id, confirm=confirm)
        return await self.service.update(
            current.id, {"start": data.start, "end": data.end, "pending_sync": True}
        )

    async def save(
        self, viewer: Viewer, appointment_id: str, values: dict[str, Any], confirm: bool = False
    ) -> Appointment | None:
        """Edit-form save. None when the appointment is not visible to ``viewer``."""
        current = self._owned(viewer, appointment_id)
        if current is None:
            return None
        self._gate(values.get("start", current.start), values.get("end", current.end), "saved")
        therapist_id = self._resolve_therapist(viewer, values.get("therapist_id", current.therapist_id))
        data = parse_input({**current.model_dump(), **values, "therapist_id": therapist_id})
        await self._precheck(data, ignore_id=current.id, confirm=confirm)
        return await self.service.update(current.id, {**values, "therapist_id": therapist_id})

    async def remove(self, viewer: Viewer, appointment_id: str) -> None:
        if not viewer.is_admin and self._owned(viewer, appointment_id) is None:
            return
        await self.service.remove(appointment_id)

    def default_slot(self, now: datetime) -> tuple[datetime, datetime]:
        """Next full hour; before 09:00 it is 09:00, from 18:00 it is 09:00 the next day."""
        local = self.clinic.local(now).replace(second=0, microsecond=0)
        if local.hour < _DAY_OPENS.hour:
            start = local.replace(hour=_DAY_OPENS.hour, minute=0)
        elif local.hour >= _LAST_DEFAULT_HOUR:
            next_day = local.date() + timedelta(days=1)
            start = datetime.combine(next_day, _DAY_OPENS, tzinfo=local.tzinfo)
        else:
            start = local.replace(minute=0) + timedelta(hours=1)
        return start, start + timedelta(minutes=DEFAULT_SLOT_MINUTES)

    def _gate(self, start: Any, end: Any, action: str) -> None:
        # Unparsable values fall through to input validation
        if to_datetime(start) is None or to_datetime(end) is None:
            return
        self.clinic.check(start, end, action)

    def _resolve_therapist(self, viewer: Viewer, requested: Any) -> str:
        if not viewer.is_admin:
            return viewer.therapist_id
        therapist_id = str(requested or "").strip()
        if not therapist_id:
            raise ValidationError("therapistId", "Therapist is required.")
        return therapist_id

    def _owned(self, viewer: Viewer, appointment_id: str) -> Appointment | None:
        current = self.service.get(appointment_id)
        if current is None:
            return None
        if not viewer.is_admin and current.therapist_id != viewer.therapist_id:
            return None
        return current

    async def _precheck(self, data: AppointmentInput, ignore_id: str | None, confirm: bool) -> None:
        existing = self.service.appointments
        if find_therapist_conflict(existing, data.therapist_id, data.start, data.end, ignore_id=ignore_id):
            raise ConflictError()

        check = check_patient_schedule(
            existing, data.patient_id, data.therapist_id, data.start, data.end,
            ignore_id=ignore_id, tz=self.clinic.tz,
        )
        if check.ok:
            return
        names = await self._therapist_names()
        if check.overlap is not None:
            other = _therapist_name(names, check.overlap.therapist_id)
            raise PatientOverlapError(
                f"Cannot create/update: this patient already has an appointment at the same time with {other}."
            )
        if check.same_day is not None and not confirm:
            other = _therapist_name(names, check.same_day.therapist_id)
            local = self.clinic.local(data.start)
            raise SameDayWarning(
                f"Warning: this patient already has an appointment on "
                f"{local.day}/{local.month}/{local.year} with {other}."
            )
        logger.info("Same-day booking for patient %s confirmed", data.patient_id)


def _therapist_name(names: Mapping[str, str], therapist_id: str) -> str:
    key = (therapist_id or "").strip()
    if not key:
        return "another therapist"
    return names.get(key) or key
