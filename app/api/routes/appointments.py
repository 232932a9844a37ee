import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import get_clinic, get_viewer
from app.api.schemas.appointment import (
    BookAppointmentRequest,
    DefaultSlotResponse,
    UpdateAppointmentRequest,
)
from app.core.errors import NotFoundError
from app.models.appointment import Appointment
from app.services.clinic import ClinicServices
from app.services.viewer import Viewer

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/appointments", tags=["appointments"])

_RESCHEDULE_FIELDS = {"start", "end"}


def _to_public(a: Appointment) -> dict:
    return a.to_json()


@router.get("")
async def list_appointments(
    therapist_id: str | None = Query(None, alias="therapist_id"),
    viewer: Viewer = Depends(get_viewer),
    clinic: ClinicServices = Depends(get_clinic),
) -> list[dict]:
    """Therapists get their own appointments; admins get all, or one therapist's."""
    return [_to_public(a) for a in clinic.appointments.visible_to(viewer, therapist_id)]


@router.get("/default-slot", response_model=DefaultSlotResponse)
async def default_slot(clinic: ClinicServices = Depends(get_clinic)) -> DefaultSlotResponse:
    start, end = clinic.desk.default_slot(datetime.now(UTC))
    return DefaultSlotResponse(start=start, end=end)


@router.post("", status_code=status.HTTP_201_CREATED)
async def book_appointment(
    body: BookAppointmentRequest,
    confirm: bool = Query(False),
    viewer: Viewer = Depends(get_viewer),
    clinic: ClinicServices = Depends(get_clinic),
) -> dict:
    appointment = await clinic.desk.book(viewer, body.model_dump(), confirm=confirm)
    return _to_public(appointment)


@router.patch("/{appointment_id}")
async def update_appointment(
    appointment_id: str,
    body: UpdateAppointmentRequest,
    confirm: bool = Query(False),
    viewer: Viewer = Depends(get_viewer),
    clinic: ClinicServices = Depends(get_clinic),
) -> dict:
    values = body.model_dump(exclude_unset=True)
    if set(values) == _RESCHEDULE_FIELDS:
        # Drag-move / resize
        updated = await clinic.desk.reschedule(viewer, appointment_id, values["start"], values["end"], confirm=confirm)
    else:
        updated = await clinic.desk.save(viewer, appointment_id, values, confirm=confirm)
    if updated is None:
        raise NotFoundError("Appointment not found")
    return _to_public(updated)


@router.delete("/{appointment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_appointment(
    appointment_id: str,
    viewer: Viewer = Depends(get_viewer),
    clinic: ClinicServices = Depends(get_clinic),
) -> None:
    await clinic.desk.remove(viewer, appointment_id)
    logger.info("Appointment %s removed by %s", appointment_id, viewer.key)
