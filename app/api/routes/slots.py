from datetime import date

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_clinic, get_viewer
from app.api.schemas.appointment import AvailableSlotsResponse, SlotInfo
from app.services.clinic import ClinicServices
from app.services.slot_service import get_available_slots_for_date
from app.services.viewer import Viewer

router = APIRouter(prefix="/slots", tags=["slots"])


@router.get("/available", response_model=AvailableSlotsResponse)
async def available_slots(
    date_param: date = Query(..., alias="date"),
    therapist_id: str | None = Query(None, alias="therapist_id"),
    viewer: Viewer = Depends(get_viewer),
    clinic: ClinicServices = Depends(get_clinic),
) -> AvailableSlotsResponse:
    """Slots of one clinic day for a therapist (the caller, unless an admin picks one)."""
    tid = (therapist_id or "").strip() if viewer.is_admin else viewer.therapist_id
    slots = get_available_slots_for_date(clinic.appointments.appointments, tid, date_param, clinic.clinic_hours)
    return AvailableSlotsResponse(
        date=date_param.isoformat(),
        therapist_id=tid,
        slots=[SlotInfo(start=s.start, end=s.end, available=s.available) for s in slots],
    )
