from typing import Any

from fastapi import APIRouter, Depends

from app.api.deps import get_admin_user, get_clinic, get_current_user
from app.models.user import User
from app.services.clinic import ClinicServices

router = APIRouter(prefix="/patients", tags=["patients"])


@router.get("")
async def list_patients(
    clinic: ClinicServices = Depends(get_clinic),
    _user: User = Depends(get_current_user),
) -> list[dict]:
    return [p.model_dump(mode="json", by_alias=True) for p in await clinic.patients.list_all()]


@router.put("")
async def import_patients(
    records: list[dict[str, Any]],
    clinic: ClinicServices = Depends(get_clinic),
    _admin: User = Depends(get_admin_user),
) -> dict:
    """Replace the directory. Records are normalized; ones without an id number are skipped."""
    imported = await clinic.patients.replace(records)
    return {"imported": len(imported), "skipped": len(records) - len(imported)}
