import logging

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import get_admin_user, get_clinic
from app.api.schemas.notification import SyncReportResponse
from app.models.user import User
from app.services.clinic import ClinicServices
from app.services.medplum_sync import MedplumError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("/appointments", response_model=SyncReportResponse)
async def sync_appointments(
    clinic: ClinicServices = Depends(get_clinic),
    _admin: User = Depends(get_admin_user),
) -> SyncReportResponse:
    """Push every pending appointment to Medplum."""
    if not clinic.medplum.configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Not connected to Medplum. Set MEDPLUM_CLIENT_ID and MEDPLUM_CLIENT_SECRET.",
        )
    try:
        report = await clinic.sync_job.run()
    except MedplumError as e:
        logger.warning("Appointment sync aborted: %s", e)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e
    return SyncReportResponse(synced=report.synced, failed=report.failed, errors=report.errors)
