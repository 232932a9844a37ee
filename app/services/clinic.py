"""Wiring of the scheduling components; one instance lives on ``app.state.clinic``."""
import logging
from collections.abc import Mapping
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.notification import Notification
from app.services.appointment_service import AppointmentService
from app.services.appointment_store import AppointmentStore
from app.services.auth_service import list_therapists, therapist_names
from app.services.clinic_hours import ClinicHours
from app.services.kv_store import KVStore
from app.services.medplum_sync import AppointmentSyncJob, MedplumClient
from app.services.notification_service import NotificationService
from app.services.patient_directory import PatientDirectory
from app.services.scheduling_desk import SchedulingDesk
from app.services.viewer import Viewer

logger = logging.getLogger(__name__)


@dataclass
class ClinicServices:
    session_maker: async_sessionmaker[AsyncSession]
    kv: KVStore
    store: AppointmentStore
    appointments: AppointmentService
    clinic_hours: ClinicHours
    desk: SchedulingDesk
    notifications: NotificationService
    patients: PatientDirectory
    medplum: MedplumClient
    sync_job: AppointmentSyncJob

    async def refresh_notifications(self, viewer: Viewer) -> list[Notification]:
        """Run the diff for one viewer against the current view."""
        label_for = await self.patients.labeler()
        return await self.notifications.compute_and_store(viewer, self.appointments.appointments, label_for)

    async def refresh_all_notifications(self) -> int:
        """Admin plus every therapist account; returns how many notifications were emitted."""
        async with self.session_maker() as session:
            therapists = await list_therapists(session)
        viewers = [Viewer.admin(), *(Viewer.therapist(u.therapist_id) for u in therapists)]
        logger.debug("Notification diff for %d viewer(s)", len(viewers))
        emitted = 0
        for viewer in viewers:
            emitted += len(await self.refresh_notifications(viewer))
        return emitted


def build_services(session_maker: async_sessionmaker[AsyncSession], medplum: MedplumClient | None = None) -> ClinicServices:
    kv = KVStore(session_maker)
    store = AppointmentStore(kv)
    appointments = AppointmentService(store)
    clinic_hours = ClinicHours.from_settings()
    medplum = medplum or MedplumClient()

    async def names() -> Mapping[str, str]:
        async with session_maker() as session:
            return await therapist_names(session)

    return ClinicServices(
        session_maker=session_maker,
        kv=kv,
        store=store,
        appointments=appointments,
        clinic_hours=clinic_hours,
        desk=SchedulingDesk(appointments, clinic_hours, names),
        notifications=NotificationService(kv),
        patients=PatientDirectory(kv),
        medplum=medplum,
        sync_job=AppointmentSyncJob(store, medplum),
    )
