import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from app.models.appointment import Appointment, AppointmentInput, AppointmentPatch
from app.services.appointment_store import APPOINTMENTS_KEY, AppointmentStore
from app.services.viewer import Viewer

logger = logging.getLogger(__name__)

Observer = Callable[[list[Appointment]], Awaitable[None] | None]


class AppointmentService:
    """Refreshable in-memory view over the store.

    Every mutation is followed by a full reload, so ``appointments`` always matches
    what the store holds. Store errors propagate unchanged.
    """

    def __init__(self, store: AppointmentStore) -> None:
        self.store = store
        self.appointments: list[Appointment] = []
        self.loading = True
        self.warnings: list[str] = []
        self._observers: list[Observer] = []
        self._started = False
        self._unsubscribe: Callable[[], None] | None = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        """Initial load; runs once."""
        if self._started:
            return
        self._started = True
        # Writes that bypass this service (e.g. the sync job) still reach the view
        self._unsubscribe = self.store.kv.subscribe(self._on_store_write, prefix=APPOINTMENTS_KEY)
        try:
            await self.refresh()
        finally:
            self.loading = False

    def stop(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    async def _on_store_write(self, key: str) -> None:
        await self.refresh()

    async def refresh(self) -> list[Appointment]:
        async with self._lock:
            result = await self.store.read_all()
            self.appointments = result.items
            self.warnings = result.warnings
        await self._publish()
        return self.appointments

    async def add(self, data: AppointmentInput | dict[str, Any]) -> Appointment:
        created = await self.store.create(data)
        await self.refresh()
        return created

    async def update(self, appointment_id: str, patch: AppointmentPatch | dict[str, Any]) -> Appointment | None:
        updated = await self.store.update(appointment_id, patch)
        await self.refresh()
        return updated

    async def remove(self, appointment_id: str) -> None:
        await self.store.delete(appointment_id)
        await self.refresh()

    def get(self, appointment_id: str) -> Appointment | None:
        return next((a for a in self.appointments if a.id == appointment_id), None)

    def visible_to(self, viewer: Viewer, therapist_filter: str | None = None) -> list[Appointment]:
        if not viewer.is_admin:
            tid = viewer.therapist_id
            return [a for a in self.appointments if a.therapist_id == tid] if tid else []
        wanted = (therapist_filter or "").strip()
        if not wanted or wanted == "all":
            return list(self.appointments)
        return [a for a in self.appointments if a.therapist_id == wanted]

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    async def _publish(self) -> None:
        snapshot = list(self.appointments)
        for observer in list(self._observers):
            try:
                result = observer(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception("Appointment observer failed: %s", e)
