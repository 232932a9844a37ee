import asyncio
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import StreamingResponse

from app.api.deps import get_clinic, get_viewer
from app.api.schemas.notification import DismissRequest
from app.services.clinic import ClinicServices
from app.services.medplum_sync import fetch_notifications, push_notifications
from app.services.viewer import Viewer

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/notifications", tags=["notifications"])

KEEPALIVE_SECONDS = 15
STREAM_QUEUE_SIZE = 32


class StreamQueue:
    """Per-connection queue of written keys.

    A key already waiting is not queued again, and keys arriving while the queue is
    full are dropped: a client only needs one ``changed`` event to re-read its feed.
    """

    def __init__(self, maxsize: int = STREAM_QUEUE_SIZE) -> None:
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self._pending: set[str] = set()

    def push(self, key: str) -> None:
        if key in self._pending:
            return
        try:
            self._queue.put_nowait(key)
        except asyncio.QueueFull:
            logger.debug("Stream queue full, dropping %s", key)
            return
        self._pending.add(key)

    async def get(self) -> str:
        key = await self._queue.get()
        self._pending.discard(key)
        return key

    def qsize(self) -> int:
        return self._queue.qsize()


@router.post("/refresh")
async def refresh_notifications(
    viewer: Viewer = Depends(get_viewer),
    clinic: ClinicServices = Depends(get_clinic),
) -> list[dict]:
    """Diff the caller's view since the last run; returns what changed."""
    emitted = await clinic.refresh_notifications(viewer)
    return [n.to_json() for n in emitted]


@router.get("")
async def notification_feed(
    viewer: Viewer = Depends(get_viewer),
    clinic: ClinicServices = Depends(get_clinic),
) -> list[dict]:
    visible = clinic.appointments.visible_to(viewer)
    remote = [] if viewer.is_admin else await fetch_notifications(clinic.medplum, viewer.therapist_id)
    return [n.to_json() for n in await clinic.notifications.feed(viewer, visible, remote=remote)]


@router.post("/dismiss")
async def dismiss_notifications(
    body: DismissRequest,
    background_tasks: BackgroundTasks,
    viewer: Viewer = Depends(get_viewer),
    clinic: ClinicServices = Depends(get_clinic),
) -> dict:
    stored = [] if viewer.is_admin else await clinic.notifications.stored(viewer)
    dismissed = await clinic.notifications.dismiss(viewer, body.ids)
    logger.debug("%s dismissed %d notification(s)", viewer.key, len(body.ids))
    # Keep a copy of cleared change notifications on the therapist's FHIR record
    cleared = [n for n in stored if n.id in set(body.ids)]
    if cleared and clinic.medplum.configured:
        background_tasks.add_task(push_notifications, clinic.medplum, cleared, viewer.therapist_id)
    return {"dismissed": len(dismissed)}


@router.get("/stream")
async def notification_stream(
    request: Request,
    viewer: Viewer = Depends(get_viewer),
    clinic: ClinicServices = Depends(get_clinic),
) -> StreamingResponse:
    """Server-sent ``changed`` events whenever this viewer's notification state is written."""
    queue = StreamQueue()
    unsubscribe = clinic.notifications.subscribe(queue.push, viewer)

    async def events() -> AsyncIterator[str]:
        try:
            while not await request.is_disconnected():
                try:
                    key = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: changed\ndata: {key}\n\n"
        finally:
            unsubscribe()

    return StreamingResponse(events(), media_type="text/event-stream")
