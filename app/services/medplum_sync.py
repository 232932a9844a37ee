"""Push local appointments and notifications to a Medplum FHIR server, and read
mirrored notifications back.

The store marks every local change ``pendingSync``; this job drains that queue and
records the outcome per appointment. A failed push is bookkeeping, not an error.
"""
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from app.core.config import settings
from app.models.appointment import Appointment, AppointmentStatus
from app.models.notification import Notification, NotificationType
from app.services.appointment_store import AppointmentStore

logger = logging.getLogger(__name__)

NOTIFICATION_SYSTEM = "mc:notification"

_FHIR_STATUS = {
    AppointmentStatus.scheduled: "booked",
    AppointmentStatus.completed: "fulfilled",
    AppointmentStatus.cancelled: "cancelled",
}


class MedplumError(Exception):
    pass


def _json(resp: httpx.Response, what: str) -> dict[str, Any]:
    """Decoded JSON object body; anything else is a MedplumError."""
    try:
        body = resp.json()
    except ValueError as e:
        raise MedplumError(f"{what} returned a non-JSON body ({resp.status_code})") from e
    if not isinstance(body, dict):
        raise MedplumError(f"{what} returned {type(body).__name__}, expected an object")
    return body


class MedplumClient:
    """Minimal async FHIR client using client-credentials auth."""

    def __init__(
        self,
        base_url: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.medplum_base_url).rstrip("/")
        self.client_id = client_id if client_id is not None else settings.medplum_client_id
        self.client_secret = client_secret if client_secret is not None else settings.medplum_client_secret
        self._http = http or httpx.AsyncClient(timeout=15.0)
        self._token: str | None = None
        self._token_expires: datetime | None = None

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.client_id and self.client_secret)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _access_token(self) -> str:
        if self._token and self._token_expires and datetime.now(UTC) < self._token_expires:
            return self._token
        if not self.configured:
            raise MedplumError("Not connected to Medplum")
        try:
            resp = await self._http.post(
                f"{self.base_url}/oauth2/token",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            )
        except httpx.HTTPError as e:
            raise MedplumError(f"{type(e).__name__}: {e}") from e
        if resp.status_code != 200:
            logger.warning("Medplum token request failed: %s %s", resp.status_code, resp.text[:200])
            raise MedplumError(f"Medplum login failed ({resp.status_code})")
        body = _json(resp, "token")
        token = body.get("access_token")
        if not isinstance(token, str) or not token:
            raise MedplumError("Medplum login returned no access token")
        try:
            lifetime = int(body.get("expires_in", 3600))
        except (TypeError, ValueError):
            lifetime = 3600
        self._token = token
        # Refresh a minute early
        self._token_expires = datetime.now(UTC) + timedelta(seconds=lifetime - 60)
        return self._token

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        token = await self._access_token()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/fhir+json"}
        try:
            resp = await self._http.request(method, f"{self.base_url}/fhir/R4/{path}", headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise MedplumError(f"{type(e).__name__}: {e}") from e
        if resp.status_code >= 400:
            raise MedplumError(f"{method} {path} failed ({resp.status_code}): {resp.text[:200]}")
        return _json(resp, f"{method} {path}")

    async def create_resource(self, resource: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", resource["resourceType"], json=resource)

    async def update_resource(self, resource: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PUT", f"{resource['resourceType']}/{resource['id']}", json=resource)

    async def search(self, resource_type: str, params: Mapping[str, str]) -> list[dict[str, Any]]:
        bundle = await self._request("GET", resource_type, params=dict(params))
        return [e["resource"] for e in bundle.get("entry", []) if isinstance(e, dict) and "resource" in e]


def appointment_to_fhir(appointment: Appointment, practitioner_ids: Mapping[str, str] | None = None) -> dict[str, Any]:
    practitioner = (practitioner_ids or {}).get(appointment.therapist_id) or appointment.therapist_id
    resource: dict[str, Any] = {
        "resourceType": "Appointment",
        "status": _FHIR_STATUS.get(appointment.status, "booked"),
        "start": appointment.start.isoformat(),
        "end": appointment.end.isoformat(),
        "participant": [{"actor": {"reference": f"Practitioner/{practitioner}"}, "status": "accepted"}],
    }
    if appointment.notes:
        resource["comment"] = appointment.notes
    if appointment.remote_id:
        resource["id"] = appointment.remote_id
    return resource


@dataclass
class SyncReport:
    synced: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)


class AppointmentSyncJob:
    def __init__(
        self,
        store: AppointmentStore,
        client: MedplumClient,
        practitioner_ids: Mapping[str, str] | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self.practitioner_ids = practitioner_ids or {}

    async def push(self, appointment: Appointment) -> str:
        resource = appointment_to_fhir(appointment, self.practitioner_ids)
        if appointment.remote_id:
            saved = await self.client.update_resource(resource)
        else:
            saved = await self.client.create_resource(resource)
        remote_id = str(saved.get("id") or "").strip()
        if not remote_id:
            raise MedplumError("Medplum returned no resource id")
        return remote_id

    async def run(self) -> SyncReport:
        if not self.client.configured:
            raise MedplumError("Not connected to Medplum")
        report = SyncReport()
        for appointment in await self.store.list_pending_sync():
            try:
                remote_id = await self.push(appointment)
            except MedplumError as e:
                report.failed += 1
                report.errors[appointment.id] = str(e)
                logger.warning("Sync failed for %s: %s", appointment.id, e)
                await self.store.mark_sync_error(appointment.id, str(e))
                continue
            await self.store.mark_synced(appointment.id, remote_id)
            report.synced += 1
        logger.info("Appointment sync: %d synced, %d failed", report.synced, report.failed)
        return report


async def push_notifications(
    client: MedplumClient, notifications: Iterable[Notification], practitioner_id: str
) -> tuple[int, int]:
    """Mirror notifications as FHIR Communications. Returns (sent, failed)."""
    rid = (practitioner_id or "").strip()
    if not client.configured or not rid:
        return 0, 0
    sent = failed = 0
    for n in notifications:
        try:
            await client.create_resource(
                {
                    "resourceType": "Communication",
                    "status": "completed",
                    "sent": n.created_at.isoformat(),
                    "recipient": [{"reference": f"Practitioner/{rid}"}],
                    "identifier": [{"system": NOTIFICATION_SYSTEM, "value": n.id}],
                    "payload": [{"contentString": f"{n.title.strip()}: {n.message.strip()}"}],
                }
            )
            sent += 1
        except MedplumError as e:
            logger.warning("Notification %s not pushed: %s", n.id, e)
            failed += 1
    return sent, failed


def _communication_to_notification(resource: dict[str, Any]) -> Notification | None:
    identifiers = resource.get("identifier") if isinstance(resource.get("identifier"), list) else []
    ident = next((i for i in identifiers if isinstance(i, dict) and i.get("system") == NOTIFICATION_SYSTEM), {})
    nid = str(ident.get("value") or resource.get("id") or "").strip()
    if not nid:
        return None
    payload = resource.get("payload") if isinstance(resource.get("payload"), list) else []
    first = payload[0] if payload and isinstance(payload[0], dict) else {}
    text = str(first.get("contentString") or "").strip()
    title, _, message = text.partition(":")
    try:
        return Notification(
            id=nid,
            type=NotificationType.info,
            title=title.strip() or "Notification",
            message=message.strip() or text,
            created_at=resource.get("sent") or resource.get("authoredOn") or datetime.now(UTC),
        )
    except PydanticValidationError:
        logger.warning("Skipping Communication %s with unreadable timestamp", nid)
        return None


async def fetch_notifications(client: MedplumClient, practitioner_id: str, count: int = 50) -> list[Notification]:
    """Notifications mirrored to the practitioner's FHIR record, newest first. Empty on any failure."""
    rid = (practitioner_id or "").strip()
    if not client.configured or not rid:
        return []
    try:
        found = await client.search(
            "Communication",
            {"recipient": f"Practitioner/{rid}", "_sort": "-sent", "_count": str(count)},
        )
    except MedplumError as e:
        logger.warning("Could not read notifications for %s: %s", rid, e)
        return []
    return [n for n in (_communication_to_notification(r) for r in found if isinstance(r, dict)) if n is not None]
