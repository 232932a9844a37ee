"""Appointment store: the only writer of the appointments collection.

Reads are tolerant (malformed records are dropped and reported as warnings), writes are
strict (anything invalid raises ``ValidationError``), and no therapist may hold two
overlapping appointments (``ConflictError``).
"""
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.core.errors import ConflictError, ValidationError
from app.models.appointment import (
    Appointment,
    AppointmentInput,
    AppointmentPatch,
    new_appointment_id,
    parse_input,
    parse_patch,
    parse_stored,
    utc_now,
)
from app.services.conflicts import find_therapist_conflict
from app.services.kv_store import KVStore

logger = logging.getLogger(__name__)

APPOINTMENTS_KEY = "mc_appointments_v1"

_BOOKKEEPING = ("pending_sync", "sync_error", "remote_id")


@dataclass
class AppointmentReadResult:
    items: list[Appointment]
    warnings: list[str] = field(default_factory=list)

    @property
    def dropped(self) -> int:
        return len(self.warnings)


def _by_start(items: list[Appointment]) -> list[Appointment]:
    return sorted(items, key=lambda a: a.start)


class AppointmentStore:
    def __init__(self, kv: KVStore, clock: Callable[[], datetime] = utc_now) -> None:
        self.kv = kv
        self._clock = clock

    async def read_all(self) -> AppointmentReadResult:
        raw = await self.kv.get_json(APPOINTMENTS_KEY, [])
        items: list[Appointment] = []
        warnings: list[str] = []
        for i, record in enumerate(raw):
            try:
                if not isinstance(record, dict):
                    raise ValidationError("", f"expected an object, got {type(record).__name__}")
                items.append(parse_stored(record))
            except ValidationError as e:
                rid = record.get("id") if isinstance(record, dict) else None
                warnings.append(f"record {i} ({rid}): {e}")
        if warnings:
            logger.warning("Dropped %d malformed appointment record(s): %s", len(warnings), "; ".join(warnings))
        return AppointmentReadResult(items=_by_start(items), warnings=warnings)

    async def list_all(self) -> list[Appointment]:
        return (await self.read_all()).items

    async def replace_all(self, items: list[Appointment | dict[str, Any]]) -> list[Appointment]:
        validated: list[Appointment] = []
        for i, item in enumerate(items):
            try:
                validated.append(parse_stored(item))
            except ValidationError as e:
                raise ValidationError(e.field, f"record {i}: {e.reason}") from e
        await self._save(validated)
        return _by_start(validated)

    async def clear(self) -> None:
        await self.kv.delete(APPOINTMENTS_KEY)

    async def create(self, data: AppointmentInput | dict[str, Any]) -> Appointment:
        parsed = parse_input(data)
        now = self._clock()
        appointment = parse_stored(
            {
                **parsed.model_dump(),
                "id": new_appointment_id(),
                "created_at": now,
                "updated_at": now,
                "pending_sync": True,
                "sync_error": None,
            }
        )

        existing = await self.list_all()
        clash = find_therapist_conflict(existing, appointment.therapist_id, appointment.start, appointment.end)
        if clash:
            logger.info(
                "Double booking rejected for therapist %s (clashes with %s)", appointment.therapist_id, clash.id
            )
            raise ConflictError()

        await self._save([*existing, appointment])
        logger.info("Appointment %s created for therapist %s", appointment.id, appointment.therapist_id)
        return appointment

    async def update(self, appointment_id: str, patch: AppointmentPatch | dict[str, Any]) -> Appointment | None:
        """Merge ``patch`` into the appointment. Returns None when the id is unknown."""
        existing = await self.list_all()
        current = next((a for a in existing if a.id == appointment_id), None)
        if current is None:
            return None

        changes = parse_patch(patch).changes()
        merged = current.model_dump()
        merged.update({k: v for k, v in changes.items() if k not in _BOOKKEEPING})
        merged["updated_at"] = self._clock()
        merged["pending_sync"] = changes.get("pending_sync") is not False
        merged["sync_error"] = changes.get("sync_error")
        if "remote_id" in changes:
            merged["remote_id"] = changes["remote_id"]
        candidate = parse_stored(merged)

        clash = find_therapist_conflict(
            existing, candidate.therapist_id, candidate.start, candidate.end, ignore_id=candidate.id
        )
        if clash:
            logger.info("Double booking rejected for %s (clashes with %s)", candidate.id, clash.id)
            raise ConflictError()

        await self._save([candidate if a.id == appointment_id else a for a in existing])
        return candidate

    async def delete(self, appointment_id: str) -> None:
        existing = await self.list_all()
        await self._save([a for a in existing if a.id != appointment_id])

    async def list_pending_sync(self) -> list[Appointment]:
        return [a for a in await self.list_all() if a.pending_sync is True]

    async def mark_synced(self, appointment_id: str, remote_id: str | None = None) -> Appointment | None:
        changes: dict[str, Any] = {"pending_sync": False, "sync_error": None}
        if remote_id:
            changes["remote_id"] = remote_id
        return await self._touch(appointment_id, changes)

    async def mark_sync_error(self, appointment_id: str, message: str | None) -> Appointment | None:
        return await self._touch(appointment_id, {"pending_sync": True, "sync_error": str(message or "Sync failed")})

    async def _touch(self, appointment_id: str, changes: dict[str, Any]) -> Appointment | None:
        """Update bookkeeping fields only; no conflict check."""
        existing = await self.list_all()
        updated: Appointment | None = None
        out: list[Appointment] = []
        for a in existing:
            if a.id == appointment_id:
                a = a.model_copy(update={**changes, "updated_at": self._clock()})
                updated = a
            out.append(a)
        if updated is None:
            return None
        await self._save(out)
        return updated

    async def _save(self, items: list[Appointment]) -> None:
        await self.kv.set_json(APPOINTMENTS_KEY, [a.to_json() for a in items])
