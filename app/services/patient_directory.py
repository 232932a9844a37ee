"""Read-side patient directory used to label appointments.

Imported patient records arrive in several legacy shapes; ``normalize_patient_record``
is the single place they are mapped onto one fixed shape.
"""
import logging
from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.models.appointment import digits_only
from app.services.kv_store import KVStore

logger = logging.getLogger(__name__)

PATIENTS_KEY = "mc_patients_v1"

# First non-empty field wins
_ID_FIELDS = ("idNumber", "id_number", "patientId", "id")
_DOB_FIELDS = ("dateOfBirth", "dob", "birthDate")
_PHONE_FIELDS = ("phone", "phoneNumber", "mobile")


class PatientEntry(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id_number: str
    first_name: str = ""
    last_name: str = ""
    full_name: str = ""
    date_of_birth: str | None = None
    phone: str | None = None

    @property
    def display_name(self) -> str:
        if self.full_name:
            return self.full_name
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def label(self) -> str:
        name = self.display_name
        if name and self.id_number:
            return f"{name} · {self.id_number}"
        return name or self.id_number


def _first(raw: dict[str, Any], fields: Iterable[str]) -> Any:
    for f in fields:
        value = raw.get(f)
        if value not in (None, ""):
            return value
    return None


def _text(value: Any) -> str:
    return " ".join(str(value or "").split())


def normalize_patient_record(raw: Any) -> PatientEntry | None:
    """Map an imported record onto ``PatientEntry``; None when it has no digit id."""
    if not isinstance(raw, dict):
        return None
    id_number = digits_only(_first(raw, _ID_FIELDS))
    if not id_number:
        return None
    first = _text(raw.get("firstName") or raw.get("first_name"))
    last = _text(raw.get("lastName") or raw.get("last_name"))
    full = _text(raw.get("fullName") or raw.get("full_name") or raw.get("name"))
    dob = _first(raw, _DOB_FIELDS)
    phone = _first(raw, _PHONE_FIELDS)
    return PatientEntry(
        id_number=id_number,
        first_name=first,
        last_name=last,
        full_name=full or f"{first} {last}".strip(),
        date_of_birth=str(dob) if dob is not None else None,
        phone=str(phone) if phone is not None else None,
    )


class PatientDirectory:
    def __init__(self, kv: KVStore) -> None:
        self.kv = kv

    async def list_all(self) -> list[PatientEntry]:
        raw = await self.kv.get_json(PATIENTS_KEY, [])
        out = [p for p in (normalize_patient_record(r) for r in raw) if p is not None]
        return out

    async def replace(self, records: Iterable[Any]) -> list[PatientEntry]:
        entries: dict[str, PatientEntry] = {}
        skipped = 0
        for raw in records:
            entry = normalize_patient_record(raw)
            if entry is None:
                skipped += 1
                continue
            entries[entry.id_number] = entry
        if skipped:
            logger.warning("Patient import skipped %d record(s) without an id number", skipped)
        out = list(entries.values())
        await self.kv.set_json(PATIENTS_KEY, [p.model_dump(mode="json", by_alias=True) for p in out])
        return out

    async def get(self, patient_id: str) -> PatientEntry | None:
        pid = digits_only(patient_id)
        return next((p for p in await self.list_all() if p.id_number == pid), None)

    @staticmethod
    def label_for(patient: PatientEntry | None, patient_id: str = "") -> str:
        if patient is not None:
            return patient.label
        pid = digits_only(patient_id)
        return f"Patient · {pid}" if pid else ""

    async def labeler(self):
        """Snapshot the directory into a sync ``record -> label`` callable."""
        by_id = {p.id_number: p for p in await self.list_all()}

        def label(record: Any) -> str:
            pid = digits_only(getattr(record, "patient_id", ""))
            return self.label_for(by_id.get(pid), pid)

        return label
