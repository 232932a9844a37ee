"""Appointment shapes: booking input, partial patch and the stored record.

Attribute names are snake_case; JSON (persisted documents and the HTTP API) uses the
camelCase aliases, e.g. ``patientId`` and ``pendingSync``.
"""
import re
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, ValidationInfo, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from app.core.config import settings
from app.core.errors import ValidationError

_NON_DIGITS = re.compile(r"\D")


class AppointmentStatus(str, Enum):
    scheduled = "scheduled"
    completed = "completed"
    cancelled = "cancelled"


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_appointment_id() -> str:
    return f"apt_{uuid4().hex}"


def digits_only(value: Any) -> str:
    return _NON_DIGITS.sub("", str(value if value is not None else "").strip())


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are read as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _normalize_patient_id(value: Any) -> Any:
    if value is None:
        return value
    return digits_only(value)


def _normalize_therapist_id(value: Any) -> Any:
    if value is None:
        return value
    return str(value).strip()


def _require(value: str | None, message: str) -> str | None:
    if value is not None and not value:
        raise ValueError(message)
    return value


def _clean_notes(value: str | None) -> str | None:
    if value is None:
        return value
    value = value.strip()
    if len(value) > settings.notes_max_length:
        raise ValueError("Notes is too long")
    return value


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _AppointmentFields(_CamelModel):
    patient_id: str
    therapist_id: str
    start: datetime
    end: datetime
    status: AppointmentStatus = AppointmentStatus.scheduled
    notes: str | None = None

    @field_validator("patient_id", mode="before")
    @classmethod
    def _patient_digits(cls, v: Any) -> Any:
        return _normalize_patient_id(v)

    @field_validator("therapist_id", mode="before")
    @classmethod
    def _therapist_trim(cls, v: Any) -> Any:
        return _normalize_therapist_id(v)

    @field_validator("patient_id")
    @classmethod
    def _patient_required(cls, v: str) -> str:
        return _require(v, "Patient is required")

    @field_validator("therapist_id")
    @classmethod
    def _therapist_required(cls, v: str) -> str:
        return _require(v, "Therapist is required")

    @field_validator("start")
    @classmethod
    def _start_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @field_validator("end")
    @classmethod
    def _end_after_start(cls, v: datetime, info: ValidationInfo) -> datetime:
        v = _as_utc(v)
        start = info.data.get("start")
        if start is not None and v <= start:
            raise ValueError("End time must be after start time")
        return v

    @field_validator("notes")
    @classmethod
    def _notes(cls, v: str | None) -> str | None:
        return _clean_notes(v)


class AppointmentInput(_AppointmentFields):
    """What a caller supplies to book an appointment."""


class Appointment(_AppointmentFields):
    """Stored appointment record."""

    id: str
    created_at: datetime
    updated_at: datetime
    pending_sync: bool = True
    sync_error: str | None = None
    # Id of the mirrored FHIR Appointment once pushed
    remote_id: str | None = None

    @field_validator("id")
    @classmethod
    def _id_required(cls, v: str) -> str:
        return _require(v.strip(), "Id is required")

    @field_validator("created_at", "updated_at")
    @classmethod
    def _stamps_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class AppointmentPatch(_CamelModel):
    """Partial update; only fields that were set are merged."""

    patient_id: str | None = None
    therapist_id: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    status: AppointmentStatus | None = None
    notes: str | None = None
    pending_sync: bool | None = None
    sync_error: str | None = None
    remote_id: str | None = None

    @field_validator("patient_id", mode="before")
    @classmethod
    def _patient_digits(cls, v: Any) -> Any:
        return _normalize_patient_id(v)

    @field_validator("therapist_id", mode="before")
    @classmethod
    def _therapist_trim(cls, v: Any) -> Any:
        return _normalize_therapist_id(v)

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v) if v is not None else v

    @field_validator("notes")
    @classmethod
    def _notes(cls, v: str | None) -> str | None:
        return _clean_notes(v)

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


def _to_validation_error(exc: PydanticValidationError) -> ValidationError:
    first = exc.errors()[0]
    loc = first.get("loc") or ()
    field = str(loc[0]) if loc else ""
    if "_" in field:
        field = to_camel(field)
    message = first.get("msg", "Invalid value")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return ValidationError(field, message)


def parse_input(data: AppointmentInput | dict[str, Any]) -> AppointmentInput:
    if isinstance(data, AppointmentInput):
        data = data.model_dump()
    try:
        return AppointmentInput.model_validate(data)
    except PydanticValidationError as e:
        raise _to_validation_error(e) from e


def parse_patch(data: AppointmentPatch | dict[str, Any]) -> AppointmentPatch:
    if isinstance(data, AppointmentPatch):
        return data
    try:
        return AppointmentPatch.model_validate(data)
    except PydanticValidationError as e:
        raise _to_validation_error(e) from e


def parse_stored(data: Appointment | dict[str, Any]) -> Appointment:
    if isinstance(data, Appointment):
        data = data.model_dump()
    try:
        return Appointment.model_validate(data)
    except PydanticValidationError as e:
        raise _to_validation_error(e) from e
