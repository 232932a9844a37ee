from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.models.appointment import AppointmentStatus


class _CamelBody(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SlotInfo(_CamelBody):
    start: datetime
    end: datetime
    available: bool


class AvailableSlotsResponse(_CamelBody):
    date: str  # YYYY-MM-DD
    therapist_id: str
    slots: list[SlotInfo]


class BookAppointmentRequest(_CamelBody):
    """Loose on purpose: field rules are enforced by the store so errors keep one shape."""

    patient_id: str = ""
    therapist_id: str | None = None
    start: str = ""
    end: str = ""
    status: AppointmentStatus = AppointmentStatus.scheduled
    notes: str | None = None


class UpdateAppointmentRequest(_CamelBody):
    patient_id: str | None = None
    therapist_id: str | None = None
    start: str | None = None
    end: str | None = None
    status: AppointmentStatus | None = None
    notes: str | None = None


class DefaultSlotResponse(_CamelBody):
    start: datetime
    end: datetime
