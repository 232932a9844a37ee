from app.models.user import User, UserCreate, UserPublic
from app.models.refresh_token import RefreshToken
from app.models.kv_entry import KVEntry
from app.models.appointment import (
    Appointment,
    AppointmentInput,
    AppointmentPatch,
    AppointmentStatus,
)

__all__ = [
    "User",
    "UserCreate",
    "UserPublic",
    "RefreshToken",
    "KVEntry",
    "Appointment",
    "AppointmentInput",
    "AppointmentPatch",
    "AppointmentStatus",
]
