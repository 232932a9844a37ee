"""Error kinds raised by the scheduling core.

Services raise these; ``app.main`` turns them into HTTP responses in one place.
Callers that need to tell "bad input" from "time unavailable" catch by class.
"""

DOUBLE_BOOKING_MESSAGE = "This time is not available for the selected therapist (double booking)."


class SchedulingError(Exception):
    code = "scheduling_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(SchedulingError):
    """Input failed the schema; ``field`` names the first offending field."""

    code = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}" if field else message)
        self.field = field
        self.reason = message


class ConflictError(SchedulingError):
    """The therapist is already booked for an overlapping interval."""

    code = "conflict"

    def __init__(self, message: str = DOUBLE_BOOKING_MESSAGE) -> None:
        super().__init__(message)


class PatientOverlapError(ConflictError):
    code = "patient_overlap"


class SameDayWarning(ConflictError):
    """Patient already sees another therapist that day; retry with confirm."""

    code = "patient_same_day"


class ClinicHoursError(SchedulingError):
    code = "outside_clinic_hours"


class PersistenceError(SchedulingError):
    code = "persistence_error"


class NotFoundError(SchedulingError):
    code = "not_found"
