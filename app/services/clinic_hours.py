"""Clinic-hours gate applied before create, drag-move, resize and manual save.

The store does not enforce clinic hours; this is a booking policy, not a data invariant.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import Any
from zoneinfo import ZoneInfo

from app.core.config import settings
from app.core.errors import ClinicHoursError
from app.services.conflicts import to_datetime

_ONE_TICK = timedelta(milliseconds=1)
ALL_DAYS = frozenset(range(1, 8))


def time_to_minutes(value: str) -> int:
    """``"HH:MM[:SS]"`` to minutes after midnight; unparsable parts count as 0."""
    parts = str(value or "").split(":")

    def _int(s: str) -> int:
        try:
            return int(s)
        except ValueError:
            return 0

    hh = _int(parts[0]) if parts else 0
    mm = _int(parts[1]) if len(parts) > 1 else 0
    return hh * 60 + mm


def _fmt(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


@dataclass(frozen=True)
class ClinicHours:
    start_minutes: int = 7 * 60
    end_minutes: int = 22 * 60
    tz: tzinfo = field(default_factory=lambda: ZoneInfo("UTC"))
    days: frozenset[int] = ALL_DAYS

    @classmethod
    def from_settings(cls) -> "ClinicHours":
        return cls(
            start_minutes=time_to_minutes(settings.clinic_start_time),
            end_minutes=time_to_minutes(settings.clinic_end_time),
            tz=ZoneInfo(settings.clinic_timezone),
            days=frozenset(settings.clinic_days_set) or ALL_DAYS,
        )

    @property
    def label(self) -> str:
        return f"{_fmt(self.start_minutes)}–{_fmt(self.end_minutes)}"

    def local(self, value: datetime) -> datetime:
        return value.astimezone(self.tz)

    def is_within(self, instant: datetime) -> bool:
        local = self.local(instant)
        if local.isoweekday() not in self.days:
            return False
        minutes = local.hour * 60 + local.minute
        return self.start_minutes <= minutes < self.end_minutes

    def is_range_within(self, start: Any, end: Any) -> bool:
        s = to_datetime(start)
        e = to_datetime(end)
        if s is None or e is None or e <= s:
            return False
        return self.is_within(s) and self.is_within(e - _ONE_TICK)

    def check(self, start: Any, end: Any, action: str = "scheduled") -> None:
        if not self.is_range_within(start, end):
            raise ClinicHoursError(f"Appointments can only be {action} during clinic hours ({self.label}).")
