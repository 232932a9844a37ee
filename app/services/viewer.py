from dataclasses import dataclass

from app.models.user import ROLE_ADMIN, User


@dataclass(frozen=True)
class Viewer:
    """Who is looking at the calendar. Passed explicitly into every scheduling call."""

    is_admin: bool
    therapist_id: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "therapist_id", (self.therapist_id or "").strip())

    @property
    def key(self) -> str:
        """Storage scope: ``admin``, ``t:<therapistId>`` or ``t:unknown``."""
        if self.is_admin:
            return "admin"
        return f"t:{self.therapist_id}" if self.therapist_id else "t:unknown"

    @classmethod
    def admin(cls) -> "Viewer":
        return cls(is_admin=True)

    @classmethod
    def therapist(cls, therapist_id: str) -> "Viewer":
        return cls(is_admin=False, therapist_id=therapist_id)

    @classmethod
    def from_user(cls, user: User) -> "Viewer":
        return cls(is_admin=user.role == ROLE_ADMIN, therapist_id=user.therapist_id or "")
