from sqlmodel import Field, SQLModel

ROLE_ADMIN = "admin"
ROLE_THERAPIST = "therapist"


class UserBase(SQLModel):
    email: str = Field(unique=True, index=True)
    full_name: str | None = None
    role: str = Field(default=ROLE_THERAPIST, index=True)
    # Free-form id the calendar books against; empty for admins
    therapist_id: str | None = Field(default=None, index=True)


class User(UserBase, table=True):
    __tablename__ = "users"
    id: int | None = Field(default=None, primary_key=True)
    hashed_password: str


class UserCreate(SQLModel):
    email: str
    password: str
    full_name: str | None = None
    role: str = ROLE_THERAPIST
    therapist_id: str | None = None


class UserPublic(SQLModel):
    id: int
    email: str
    full_name: str | None = None
    role: str
    therapist_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN
