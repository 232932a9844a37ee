from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env from the project root so it loads regardless of cwd
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(str(_ENV_FILE), ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database (sync-style URL; app.core.db picks the async driver)
    database_url: str = "sqlite:///./clinic.db"
    database_ssl: bool = False

    # JWT
    secret_key: str
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7
    algorithm: str = "HS256"

    # First admin, created on startup when the users table is empty
    bootstrap_admin_email: str = ""
    bootstrap_admin_password: str = ""

    # CORS
    cors_origins: str = "http://localhost:5173"

    # Clinic hours, enforced before any booking reaches the store
    clinic_start_time: str = "07:00"
    clinic_end_time: str = "22:00"  # exclusive
    clinic_timezone: str = "UTC"
    clinic_days: str = "1,2,3,4,5,6,7"  # ISO weekdays
    slot_duration_minutes: int = 30

    notes_max_length: int = 2000

    # Notifications
    notification_cooldown_seconds: int = 120
    notification_feed_limit: int = 200
    # Background diff for every viewer; 0 disables the loop
    notification_poll_seconds: int = 60

    # Medplum (FHIR). Leave medplum_client_id empty to disable sync.
    medplum_base_url: str = "https://api.medplum.com"
    medplum_client_id: str = ""
    medplum_client_secret: str = ""

    # Env
    env: str = "development"

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def clinic_days_set(self) -> set[int]:
        return {int(d) for d in self.clinic_days.split(",") if d.strip()}

    @property
    def medplum_enabled(self) -> bool:
        return bool(self.medplum_base_url and self.medplum_client_id and self.medplum_client_secret)


settings = Settings()
