"""HTTP tests against the real app, lifespan included, on a throwaway SQLite file."""
import pytest
from fastapi.testclient import TestClient

from app.core.errors import DOUBLE_BOOKING_MESSAGE
from app.main import app
from tests.conftest import TEST_DB_PATH

ADMIN_EMAIL = "admin@clinic.org"
ADMIN_PASSWORD = "admin-pass-123"
DAY = "2025-06-02"


def _slot(start: str, end: str, **extra) -> dict:
    return {"patientId": "555", "start": f"{DAY}T{start}:00Z", "end": f"{DAY}T{end}:00Z", **extra}


def _login(client: TestClient, email: str, password: str) -> dict[str, str]:
    resp = client.post("/api/v1/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


@pytest.fixture
def client():
    TEST_DB_PATH.unlink(missing_ok=True)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin(client) -> dict[str, str]:
    return _login(client, ADMIN_EMAIL, ADMIN_PASSWORD)


def _therapist(client, admin, therapist_id: str, name: str) -> dict[str, str]:
    email = f"{therapist_id.lower()}@clinic.org"
    resp = client.post(
        "/api/v1/users",
        headers=admin,
        json={"email": email, "password": "pw-123456", "full_name": name, "role": "therapist", "therapist_id": therapist_id},
    )
    assert resp.status_code == 201, resp.text
    return _login(client, email, "pw-123456")


@pytest.fixture
def dana(client, admin) -> dict[str, str]:
    return _therapist(client, admin, "T1", "Dana Levi")


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


class TestAuth:
    def test_bad_password(self, client):
        resp = client.post("/api/v1/auth/login", json={"email": ADMIN_EMAIL, "password": "nope"})
        assert resp.status_code == 401

    def test_login_carries_viewer_scope(self, client, admin, dana):
        resp = client.post("/api/v1/auth/login", json={"email": "t1@clinic.org", "password": "pw-123456"})
        assert (resp.json()["role"], resp.json()["therapist_id"]) == ("therapist", "T1")

    def test_logout_revokes_refresh_token(self, client):
        tokens = client.post("/api/v1/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD}).json()
        client.post("/api/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]})
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 401

    def test_me(self, client, dana):
        me = client.get("/api/v1/auth/me", headers=dana).json()
        assert (me["role"], me["therapist_id"]) == ("therapist", "T1")

    def test_requires_token(self, client):
        assert client.get("/api/v1/appointments").status_code == 401

    def test_users_are_admin_only(self, client, dana):
        assert client.get("/api/v1/users", headers=dana).status_code == 403

    def test_therapist_account_needs_id(self, client, admin):
        resp = client.post(
            "/api/v1/users", headers=admin, json={"email": "x@clinic.org", "password": "pw", "role": "therapist"}
        )
        assert resp.status_code == 422

    def test_refresh_rotates(self, client):
        tokens = client.post("/api/v1/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD}).json()
        first = client.post("/api/v1/auth/refresh", headers={"X-Refresh-Token": tokens["refresh_token"]})
        again = client.post("/api/v1/auth/refresh", headers={"X-Refresh-Token": tokens["refresh_token"]})
        assert first.status_code == 200
        assert again.status_code == 401


class TestAppointments:
    def test_book_and_list(self, client, dana, admin):
        resp = client.post("/api/v1/appointments", headers=dana, json=_slot("10:00", "10:30", therapistId="T9"))

        assert resp.status_code == 201, resp.text
        body = resp.json()
        assert body["therapistId"] == "T1"
        assert body["pendingSync"] is True
        assert [a["id"] for a in client.get("/api/v1/appointments", headers=dana).json()] == [body["id"]]
        assert client.get("/api/v1/appointments?therapist_id=T2", headers=admin).json() == []

    def test_double_booking_is_409(self, client, dana):
        client.post("/api/v1/appointments", headers=dana, json=_slot("10:00", "10:30"))

        resp = client.post("/api/v1/appointments", headers=dana, json={**_slot("10:15", "10:45"), "patientId": "1"})

        assert resp.status_code == 409
        assert resp.json()["detail"] == DOUBLE_BOOKING_MESSAGE
        assert resp.json()["code"] == "conflict"

    def test_outside_clinic_hours(self, client, dana):
        resp = client.post("/api/v1/appointments", headers=dana, json=_slot("21:45", "22:15"))
        assert resp.status_code == 422
        assert resp.json()["code"] == "outside_clinic_hours"
        assert client.get("/api/v1/appointments", headers=dana).json() == []

    def test_invalid_input(self, client, dana):
        resp = client.post("/api/v1/appointments", headers=dana, json=_slot("10:00", "10:30", patientId="n/a"))
        assert resp.status_code == 422
        assert resp.json()["code"] == "validation_error"
        assert resp.json()["field"] == "patientId"

    def test_admin_must_choose_therapist(self, client, admin):
        resp = client.post("/api/v1/appointments", headers=admin, json=_slot("10:00", "10:30"))
        assert resp.status_code == 422
        assert resp.json()["field"] == "therapistId"

    def test_same_day_needs_confirm(self, client, admin, dana):
        _therapist(client, admin, "T2", "Noam Katz")
        client.post("/api/v1/appointments", headers=admin, json=_slot("10:00", "10:30", therapistId="T2"))

        warned = client.post("/api/v1/appointments", headers=dana, json=_slot("14:00", "14:30"))
        confirmed = client.post("/api/v1/appointments?confirm=true", headers=dana, json=_slot("14:00", "14:30"))

        assert warned.status_code == 409
        assert warned.json()["code"] == "patient_same_day"
        assert "Noam Katz" in warned.json()["detail"]
        assert confirmed.status_code == 201

    def test_reschedule_edit_and_delete(self, client, dana):
        aid = client.post("/api/v1/appointments", headers=dana, json=_slot("10:00", "10:30")).json()["id"]

        moved = client.patch(f"/api/v1/appointments/{aid}", headers=dana, json={"start": f"{DAY}T11:00:00Z", "end": f"{DAY}T11:30:00Z"})
        edited = client.patch(f"/api/v1/appointments/{aid}", headers=dana, json={"notes": "bring scans", "status": "completed"})

        assert moved.status_code == 200
        assert moved.json()["start"].startswith(f"{DAY}T11:00:00")
        assert edited.json()["notes"] == "bring scans"
        assert edited.json()["status"] == "completed"
        assert client.patch("/api/v1/appointments/missing", headers=dana, json={"notes": "x"}).status_code == 404

        assert client.delete(f"/api/v1/appointments/{aid}", headers=dana).status_code == 204
        assert client.delete(f"/api/v1/appointments/{aid}", headers=dana).status_code == 204
        assert client.get("/api/v1/appointments", headers=dana).json() == []

    def test_default_slot(self, client, dana):
        body = client.get("/api/v1/appointments/default-slot", headers=dana).json()
        assert set(body) == {"start", "end"}

    def test_available_slots(self, client, dana):
        client.post("/api/v1/appointments", headers=dana, json=_slot("10:00", "10:30"))

        body = client.get(f"/api/v1/slots/available?date={DAY}", headers=dana).json()

        assert body["therapistId"] == "T1"
        assert len(body["slots"]) == 30
        taken = [s for s in body["slots"] if not s["available"]]
        assert len(taken) == 1
        assert taken[0]["start"].startswith(f"{DAY}T10:00:00")


class TestNotifications:
    def test_refresh_feed_and_dismiss(self, client, dana):
        client.post("/api/v1/appointments", headers=dana, json=_slot("10:00", "10:30"))

        emitted = client.post("/api/v1/notifications/refresh", headers=dana).json()
        assert [n["title"] for n in emitted] == ["New appointment"]
        assert client.post("/api/v1/notifications/refresh", headers=dana).json() == []

        feed = client.get("/api/v1/notifications", headers=dana).json()
        assert emitted[0]["id"] in [n["id"] for n in feed]

        resp = client.post("/api/v1/notifications/dismiss", headers=dana, json={"ids": [emitted[0]["id"]]})
        assert resp.json() == {"dismissed": 1}
        feed = client.get("/api/v1/notifications", headers=dana).json()
        assert emitted[0]["id"] not in [n["id"] for n in feed]

    def test_admin_sees_cancellations_only(self, client, admin, dana):
        aid = client.post("/api/v1/appointments", headers=dana, json=_slot("10:00", "10:30")).json()["id"]
        assert client.post("/api/v1/notifications/refresh", headers=admin).json() == []

        client.patch(f"/api/v1/appointments/{aid}", headers=dana, json={"status": "cancelled"})
        emitted = client.post("/api/v1/notifications/refresh", headers=admin).json()

        assert [n["title"] for n in emitted] == ["Appointment cancelled"]
        feed = client.get("/api/v1/notifications", headers=admin).json()
        assert [n["id"] for n in feed] == ["sync-pending"]


class TestPatientsAndSync:
    def test_import_and_list(self, client, admin, dana):
        records = [{"idNumber": "555", "firstName": "Ana", "lastName": "Cohen"}, {"name": "no id"}]

        assert client.put("/api/v1/patients", headers=dana, json=records).status_code == 403
        resp = client.put("/api/v1/patients", headers=admin, json=records)

        assert resp.json() == {"imported": 1, "skipped": 1}
        listed = client.get("/api/v1/patients", headers=dana).json()
        assert listed[0]["idNumber"] == "555"
        assert listed[0]["fullName"] == "Ana Cohen"

    def test_sync_without_medplum(self, client, admin):
        resp = client.post("/api/v1/sync/appointments", headers=admin)
        assert resp.status_code == 503
