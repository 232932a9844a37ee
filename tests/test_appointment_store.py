"""Tests for the appointment store: validation, double booking, sync bookkeeping."""
import json

import pytest

from app.core.errors import DOUBLE_BOOKING_MESSAGE, ConflictError, ValidationError
from app.models.appointment import AppointmentStatus
from app.services.appointment_store import APPOINTMENTS_KEY
from tests.conftest import at


def _input(therapist="T1", start="10:00", end="10:30", patient="123456789", **extra):
    return {"patient_id": patient, "therapist_id": therapist, "start": at(start), "end": at(end), **extra}


class TestCreate:
    async def test_assigns_identity_and_sync_state(self, store, clock):
        created = await store.create(_input())

        assert created.id.startswith("apt_")
        assert created.status == AppointmentStatus.scheduled
        assert created.pending_sync is True
        assert created.sync_error is None
        assert created.created_at == created.updated_at == clock.now
        assert [a.id for a in await store.list_all()] == [created.id]

    async def test_normalizes_ids(self, store):
        created = await store.create(_input(patient=" 12-345-678 ", therapist="  T1  "))
        assert created.patient_id == "12345678"
        assert created.therapist_id == "T1"

    async def test_accepts_camel_case_iso_strings(self, store):
        created = await store.create(
            {"patientId": "42", "therapistId": "T1", "start": "2025-06-01T10:00:00Z", "end": "2025-06-01T10:30:00Z"}
        )
        assert created.start == at("10:00")

    async def test_double_booking_rejected(self, store):
        await store.create(_input(start="10:00", end="10:30"))

        with pytest.raises(ConflictError) as exc:
            await store.create(_input(start="10:15", end="10:45"))

        assert str(exc.value) == DOUBLE_BOOKING_MESSAGE
        assert len(await store.list_all()) == 1

    async def test_other_therapist_same_interval_allowed(self, store):
        await store.create(_input(therapist="T1", start="10:00", end="10:30"))
        await store.create(_input(therapist="T2", start="10:15", end="10:45"))
        assert len(await store.list_all()) == 2

    async def test_touching_appointments_allowed(self, store):
        await store.create(_input(start="10:00", end="10:30"))
        await store.create(_input(start="10:30", end="11:00"))
        assert [a.start for a in await store.list_all()] == [at("10:00"), at("10:30")]

    async def test_end_before_start_is_validation_error(self, store):
        with pytest.raises(ValidationError) as exc:
            await store.create(_input(start="10:30", end="10:30"))
        assert exc.value.field == "end"
        assert "after start" in str(exc.value)

    async def test_missing_patient_is_validation_error(self, store):
        with pytest.raises(ValidationError) as exc:
            await store.create(_input(patient="abc"))
        assert exc.value.field == "patientId"

    async def test_missing_therapist_is_validation_error(self, store):
        with pytest.raises(ValidationError) as exc:
            await store.create(_input(therapist="   "))
        assert exc.value.field == "therapistId"

    async def test_bad_datetime_is_validation_error(self, store):
        with pytest.raises(ValidationError) as exc:
            await store.create({**_input(), "start": "tomorrow-ish"})
        assert exc.value.field == "start"

    async def test_conflict_is_not_a_validation_error(self, store):
        await store.create(_input())
        with pytest.raises(ConflictError) as exc:
            await store.create(_input())
        assert not isinstance(exc.value, ValidationError)


class TestUpdate:
    async def test_notes_only_update_never_conflicts_with_itself(self, store):
        created = await store.create(_input())
        updated = await store.update(created.id, {"notes": "  bring the report  "})
        assert updated.notes == "bring the report"
        assert updated.start == created.start

    async def test_unknown_id_returns_none(self, store):
        assert await store.update("apt_missing", {"notes": "x"}) is None

    async def test_move_onto_other_appointment_conflicts(self, store):
        await store.create(_input(start="10:00", end="10:30"))
        second = await store.create(_input(start="11:00", end="11:30"))

        with pytest.raises(ConflictError):
            await store.update(second.id, {"start": at("10:15"), "end": at("10:45")})

        stored = {a.id: a for a in await store.list_all()}
        assert stored[second.id].start == at("11:00")

    async def test_refreshes_timestamp_and_resets_sync(self, store, clock):
        created = await store.create(_input())
        await store.mark_synced(created.id, remote_id="fhir-1")
        clock.advance(minutes=5)

        updated = await store.update(created.id, {"status": "completed"})

        assert updated.updated_at == clock.now
        assert updated.pending_sync is True
        assert updated.sync_error is None
        assert updated.remote_id == "fhir-1"

    async def test_explicitly_synced_patch_keeps_pending_false(self, store):
        created = await store.create(_input())
        updated = await store.update(created.id, {"remote_id": "fhir-9", "pending_sync": False})
        assert updated.pending_sync is False
        assert updated.remote_id == "fhir-9"

    async def test_invalid_merge_is_validation_error(self, store):
        created = await store.create(_input(start="10:00", end="10:30"))
        with pytest.raises(ValidationError) as exc:
            await store.update(created.id, {"end": at("09:00")})
        assert exc.value.field == "end"

    async def test_patch_ids_are_normalized(self, store):
        created = await store.create(_input())
        updated = await store.update(created.id, {"patient_id": "999-888", "therapist_id": " T2 "})
        assert updated.patient_id == "999888"
        assert updated.therapist_id == "T2"


class TestDelete:
    async def test_delete_removes(self, store):
        created = await store.create(_input())
        await store.delete(created.id)
        assert await store.list_all() == []

    async def test_delete_is_idempotent(self, store):
        await store.delete("apt_missing")
        await store.delete("apt_missing")
        assert await store.list_all() == []

    async def test_slot_is_free_after_delete(self, store):
        created = await store.create(_input())
        await store.delete(created.id)
        await store.create(_input())


class TestTolerantReads:
    async def test_malformed_records_are_dropped_and_reported(self, store, kv):
        good = await store.create(_input())
        records = await kv.get_json(APPOINTMENTS_KEY, [])
        records.append({"id": "apt_bad", "patientId": "1", "therapistId": "T1", "start": "nope"})
        records.append("garbage")
        await kv.set_json(APPOINTMENTS_KEY, records)

        result = await store.read_all()

        assert [a.id for a in result.items] == [good.id]
        assert result.dropped == 2
        assert "apt_bad" in result.warnings[0]

    async def test_corrupt_collection_reads_as_empty(self, store, kv):
        await kv.set_raw(APPOINTMENTS_KEY, "{not json")
        assert await store.list_all() == []

    async def test_list_sorted_by_start(self, store):
        await store.create(_input(start="12:00", end="12:30"))
        await store.create(_input(start="09:00", end="09:30"))
        assert [a.start for a in await store.list_all()] == [at("09:00"), at("12:00")]


class TestReplaceAll:
    async def test_strict_write_names_first_violation(self, store):
        created = await store.create(_input())
        bad = {**created.to_json(), "id": "apt_2", "therapistId": ""}

        with pytest.raises(ValidationError) as exc:
            await store.replace_all([created, bad])

        assert exc.value.field == "therapistId"
        assert "record 1" in str(exc.value)

    async def test_replaces_and_sorts(self, store):
        first = await store.create(_input(start="12:00", end="12:30"))
        second = await store.create(_input(start="09:00", end="09:30"))

        result = await store.replace_all([first.to_json(), second.to_json()])

        assert [a.id for a in result] == [second.id, first.id]


class TestSyncBookkeeping:
    async def test_pending_and_synced(self, store):
        a = await store.create(_input(start="09:00", end="09:30"))
        b = await store.create(_input(start="10:00", end="10:30"))

        await store.mark_synced(a.id, remote_id="fhir-a")

        assert [x.id for x in await store.list_pending_sync()] == [b.id]
        synced = {x.id: x for x in await store.list_all()}[a.id]
        assert synced.remote_id == "fhir-a"

    async def test_sync_error_is_recorded_not_raised(self, store, clock):
        a = await store.create(_input())
        clock.advance(seconds=30)

        marked = await store.mark_sync_error(a.id, "")

        assert marked.sync_error == "Sync failed"
        assert marked.pending_sync is True
        assert marked.updated_at == clock.now

    async def test_mark_unknown_returns_none(self, store):
        assert await store.mark_synced("apt_missing") is None
        assert await store.mark_sync_error("apt_missing", "boom") is None
