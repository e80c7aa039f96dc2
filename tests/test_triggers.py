"""Tests for reservation change entry points and the LISTEN payload handler."""

from __future__ import annotations

import json
from datetime import date, time

import pytest

from fieldsync.models import ChangeType, Provider, ReservationStatus
from fieldsync.triggers import (
    ReservationChangeListener,
    change_type_from_trigger,
    snapshot_from_record,
    trigger_batch_sync,
    trigger_reservation_sync,
)
from tests.conftest import USER_ID, make_integration, make_reservation

pytestmark = pytest.mark.unit

RECORD = {
    "id": "res-9",
    "user_id": USER_ID,
    "field_id": "field-1",
    "date": "2030-05-04",
    "start_time": "09:00:00",
    "end_time": "10:30:00",
    "status": "confirmed",
    "purpose": "Training",
    "attendees": 8,
    "team_id": "team-3",
}


class TestChangeTypeMapping:
    @pytest.mark.parametrize(
        ("operation", "new", "old", "expected"),
        [
            ("INSERT", RECORD, None, ChangeType.CREATED),
            ("update", RECORD, RECORD, ChangeType.UPDATED),
            ("UPDATE", {"status": "cancelled"}, {"status": "confirmed"}, ChangeType.CANCELLED),
            ("UPDATE", {"status": "cancelled"}, {"status": "cancelled"}, ChangeType.UPDATED),
            ("DELETE", None, RECORD, ChangeType.DELETED),
            ("TRUNCATE", None, None, None),
        ],
    )
    def test_operations(self, operation, new, old, expected):
        assert change_type_from_trigger(operation, new, old) == expected

    def test_snapshot_from_raw_record(self):
        snapshot = snapshot_from_record(RECORD, timezone="America/Denver")

        assert snapshot.id == "res-9"
        assert snapshot.reservation_date == date(2030, 5, 4)
        assert snapshot.start_time == time(9, 0)
        assert snapshot.end_time == time(10, 30)
        assert snapshot.status == ReservationStatus.CONFIRMED
        assert snapshot.timezone == "America/Denver"
        assert snapshot.team.id == "team-3"
        assert snapshot.field.name == ""

    def test_unknown_status_is_treated_as_confirmed(self):
        snapshot = snapshot_from_record({**RECORD, "status": "approved"})
        assert snapshot.status == ReservationStatus.CONFIRMED


class TestTriggerFunctions:
    async def test_reservation_sync_loads_from_store(self, orchestrator, store, google):
        store.add_integration(make_integration(Provider.GOOGLE))
        store.add_reservation(make_reservation("res-1"))

        result = await trigger_reservation_sync(orchestrator, store, "res-1", "created")

        assert result.ok
        assert google.calls == [("create_event", "res-1")]

    async def test_reservation_sync_unknown_id(self, orchestrator, store):
        with pytest.raises(LookupError):
            await trigger_reservation_sync(orchestrator, store, "missing", ChangeType.UPDATED)

    async def test_batch_sync_skips_other_users(self, orchestrator, store, google):
        store.add_integration(make_integration(Provider.GOOGLE))
        store.add_reservation(make_reservation("res-1"))
        store.add_reservation(make_reservation("res-2", user_id="someone-else"))

        result = await trigger_batch_sync(
            orchestrator, store, ["res-1", "res-2", "res-missing"], USER_ID
        )

        assert (result.total, result.synced, result.failed) == (1, 1, 0)
        assert google.calls == [("create_event", "res-1")]


class TestListenerPayloads:
    @pytest.fixture
    def listener(self, orchestrator, store):
        return ReservationChangeListener("postgresql://unused", orchestrator, store)

    async def test_insert_uses_stored_reservation(self, listener, store, google):
        store.add_integration(make_integration(Provider.GOOGLE))
        stored = store.add_reservation(make_reservation("res-9"))
        payload = json.dumps(
            {"operation": "INSERT", "table": "reservations", "record": {**RECORD, "id": "res-9"}}
        )

        result = await listener.handle_payload(payload)

        assert result.change_type == ChangeType.CREATED
        assert list(google.events.values()) == [stored]

    async def test_delete_falls_back_to_old_record(self, listener, store, google):
        store.add_integration(make_integration(Provider.GOOGLE))
        payload = json.dumps(
            {"operation": "DELETE", "table": "reservations", "record": None, "old_record": RECORD}
        )

        result = await listener.handle_payload(payload)

        assert result.change_type == ChangeType.DELETED
        assert result.reservation_id == "res-9"

    @pytest.mark.parametrize(
        "payload",
        [
            "not json",
            json.dumps(["list"]),
            json.dumps({"operation": "INSERT", "table": "fields", "record": RECORD}),
            json.dumps({"operation": "INSERT", "table": "reservations", "record": {"id": "x"}}),
            json.dumps({"operation": "TRUNCATE", "table": "reservations"}),
        ],
    )
    async def test_ignored_payloads(self, listener, payload):
        assert await listener.handle_payload(payload) is None
