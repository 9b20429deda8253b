"""
Tests for the cooldown and audit state stores.
"""
import threading
from datetime import timedelta

import pytest

from opsguard.exceptions import StorageError
from opsguard.models import (
    ActionKind,
    CooldownWindow,
    EscalationTicket,
    ExecutionRecord,
    Outcome,
)
from opsguard.storage.state_store import MemoryStateStore, SQLiteStateStore

from conftest import T0


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return MemoryStateStore()
    return SQLiteStateStore(tmp_path / "state.db")


def make_record(record_id, incident="inc-1", service="api", minutes=0, outcome=Outcome.SUCCESS,
                action_kind=ActionKind.RESTART, tier=2, **kwargs):
    started = T0 + timedelta(minutes=minutes)
    return ExecutionRecord(
        record_id=record_id,
        incident_id=incident,
        service=service,
        host_id="web-01",
        action_kind=action_kind,
        tier=tier,
        started_at=started,
        ended_at=started + timedelta(seconds=5),
        outcome=outcome,
        **kwargs,
    )


def make_ticket(ticket_id, incident="inc-1"):
    return EscalationTicket(
        ticket_id=ticket_id,
        incident_id=incident,
        service="api",
        action_kind=ActionKind.REDEPLOY,
        outcome=Outcome.DENIED,
        action_refs=("rec-1", "rec-0"),
        payload={"service": "api", "extra": {"retry_after": None}},
        created_at=T0,
        denial_policy="access",
        diagnosis_required=True,
        recommended_tier=3,
    )


class TestWindows:
    """Tests for cooldown window persistence."""

    def test_missing_window(self, any_store):
        assert any_store.load_window("api", ActionKind.RESTART) is None

    def test_save_and_load(self, any_store):
        window = CooldownWindow("api", ActionKind.RESTART, 1, T0, T0 + timedelta(minutes=3))
        any_store.save_window(window)

        loaded = any_store.load_window("api", "restart")

        assert loaded == window
        assert loaded.window_start.tzinfo is not None

    def test_save_overwrites(self, any_store):
        any_store.save_window(CooldownWindow("api", ActionKind.RESTART, 1, T0))
        any_store.save_window(CooldownWindow("api", ActionKind.RESTART, 2, T0))

        assert any_store.load_window("api", ActionKind.RESTART).count == 2
        assert len(any_store.list_windows()) == 1

    def test_loaded_window_is_a_copy(self, any_store):
        any_store.save_window(CooldownWindow("api", ActionKind.RESTART, 1, T0))

        any_store.load_window("api", ActionKind.RESTART).count = 99

        assert any_store.load_window("api", ActionKind.RESTART).count == 1

    def test_delete(self, any_store):
        any_store.save_window(CooldownWindow("api", ActionKind.RESTART, 1, T0))
        any_store.delete_window("api", ActionKind.RESTART)
        any_store.delete_window("api", ActionKind.RESTART)

        assert any_store.load_window("api", ActionKind.RESTART) is None

    def test_list_by_service(self, any_store):
        any_store.save_window(CooldownWindow("api", ActionKind.RESTART, 1, T0))
        any_store.save_window(CooldownWindow("api", ActionKind.ROTATE_KEY, 1, T0))
        any_store.save_window(CooldownWindow("db", ActionKind.RESTART, 1, T0))

        assert len(any_store.list_windows()) == 3
        assert {w.action_kind for w in any_store.list_windows("api")} == {
            ActionKind.RESTART, ActionKind.ROTATE_KEY,
        }


    def test_update_creates_window(self, any_store):
        window = any_store.update_window(
            "api", ActionKind.RESTART,
            lambda stored: CooldownWindow("api", ActionKind.RESTART, 1, T0),
        )

        assert window.count == 1
        assert any_store.load_window("api", ActionKind.RESTART).count == 1

    def test_update_sees_stored_window(self, any_store):
        any_store.save_window(CooldownWindow("api", ActionKind.RESTART, 1, T0))

        def bump(stored):
            stored.count += 1
            return stored

        any_store.update_window("api", ActionKind.RESTART, bump)

        assert any_store.load_window("api", ActionKind.RESTART).count == 2

    def test_update_returning_none_deletes(self, any_store):
        any_store.save_window(CooldownWindow("api", ActionKind.RESTART, 1, T0))

        assert any_store.update_window("api", ActionKind.RESTART, lambda stored: None) is None
        assert any_store.load_window("api", ActionKind.RESTART) is None

    def test_failed_update_leaves_window(self, any_store):
        any_store.save_window(CooldownWindow("api", ActionKind.RESTART, 1, T0))

        def refuse(stored):
            stored.count = 5
            raise RuntimeError("quota exhausted")

        with pytest.raises(RuntimeError):
            any_store.update_window("api", ActionKind.RESTART, refuse)

        assert any_store.load_window("api", ActionKind.RESTART).count == 1


class TestRecords:
    """Tests for the execution record log."""

    def test_append_and_filter(self, any_store):
        any_store.append_record(make_record("rec-1"))
        any_store.append_record(make_record("rec-2", incident="inc-2", service="db", minutes=10))
        any_store.append_record(make_record("rec-3", incident="inc-2", minutes=20))

        assert [r.record_id for r in any_store.list_records()] == ["rec-1", "rec-2", "rec-3"]
        assert [r.record_id for r in any_store.list_records(incident_id="inc-2")] == ["rec-2", "rec-3"]
        assert [r.record_id for r in any_store.list_records(service="api")] == ["rec-1", "rec-3"]
        assert [
            r.record_id for r in any_store.list_records(since=T0 + timedelta(minutes=10))
        ] == ["rec-2", "rec-3"]

    def test_limit_keeps_most_recent(self, any_store):
        for i in range(5):
            any_store.append_record(make_record(f"rec-{i}", minutes=i))

        assert [r.record_id for r in any_store.list_records(limit=2)] == ["rec-3", "rec-4"]

    def test_round_trip_fields(self, any_store):
        record = make_record(
            "rec-1",
            outcome=Outcome.DENIED,
            tier=None,
            detail="insufficient host access",
            denial_policy="access",
            playbook="restart-api",
            dry_run=True,
        )
        any_store.append_record(record)

        assert any_store.list_records() == [record]


class TestTickets:
    """Tests for the escalation ticket log."""

    def test_round_trip(self, any_store):
        ticket = make_ticket("esc-1")
        any_store.append_ticket(ticket)

        loaded = any_store.list_tickets()

        assert loaded == [ticket]

    def test_filter_and_limit(self, any_store):
        any_store.append_ticket(make_ticket("esc-1"))
        any_store.append_ticket(make_ticket("esc-2", incident="inc-2"))
        any_store.append_ticket(make_ticket("esc-3"))

        assert [t.ticket_id for t in any_store.list_tickets(incident_id="inc-1")] == ["esc-1", "esc-3"]
        assert [t.ticket_id for t in any_store.list_tickets(limit=1)] == ["esc-3"]


class TestSQLiteStateStore:
    """Tests specific to the durable store."""

    def test_state_survives_reopen(self, tmp_path):
        path = tmp_path / "nested" / "state.db"
        first = SQLiteStateStore(path)
        first.save_window(CooldownWindow("api", ActionKind.RESTART, 2, T0))
        first.append_record(make_record("rec-1"))
        first.close()

        second = SQLiteStateStore(path)

        assert second.load_window("api", ActionKind.RESTART).count == 2
        assert [r.record_id for r in second.list_records()] == ["rec-1"]

    def test_duplicate_record_id_raises_storage_error(self, tmp_path):
        store = SQLiteStateStore(tmp_path / "state.db")
        store.append_record(make_record("rec-1"))

        with pytest.raises(StorageError):
            store.append_record(make_record("rec-1"))

    def test_update_holds_write_lock_against_other_store(self, tmp_path):
        """Test that a second store on the same file cannot write mid-update."""
        path = tmp_path / "state.db"
        first = SQLiteStateStore(path)
        other = SQLiteStateStore(path, timeout=0.1)
        errors = []

        def write_from_other():
            try:
                other.update_window(
                    "api", ActionKind.RESTART,
                    lambda stored: CooldownWindow("api", ActionKind.RESTART, 9, T0),
                )
            except StorageError as e:
                errors.append(e)

        def update(stored):
            writer = threading.Thread(target=write_from_other)
            writer.start()
            writer.join(5)
            return CooldownWindow("api", ActionKind.RESTART, 1, T0)

        first.update_window("api", ActionKind.RESTART, update)

        assert len(errors) == 1
        assert first.load_window("api", ActionKind.RESTART).count == 1
