"""Tests for the reconciliation store."""

import pytest

from dispatch_sync.dispatch.store import (
    ChangeKind,
    DeltaOutcome,
    OptimisticConflictError,
    ReconciliationStore,
)
from dispatch_sync.lifecycle.state_machine import TerminalStateError
from dispatch_sync.schemas.booking_schema import BookingStatus
from tests.conftest import make_booking, wire

CLAIM = {"status": BookingStatus.ACCEPTED, "assigned_worker_id": "w-a"}


@pytest.fixture
def changes(store):
    seen = []
    store.subscribe(seen.append)
    return seen


class TestDeltas:
    def test_unknown_id_is_inserted(self, store):
        result = store.apply_delta(wire(make_booking("b9")))
        assert result.outcome == DeltaOutcome.INSERTED
        assert store.get("b9").status == BookingStatus.PENDING

    def test_repeated_delta_is_duplicate(self, store):
        store.apply_delta(wire(make_booking()))
        before = store.snapshot_state()
        result = store.apply_delta(wire(make_booking()))
        assert result.outcome == DeltaOutcome.DUPLICATE
        assert store.snapshot_state() == before

    def test_forward_status_merges(self, store):
        store.apply_delta(wire(make_booking()))
        result = store.apply_delta({"_id": "b1", "status": "accepted", "workerId": "w-b"})
        assert result.outcome == DeltaOutcome.MERGED
        assert store.get("b1").assigned_worker_id == "w-b"

    def test_partial_delta_keeps_other_fields(self, store):
        store.apply_delta(wire(make_booking(price=80.0)))
        store.apply_delta({"_id": "b1", "description": "Under the sink"})
        booking = store.get("b1")
        assert booking.description == "Under the sink"
        assert booking.price == 80.0

    def test_populated_worker_reference_is_reduced_to_id(self, store):
        store.apply_delta(wire(make_booking()))
        store.apply_delta({
            "_id": "b1", "status": "accepted", "workerId": {"_id": "w-b", "name": "Bob"},
        })
        assert store.get("b1").assigned_worker_id == "w-b"

    def test_lower_rank_status_is_stale(self, store):
        store.apply_delta(wire(make_booking(status=BookingStatus.ARRIVED, worker_id="w-a")))
        result = store.apply_delta({"_id": "b1", "status": "accepted"})
        assert result.outcome == DeltaOutcome.STALE
        assert store.get("b1").status == BookingStatus.ARRIVED

    def test_in_progress_ranks_with_working(self, store):
        store.apply_delta(wire(make_booking(status=BookingStatus.WORKING, worker_id="w-a")))
        result = store.apply_delta({"_id": "b1", "status": "in_progress"})
        assert result.outcome == DeltaOutcome.MERGED
        assert store.get("b1").status == BookingStatus.IN_PROGRESS

    @pytest.mark.parametrize("terminal", [BookingStatus.COMPLETED, BookingStatus.CANCELLED])
    @pytest.mark.parametrize("incoming", ["pending", "accepted", "working"])
    def test_terminal_status_never_changes(self, store, terminal, incoming):
        store.apply_delta(wire(make_booking(status=terminal, worker_id="w-a")))
        result = store.apply_delta({"_id": "b1", "status": incoming, "workerId": "w-a"})
        assert result.outcome in (DeltaOutcome.TERMINAL_DISCARDED, DeltaOutcome.MALFORMED)
        assert store.get("b1").status == terminal

    def test_terminal_ignores_field_edits(self, store):
        store.apply_delta(wire(make_booking(status=BookingStatus.CANCELLED)))
        result = store.apply_delta({"_id": "b1", "price": 999})
        assert result.outcome == DeltaOutcome.TERMINAL_DISCARDED
        assert store.get("b1").price == 120.0


class TestMalformed:
    def test_missing_id(self, store):
        assert store.apply_delta({"status": "accepted"}).outcome == DeltaOutcome.MALFORMED
        assert len(store) == 0

    def test_unknown_status(self, store):
        store.apply_delta(wire(make_booking()))
        before = store.snapshot_state()
        result = store.apply_delta({"_id": "b1", "status": "teleported"})
        assert result.outcome == DeltaOutcome.MALFORMED
        assert store.snapshot_state() == before

    def test_inconsistent_merge_is_not_partially_applied(self, store):
        store.apply_delta(wire(make_booking()))
        before = store.snapshot_state()
        # pending + assigned worker violates the booking invariant
        result = store.apply_delta({"_id": "b1", "workerId": "w-b", "price": 10})
        assert result.outcome == DeltaOutcome.MALFORMED
        assert store.snapshot_state() == before

    def test_malformed_snapshot_record_skipped(self, store):
        results = store.apply_snapshot([
            {"_id": "b1", "status": "accepted"},
            wire(make_booking("b2")),
        ])
        assert [r.outcome for r in results] == [DeltaOutcome.MALFORMED, DeltaOutcome.INSERTED]
        assert "b1" not in store
        assert "b2" in store


class TestSnapshots:
    def test_snapshot_is_idempotent(self, store):
        records = [wire(make_booking("b1")), wire(make_booking("b2"))]
        store.apply_snapshot(records)
        first = store.snapshot_state()
        results = store.apply_snapshot(records)
        assert store.snapshot_state() == first
        assert all(r.outcome == DeltaOutcome.DUPLICATE for r in results)

    def test_omitted_ids_kept_by_default(self, store):
        store.apply_snapshot([make_booking("b1"), make_booking("b2")])
        store.apply_snapshot([make_booking("b1")])
        assert "b2" in store

    def test_authoritative_removal(self, store, changes):
        store.apply_snapshot([make_booking("b1"), make_booking("b2")])
        store.apply_snapshot([make_booking("b1")], authoritative_removal=True)
        assert "b2" not in store
        assert changes[-1].kind == ChangeKind.REMOVED
        assert changes[-1].booking_id == "b2"

    def test_removal_spares_optimistic_records(self, store):
        store.apply_snapshot([make_booking("b1"), make_booking("b2")])
        store.apply_optimistic("b2", CLAIM)
        store.apply_snapshot([make_booking("b1")], authoritative_removal=True)
        assert "b2" in store

    def test_snapshot_respects_monotonic_rule(self, store):
        store.apply_delta(wire(make_booking(status=BookingStatus.ARRIVED, worker_id="w-a")))
        results = store.apply_snapshot([
            make_booking(status=BookingStatus.ACCEPTED, worker_id="w-a"),
        ])
        assert results[0].outcome == DeltaOutcome.STALE


class TestOptimistic:
    def test_view_merges_overlay(self, store):
        store.apply_delta(wire(make_booking()))
        store.apply_optimistic("b1", CLAIM)
        assert store.get("b1").status == BookingStatus.ACCEPTED
        assert store.get_confirmed("b1").status == BookingStatus.PENDING
        assert store.has_optimistic("b1")

    def test_rollback_restores_confirmed_view(self, store):
        store.apply_delta(wire(make_booking()))
        before = store.snapshot_state()
        token = store.apply_optimistic("b1", CLAIM)
        assert store.rollback(token)
        assert store.snapshot_state() == before
        assert not store.rollback(token)

    def test_confirmation_supersedes_rollback(self, store):
        store.apply_delta(wire(make_booking()))
        token = store.apply_optimistic("b1", CLAIM)
        store.confirm(make_booking(status=BookingStatus.ACCEPTED, worker_id="w-a"))
        assert not store.has_optimistic("b1")
        assert not store.rollback(token)
        assert store.get("b1").status == BookingStatus.ACCEPTED

    def test_race_lost_drops_claim(self, store, changes):
        store.apply_delta(wire(make_booking()))
        store.apply_optimistic("b1", CLAIM)
        result = store.apply_delta({"_id": "b1", "status": "accepted", "workerId": "w-b"})
        assert result.outcome == DeltaOutcome.RACE_LOST
        assert not store.has_optimistic("b1")
        assert store.get("b1").assigned_worker_id == "w-b"
        lost = [c for c in changes if c.kind == ChangeKind.RACE_LOST]
        assert lost and lost[0].winner_worker_id == "w-b"

    def test_unknown_booking_raises_key_error(self, store):
        with pytest.raises(KeyError):
            store.apply_optimistic("missing", CLAIM)

    def test_terminal_booking_refuses_changes(self, store):
        store.apply_delta(wire(make_booking(status=BookingStatus.CANCELLED)))
        with pytest.raises(TerminalStateError):
            store.apply_optimistic("b1", CLAIM)

    def test_cannot_claim_over_confirmed_assignment(self, store):
        store.apply_delta(wire(make_booking(status=BookingStatus.ACCEPTED, worker_id="w-b")))
        with pytest.raises(OptimisticConflictError):
            store.apply_optimistic("b1", CLAIM)

    def test_invalid_view_refused(self, store):
        store.apply_delta(wire(make_booking()))
        with pytest.raises(ValueError):
            store.apply_optimistic("b1", {"status": BookingStatus.ACCEPTED})
        assert not store.has_optimistic("b1")

    def test_hidden_patch_leaves_pending_list(self, store):
        store.apply_delta(wire(make_booking()))
        token = store.apply_optimistic("b1", {}, hidden=True)
        assert store.pending_requests() == []
        store.rollback(token)
        assert [b.id for b in store.pending_requests()] == ["b1"]


class TestViews:
    def test_pending_requests_in_arrival_order(self, store):
        store.apply_snapshot([make_booking("b2"), make_booking("b1")])
        assert [b.id for b in store.pending_requests()] == ["b2", "b1"]

    def test_dismissed_not_pending(self, store):
        store.apply_delta(wire(make_booking()))
        store.dismiss("b1")
        assert store.pending_requests() == []
        assert "b1" in store

    def test_active_jobs(self, store):
        store.apply_snapshot([
            make_booking("b1", status=BookingStatus.ACCEPTED, worker_id="w-a"),
            make_booking("b2", status=BookingStatus.ACCEPTED, worker_id="w-b"),
            make_booking("b3", status=BookingStatus.COMPLETED, worker_id="w-a"),
            make_booking("b4"),
        ])
        assert [b.id for b in store.active_jobs("w-a")] == ["b1"]

    def test_remove(self, store, changes):
        store.apply_delta(wire(make_booking()))
        assert store.remove("b1")
        assert not store.remove("b1")
        assert changes[-1].kind == ChangeKind.REMOVED


class TestSubscribers:
    def test_failing_subscriber_does_not_block_others(self, store):
        seen = []

        def broken(change):
            raise RuntimeError("boom")

        store.subscribe(broken)
        store.subscribe(seen.append)
        store.apply_delta(wire(make_booking()))
        assert [c.kind for c in seen] == [ChangeKind.INSERTED]

    def test_unsubscribe(self):
        store = ReconciliationStore()
        seen = []
        unsubscribe = store.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        store.apply_delta(wire(make_booking()))
        assert seen == []
