# Overview: Pytest coverage for the durable device outbox.

"""
Outbox Tests

Covers ordering, per-record version rules, state transitions, crash recovery
(IN_FLIGHT timeout, restart) and corruption detection.
"""

from datetime import datetime, timedelta

import pytest

from fieldsync.device.local_db import OutboxRow
from fieldsync.device.outbox import OutboxStore, SyncState
from fieldsync.errors import OutboxError, StorageCorruption


class FakeClock:
    def __init__(self, start=datetime(2026, 10, 18, 9, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class TestEnqueue:

    def test_enqueue_persists_pending_entry(self, outbox, factory):
        record = factory.visit()
        entry = outbox.enqueue(record)

        assert entry.sync_state == SyncState.PENDING
        assert entry.record == record
        assert outbox.get(entry.entry_id).record_id == record.record_id

    def test_same_version_twice_rejected(self, outbox, factory):
        record = factory.visit()
        outbox.enqueue(record)
        with pytest.raises(OutboxError):
            outbox.enqueue(record)

    def test_lower_version_rejected_even_after_ack(self, outbox, factory):
        """The version high-water mark survives acknowledgement."""
        v1 = factory.visit()
        v2 = factory.edit(v1, notes="second")
        outbox.enqueue(v1)
        entry = outbox.enqueue(v2)
        outbox.mark_acknowledged([entry.entry_id])

        with pytest.raises(OutboxError):
            outbox.enqueue(v1)

    def test_foreign_device_rejected(self, outbox, factory):
        with pytest.raises(OutboxError):
            outbox.enqueue(factory.visit(device_id="device-2"))

    def test_foreign_tenant_rejected(self, outbox, factory):
        with pytest.raises(OutboxError):
            outbox.enqueue(factory.visit(tenant_id="tenant-b"))


class TestListPending:

    def test_oldest_first(self, outbox, factory):
        records = [factory.visit(), factory.stock(), factory.cash()]
        for record in records:
            outbox.enqueue(record)

        pending = outbox.list_pending(10)
        assert [e.record_id for e in pending] == [r.record_id for r in records]

    def test_limit_is_respected(self, outbox, factory):
        for _ in range(5):
            outbox.enqueue(factory.visit())
        assert len(outbox.list_pending(2)) == 2

    def test_versions_of_one_record_ascend(self, outbox, factory):
        v1 = factory.visit()
        v2 = factory.edit(v1, notes="v2")
        v3 = factory.edit(v2, notes="v3")
        for record in (v1, v2, v3):
            outbox.enqueue(record)

        assert [e.version for e in outbox.list_pending(10)] == [1, 2, 3]

    def test_record_with_in_flight_lower_version_held_back(self, outbox, factory):
        v1 = factory.visit()
        other = factory.stock()
        first = outbox.enqueue(v1)
        outbox.enqueue(other)
        outbox.mark_in_flight([first.entry_id])
        outbox.enqueue(factory.edit(v1, notes="v2"))

        pending = outbox.list_pending(10)
        assert [e.record_id for e in pending] == [other.record_id]

    def test_rejected_entries_not_listed(self, outbox, factory):
        entry = outbox.enqueue(factory.visit())
        outbox.mark_in_flight([entry.entry_id])
        outbox.mark_rejected(entry.entry_id, "CONFLICTING_OWNER", "owned elsewhere")

        assert outbox.list_pending(10) == []
        rejected = outbox.list_rejected()
        assert rejected[0].reject_reason == "CONFLICTING_OWNER"
        assert rejected[0].last_error == "owned elsewhere"


class TestTransitions:

    def test_acknowledged_entries_leave_outbox(self, outbox, factory):
        entry = outbox.enqueue(factory.visit())
        outbox.mark_in_flight([entry.entry_id])
        outbox.mark_acknowledged([entry.entry_id])

        assert outbox.get(entry.entry_id) is None
        assert outbox.count_by_state()[SyncState.PENDING] == 0

    def test_record_failure_counts_attempt_and_returns_to_pending(self, outbox, factory):
        entry = outbox.enqueue(factory.visit())
        outbox.mark_in_flight([entry.entry_id])

        updated = outbox.record_failure(entry.entry_id, "connection reset")
        assert updated.sync_state == SyncState.PENDING
        assert updated.attempt_count == 1
        assert updated.last_error == "connection reset"

    def test_mark_pending_does_not_count_attempt(self, outbox, factory):
        entry = outbox.enqueue(factory.visit())
        outbox.mark_in_flight([entry.entry_id])
        outbox.mark_pending([entry.entry_id])

        assert outbox.get(entry.entry_id).attempt_count == 0
        assert outbox.get(entry.entry_id).sync_state == SyncState.PENDING

    def test_resolve_rejected_removes_entry(self, outbox, factory):
        entry = outbox.enqueue(factory.visit())
        outbox.mark_rejected(entry.entry_id, "SUPERSEDED")
        outbox.resolve_rejected(entry.entry_id)
        assert outbox.get(entry.entry_id) is None

    def test_resolve_pending_entry_refused(self, outbox, factory):
        entry = outbox.enqueue(factory.visit())
        with pytest.raises(OutboxError):
            outbox.resolve_rejected(entry.entry_id)

    def test_unknown_entry_raises(self, outbox):
        with pytest.raises(OutboxError):
            outbox.record_failure(999, "boom")


class TestCrashRecovery:

    def test_stale_in_flight_reverts_to_pending(self, device_db, factory):
        clock = FakeClock()
        outbox = OutboxStore(device_db, "tenant-a", "device-1", in_flight_timeout=60, clock=clock)
        entry = outbox.enqueue(factory.visit())
        outbox.mark_in_flight([entry.entry_id])

        assert outbox.list_pending(10) == []

        clock.advance(61)
        pending = outbox.list_pending(10)
        assert [e.entry_id for e in pending] == [entry.entry_id]
        assert pending[0].attempt_count == 1
        assert pending[0].last_error == "in-flight timeout"

    def test_restart_recovers_in_flight_entries(self, tmp_path, factory):
        """Entries claimed before a crash are PENDING again after reopening."""
        path = tmp_path / "crash.sqlite3"
        clock = FakeClock()
        outbox = OutboxStore.open(path, "tenant-a", "device-1", in_flight_timeout=60, clock=clock)
        records = [factory.visit(), factory.stock()]
        entries = [outbox.enqueue(record) for record in records]
        outbox.mark_in_flight([e.entry_id for e in entries])
        outbox.database.dispose()

        clock.advance(120)
        reopened = OutboxStore.open(path, "tenant-a", "device-1", in_flight_timeout=60, clock=clock)

        assert reopened.count_by_state()[SyncState.IN_FLIGHT] == 0
        assert [e.record for e in reopened.list_pending(10)] == records
        reopened.database.dispose()

    def test_pending_entries_survive_restart(self, tmp_path, factory):
        path = tmp_path / "restart.sqlite3"
        outbox = OutboxStore.open(path, "tenant-a", "device-1")
        record = factory.cash()
        outbox.enqueue(record)
        outbox.database.dispose()

        reopened = OutboxStore.open(path, "tenant-a", "device-1")
        assert reopened.list_pending(10)[0].record == record
        reopened.database.dispose()


class TestCorruption:

    def test_garbage_file_raises_storage_corruption(self, tmp_path):
        path = tmp_path / "garbage.sqlite3"
        path.write_bytes(b"this is definitely not an sqlite database file " * 64)
        with pytest.raises(StorageCorruption):
            OutboxStore.open(path, "tenant-a", "device-1")

    def test_undecodable_row_raises_storage_corruption(self, outbox, device_db, factory):
        entry = outbox.enqueue(factory.visit())
        with device_db.session_scope() as session:
            session.get(OutboxRow, entry.entry_id).record_json = "{not json"

        with pytest.raises(StorageCorruption):
            outbox.list_pending(10)
