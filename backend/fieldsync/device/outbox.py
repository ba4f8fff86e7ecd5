# backend/fieldsync/device/outbox.py
"""
Durable device outbox.

WHY: Captured records must survive app restarts, crashes and days without
connectivity. Every record is written here before any network attempt, and
leaves only when the store acknowledges it.

STATE MACHINE (per entry):
    PENDING -> IN_FLIGHT -> (deleted)           store acknowledged
                         -> REJECTED            business rule / retry limit
                         -> PENDING             transient failure, cancel, crash

INVARIANTS:
- Entries are keyed by (record_id, version); versions strictly increase per record.
- list_pending is oldest-first by enqueue sequence, so one record's versions
  come out in ascending order.
- A record whose lower version is IN_FLIGHT is held back until that version
  completes.
- IN_FLIGHT older than in_flight_timeout reverts to PENDING (the process that
  claimed it is presumed dead).
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable

from sqlalchemy import func

from ..errors import OutboxError, StorageCorruption
from ..records import SyncableRecord, record_from_dict, record_to_dict
from ..time_utils import utcnow
from .local_db import DeviceDatabase, OutboxRow, RecordHeadRow

logger = logging.getLogger(__name__)


class SyncState:
    PENDING = "PENDING"
    IN_FLIGHT = "IN_FLIGHT"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    REJECTED = "REJECTED"


DEFAULT_IN_FLIGHT_TIMEOUT = 300.0


@dataclass(frozen=True)
class OutboxEntry:
    entry_id: int
    record: SyncableRecord
    sync_state: str
    attempt_count: int = 0
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    reject_reason: str | None = None
    enqueued_at: datetime | None = None

    @property
    def record_id(self) -> str:
        return self.record.record_id

    @property
    def version(self) -> int:
        return self.record.version

    @property
    def sequence(self) -> int:
        return self.entry_id


def _to_entry(row: OutboxRow) -> OutboxEntry:
    try:
        record = record_from_dict(json.loads(row.record_json))
    except (TypeError, ValueError) as exc:
        logger.error("Outbox entry %s (%s v%s) cannot be decoded: %s", row.id, row.record_id, row.version, exc)
        raise StorageCorruption(f"Outbox entry {row.id} cannot be decoded") from exc
    return OutboxEntry(
        entry_id=row.id,
        record=record,
        sync_state=row.sync_state,
        attempt_count=row.attempt_count or 0,
        last_attempt_at=row.last_attempt_at,
        last_error=row.last_error,
        reject_reason=row.reject_reason,
        enqueued_at=row.enqueued_at,
    )


class OutboxStore:
    """Outbox for one (tenant, device) pair."""

    def __init__(
        self,
        database: DeviceDatabase,
        tenant_id: str,
        device_id: str,
        *,
        in_flight_timeout: float = DEFAULT_IN_FLIGHT_TIMEOUT,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.database = database
        self.tenant_id = tenant_id
        self.device_id = device_id
        self.in_flight_timeout = in_flight_timeout
        self.clock = clock
        reverted = self.revert_stale_in_flight()
        if reverted:
            logger.info("Recovered %s in-flight outbox entries on open", reverted)

    @classmethod
    def open(cls, path: str | Path, tenant_id: str, device_id: str, **kwargs) -> "OutboxStore":
        return cls(DeviceDatabase(path), tenant_id, device_id, **kwargs)

    # -- writes ------------------------------------------------------------

    def enqueue(self, record: SyncableRecord) -> OutboxEntry:
        """
        Persist a record for upload.

        Raises:
            OutboxError: foreign tenant/device, or version not above the
                highest version already enqueued for this record
        """
        if record.tenant_id != self.tenant_id or record.device_id != self.device_id:
            raise OutboxError(
                f"Record {record.record_id} belongs to {record.tenant_id}/{record.device_id}, "
                f"not this outbox ({self.tenant_id}/{self.device_id})"
            )

        with self.database.session_scope() as session:
            head = session.get(RecordHeadRow, record.record_id)
            if head is not None and record.version <= head.version:
                raise OutboxError(
                    f"Record {record.record_id} v{record.version} is not newer than enqueued v{head.version}"
                )
            if head is None:
                head = RecordHeadRow(record_id=record.record_id, version=record.version)
                session.add(head)
            else:
                head.version = record.version

            row = OutboxRow(
                record_id=record.record_id,
                version=record.version,
                kind=record.kind.value,
                record_json=json.dumps(record_to_dict(record)),
                sync_state=SyncState.PENDING,
                attempt_count=0,
                enqueued_at=self.clock(),
            )
            session.add(row)
            session.flush()
            entry = _to_entry(row)

        logger.debug("Enqueued %s v%s as entry %s", record.record_id, record.version, entry.entry_id)
        return entry

    def revert_stale_in_flight(self) -> int:
        """IN_FLIGHT entries older than in_flight_timeout count as a failed attempt and go back to PENDING."""
        cutoff = self.clock() - timedelta(seconds=self.in_flight_timeout)
        with self.database.session_scope() as session:
            reverted = session.query(OutboxRow).filter(
                OutboxRow.sync_state == SyncState.IN_FLIGHT,
                (OutboxRow.last_attempt_at.is_(None)) | (OutboxRow.last_attempt_at <= cutoff),
            ).update(
                {
                    OutboxRow.sync_state: SyncState.PENDING,
                    OutboxRow.attempt_count: OutboxRow.attempt_count + 1,
                    OutboxRow.last_error: "in-flight timeout",
                },
                synchronize_session=False,
            )
        if reverted:
            logger.warning("Reverted %s stale in-flight outbox entries", reverted)
        return reverted

    def mark_in_flight(self, entry_ids: Iterable[int]) -> int:
        ids = list(entry_ids)
        if not ids:
            return 0
        with self.database.session_scope() as session:
            return session.query(OutboxRow).filter(
                OutboxRow.id.in_(ids),
                OutboxRow.sync_state == SyncState.PENDING,
            ).update(
                {OutboxRow.sync_state: SyncState.IN_FLIGHT, OutboxRow.last_attempt_at: self.clock()},
                synchronize_session=False,
            )

    def mark_pending(self, entry_ids: Iterable[int]) -> int:
        """Release IN_FLIGHT entries without counting an attempt (cancel, skipped)."""
        ids = list(entry_ids)
        if not ids:
            return 0
        with self.database.session_scope() as session:
            return session.query(OutboxRow).filter(
                OutboxRow.id.in_(ids),
                OutboxRow.sync_state == SyncState.IN_FLIGHT,
            ).update({OutboxRow.sync_state: SyncState.PENDING}, synchronize_session=False)

    def mark_acknowledged(self, entry_ids: Iterable[int]) -> int:
        """Store has the record; the entry leaves the outbox."""
        ids = list(entry_ids)
        if not ids:
            return 0
        with self.database.session_scope() as session:
            return session.query(OutboxRow).filter(OutboxRow.id.in_(ids)).delete(synchronize_session=False)

    def mark_rejected(self, entry_id: int, reason: str, message: str | None = None, *, count_attempt: bool = True) -> OutboxEntry:
        with self.database.session_scope() as session:
            row = self._require(session, entry_id)
            row.sync_state = SyncState.REJECTED
            row.reject_reason = reason
            row.last_error = message
            if count_attempt:
                row.attempt_count = (row.attempt_count or 0) + 1
            session.flush()
            entry = _to_entry(row)
        logger.warning("Outbox entry %s (%s v%s) rejected: %s", entry_id, entry.record_id, entry.version, reason)
        return entry

    def record_failure(self, entry_id: int, error: str) -> OutboxEntry:
        """Count a failed delivery attempt and return the entry to PENDING."""
        with self.database.session_scope() as session:
            row = self._require(session, entry_id)
            row.sync_state = SyncState.PENDING
            row.attempt_count = (row.attempt_count or 0) + 1
            row.last_error = error
            row.last_attempt_at = self.clock()
            session.flush()
            return _to_entry(row)

    def resolve_rejected(self, entry_id: int) -> None:
        """Operator acknowledged a rejection; drop the entry."""
        with self.database.session_scope() as session:
            row = self._require(session, entry_id)
            if row.sync_state != SyncState.REJECTED:
                raise OutboxError(f"Outbox entry {entry_id} is {row.sync_state}, not REJECTED")
            session.delete(row)

    # -- reads -------------------------------------------------------------

    def list_pending(self, limit: int = 50) -> list[OutboxEntry]:
        """
        Oldest PENDING entries, at most `limit`.

        Reverts stale IN_FLIGHT entries first, then skips records that still
        have a lower version IN_FLIGHT.
        """
        self.revert_stale_in_flight()
        with self.database.session_scope() as session:
            busy = session.query(OutboxRow.record_id).filter(OutboxRow.sync_state == SyncState.IN_FLIGHT)
            rows = (
                session.query(OutboxRow)
                .filter(
                    OutboxRow.sync_state == SyncState.PENDING,
                    ~OutboxRow.record_id.in_(busy),
                )
                .order_by(OutboxRow.id.asc())
                .limit(max(0, int(limit)))
                .all()
            )
            return [_to_entry(row) for row in rows]

    def list_rejected(self) -> list[OutboxEntry]:
        with self.database.session_scope() as session:
            rows = (
                session.query(OutboxRow)
                .filter(OutboxRow.sync_state == SyncState.REJECTED)
                .order_by(OutboxRow.id.asc())
                .all()
            )
            return [_to_entry(row) for row in rows]

    def get(self, entry_id: int) -> OutboxEntry | None:
        with self.database.session_scope() as session:
            row = session.get(OutboxRow, entry_id)
            return _to_entry(row) if row is not None else None

    def count_by_state(self) -> dict[str, int]:
        with self.database.session_scope() as session:
            counts = dict(
                session.query(OutboxRow.sync_state, func.count(OutboxRow.id))
                .group_by(OutboxRow.sync_state)
                .all()
            )
        return {state: counts.get(state, 0) for state in (SyncState.PENDING, SyncState.IN_FLIGHT, SyncState.REJECTED)}

    def _require(self, session, entry_id: int) -> OutboxRow:
        row = session.get(OutboxRow, entry_id)
        if row is None:
            raise OutboxError(f"Outbox entry {entry_id} not found")
        return row
