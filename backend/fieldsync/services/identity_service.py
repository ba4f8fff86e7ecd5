# Overview: Service-layer operations for record identity; decides whether a submission is new, a replay or stale.

from __future__ import annotations

from dataclasses import dataclass

from ..extensions import db
from ..models import MergeHistoryEntry, ServerRecord
from ..records import SyncableRecord
from .concurrency import lock_for_update


RESOLUTION_NEW = "NEW"
RESOLUTION_DUPLICATE = "DUPLICATE"
RESOLUTION_SUPERSEDED = "SUPERSEDED"


@dataclass(frozen=True)
class Resolution:
    outcome: str
    existing: ServerRecord | None = None

    @property
    def is_new(self) -> bool:
        return self.outcome == RESOLUTION_NEW


def find_server_record(record_id: str, lock: bool = False) -> ServerRecord | None:
    query = db.session.query(ServerRecord).filter(ServerRecord.record_id == record_id)
    if lock:
        query = lock_for_update(query)
    return query.first()


def has_folded(record_id: str, version: int, device_id: str) -> bool:
    return db.session.query(MergeHistoryEntry.id).filter_by(
        record_id=record_id,
        version=version,
        device_id=device_id,
    ).first() is not None


def resolve(incoming: SyncableRecord, existing: ServerRecord | None = None) -> Resolution:
    """
    Classify an incoming submission against the stored record.

    ORDER:
    1. No stored record -> NEW
    2. Stored version is newer -> SUPERSEDED (stale replay, even from the same device)
    3. (record_id, version, device_id) already in merge history -> DUPLICATE
    4. Otherwise -> NEW against the existing record (conflict rules decide next)

    Caller passes `existing` when it already holds a locked row.
    """
    if existing is None:
        existing = find_server_record(incoming.record_id)
    if existing is None:
        return Resolution(RESOLUTION_NEW)

    if existing.version > incoming.version:
        return Resolution(RESOLUTION_SUPERSEDED, existing)

    if has_folded(incoming.record_id, incoming.version, incoming.device_id):
        return Resolution(RESOLUTION_DUPLICATE, existing)

    return Resolution(RESOLUTION_NEW, existing)
