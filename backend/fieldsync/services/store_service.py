# backend/fieldsync/services/store_service.py
"""
Tenant-scoped authoritative store.

WHY: Devices replay, reorder and race their submissions. The store is the
single place where a submission becomes authoritative, so every write goes
through one path: validate -> tenant binding -> identity -> merge rules ->
apply -> commit.

INVARIANTS:
- A (record_id, version, device_id) is folded at most once (merge_history
  unique constraint + identity check).
- server_version only increases (optimistic lock column, one UPDATE per
  accepted submission).
- A record_id is bound to the tenant of its first accepted submission.
- Stock levels equal the sum of the latest delta of every movement.

CONCURRENCY:
- Writes to one record_id serialize on a striped in-process lock plus a
  row lock; unrelated record_ids commit in parallel.
- Lost races (StaleDataError, first-insert IntegrityError, locked database)
  are retried; exhausted retries surface as TransientIOError.
"""
from __future__ import annotations

import logging
from decimal import Decimal

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import (
    BusinessRuleRejection,
    DuplicateSubmission,
    InvalidSubmission,
    REASON_VALIDATION_FAILED,
    SupersededSubmission,
    TenantMismatch,
    TransientIOError,
    ValidationError,
)
from ..extensions import db
from ..models import DeviceCursor, MergeHistoryEntry, ServerRecord, StockLevel
from ..models.records import QUANTITY_SCALE
from ..protocol import PullPage, PushResult
from ..records import RecordKind, SyncableRecord, payload_to_dict, record_from_dict
from ..time_utils import utcnow
from ..validation import validate
from .concurrency import lock_for_update, record_locks, run_with_retry
from .conflict_service import check_merge, stock_adjustments
from .identity_service import (
    RESOLUTION_DUPLICATE,
    RESOLUTION_SUPERSEDED,
    find_server_record,
    resolve,
)
from .period_service import is_period_closed, period_key_for_tenant
from .settings_service import get_validation_policy
from .tenant_service import require_active_tenant

logger = logging.getLogger(__name__)


class StoreError(ValueError):
    """Raised for malformed store requests (not per-record outcomes)."""


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def _to_milli(quantity: Decimal) -> int:
    return int(quantity * QUANTITY_SCALE)


def _apply_stock_delta(tenant_id: str, bucket: tuple[str, str, str], delta: Decimal) -> StockLevel:
    warehouse_id, product_id, unit = bucket
    level = lock_for_update(
        db.session.query(StockLevel).filter_by(
            tenant_id=tenant_id,
            warehouse_id=warehouse_id,
            product_id=product_id,
            unit=unit,
        )
    ).first()
    if level is None:
        level = StockLevel(
            tenant_id=tenant_id,
            warehouse_id=warehouse_id,
            product_id=product_id,
            unit=unit,
            quantity_milli=0,
        )
        db.session.add(level)
    level.quantity_milli = (level.quantity_milli or 0) + _to_milli(delta)
    db.session.flush()
    return level


def apply_submission(record: SyncableRecord) -> tuple[ServerRecord, tuple[str, ...]]:
    """
    Fold one submission into the store. Flushes, does not commit.

    Returns (server_record, flags).

    Raises:
        DuplicateSubmission: version already folded (carries server_version)
        BusinessRuleRejection: UnknownTenant, InvalidSubmission, TenantMismatch,
            SupersededSubmission, ConflictingOwner, KindMismatch, PeriodClosed
    """
    require_active_tenant(record.tenant_id)

    result = validate(record, get_validation_policy(record.tenant_id))
    if not result.ok:
        raise InvalidSubmission("; ".join(result.errors))

    kind = RecordKind(record.kind)
    existing = find_server_record(record.record_id, lock=True)

    if existing is not None and existing.tenant_id != record.tenant_id:
        logger.warning(
            "Tenant mismatch for record %s: stored tenant %s, submitted by tenant %s (device %s)",
            record.record_id, existing.tenant_id, record.tenant_id, record.device_id,
        )
        raise TenantMismatch()

    resolution = resolve(record, existing)
    if resolution.outcome == RESOLUTION_DUPLICATE:
        raise DuplicateSubmission(
            f"Record {record.record_id} v{record.version} already applied",
            server_version=existing.server_version,
        )
    if resolution.outcome == RESOLUTION_SUPERSEDED:
        raise SupersededSubmission(
            f"Record {record.record_id} is at version {existing.version}; v{record.version} is stale"
        )

    period_key = None
    period_closed = False
    existing_period_closed = False
    if kind is RecordKind.CASH_RECONCILIATION:
        period_key = period_key_for_tenant(record.tenant_id, record.payload.period_date)
        period_closed = is_period_closed(record.tenant_id, period_key)
        if existing is not None and existing.period_key and existing.period_key != period_key:
            existing_period_closed = is_period_closed(record.tenant_id, existing.period_key)

    check_merge(
        record,
        existing,
        period_closed=period_closed,
        existing_period_closed=existing_period_closed,
    )

    if kind is RecordKind.STOCK_MOVEMENT:
        old_payload = existing.to_record().payload if existing is not None else None
        for bucket, delta in stock_adjustments(old_payload, record.payload).items():
            _apply_stock_delta(record.tenant_id, bucket, delta)

    now = utcnow()
    payload = payload_to_dict(kind, record.payload)
    if existing is None:
        server_record = ServerRecord(
            record_id=record.record_id,
            tenant_id=record.tenant_id,
            kind=kind.value,
            owner_device_id=record.device_id,
            last_device_id=record.device_id,
            version=record.version,
            created_at_device=record.created_at_device,
            server_received_at=now,
            updated_at=now,
            payload=payload,
            flags=list(result.flags),
            period_key=period_key,
        )
        db.session.add(server_record)
    else:
        server_record = existing
        server_record.last_device_id = record.device_id
        server_record.version = record.version
        server_record.created_at_device = record.created_at_device
        server_record.updated_at = now
        server_record.payload = payload
        server_record.flags = list(result.flags)
        server_record.period_key = period_key
    # One flush per submission: server_version moves by exactly one
    db.session.flush()

    db.session.add(MergeHistoryEntry(
        server_record_id=server_record.id,
        tenant_id=record.tenant_id,
        record_id=record.record_id,
        version=record.version,
        device_id=record.device_id,
        server_version=server_record.server_version,
        created_at_device=record.created_at_device,
        folded_at=now,
    ))
    db.session.flush()
    return server_record, result.flags


def accept(record: SyncableRecord) -> PushResult:
    """
    Apply and commit one submission under its record lock.

    Business outcomes come back as a PushResult; only exhausted storage
    retries raise (TransientIOError).
    """
    attempts = current_app.config.get("SYNC_WRITE_ATTEMPTS", 3)

    def _op():
        server_record, flags = apply_submission(record)
        server_version = server_record.server_version
        db.session.commit()
        return PushResult.accepted(record.record_id, record.version, server_version, flags)

    with record_locks().hold(record.record_id):
        try:
            result = run_with_retry(_op, attempts=attempts, retry_integrity=True)
        except DuplicateSubmission as exc:
            db.session.rollback()
            logger.info("Duplicate submission %s v%s from %s", record.record_id, record.version, record.device_id)
            return PushResult.duplicate(record.record_id, record.version, exc.server_version)
        except BusinessRuleRejection as exc:
            db.session.rollback()
            logger.warning(
                "Rejected %s v%s from device %s: %s (%s)",
                record.record_id, record.version, record.device_id, exc.reason, exc,
            )
            return PushResult.rejected(record.record_id, record.version, exc.reason, str(exc))
        except (OperationalError, StaleDataError, IntegrityError) as exc:
            db.session.rollback()
            logger.warning("Storage retries exhausted for %s v%s: %s", record.record_id, record.version, exc)
            raise TransientIOError(f"Storage busy while applying {record.record_id}") from exc

    logger.info(
        "Accepted %s v%s from device %s (server_version=%s)",
        record.record_id, record.version, record.device_id, result.server_version,
    )
    return result


def push(records: list) -> list[PushResult]:
    """
    Accept a batch of records (SyncableRecord or wire dicts), one result each.

    Per-record rejections never stop the batch. Records accepted before a
    TransientIOError stay committed; a retried push reports them DUPLICATE.
    """
    if records is None or not isinstance(records, (list, tuple)):
        raise StoreError("records must be a list")
    max_batch = current_app.config.get("SYNC_MAX_PUSH_BATCH", 100)
    if len(records) > max_batch:
        raise StoreError(f"At most {max_batch} records per push")

    results: list[PushResult] = []
    for raw in records:
        if isinstance(raw, SyncableRecord):
            record = raw
        else:
            try:
                record = record_from_dict(raw)
            except ValidationError as exc:
                record_id = str(raw.get("record_id") or "") if isinstance(raw, dict) else ""
                version = raw.get("version") if isinstance(raw, dict) else None
                logger.warning("Rejected malformed submission %r: %s", record_id, exc)
                results.append(PushResult.rejected(record_id, version, REASON_VALIDATION_FAILED, str(exc)))
                continue
        results.append(accept(record))
    return results


# ---------------------------------------------------------------------------
# Change stream
# ---------------------------------------------------------------------------

def pull(tenant_id: str, device_id: str, since: int | None = None, limit: int | None = None) -> PullPage:
    """
    Records of `tenant_id` changed after `since`, each once, ordered by latest change.

    since=None resumes from the device's stored cursor. The returned cursor is
    the latest change position covered by the page; the device cursor keeps
    the high-water mark.
    """
    require_active_tenant(tenant_id)
    if not device_id:
        raise StoreError("device_id is required")

    page_size = current_app.config.get("SYNC_PULL_PAGE_SIZE", 200)
    limit = page_size if limit is None else max(1, min(int(limit), page_size))
    if since is not None and int(since) < 0:
        raise StoreError("since must be >= 0")

    def _op():
        cursor_row = lock_for_update(
            db.session.query(DeviceCursor).filter_by(tenant_id=tenant_id, device_id=device_id)
        ).first()
        if cursor_row is None:
            cursor_row = DeviceCursor(tenant_id=tenant_id, device_id=device_id, cursor=0)
            db.session.add(cursor_row)
        start = cursor_row.cursor if since is None else int(since)

        change_id = func.max(MergeHistoryEntry.id).label("change_id")
        changes = (
            db.session.query(MergeHistoryEntry.record_id, change_id)
            .filter(MergeHistoryEntry.tenant_id == tenant_id, MergeHistoryEntry.id > start)
            .group_by(MergeHistoryEntry.record_id)
            .order_by(change_id.asc())
            .limit(limit + 1)
            .all()
        )
        has_more = len(changes) > limit
        changes = changes[:limit]

        records_by_id = {}
        if changes:
            rows = db.session.query(ServerRecord).filter(
                ServerRecord.tenant_id == tenant_id,
                ServerRecord.record_id.in_([record_id for record_id, _ in changes]),
            ).all()
            records_by_id = {row.record_id: row for row in rows}

        records = [records_by_id[record_id].to_dict() for record_id, _ in changes if record_id in records_by_id]
        cursor = changes[-1][1] if changes else start

        cursor_row.cursor = max(cursor_row.cursor or 0, cursor)
        cursor_row.last_pull_at = utcnow()
        db.session.commit()
        return PullPage(records=records, cursor=cursor, has_more=has_more)

    try:
        return run_with_retry(_op, retry_integrity=True)
    except (OperationalError, StaleDataError, IntegrityError) as exc:
        db.session.rollback()
        raise TransientIOError(f"Storage busy while pulling for {device_id}") from exc


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_server_record(tenant_id: str, record_id: str) -> ServerRecord | None:
    return db.session.query(ServerRecord).filter_by(tenant_id=tenant_id, record_id=record_id).first()


def get_merge_history(tenant_id: str, record_id: str) -> list[MergeHistoryEntry]:
    return (
        db.session.query(MergeHistoryEntry)
        .filter_by(tenant_id=tenant_id, record_id=record_id)
        .order_by(MergeHistoryEntry.id.asc())
        .all()
    )


def get_stock_level(tenant_id: str, warehouse_id: str, product_id: str, unit: str = "EACH") -> StockLevel | None:
    return db.session.query(StockLevel).filter_by(
        tenant_id=tenant_id,
        warehouse_id=warehouse_id,
        product_id=product_id,
        unit=unit,
    ).first()


def list_stock_levels(tenant_id: str, warehouse_id: str | None = None) -> list[StockLevel]:
    query = db.session.query(StockLevel).filter_by(tenant_id=tenant_id)
    if warehouse_id:
        query = query.filter(StockLevel.warehouse_id == warehouse_id)
    return query.order_by(StockLevel.warehouse_id, StockLevel.product_id, StockLevel.unit).all()


def get_device_cursor(tenant_id: str, device_id: str) -> DeviceCursor | None:
    return db.session.query(DeviceCursor).filter_by(tenant_id=tenant_id, device_id=device_id).first()
