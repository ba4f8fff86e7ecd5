# backend/fieldsync/services/conflict_service.py
"""
Per-kind merge rules.

Pure decisions: the caller supplies the stored record and the period state,
nothing here reads or writes the database.

RULES:
- VISIT: single owner (first accepted device); owner edits win by version
- STOCK_MOVEMENT: single owner; deltas are additive, never overwritten.
  A newer version of the same movement is applied as a compensating
  adjustment so running totals equal the sum of the latest deltas.
- CASH_RECONCILIATION: any device of the tenant may update; last writer by
  version wins within an open period. Closed periods reject.

Equal versions tie-break on (created_at_device, device_id); losers are
rejected SUPERSEDED.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from ..errors import (
    BusinessRuleRejection,
    ConflictingOwner,
    KindMismatch,
    PeriodClosed,
    REASON_CONFLICTING_OWNER,
    REASON_KIND_MISMATCH,
    REASON_PERIOD_CLOSED,
    REASON_SUPERSEDED,
    SupersededSubmission,
    describe_reason,
)
from ..models import ServerRecord
from ..records import RecordKind, StockMovementPayload, SyncableRecord
from ..time_utils import normalize_datetime


ACTION_APPLY = "APPLY"
ACTION_REJECT = "REJECT"

_REJECTIONS: dict[str, type[BusinessRuleRejection]] = {
    REASON_CONFLICTING_OWNER: ConflictingOwner,
    REASON_KIND_MISMATCH: KindMismatch,
    REASON_PERIOD_CLOSED: PeriodClosed,
    REASON_SUPERSEDED: SupersededSubmission,
}


@dataclass(frozen=True)
class MergeDecision:
    action: str
    reason: str | None = None
    message: str | None = None

    @property
    def applies(self) -> bool:
        return self.action == ACTION_APPLY

    @classmethod
    def apply(cls) -> "MergeDecision":
        return cls(ACTION_APPLY)

    @classmethod
    def reject(cls, reason: str, message: str | None = None) -> "MergeDecision":
        return cls(ACTION_REJECT, reason, message or describe_reason(reason))


def precedence_key(record: SyncableRecord) -> tuple:
    """Total order among submissions of one record; the greater key wins."""
    return (record.version, normalize_datetime(record.created_at_device), record.device_id)


def _stored_key(existing: ServerRecord) -> tuple:
    return (existing.version, normalize_datetime(existing.created_at_device), existing.last_device_id)


def decide(
    incoming: SyncableRecord,
    existing: ServerRecord | None,
    *,
    period_closed: bool = False,
    existing_period_closed: bool = False,
) -> MergeDecision:
    """
    Decide whether `incoming` may be folded into `existing`.

    period_closed: the incoming cash record's period is closed
    existing_period_closed: the stored record's period is closed (a cash
    record moved to another period must not leave a closed one)
    """
    kind = RecordKind(incoming.kind)

    if existing is None:
        if kind is RecordKind.CASH_RECONCILIATION and period_closed:
            return MergeDecision.reject(REASON_PERIOD_CLOSED)
        return MergeDecision.apply()

    if existing.record_kind is not kind:
        return MergeDecision.reject(
            REASON_KIND_MISMATCH,
            f"Record {incoming.record_id} is stored as {existing.kind}, not {kind.value}",
        )

    if kind is RecordKind.VISIT or kind is RecordKind.STOCK_MOVEMENT:
        if incoming.device_id != existing.owner_device_id:
            return MergeDecision.reject(REASON_CONFLICTING_OWNER)
    elif kind is RecordKind.CASH_RECONCILIATION:
        if period_closed or existing_period_closed:
            return MergeDecision.reject(REASON_PERIOD_CLOSED)
    else:
        raise ValueError(f"Unhandled record kind: {kind}")

    if precedence_key(incoming) <= _stored_key(existing):
        return MergeDecision.reject(REASON_SUPERSEDED)

    return MergeDecision.apply()


def check_merge(incoming: SyncableRecord, existing: ServerRecord | None, **period_state) -> MergeDecision:
    """decide() that raises the matching BusinessRuleRejection on REJECT."""
    decision = decide(incoming, existing, **period_state)
    if not decision.applies:
        raise _REJECTIONS[decision.reason](decision.message)
    return decision


def stock_adjustments(
    old: StockMovementPayload | None,
    new: StockMovementPayload,
) -> dict[tuple[str, str, str], Decimal]:
    """
    Signed per-bucket deltas that turn the effect of `old` into the effect of `new`.

    - first version: {new.bucket: new.delta}
    - same bucket: {bucket: new.delta - old.delta} (omitted when zero)
    - moved bucket: {old.bucket: -old.delta, new.bucket: new.delta}
    """
    adjustments: dict[tuple[str, str, str], Decimal] = {}
    if old is not None:
        adjustments[old.bucket] = -old.quantity_delta
    adjustments[new.bucket] = adjustments.get(new.bucket, Decimal("0")) + new.quantity_delta
    return {bucket: delta for bucket, delta in adjustments.items() if delta != 0}
