# backend/fieldsync/records.py
"""
Syncable record model.

A SyncableRecord is a tagged union: the `kind` tag names the variant and the
payload carries the variant-specific fields. Code that branches on records
dispatches on `kind` and must handle every RecordKind.

VARIANTS:
- VISIT: GPS-tagged customer visit (coordinates + accuracy radius)
- STOCK_MOVEMENT: quantity delta for a warehouse/product pair
- CASH_RECONCILIATION: counted vs. expected cash for a period, in minor units

IDENTITY:
- record_id is generated on the device and never changes across retries
- version starts at 1 and increases on every local edit
"""
from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Union

from .errors import ValidationError
from .time_utils import normalize_datetime, parse_iso_date, parse_iso_datetime, to_utc_z, utcnow


class RecordKind(str, enum.Enum):
    VISIT = "VISIT"
    STOCK_MOVEMENT = "STOCK_MOVEMENT"
    CASH_RECONCILIATION = "CASH_RECONCILIATION"


# Stock units; count units must carry integral deltas
UNIT_EACH = "EACH"
UNIT_CASE = "CASE"
UNIT_KG = "KG"
UNIT_LITRE = "LITRE"
STOCK_UNITS = {UNIT_EACH, UNIT_CASE, UNIT_KG, UNIT_LITRE}
COUNT_UNITS = {UNIT_EACH, UNIT_CASE}


@dataclass(frozen=True)
class VisitPayload:
    latitude: float
    longitude: float
    accuracy_m: float
    customer_id: str | None = None
    target_latitude: float | None = None
    target_longitude: float | None = None
    outcome: str | None = None
    notes: str | None = None

    @property
    def has_target(self) -> bool:
        return self.target_latitude is not None and self.target_longitude is not None


@dataclass(frozen=True)
class StockMovementPayload:
    warehouse_id: str
    product_id: str
    quantity_delta: Decimal
    unit: str = UNIT_EACH
    reason: str | None = None

    @property
    def bucket(self) -> tuple[str, str, str]:
        """Running-total key this delta is summed into."""
        return (self.warehouse_id, self.product_id, self.unit)


@dataclass(frozen=True)
class CashReconciliationPayload:
    period_date: date
    currency: str
    counted_cents: int
    expected_cents: int
    note: str | None = None

    @property
    def variance_cents(self) -> int:
        return self.counted_cents - self.expected_cents


Payload = Union[VisitPayload, StockMovementPayload, CashReconciliationPayload]

PAYLOAD_TYPES: dict[RecordKind, type] = {
    RecordKind.VISIT: VisitPayload,
    RecordKind.STOCK_MOVEMENT: StockMovementPayload,
    RecordKind.CASH_RECONCILIATION: CashReconciliationPayload,
}


@dataclass(frozen=True)
class SyncableRecord:
    record_id: str
    tenant_id: str
    device_id: str
    kind: RecordKind
    version: int
    created_at_device: datetime
    payload: Payload

    def next_version(self, payload: Payload, *, edited_at: datetime | None = None) -> "SyncableRecord":
        """Local edit: same identity, version + 1."""
        return replace(
            self,
            version=self.version + 1,
            payload=payload,
            created_at_device=edited_at or utcnow(),
        )

    def to_dict(self) -> dict:
        return record_to_dict(self)


def new_record_id() -> str:
    """Client-side identifier; random so devices never collide."""
    return str(uuid.uuid4())


def new_record(
    *,
    tenant_id: str,
    device_id: str,
    payload: Payload,
    record_id: str | None = None,
    created_at_device: datetime | None = None,
) -> SyncableRecord:
    kind = kind_for_payload(payload)
    return SyncableRecord(
        record_id=record_id or new_record_id(),
        tenant_id=tenant_id,
        device_id=device_id,
        kind=kind,
        version=1,
        created_at_device=created_at_device or utcnow(),
        payload=payload,
    )


def kind_for_payload(payload: Payload) -> RecordKind:
    for kind, payload_type in PAYLOAD_TYPES.items():
        if type(payload) is payload_type:
            return kind
    raise ValidationError(f"Unsupported payload type: {type(payload).__name__}")


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------

_VISIT_FIELDS = {
    "latitude", "longitude", "accuracy_m", "customer_id",
    "target_latitude", "target_longitude", "outcome", "notes",
}
_STOCK_FIELDS = {"warehouse_id", "product_id", "quantity_delta", "unit", "reason"}
_CASH_FIELDS = {"period_date", "currency", "counted_cents", "expected_cents", "note"}

_REQUIRED = {
    RecordKind.VISIT: {"latitude", "longitude", "accuracy_m"},
    RecordKind.STOCK_MOVEMENT: {"warehouse_id", "product_id", "quantity_delta"},
    RecordKind.CASH_RECONCILIATION: {"period_date", "currency", "counted_cents", "expected_cents"},
}
_ALLOWED = {
    RecordKind.VISIT: _VISIT_FIELDS,
    RecordKind.STOCK_MOVEMENT: _STOCK_FIELDS,
    RecordKind.CASH_RECONCILIATION: _CASH_FIELDS,
}


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _parse_kind(value: Any) -> RecordKind:
    try:
        return RecordKind(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown record kind: {value!r}")


def _parse_decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, str)):
        try:
            return Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError(f"{name} must be a number")
    if isinstance(value, float):
        # repr round-trips the float without binary noise
        return Decimal(repr(value))
    raise ValidationError(f"{name} must be a number")


def _parse_payload(kind: RecordKind, raw: Any) -> Payload:
    if not isinstance(raw, dict):
        raise ValidationError("payload must be an object")

    unknown = sorted(set(raw) - _ALLOWED[kind])
    if unknown:
        raise ValidationError(f"Fields not allowed for {kind.value}: {', '.join(unknown)}")
    missing = sorted(_REQUIRED[kind] - set(raw))
    if missing:
        raise ValidationError(f"Missing required fields for {kind.value}: {', '.join(missing)}")

    if kind is RecordKind.VISIT:
        return VisitPayload(**raw)

    if kind is RecordKind.STOCK_MOVEMENT:
        data = dict(raw)
        data["quantity_delta"] = _parse_decimal(data["quantity_delta"], "quantity_delta")
        data.setdefault("unit", UNIT_EACH)
        return StockMovementPayload(**data)

    if kind is RecordKind.CASH_RECONCILIATION:
        data = dict(raw)
        period = data["period_date"]
        if not isinstance(period, date):
            try:
                period = parse_iso_date(str(period))
            except ValueError:
                raise ValidationError("period_date must be an ISO-8601 date")
            if period is None:
                raise ValidationError("period_date must be an ISO-8601 date")
        data["period_date"] = period
        return CashReconciliationPayload(**data)

    raise ValidationError(f"Unhandled record kind: {kind}")


def payload_to_dict(kind: RecordKind, payload: Payload) -> dict:
    if kind is RecordKind.VISIT:
        return {
            "latitude": payload.latitude,
            "longitude": payload.longitude,
            "accuracy_m": payload.accuracy_m,
            "customer_id": payload.customer_id,
            "target_latitude": payload.target_latitude,
            "target_longitude": payload.target_longitude,
            "outcome": payload.outcome,
            "notes": payload.notes,
        }
    if kind is RecordKind.STOCK_MOVEMENT:
        return {
            "warehouse_id": payload.warehouse_id,
            "product_id": payload.product_id,
            "quantity_delta": str(payload.quantity_delta),
            "unit": payload.unit,
            "reason": payload.reason,
        }
    if kind is RecordKind.CASH_RECONCILIATION:
        return {
            "period_date": payload.period_date.isoformat(),
            "currency": payload.currency,
            "counted_cents": payload.counted_cents,
            "expected_cents": payload.expected_cents,
            "note": payload.note,
        }
    raise ValidationError(f"Unhandled record kind: {kind}")


def payload_from_dict(kind: RecordKind | str, raw: Any) -> Payload:
    if not isinstance(kind, RecordKind):
        kind = _parse_kind(kind)
    return _parse_payload(kind, raw)


def record_to_dict(record: SyncableRecord) -> dict:
    return {
        "record_id": record.record_id,
        "tenant_id": record.tenant_id,
        "device_id": record.device_id,
        "kind": record.kind.value,
        "version": record.version,
        "created_at_device": to_utc_z(record.created_at_device),
        "payload": payload_to_dict(record.kind, record.payload),
    }


def record_from_dict(data: Any) -> SyncableRecord:
    """
    Build a record from its JSON form.

    Raises ValidationError for structural problems (unknown kind, missing or
    unexpected payload fields, unparseable timestamps). Value ranges are
    checked by fieldsync.validation.validate.
    """
    if not isinstance(data, dict):
        raise ValidationError("record must be an object")

    missing = [
        k for k in ("record_id", "tenant_id", "device_id", "kind", "version", "created_at_device", "payload")
        if k not in data
    ]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    kind = _parse_kind(data["kind"])

    created = data["created_at_device"]
    if isinstance(created, datetime):
        created = normalize_datetime(created)
    else:
        try:
            created = parse_iso_datetime(str(created))
        except ValueError:
            raise ValidationError("created_at_device must be an ISO-8601 datetime")
        if created is None:
            raise ValidationError("created_at_device must be an ISO-8601 datetime")

    return SyncableRecord(
        record_id=_text(data["record_id"]),
        tenant_id=_text(data["tenant_id"]),
        device_id=_text(data["device_id"]),
        kind=kind,
        version=data["version"],
        created_at_device=created,
        payload=_parse_payload(kind, data["payload"]),
    )
