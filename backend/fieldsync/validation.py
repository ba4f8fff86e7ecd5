from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from .errors import ValidationError
from .records import (
    COUNT_UNITS,
    PAYLOAD_TYPES,
    STOCK_UNITS,
    CashReconciliationPayload,
    RecordKind,
    StockMovementPayload,
    SyncableRecord,
    VisitPayload,
)

"""
Record validation invariants (authoritative)

- Validation is pure: no storage access, no clock reads, same input -> same result.
- Hard errors reject the record (it is never enqueued or stored).
- Flags annotate an otherwise valid record; downstream consumers decide what to do.
- Cash amounts are integers in minor currency units (no floats anywhere).
"""

# Flags (non-fatal)
FLAG_LOW_LOCATION_CONFIDENCE = "LOW_LOCATION_CONFIDENCE"
FLAG_OUTSIDE_GEOFENCE = "OUTSIDE_GEOFENCE"
FLAG_SUSPICIOUS_PRECISION = "SUSPICIOUS_PRECISION"

EARTH_RADIUS_M = 6371e3

# Smallest stock quantity step (stored as integer thousandths)
QUANTITY_STEP = Decimal("0.001")
MAX_QUANTITY_DELTA = Decimal("1000000000000")


@dataclass(frozen=True)
class ValidationPolicy:
    """
    Tenant-level thresholds used by validate().

    max_accuracy_m: GPS accuracy radius above which a visit is flagged
    geofence_radius_m: allowed distance between visit and customer location
    max_coordinate_decimals: more decimals than a real receiver reports hints at spoofing
    """
    max_accuracy_m: float = 100.0
    geofence_radius_m: float = 100.0
    max_coordinate_decimals: int = 8
    max_id_length: int = 64


DEFAULT_POLICY = ValidationPolicy()


@dataclass(frozen=True)
class ValidationResult:
    errors: tuple[str, ...] = ()
    flags: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors


def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance (haversine) in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return isinstance(value, (int, float)) and math.isfinite(value)


def _is_strict_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _decimal_places(value: float) -> int:
    try:
        exponent = Decimal(repr(value)).as_tuple().exponent
    except InvalidOperation:
        return 0
    if not isinstance(exponent, int):
        return 0
    return max(0, -exponent)


def _check_id(name: str, value: Any, policy: ValidationPolicy, errors: list[str]) -> None:
    if not isinstance(value, str) or not value.strip():
        errors.append(f"{name} is required")
    elif len(value) > policy.max_id_length:
        errors.append(f"{name} must be at most {policy.max_id_length} characters")


def _check_coordinate_pair(prefix: str, lat: Any, lon: Any, errors: list[str]) -> bool:
    valid = True
    if not _is_number(lat) or not -90.0 <= lat <= 90.0:
        errors.append(f"{prefix}latitude must be a number between -90 and 90")
        valid = False
    if not _is_number(lon) or not -180.0 <= lon <= 180.0:
        errors.append(f"{prefix}longitude must be a number between -180 and 180")
        valid = False
    return valid


def _validate_visit(payload: VisitPayload, policy: ValidationPolicy, errors: list[str], flags: list[str]) -> None:
    coords_ok = _check_coordinate_pair("", payload.latitude, payload.longitude, errors)

    if not _is_number(payload.accuracy_m) or payload.accuracy_m < 0:
        errors.append("accuracy_m must be a non-negative number")
    elif payload.accuracy_m > policy.max_accuracy_m:
        flags.append(FLAG_LOW_LOCATION_CONFIDENCE)

    if payload.customer_id is not None and not isinstance(payload.customer_id, str):
        errors.append("customer_id must be a string")

    has_lat = payload.target_latitude is not None
    has_lon = payload.target_longitude is not None
    if has_lat != has_lon:
        errors.append("target_latitude and target_longitude must be provided together")
    elif payload.has_target:
        target_ok = _check_coordinate_pair("target_", payload.target_latitude, payload.target_longitude, errors)
        if coords_ok and target_ok:
            distance = distance_meters(
                payload.latitude, payload.longitude,
                payload.target_latitude, payload.target_longitude,
            )
            if distance > policy.geofence_radius_m:
                flags.append(FLAG_OUTSIDE_GEOFENCE)

    if coords_ok and (
        _decimal_places(payload.latitude) > policy.max_coordinate_decimals
        or _decimal_places(payload.longitude) > policy.max_coordinate_decimals
    ):
        flags.append(FLAG_SUSPICIOUS_PRECISION)


def _validate_stock(payload: StockMovementPayload, policy: ValidationPolicy, errors: list[str], flags: list[str]) -> None:
    _check_id("warehouse_id", payload.warehouse_id, policy, errors)
    _check_id("product_id", payload.product_id, policy, errors)

    delta = payload.quantity_delta
    if not isinstance(delta, Decimal) or not delta.is_finite():
        errors.append("quantity_delta must be a finite number")
    elif delta == 0:
        errors.append("quantity_delta must not be zero")
    elif abs(delta) >= MAX_QUANTITY_DELTA:
        errors.append("quantity_delta is out of range")
    elif payload.unit in COUNT_UNITS and delta != delta.to_integral_value():
        errors.append(f"quantity_delta must be a whole number for unit {payload.unit}")
    elif delta != delta.quantize(QUANTITY_STEP):
        errors.append("quantity_delta supports at most 3 decimal places")

    if payload.unit not in STOCK_UNITS:
        errors.append(f"unit must be one of: {', '.join(sorted(STOCK_UNITS))}")


def _validate_cash(payload: CashReconciliationPayload, policy: ValidationPolicy, errors: list[str], flags: list[str]) -> None:
    if not isinstance(payload.period_date, date) or isinstance(payload.period_date, datetime):
        errors.append("period_date must be a date")

    currency = payload.currency
    if not isinstance(currency, str) or len(currency) != 3 or not currency.isalpha() or not currency.isupper():
        errors.append("currency must be a three-letter ISO-4217 code")

    for name in ("counted_cents", "expected_cents"):
        value = getattr(payload, name)
        if not _is_strict_int(value):
            errors.append(f"{name} must be an integer amount in minor units")
        elif value < 0:
            errors.append(f"{name} cannot be negative")


def validate(record: SyncableRecord, policy: ValidationPolicy | None = None) -> ValidationResult:
    """
    Validate a record without touching storage.

    Returns a ValidationResult; errors make the record unacceptable, flags
    (e.g. LOW_LOCATION_CONFIDENCE) do not.
    """
    policy = policy or DEFAULT_POLICY
    errors: list[str] = []
    flags: list[str] = []

    _check_id("record_id", record.record_id, policy, errors)
    _check_id("tenant_id", record.tenant_id, policy, errors)
    _check_id("device_id", record.device_id, policy, errors)

    if not _is_strict_int(record.version) or record.version < 1:
        errors.append("version must be an integer >= 1")
    if not isinstance(record.created_at_device, datetime):
        errors.append("created_at_device must be a datetime")

    try:
        kind = RecordKind(record.kind)
    except ValueError:
        errors.append(f"Unknown record kind: {record.kind!r}")
        return ValidationResult(errors=tuple(errors))
    if type(record.payload) is not PAYLOAD_TYPES[kind]:
        errors.append(f"payload does not match kind {kind.value}")
        return ValidationResult(errors=tuple(errors))

    if kind is RecordKind.VISIT:
        _validate_visit(record.payload, policy, errors, flags)
    elif kind is RecordKind.STOCK_MOVEMENT:
        _validate_stock(record.payload, policy, errors, flags)
    elif kind is RecordKind.CASH_RECONCILIATION:
        _validate_cash(record.payload, policy, errors, flags)
    else:
        errors.append(f"Unhandled record kind: {kind.value}")

    return ValidationResult(errors=tuple(errors), flags=tuple(flags))


def ensure_valid(record: SyncableRecord, policy: ValidationPolicy | None = None) -> ValidationResult:
    """validate() that raises ValidationError instead of returning errors."""
    result = validate(record, policy)
    if not result.ok:
        raise ValidationError("; ".join(result.errors), result.errors)
    return result
