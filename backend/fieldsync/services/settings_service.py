from __future__ import annotations

import math
from typing import Any

from flask import current_app

from ..extensions import db
from ..models import TenantSetting
from ..validation import ValidationPolicy
from .tenant_service import get_tenant

"""
Tenant sync settings.

Resolution: TenantSetting row for (tenant, key) -> catalog default from app config.
Values are stored as text and coerced through the catalog type on read and write.
"""

GRANULARITY_DAILY = "DAILY"
GRANULARITY_WEEKLY = "WEEKLY"
GRANULARITY_MONTHLY = "MONTHLY"
GRANULARITIES = [GRANULARITY_DAILY, GRANULARITY_WEEKLY, GRANULARITY_MONTHLY]

KEY_MAX_ACCURACY = "gps.max_accuracy_m"
KEY_GEOFENCE_RADIUS = "gps.geofence_radius_m"
KEY_PERIOD_GRANULARITY = "cash.period_granularity"

SETTINGS_CATALOG = {
    KEY_MAX_ACCURACY: {
        "type": "float",
        "config_key": "SYNC_MAX_GPS_ACCURACY_M",
        "min": 0.0,
        "description": "GPS accuracy radius (meters) above which visits are flagged LOW_LOCATION_CONFIDENCE",
    },
    KEY_GEOFENCE_RADIUS: {
        "type": "float",
        "config_key": "SYNC_GEOFENCE_RADIUS_M",
        "min": 0.0,
        "description": "Allowed distance (meters) between a visit and the customer location",
    },
    KEY_PERIOD_GRANULARITY: {
        "type": "choice",
        "config_key": "SYNC_PERIOD_GRANULARITY",
        "choices": GRANULARITIES,
        "description": "Cash reconciliation period length",
    },
}


class SettingsError(ValueError):
    pass


class SettingsValidationError(SettingsError):
    pass


class SettingsNotFoundError(SettingsError):
    pass


def _catalog_entry(key: str) -> dict:
    entry = SETTINGS_CATALOG.get(key)
    if entry is None:
        raise SettingsNotFoundError(f"Unknown setting: {key}")
    return entry


def _coerce(key: str, value: Any):
    entry = _catalog_entry(key)
    if entry["type"] == "float":
        if isinstance(value, bool):
            raise SettingsValidationError(f"{key} must be a number")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise SettingsValidationError(f"{key} must be a number")
        if not math.isfinite(number) or number < entry.get("min", -math.inf):
            raise SettingsValidationError(f"{key} must be a finite number >= {entry.get('min')}")
        return number
    if entry["type"] == "choice":
        text = str(value or "").strip().upper()
        if text not in entry["choices"]:
            raise SettingsValidationError(f"{key} must be one of: {', '.join(entry['choices'])}")
        return text
    raise SettingsValidationError(f"Unsupported setting type for {key}")


def get_default(key: str):
    entry = _catalog_entry(key)
    return _coerce(key, current_app.config[entry["config_key"]])


def get_tenant_setting(tenant_id: str, key: str):
    _catalog_entry(key)
    row = db.session.query(TenantSetting).filter_by(tenant_id=tenant_id, key=key).first()
    if row is None or row.value is None:
        return get_default(key)
    return _coerce(key, row.value)


def get_tenant_settings(tenant_id: str) -> dict:
    """All catalog keys with their effective value for the tenant."""
    return {key: get_tenant_setting(tenant_id, key) for key in sorted(SETTINGS_CATALOG)}


def set_tenant_setting(tenant_id: str, key: str, value: Any, updated_by: str | None = None) -> TenantSetting:
    """Upsert a tenant override. Caller commits."""
    if get_tenant(tenant_id) is None:
        raise SettingsNotFoundError(f"Tenant {tenant_id} not found")
    coerced = _coerce(key, value)

    row = db.session.query(TenantSetting).filter_by(tenant_id=tenant_id, key=key).first()
    if row is None:
        row = TenantSetting(tenant_id=tenant_id, key=key)
        db.session.add(row)
    row.value = str(coerced)
    row.updated_by = updated_by
    db.session.flush()
    return row


def clear_tenant_setting(tenant_id: str, key: str) -> bool:
    """Drop an override so the default applies again. Caller commits."""
    _catalog_entry(key)
    deleted = db.session.query(TenantSetting).filter_by(tenant_id=tenant_id, key=key).delete()
    return bool(deleted)


def get_validation_policy(tenant_id: str) -> ValidationPolicy:
    return ValidationPolicy(
        max_accuracy_m=get_tenant_setting(tenant_id, KEY_MAX_ACCURACY),
        geofence_radius_m=get_tenant_setting(tenant_id, KEY_GEOFENCE_RADIUS),
    )


def get_period_granularity(tenant_id: str) -> str:
    return get_tenant_setting(tenant_id, KEY_PERIOD_GRANULARITY)
