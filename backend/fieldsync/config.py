# backend/fieldsync/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/fieldsync.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///fieldsync.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Tenant settings fall back to these when a tenant has no override
    SYNC_MAX_GPS_ACCURACY_M = _env_float("SYNC_MAX_GPS_ACCURACY_M", 100.0)
    SYNC_GEOFENCE_RADIUS_M = _env_float("SYNC_GEOFENCE_RADIUS_M", 100.0)
    SYNC_PERIOD_GRANULARITY = os.environ.get("SYNC_PERIOD_GRANULARITY", "DAILY")

    SYNC_PULL_PAGE_SIZE = _env_int("SYNC_PULL_PAGE_SIZE", 200)
    SYNC_MAX_PUSH_BATCH = _env_int("SYNC_MAX_PUSH_BATCH", 100)

    # Per-record write serialization
    SYNC_LOCK_STRIPES = _env_int("SYNC_LOCK_STRIPES", 64)
    SYNC_WRITE_ATTEMPTS = _env_int("SYNC_WRITE_ATTEMPTS", 3)
