# backend/fieldsync/services/period_service.py
"""
Cash reconciliation periods.

WHY: Once a period has been reconciled and closed, late or retried cash
submissions must not silently change it. Closed periods reject submissions
with PERIOD_CLOSED; corrections require an explicit re-open by an operator.

LIFECYCLE:
1. OPEN (implicit): no row exists yet
2. CLOSED: close_period()
3. OPEN: reopen_period() keeps the row for audit
"""
from __future__ import annotations

import re
from datetime import date

from ..errors import PeriodError
from ..extensions import db
from ..models import ReconciliationPeriod
from ..time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .settings_service import (
    GRANULARITY_DAILY,
    GRANULARITY_MONTHLY,
    GRANULARITY_WEEKLY,
    get_period_granularity,
)
from .tenant_service import require_active_tenant


PERIOD_STATUS_OPEN = "OPEN"
PERIOD_STATUS_CLOSED = "CLOSED"

_KEY_PATTERNS = {
    GRANULARITY_DAILY: re.compile(r"^\d{4}-\d{2}-\d{2}$"),
    GRANULARITY_WEEKLY: re.compile(r"^\d{4}-W\d{2}$"),
    GRANULARITY_MONTHLY: re.compile(r"^\d{4}-\d{2}$"),
}


def period_key_for(day: date, granularity: str) -> str:
    """
    Period key containing `day`.

    DAILY   -> "2026-10-18"
    WEEKLY  -> "2026-W42" (ISO week)
    MONTHLY -> "2026-10"
    """
    if granularity == GRANULARITY_DAILY:
        return day.isoformat()
    if granularity == GRANULARITY_WEEKLY:
        iso_year, iso_week, _ = day.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    if granularity == GRANULARITY_MONTHLY:
        return f"{day.year:04d}-{day.month:02d}"
    raise PeriodError(f"Unknown period granularity: {granularity}")


def period_key_for_tenant(tenant_id: str, day: date) -> str:
    return period_key_for(day, get_period_granularity(tenant_id))


def _normalize_key(tenant_id: str, period_key: str) -> str:
    key = (period_key or "").strip().upper()
    granularity = get_period_granularity(tenant_id)
    if not _KEY_PATTERNS[granularity].match(key):
        raise PeriodError(f"Invalid {granularity} period key: {period_key!r}")
    return key


def get_period(tenant_id: str, period_key: str) -> ReconciliationPeriod | None:
    return db.session.query(ReconciliationPeriod).filter_by(
        tenant_id=tenant_id,
        period_key=period_key,
    ).first()


def is_period_closed(tenant_id: str, period_key: str | None) -> bool:
    if not period_key:
        return False
    period = get_period(tenant_id, period_key)
    return period is not None and period.is_closed


def close_period(tenant_id: str, period_key: str, closed_by: str | None = None) -> ReconciliationPeriod:
    """
    Close a reconciliation period (operator action).

    Raises:
        UnknownTenant: tenant missing or inactive
        PeriodError: invalid key or period already closed
    """
    def _op():
        require_active_tenant(tenant_id)
        key = _normalize_key(tenant_id, period_key)

        period = lock_for_update(
            db.session.query(ReconciliationPeriod).filter_by(tenant_id=tenant_id, period_key=key)
        ).first()
        if period is None:
            period = ReconciliationPeriod(tenant_id=tenant_id, period_key=key)
            db.session.add(period)
        elif period.is_closed:
            raise PeriodError(f"Period {key} is already closed")

        period.status = PERIOD_STATUS_CLOSED
        period.closed_at = utcnow()
        period.closed_by = closed_by
        db.session.flush()
        return period

    return run_with_retry(_op, retry_integrity=True)


def reopen_period(tenant_id: str, period_key: str, reopened_by: str | None = None) -> ReconciliationPeriod:
    """
    Re-open a closed period so corrected cash submissions can be merged.

    Raises:
        PeriodError: invalid key or period not closed
    """
    def _op():
        require_active_tenant(tenant_id)
        key = _normalize_key(tenant_id, period_key)

        period = lock_for_update(
            db.session.query(ReconciliationPeriod).filter_by(tenant_id=tenant_id, period_key=key)
        ).first()
        if period is None or not period.is_closed:
            raise PeriodError(f"Period {key} is not closed")

        period.status = PERIOD_STATUS_OPEN
        period.reopened_at = utcnow()
        period.reopened_by = reopened_by
        db.session.flush()
        return period

    return run_with_retry(_op)


def list_periods(tenant_id: str, status: str | None = None) -> list[ReconciliationPeriod]:
    query = db.session.query(ReconciliationPeriod).filter_by(tenant_id=tenant_id)
    if status:
        query = query.filter(ReconciliationPeriod.status == status.upper())
    return query.order_by(ReconciliationPeriod.period_key.asc()).all()
