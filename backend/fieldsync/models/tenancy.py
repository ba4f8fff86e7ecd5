from __future__ import annotations

from ..extensions import db
from fieldsync.time_utils import to_utc_z


class Tenant(db.Model):
    """
    Multi-tenant root: every synced record belongs to exactly one tenant.

    WHY: Shared-database multi-tenancy with strict isolation. The tenant id
    is a stable string chosen by the platform (devices carry it in every
    record), so it is the primary key rather than a surrogate integer.
    """
    __tablename__ = "tenants"

    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(255), nullable=False)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Tenant id={self.id!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class TenantSetting(db.Model):
    """
    Key-value sync settings at the tenant level.

    Keys are defined in services.settings_service.SETTINGS_CATALOG; a missing
    row means the catalog default (taken from app config) applies.
    """
    __tablename__ = "tenant_settings"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "key", name="uq_tenant_settings_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), db.ForeignKey("tenants.id"), nullable=False, index=True)

    key = db.Column(db.String(128), nullable=False)
    value = db.Column(db.Text, nullable=True)

    updated_by = db.Column(db.String(128), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "key": self.key,
            "value": self.value,
            "updated_by": self.updated_by,
            "updated_at": to_utc_z(self.updated_at),
        }


class ReconciliationPeriod(db.Model):
    """
    Cash reconciliation period state for a tenant.

    LIFECYCLE:
    - No row: period is OPEN (periods open implicitly)
    - CLOSED: cash submissions for the period are rejected with PERIOD_CLOSED
    - OPEN (after re-open): explicit operator action, recorded for audit

    Re-opening is the only way to correct a closed period; the sync core never
    does it on its own.
    """
    __tablename__ = "reconciliation_periods"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "period_key", name="uq_reconciliation_periods_tenant_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), db.ForeignKey("tenants.id"), nullable=False, index=True)
    period_key = db.Column(db.String(16), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="CLOSED", index=True)

    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_by = db.Column(db.String(128), nullable=True)
    reopened_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reopened_by = db.Column(db.String(128), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_closed(self) -> bool:
        return self.status == "CLOSED"

    def __repr__(self) -> str:
        return f"<ReconciliationPeriod tenant={self.tenant_id!r} key={self.period_key!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "period_key": self.period_key,
            "status": self.status,
            "closed_at": to_utc_z(self.closed_at),
            "closed_by": self.closed_by,
            "reopened_at": to_utc_z(self.reopened_at),
            "reopened_by": self.reopened_by,
        }
