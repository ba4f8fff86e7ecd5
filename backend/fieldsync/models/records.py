from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from fieldsync.records import RecordKind, SyncableRecord, payload_from_dict
from fieldsync.time_utils import to_utc_z

# Stock quantities are stored as integer thousandths of a unit
QUANTITY_SCALE = 1000


class ServerRecord(db.Model):
    """
    Authoritative state of one synced record.

    IDENTITY:
    - record_id is globally unique (client generated) and never reused
    - tenant_id is fixed by the first accepted submission; later submissions
      carrying another tenant are rejected

    VERSIONING:
    - version: latest client version folded into this row
    - server_version: incremented by SQLAlchemy on every accepted update
      (optimistic lock column); never decreases
    - merge_history lists every (record_id, version, device_id) folded in, in order

    Rows are never deleted, only superseded in place.
    """
    __tablename__ = "server_records"
    __table_args__ = (
        db.UniqueConstraint("record_id", name="uq_server_records_record_id"),
        db.Index("ix_server_records_tenant_kind", "tenant_id", "kind"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    record_id = db.Column(db.String(64), nullable=False)
    tenant_id = db.Column(db.String(64), db.ForeignKey("tenants.id"), nullable=False, index=True)
    kind = db.Column(db.String(32), nullable=False)

    owner_device_id = db.Column(db.String(64), nullable=False)
    last_device_id = db.Column(db.String(64), nullable=False)

    version = db.Column(db.Integer, nullable=False)
    server_version = db.Column(db.Integer, nullable=False, default=1)

    created_at_device = db.Column(db.DateTime(timezone=True), nullable=False)
    server_received_at = db.Column(db.DateTime(timezone=True), nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False)

    payload = db.Column(db.JSON, nullable=False)
    flags = db.Column(db.JSON, nullable=False, default=list)

    # Cash reconciliation only
    period_key = db.Column(db.String(16), nullable=True, index=True)

    tenant = db.relationship("Tenant", backref=db.backref("records", lazy=True))
    merge_history = db.relationship(
        "MergeHistoryEntry",
        order_by="MergeHistoryEntry.id",
        lazy=True,
        back_populates="server_record",
    )
    __mapper_args__ = {"version_id_col": server_version}

    def __repr__(self) -> str:
        return (
            f"<ServerRecord record_id={self.record_id!r} kind={self.kind} "
            f"version={self.version} server_version={self.server_version}>"
        )

    @property
    def record_kind(self) -> RecordKind:
        return RecordKind(self.kind)

    def to_record(self) -> SyncableRecord:
        """Current state as a SyncableRecord (attributed to the last writer)."""
        return SyncableRecord(
            record_id=self.record_id,
            tenant_id=self.tenant_id,
            device_id=self.last_device_id,
            kind=self.record_kind,
            version=self.version,
            created_at_device=self.created_at_device,
            payload=payload_from_dict(self.record_kind, self.payload),
        )

    def to_dict(self, include_history: bool = False) -> dict:
        data = {
            "record_id": self.record_id,
            "tenant_id": self.tenant_id,
            "kind": self.kind,
            "owner_device_id": self.owner_device_id,
            "last_device_id": self.last_device_id,
            "version": self.version,
            "server_version": self.server_version,
            "created_at_device": to_utc_z(self.created_at_device),
            "server_received_at": to_utc_z(self.server_received_at),
            "updated_at": to_utc_z(self.updated_at),
            "payload": dict(self.payload or {}),
            "flags": list(self.flags or []),
            "period_key": self.period_key,
        }
        if include_history:
            data["merge_history"] = [entry.to_dict() for entry in self.merge_history]
        return data


class MergeHistoryEntry(db.Model):
    """
    Append-only log of client submissions folded into a ServerRecord.

    - One row per accepted (record_id, version, device_id); the unique
      constraint is the storage-level guard against double application.
    - id is monotonic (sqlite_autoincrement) and doubles as the tenant change
      stream position used by pull cursors.
    - No updates/deletes.
    """
    __tablename__ = "merge_history"
    __table_args__ = (
        db.UniqueConstraint("record_id", "version", "device_id", name="uq_merge_history_submission"),
        db.Index("ix_merge_history_tenant_id_id", "tenant_id", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    server_record_id = db.Column(db.Integer, db.ForeignKey("server_records.id"), nullable=False, index=True)
    tenant_id = db.Column(db.String(64), nullable=False)

    record_id = db.Column(db.String(64), nullable=False, index=True)
    version = db.Column(db.Integer, nullable=False)
    device_id = db.Column(db.String(64), nullable=False)

    # server_version the record reached by folding this submission
    server_version = db.Column(db.Integer, nullable=False)

    created_at_device = db.Column(db.DateTime(timezone=True), nullable=False)
    folded_at = db.Column(db.DateTime(timezone=True), nullable=False)

    server_record = db.relationship("ServerRecord", back_populates="merge_history")

    def __repr__(self) -> str:
        return f"<MergeHistoryEntry id={self.id} record_id={self.record_id!r} version={self.version} device={self.device_id!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "record_id": self.record_id,
            "version": self.version,
            "device_id": self.device_id,
            "server_version": self.server_version,
            "created_at_device": to_utc_z(self.created_at_device),
            "folded_at": to_utc_z(self.folded_at),
        }


class StockLevel(db.Model):
    """
    Running stock total per tenant/warehouse/product/unit.

    Derived purely from folded StockMovement deltas; only ever changed by
    adding a delta, never by assigning a value.
    """
    __tablename__ = "stock_levels"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "warehouse_id", "product_id", "unit", name="uq_stock_levels_bucket"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), db.ForeignKey("tenants.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.String(64), nullable=False)
    product_id = db.Column(db.String(64), nullable=False)
    unit = db.Column(db.String(16), nullable=False)

    # Integer thousandths: exact sums on every backend
    quantity_milli = db.Column(db.BigInteger, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def quantity(self) -> Decimal:
        return Decimal(self.quantity_milli) / QUANTITY_SCALE

    def __repr__(self) -> str:
        return f"<StockLevel {self.warehouse_id}/{self.product_id} {self.quantity} {self.unit}>"

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "warehouse_id": self.warehouse_id,
            "product_id": self.product_id,
            "unit": self.unit,
            "quantity": str(self.quantity),
            "updated_at": to_utc_z(self.updated_at),
        }


class DeviceCursor(db.Model):
    """Per-device high-water mark into the tenant change stream."""
    __tablename__ = "device_cursors"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "device_id", name="uq_device_cursors_device"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), db.ForeignKey("tenants.id"), nullable=False, index=True)
    device_id = db.Column(db.String(64), nullable=False)

    cursor = db.Column(db.Integer, nullable=False, default=0)
    last_pull_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "device_id": self.device_id,
            "cursor": self.cursor,
            "last_pull_at": to_utc_z(self.last_pull_at),
        }
