"""
Pytest fixtures for FieldSync backend tests.

Provides the in-memory store, tenant fixtures, device outboxes on tmp_path
and a record factory.
"""

from dataclasses import replace
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from fieldsync import create_app
from fieldsync.device.cache import LocalReadCache
from fieldsync.device.local_db import DeviceDatabase
from fieldsync.device.outbox import OutboxStore
from fieldsync.device.transport import LocalStoreTransport
from fieldsync.extensions import db
from fieldsync.records import (
    CashReconciliationPayload,
    StockMovementPayload,
    VisitPayload,
    new_record,
)
from fieldsync.services.tenant_service import create_tenant


TENANT_A = "tenant-a"
TENANT_B = "tenant-b"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SYNC_PERIOD_GRANULARITY': 'DAILY',
        'SYNC_MAX_PUSH_BATCH': 100,
        'SYNC_PULL_PAGE_SIZE': 50,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def tenant_a(db_session):
    """Create tenant A."""
    tenant = create_tenant(TENANT_A, "Tenant A - Acme Field Sales")
    db_session.commit()
    return tenant


@pytest.fixture(scope='function')
def tenant_b(db_session):
    """Create tenant B."""
    tenant = create_tenant(TENANT_B, "Tenant B - Beta Distribution")
    db_session.commit()
    return tenant


@pytest.fixture(scope='function')
def device_db(tmp_path):
    """Device-local SQLite file."""
    database = DeviceDatabase(tmp_path / "device-1.sqlite3")
    yield database
    database.dispose()


@pytest.fixture(scope='function')
def outbox(device_db):
    """Outbox for device-1 of tenant A."""
    return OutboxStore(device_db, TENANT_A, "device-1")


@pytest.fixture(scope='function')
def cache(device_db):
    return LocalReadCache(device_db)


@pytest.fixture(scope='function')
def transport(app):
    return LocalStoreTransport(app)


class RecordFactory:
    """Builds valid records with sensible defaults."""

    def __init__(self):
        self.clock = datetime(2026, 10, 18, 9, 0, 0)

    def _tick(self) -> datetime:
        self.clock += timedelta(seconds=1)
        return self.clock

    def visit(self, tenant_id=TENANT_A, device_id="device-1", record_id=None, **payload):
        fields = {"latitude": -26.2041, "longitude": 28.0473, "accuracy_m": 12.0, "customer_id": "cust-1"}
        fields.update(payload)
        return new_record(
            tenant_id=tenant_id,
            device_id=device_id,
            record_id=record_id,
            created_at_device=self._tick(),
            payload=VisitPayload(**fields),
        )

    def stock(self, delta="5", tenant_id=TENANT_A, device_id="device-1", record_id=None, **payload):
        fields = {"warehouse_id": "WH-1", "product_id": "SKU-1", "quantity_delta": Decimal(delta), "unit": "EACH"}
        fields.update(payload)
        return new_record(
            tenant_id=tenant_id,
            device_id=device_id,
            record_id=record_id,
            created_at_device=self._tick(),
            payload=StockMovementPayload(**fields),
        )

    def cash(self, counted=10000, expected=10000, tenant_id=TENANT_A, device_id="device-1",
             record_id=None, period_date=date(2026, 10, 18), **payload):
        fields = {
            "period_date": period_date,
            "currency": "ZAR",
            "counted_cents": counted,
            "expected_cents": expected,
        }
        fields.update(payload)
        return new_record(
            tenant_id=tenant_id,
            device_id=device_id,
            record_id=record_id,
            created_at_device=self._tick(),
            payload=CashReconciliationPayload(**fields),
        )

    def edit(self, record, **changes):
        """Next local version with some payload fields changed."""
        return record.next_version(replace(record.payload, **changes), edited_at=self._tick())


@pytest.fixture(scope='function')
def factory():
    return RecordFactory()
