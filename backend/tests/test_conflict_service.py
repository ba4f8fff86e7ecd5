# Overview: Pytest coverage for identity resolution and per-kind merge rules.

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from fieldsync.errors import ConflictingOwner, PeriodClosed
from fieldsync.models import ServerRecord
from fieldsync.records import StockMovementPayload, payload_to_dict
from fieldsync.services import conflict_service, identity_service, store_service
from fieldsync.services.conflict_service import ACTION_APPLY, ACTION_REJECT


def _stored(record, **overrides):
    """Unsaved ServerRecord mirroring `record` as the current server state."""
    fields = dict(
        record_id=record.record_id,
        tenant_id=record.tenant_id,
        kind=record.kind.value,
        owner_device_id=record.device_id,
        last_device_id=record.device_id,
        version=record.version,
        server_version=1,
        created_at_device=record.created_at_device,
        payload=payload_to_dict(record.kind, record.payload),
        flags=[],
    )
    fields.update(overrides)
    return ServerRecord(**fields)


class TestDecide:
    """Pure merge decisions."""

    def test_new_record_applies(self, factory):
        assert conflict_service.decide(factory.visit(), None).action == ACTION_APPLY

    def test_new_cash_in_closed_period_rejected(self, factory):
        decision = conflict_service.decide(factory.cash(), None, period_closed=True)
        assert decision.action == ACTION_REJECT
        assert decision.reason == "PERIOD_CLOSED"

    def test_visit_from_other_device_conflicts(self, factory):
        v1 = factory.visit(device_id="device-1")
        foreign = factory.visit(device_id="device-2", record_id=v1.record_id)
        foreign = foreign.next_version(foreign.payload)

        decision = conflict_service.decide(foreign, _stored(v1))
        assert decision.reason == "CONFLICTING_OWNER"

    def test_visit_owner_newer_version_applies(self, factory):
        v1 = factory.visit()
        v2 = factory.edit(v1, outcome="ORDER_TAKEN")
        assert conflict_service.decide(v2, _stored(v1)).applies

    def test_stock_from_other_device_conflicts(self, factory):
        s1 = factory.stock("5", device_id="device-1")
        foreign = factory.stock("7", device_id="device-2", record_id=s1.record_id)
        assert conflict_service.decide(foreign, _stored(s1)).reason == "CONFLICTING_OWNER"

    def test_cash_from_other_device_applies_when_newer(self, factory):
        c1 = factory.cash(device_id="device-1")
        other = factory.cash(device_id="device-2", record_id=c1.record_id, counted=9000)
        other = other.next_version(other.payload, edited_at=c1.created_at_device + timedelta(minutes=5))

        assert conflict_service.decide(other, _stored(c1)).applies

    def test_cash_existing_period_closed_rejected(self, factory):
        c1 = factory.cash()
        c2 = factory.edit(c1, counted_cents=1)
        decision = conflict_service.decide(c2, _stored(c1), existing_period_closed=True)
        assert decision.reason == "PERIOD_CLOSED"

    def test_kind_mismatch_rejected(self, factory):
        visit = factory.visit()
        stock = factory.stock(record_id=visit.record_id)
        stock = stock.next_version(stock.payload)
        assert conflict_service.decide(stock, _stored(visit)).reason == "KIND_MISMATCH"

    def test_equal_version_tie_break_by_timestamp_then_device(self, factory):
        """Same version from two devices: later created_at_device wins, then higher device_id."""
        c1 = factory.cash(device_id="device-b")
        stored = _stored(c1)

        later = factory.cash(device_id="device-a", record_id=c1.record_id)
        assert conflict_service.decide(later, stored).applies

        same_time_lower_device = factory.cash(device_id="device-a", record_id=c1.record_id)
        same_time_lower_device = replace(same_time_lower_device, created_at_device=c1.created_at_device)
        assert conflict_service.decide(same_time_lower_device, stored).reason == "SUPERSEDED"

    def test_precedence_key_orders_version_first(self, factory):
        v1 = factory.visit()
        v2 = factory.edit(v1, notes="x")
        assert conflict_service.precedence_key(v2) > conflict_service.precedence_key(v1)

    def test_check_merge_raises_typed_rejection(self, factory):
        c1 = factory.cash()
        with pytest.raises(PeriodClosed):
            conflict_service.check_merge(c1, None, period_closed=True)

        v1 = factory.visit(device_id="device-1")
        foreign = factory.visit(device_id="device-2", record_id=v1.record_id)
        with pytest.raises(ConflictingOwner):
            conflict_service.check_merge(foreign.next_version(foreign.payload), _stored(v1))


class TestStockAdjustments:

    def _payload(self, delta, warehouse="WH-1"):
        return StockMovementPayload(warehouse_id=warehouse, product_id="SKU-1", quantity_delta=Decimal(delta))

    def test_first_version_adds_delta(self):
        assert conflict_service.stock_adjustments(None, self._payload("5")) == {("WH-1", "SKU-1", "EACH"): Decimal("5")}

    def test_same_bucket_applies_difference(self):
        adjustments = conflict_service.stock_adjustments(self._payload("5"), self._payload("8"))
        assert adjustments == {("WH-1", "SKU-1", "EACH"): Decimal("3")}

    def test_unchanged_delta_is_empty(self):
        assert conflict_service.stock_adjustments(self._payload("5"), self._payload("5")) == {}

    def test_moved_bucket_reverses_old(self):
        adjustments = conflict_service.stock_adjustments(self._payload("5"), self._payload("5", warehouse="WH-2"))
        assert adjustments == {
            ("WH-1", "SKU-1", "EACH"): Decimal("-5"),
            ("WH-2", "SKU-1", "EACH"): Decimal("5"),
        }


class TestIdentityResolution:
    """resolve() against stored records."""

    def test_unknown_record_is_new(self, db_session, tenant_a, factory):
        assert identity_service.resolve(factory.visit()).outcome == identity_service.RESOLUTION_NEW

    def test_replay_is_duplicate(self, db_session, tenant_a, factory):
        record = factory.visit()
        store_service.accept(record)

        resolution = identity_service.resolve(record)
        assert resolution.outcome == identity_service.RESOLUTION_DUPLICATE
        assert resolution.existing.record_id == record.record_id

    def test_stale_version_is_superseded(self, db_session, tenant_a, factory):
        v1 = factory.visit()
        v2 = factory.edit(v1, notes="newer")
        store_service.accept(v1)
        store_service.accept(v2)

        assert identity_service.resolve(v1).outcome == identity_service.RESOLUTION_SUPERSEDED

    def test_next_version_is_new_against_existing(self, db_session, tenant_a, factory):
        v1 = factory.visit()
        store_service.accept(v1)

        resolution = identity_service.resolve(factory.edit(v1, notes="v2"))
        assert resolution.is_new
        assert resolution.existing is not None

    def test_has_folded_keys_on_device(self, db_session, tenant_a, factory):
        record = factory.cash(device_id="device-1")
        store_service.accept(record)

        assert identity_service.has_folded(record.record_id, 1, "device-1")
        assert not identity_service.has_folded(record.record_id, 1, "device-2")
