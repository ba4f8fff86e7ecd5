# Overview: Pytest coverage for the flask CLI command groups.

import json

from fieldsync.services import store_service


class TestTenantCommands:

    def test_create_and_list(self, app, db_session):
        runner = app.test_cli_runner()

        result = runner.invoke(args=["tenants", "create", "--id", "acme", "--name", "Acme Field Sales"])
        assert "PASS Created tenant: Acme Field Sales" in result.output

        listing = runner.invoke(args=["tenants", "list"])
        assert "acme" in listing.output

    def test_duplicate_tenant_fails(self, app, db_session, tenant_a):
        result = app.test_cli_runner().invoke(args=["tenants", "create", "--id", tenant_a.id, "--name", "Again"])
        assert result.output.startswith("FAIL")

    def test_deactivate_hides_from_default_list(self, app, db_session, tenant_a):
        runner = app.test_cli_runner()
        runner.invoke(args=["tenants", "deactivate", tenant_a.id])

        assert tenant_a.id not in runner.invoke(args=["tenants", "list"]).output
        assert tenant_a.id in runner.invoke(args=["tenants", "list", "--all"]).output


class TestSettingsCommands:

    def test_set_and_show(self, app, db_session, tenant_a):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["settings", "set", tenant_a.id, "cash.period_granularity", "weekly", "--by", "ops"])
        assert "PASS cash.period_granularity = WEEKLY" in result.output

        shown = runner.invoke(args=["settings", "show", tenant_a.id])
        assert "WEEKLY" in shown.output

    def test_invalid_value_fails(self, app, db_session, tenant_a):
        result = app.test_cli_runner().invoke(args=["settings", "set", tenant_a.id, "gps.max_accuracy_m", "-3"])
        assert result.output.startswith("FAIL")


class TestPeriodCommands:

    def test_close_list_reopen(self, app, db_session, tenant_a):
        runner = app.test_cli_runner()

        closed = runner.invoke(args=["periods", "close", tenant_a.id, "2026-10-18", "--by", "manager"])
        assert "PASS Closed period 2026-10-18" in closed.output

        listing = runner.invoke(args=["periods", "list", tenant_a.id, "--status", "closed"])
        assert "closed_by=manager" in listing.output

        reopened = runner.invoke(args=["periods", "reopen", tenant_a.id, "2026-10-18"])
        assert "PASS Re-opened" in reopened.output

    def test_bad_key_fails(self, app, db_session, tenant_a):
        result = app.test_cli_runner().invoke(args=["periods", "close", tenant_a.id, "October"])
        assert result.output.startswith("FAIL")


class TestInspectionCommands:

    def test_record_show_with_history(self, app, db_session, tenant_a, factory):
        record = factory.visit()
        store_service.accept(record)

        result = app.test_cli_runner().invoke(args=["records", "show", tenant_a.id, record.record_id, "--history"])
        data = json.loads(result.output)
        assert data["record_id"] == record.record_id
        assert [entry["version"] for entry in data["merge_history"]] == [1]

    def test_missing_record(self, app, db_session, tenant_a):
        result = app.test_cli_runner().invoke(args=["records", "show", tenant_a.id, "nope"])
        assert result.output.startswith("FAIL")

    def test_stock_show(self, app, db_session, tenant_a, factory):
        store_service.accept(factory.stock("4", warehouse_id="WH-9"))

        result = app.test_cli_runner().invoke(args=["stock", "show", tenant_a.id, "--warehouse", "WH-9"])
        assert "WH-9" in result.output
        assert "SKU-1" in result.output
