# Overview: Pytest coverage for the /api/sync blueprint.

from fieldsync.records import record_to_dict
from fieldsync.services import store_service


class TestPushRoute:

    def test_push_returns_result_per_record(self, client, db_session, tenant_a, factory):
        records = [factory.visit(), factory.stock("2")]
        response = client.post("/api/sync/push", json={"records": [record_to_dict(r) for r in records]})

        assert response.status_code == 200
        results = response.get_json()["results"]
        assert [r["status"] for r in results] == ["ACCEPTED", "ACCEPTED"]
        assert [r["record_id"] for r in results] == [r.record_id for r in records]
        assert results[0]["server_version"] == 1

    def test_replayed_push_reports_duplicate(self, client, db_session, tenant_a, factory):
        body = {"records": [record_to_dict(factory.cash())]}
        client.post("/api/sync/push", json=body)
        response = client.post("/api/sync/push", json=body)

        assert response.get_json()["results"][0]["status"] == "DUPLICATE"

    def test_rejection_carries_reason_and_message(self, client, db_session, factory):
        body = {"records": [record_to_dict(factory.visit(tenant_id="ghost"))]}
        result = client.post("/api/sync/push", json=body).get_json()["results"][0]

        assert result["status"] == "REJECTED"
        assert result["reason"] == "TENANT_UNKNOWN"
        assert result["message"]

    def test_missing_records_is_bad_request(self, client, db_session):
        response = client.post("/api/sync/push", json={"items": []})
        assert response.status_code == 400
        assert "records" in response.get_json()["error"]

    def test_non_json_body_is_bad_request(self, client, db_session):
        response = client.post("/api/sync/push", data="not json", content_type="text/plain")
        assert response.status_code == 400


class TestPullRoute:

    def test_pull_returns_page(self, client, db_session, tenant_a, factory):
        record = factory.visit()
        store_service.accept(record)

        response = client.get("/api/sync/pull", query_string={"tenant_id": tenant_a.id, "device_id": "device-7", "since": 0})

        assert response.status_code == 200
        data = response.get_json()
        assert [r["record_id"] for r in data["records"]] == [record.record_id]
        assert data["cursor"] > 0
        assert data["has_more"] is False

    def test_pull_requires_device(self, client, db_session, tenant_a):
        response = client.get("/api/sync/pull", query_string={"tenant_id": tenant_a.id})
        assert response.status_code == 400

    def test_pull_rejects_non_integer_since(self, client, db_session, tenant_a):
        response = client.get("/api/sync/pull", query_string={"tenant_id": tenant_a.id, "device_id": "d", "since": "yesterday"})
        assert response.status_code == 400

    def test_pull_unknown_tenant(self, client, db_session):
        response = client.get("/api/sync/pull", query_string={"tenant_id": "ghost", "device_id": "d"})
        assert response.status_code == 404
        assert response.get_json()["reason"] == "TENANT_UNKNOWN"


class TestPeriodRoutes:

    def test_close_then_reopen(self, client, db_session, tenant_a):
        body = {"tenant_id": tenant_a.id, "period_key": "2026-10-18", "actor": "manager-1"}

        closed = client.post("/api/sync/periods/close", json=body)
        assert closed.status_code == 200
        assert closed.get_json()["status"] == "CLOSED"
        assert closed.get_json()["closed_by"] == "manager-1"

        reopened = client.post("/api/sync/periods/reopen", json=body)
        assert reopened.status_code == 200
        assert reopened.get_json()["status"] == "OPEN"

    def test_close_blocks_cash_push(self, client, db_session, tenant_a, factory):
        client.post("/api/sync/periods/close", json={"tenant_id": tenant_a.id, "period_key": "2026-10-18"})

        body = {"records": [record_to_dict(factory.cash())]}
        result = client.post("/api/sync/push", json=body).get_json()["results"][0]
        assert result["reason"] == "PERIOD_CLOSED"

    def test_close_twice_is_bad_request(self, client, db_session, tenant_a):
        body = {"tenant_id": tenant_a.id, "period_key": "2026-10-18"}
        client.post("/api/sync/periods/close", json=body)
        assert client.post("/api/sync/periods/close", json=body).status_code == 400

    def test_missing_field_is_bad_request(self, client, db_session, tenant_a):
        response = client.post("/api/sync/periods/close", json={"tenant_id": tenant_a.id})
        assert response.status_code == 400
        assert "period_key" in response.get_json()["error"]

    def test_unknown_tenant_is_not_found(self, client, db_session):
        response = client.post("/api/sync/periods/close", json={"tenant_id": "ghost", "period_key": "2026-10-18"})
        assert response.status_code == 404
