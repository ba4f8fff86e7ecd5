# Overview: Pytest coverage for the httpx device transport.

"""
HTTP Transport Tests

httpx.MockTransport forwards requests into the Flask test client, so the
device side speaks real HTTP shapes to the real blueprint without a server.
"""

import httpx
import pytest

from fieldsync.device.coordinator import CoordinatorConfig, SyncCoordinator
from fieldsync.device.transport import HttpStoreTransport
from fieldsync.errors import TransientIOError
from fieldsync.protocol import STATUS_ACCEPTED, STATUS_DUPLICATE


def _flask_bridge(client):
    def handler(request: httpx.Request) -> httpx.Response:
        response = client.open(
            request.url.path,
            method=request.method,
            query_string=request.url.query.decode(),
            data=request.content,
            headers={"Content-Type": request.headers.get("content-type", "application/json")},
        )
        return httpx.Response(response.status_code, content=response.data, headers={"Content-Type": response.content_type})
    return handler


@pytest.fixture
def http_transport(client):
    transport = HttpStoreTransport(client=httpx.Client(
        base_url="http://fieldsync.test",
        transport=httpx.MockTransport(_flask_bridge(client)),
    ))
    yield transport
    transport.client.close()


def _static(status_code, body=None):
    def handler(request):
        return httpx.Response(status_code, json=body or {})
    return httpx.Client(base_url="http://fieldsync.test", transport=httpx.MockTransport(handler))


class TestHttpStoreTransport:

    def test_push_and_replay(self, db_session, tenant_a, http_transport, factory):
        record = factory.visit()

        first = http_transport.push([record])
        second = http_transport.push([record])

        assert first[0].status == STATUS_ACCEPTED
        assert second[0].status == STATUS_DUPLICATE
        assert second[0].server_version == first[0].server_version

    def test_pull_pages(self, db_session, tenant_a, http_transport, factory):
        records = [factory.visit(), factory.visit(), factory.visit()]
        http_transport.push(records)

        page = http_transport.pull(tenant_a.id, "device-2", since=0, limit=2)
        assert len(page.records) == 2
        assert page.has_more

        rest = http_transport.pull(tenant_a.id, "device-2", since=page.cursor, limit=2)
        assert [r["record_id"] for r in rest.records] == [records[2].record_id]
        assert not rest.has_more

    def test_server_error_is_transient(self):
        transport = HttpStoreTransport(client=_static(503, {"error": "Storage busy"}))
        with pytest.raises(TransientIOError):
            transport.push([])

    def test_connection_failure_is_transient(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.Client(base_url="http://fieldsync.test", transport=httpx.MockTransport(refuse))
        transport = HttpStoreTransport(client=client)
        with pytest.raises(TransientIOError):
            transport.pull("tenant-a", "device-1")

    def test_client_error_is_not_retried(self):
        transport = HttpStoreTransport(client=_static(400, {"error": "records must be a list"}))
        with pytest.raises(ValueError) as excinfo:
            transport.push([])
        assert "records must be a list" in str(excinfo.value)

    def test_full_pass_over_http(self, db_session, tenant_a, outbox, cache, http_transport, factory):
        coordinator = SyncCoordinator(outbox, http_transport, cache=cache, config=CoordinatorConfig(), sleep=lambda _d: None)
        records = [factory.visit(), factory.stock("1"), factory.cash()]
        for record in records:
            coordinator.submit(record)

        report = coordinator.run_pass()

        assert report.acknowledged == 3
        assert report.pulled == 3
        assert cache.count() == 3
