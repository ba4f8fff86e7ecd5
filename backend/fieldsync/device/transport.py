# backend/fieldsync/device/transport.py
"""
Push/pull boundary between a device and the authoritative store.

- LocalStoreTransport: calls store_service in-process (same Flask app).
- HttpStoreTransport: talks to the /api/sync blueprint with httpx.

Both raise TransientIOError for anything worth retrying (network failures,
5xx, storage busy). Per-record business outcomes come back as PushResults.
"""
from __future__ import annotations

import logging
from contextlib import nullcontext

import httpx
from flask import Flask, has_app_context
from sqlalchemy.exc import OperationalError

from ..errors import TransientIOError
from ..protocol import PullPage, PushResult
from ..records import SyncableRecord, record_to_dict
from ..services import store_service

logger = logging.getLogger(__name__)


class StoreTransport:
    """Interface used by SyncCoordinator."""

    def push(self, records: list[SyncableRecord]) -> list[PushResult]:
        raise NotImplementedError

    def pull(self, tenant_id: str, device_id: str, since: int | None = None, limit: int | None = None) -> PullPage:
        raise NotImplementedError

    def close(self) -> None:
        pass


class LocalStoreTransport(StoreTransport):
    """In-process transport; reuses the active app context when there is one."""

    def __init__(self, app: Flask):
        self.app = app

    def _context(self):
        return nullcontext() if has_app_context() else self.app.app_context()

    def push(self, records: list[SyncableRecord]) -> list[PushResult]:
        with self._context():
            try:
                return store_service.push(list(records))
            except OperationalError as exc:
                raise TransientIOError(f"Store unavailable: {exc}") from exc

    def pull(self, tenant_id: str, device_id: str, since: int | None = None, limit: int | None = None) -> PullPage:
        with self._context():
            try:
                return store_service.pull(tenant_id, device_id, since=since, limit=limit)
            except OperationalError as exc:
                raise TransientIOError(f"Store unavailable: {exc}") from exc


class HttpStoreTransport(StoreTransport):
    """
    httpx client against the sync blueprint.

    Pass `client` to supply a preconfigured httpx.Client (tests use
    httpx.MockTransport); otherwise one is created for base_url.
    """

    def __init__(self, base_url: str = "", *, timeout: float = 30.0, client: httpx.Client | None = None):
        self._owns_client = client is None
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout)

    def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            logger.info("Sync request %s %s failed: %s", method, url, exc)
            raise TransientIOError(f"{method} {url} failed: {exc}") from exc

        if response.status_code >= 500:
            raise TransientIOError(f"{method} {url} returned {response.status_code}")
        if response.status_code >= 400:
            try:
                error = response.json().get("error")
            except ValueError:
                error = response.text
            raise ValueError(f"{method} {url} returned {response.status_code}: {error}")
        return response.json()

    def push(self, records: list[SyncableRecord]) -> list[PushResult]:
        body = {"records": [record_to_dict(record) for record in records]}
        data = self._request("POST", "/api/sync/push", json=body)
        return [PushResult.from_dict(item) for item in data.get("results", [])]

    def pull(self, tenant_id: str, device_id: str, since: int | None = None, limit: int | None = None) -> PullPage:
        params = {"tenant_id": tenant_id, "device_id": device_id}
        if since is not None:
            params["since"] = since
        if limit is not None:
            params["limit"] = limit
        return PullPage.from_dict(self._request("GET", "/api/sync/pull", params=params))

    def close(self) -> None:
        if self._owns_client:
            self.client.close()
