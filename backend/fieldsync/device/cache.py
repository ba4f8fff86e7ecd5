# Overview: Device-side read cache of authoritative records plus the pull cursor.

from __future__ import annotations

import json
import logging
from typing import Iterable

from ..errors import StorageCorruption
from ..time_utils import utcnow
from .local_db import CachedRecordRow, DeviceDatabase, DeviceStateRow

logger = logging.getLogger(__name__)

CURSOR_KEY = "pull_cursor"


class LocalReadCache:
    """
    Last pulled server state per record_id.

    A cached row is only replaced by a row with a higher or equal
    server_version, so an out-of-order page never rolls a record back.
    """

    def __init__(self, database: DeviceDatabase):
        self.database = database

    @property
    def cursor(self) -> int:
        with self.database.session_scope() as session:
            row = session.get(DeviceStateRow, CURSOR_KEY)
            if row is None or row.value is None:
                return 0
            try:
                return int(row.value)
            except ValueError as exc:
                raise StorageCorruption(f"Stored pull cursor {row.value!r} is not an integer") from exc

    def apply(self, records: Iterable[dict], cursor: int | None = None) -> int:
        """
        Upsert pulled records and advance the cursor in one transaction.

        Returns the number of rows written.
        """
        written = 0
        now = utcnow()
        with self.database.session_scope() as session:
            for data in records:
                record_id = data["record_id"]
                server_version = int(data.get("server_version") or 0)
                row = session.get(CachedRecordRow, record_id)
                if row is not None and row.server_version > server_version:
                    continue
                if row is None:
                    row = CachedRecordRow(record_id=record_id)
                    session.add(row)
                row.kind = data["kind"]
                row.version = int(data["version"])
                row.server_version = server_version
                row.data_json = json.dumps(data)
                row.cached_at = now
                written += 1

            if cursor is not None:
                state = session.get(DeviceStateRow, CURSOR_KEY)
                if state is None:
                    session.add(DeviceStateRow(key=CURSOR_KEY, value=str(cursor)))
                elif int(state.value or 0) < cursor:
                    state.value = str(cursor)
        return written

    def get(self, record_id: str) -> dict | None:
        with self.database.session_scope() as session:
            row = session.get(CachedRecordRow, record_id)
            return self._decode(row) if row is not None else None

    def list_records(self, kind: str | None = None) -> list[dict]:
        with self.database.session_scope() as session:
            query = session.query(CachedRecordRow)
            if kind:
                query = query.filter(CachedRecordRow.kind == kind)
            return [self._decode(row) for row in query.order_by(CachedRecordRow.record_id).all()]

    def count(self) -> int:
        with self.database.session_scope() as session:
            return session.query(CachedRecordRow).count()

    @staticmethod
    def _decode(row: CachedRecordRow) -> dict:
        try:
            return json.loads(row.data_json)
        except ValueError as exc:
            logger.error("Cached record %s cannot be decoded: %s", row.record_id, exc)
            raise StorageCorruption(f"Cached record {row.record_id} cannot be decoded") from exc
