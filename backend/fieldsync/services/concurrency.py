# Overview: Service-layer helpers for concurrency; row locks, retries and per-record write serialization.

from __future__ import annotations

import threading
import time
import zlib
from contextlib import contextmanager

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1, retry_integrity: bool = False):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). With retry_integrity=True, IntegrityError
    is retried too: two writers inserting the same unique key race, and the
    loser sees the winner's row on the next attempt.
    """
    retryable = (OperationalError, StaleDataError, IntegrityError) if retry_integrity else (OperationalError, StaleDataError)
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except retryable as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


class RecordLockRegistry:
    """
    Striped in-process locks keyed by record_id.

    Writes to the same record_id serialize on one stripe; unrelated ids
    usually land on different stripes and proceed in parallel. Stripe choice
    uses crc32 so it is stable across processes. Row locks (lock_for_update)
    still guard across processes.
    """

    def __init__(self, stripes: int = 64):
        self._locks = [threading.Lock() for _ in range(max(1, int(stripes)))]

    def __len__(self) -> int:
        return len(self._locks)

    def stripe_for(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % len(self._locks)

    @contextmanager
    def hold(self, key: str):
        lock = self._locks[self.stripe_for(key)]
        with lock:
            yield


def record_locks() -> RecordLockRegistry:
    """The application's registry (created in create_app)."""
    registry = current_app.extensions.get("fieldsync_record_locks")
    if registry is None:
        registry = RecordLockRegistry(current_app.config.get("SYNC_LOCK_STRIPES", 64))
        current_app.extensions["fieldsync_record_locks"] = registry
    return registry
