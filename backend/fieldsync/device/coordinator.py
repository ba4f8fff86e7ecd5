# backend/fieldsync/device/coordinator.py
"""
Device sync coordinator.

SESSION STATE MACHINE:
    IDLE/FAILED --run_pass--> UPLOADING --> DOWNLOADING --> IDLE
    UPLOADING/DOWNLOADING --storage corruption or download failure--> FAILED

UPLOAD:
- Claim a bounded batch from the outbox and mark it IN_FLIGHT.
- Split into per-record streams (ascending version). Each stream is pushed
  one entry at a time, waiting for the ack before the next version.
- Streams may run in parallel (upload_concurrency > 1); workers only push,
  the coordinator thread applies every outcome to the outbox.
- TransientIOError is retried in-pass with exponential backoff, then counted
  as a failed attempt. max_attempts failures reject the entry with
  RETRY_LIMIT_EXCEEDED.
- Any other push error stops the remaining streams and fails the pass;
  outcomes already received are applied and every claimed entry that was
  not settled goes back to PENDING without counting an attempt.

DOWNLOAD:
- Pull pages from the device cursor until a page comes back empty and apply
  them to the LocalReadCache.
"""
from __future__ import annotations

import logging
import os
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable

from ..errors import (
    REASON_RETRY_LIMIT_EXCEEDED,
    StorageCorruption,
    SyncStateError,
    TransientIOError,
)
from ..protocol import STATUS_DUPLICATE, PushResult
from ..records import SyncableRecord
from ..validation import ValidationPolicy, ValidationResult, ensure_valid
from .cache import LocalReadCache
from .outbox import OutboxEntry, OutboxStore
from .transport import StoreTransport

logger = logging.getLogger(__name__)


class SessionState:
    IDLE = "IDLE"
    UPLOADING = "UPLOADING"
    DOWNLOADING = "DOWNLOADING"
    FAILED = "FAILED"


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class CoordinatorConfig:
    batch_size: int = 50
    max_attempts: int = 5
    transport_retries: int = 3
    backoff_base: float = 0.5
    backoff_cap: float = 30.0
    upload_concurrency: int = 1
    pull_page_size: int = 200

    @classmethod
    def from_env(cls) -> "CoordinatorConfig":
        return cls(
            batch_size=_env_int("FIELDSYNC_BATCH_SIZE", 50),
            max_attempts=_env_int("FIELDSYNC_MAX_ATTEMPTS", 5),
            transport_retries=_env_int("FIELDSYNC_TRANSPORT_RETRIES", 3),
            backoff_base=_env_float("FIELDSYNC_BACKOFF_BASE", 0.5),
            backoff_cap=_env_float("FIELDSYNC_BACKOFF_CAP", 30.0),
            upload_concurrency=_env_int("FIELDSYNC_UPLOAD_CONCURRENCY", 1),
            pull_page_size=_env_int("FIELDSYNC_PULL_PAGE_SIZE", 200),
        )


@dataclass
class SyncReport:
    acknowledged: int = 0
    duplicates: int = 0
    rejected: int = 0
    failed: int = 0
    released: int = 0
    pulled: int = 0
    cancelled: bool = False
    error: str | None = None
    state: str = SessionState.IDLE
    rejections: list[tuple[str, str]] = field(default_factory=list)


@dataclass
class _StreamOutcome:
    """What one record stream did; applied to the outbox by the coordinator."""
    results: list[tuple[OutboxEntry, PushResult]] = field(default_factory=list)
    failure: tuple[OutboxEntry, str] | None = None
    unsent: list[OutboxEntry] = field(default_factory=list)
    error: Exception | None = None


class SyncCoordinator:
    def __init__(
        self,
        outbox: OutboxStore,
        transport: StoreTransport,
        *,
        tenant_id: str | None = None,
        device_id: str | None = None,
        policy: ValidationPolicy | None = None,
        config: CoordinatorConfig | None = None,
        cache: LocalReadCache | None = None,
        on_rejected: Callable[[str, str], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.outbox = outbox
        self.transport = transport
        self.tenant_id = tenant_id or outbox.tenant_id
        self.device_id = device_id or outbox.device_id
        self.policy = policy
        self.config = config or CoordinatorConfig()
        self.cache = cache
        self.on_rejected = on_rejected
        self.sleep = sleep

        self._state = SessionState.IDLE
        self._state_lock = threading.Lock()

    @property
    def state(self) -> str:
        return self._state

    def _transition(self, new_state: str) -> None:
        with self._state_lock:
            logger.debug("Sync session %s -> %s", self._state, new_state)
            self._state = new_state

    # -- capture -----------------------------------------------------------

    def submit(self, record: SyncableRecord) -> ValidationResult:
        """Validate and enqueue. ValidationError leaves the outbox untouched."""
        result = ensure_valid(record, self.policy)
        self.outbox.enqueue(record)
        return result

    # -- pass --------------------------------------------------------------

    def run_pass(self, cancel_event: threading.Event | None = None) -> SyncReport:
        with self._state_lock:
            if self._state not in (SessionState.IDLE, SessionState.FAILED):
                raise SyncStateError(f"Sync pass already running ({self._state})")
            self._state = SessionState.UPLOADING

        cancel_event = cancel_event or threading.Event()
        report = SyncReport()
        try:
            self._upload(cancel_event, report)
            if cancel_event.is_set():
                report.cancelled = True
                self._transition(SessionState.IDLE)
                report.state = self._state
                return report

            self._transition(SessionState.DOWNLOADING)
            self._download(report)
        except StorageCorruption as exc:
            logger.error("Sync pass for device %s halted: %s", self.device_id, exc)
            self._transition(SessionState.FAILED)
            raise
        except TransientIOError as exc:
            logger.warning("Sync pass for device %s failed: %s", self.device_id, exc)
            report.error = str(exc)
            self._transition(SessionState.FAILED)
            report.state = self._state
            return report
        except Exception:
            self._transition(SessionState.FAILED)
            raise

        self._transition(SessionState.IDLE)
        report.state = self._state
        return report

    # -- upload ------------------------------------------------------------

    def _upload(self, cancel_event: threading.Event, report: SyncReport) -> None:
        if cancel_event.is_set():
            return
        batch = self.outbox.list_pending(self.config.batch_size)
        if not batch:
            return
        claimed = [entry.entry_id for entry in batch]
        self.outbox.mark_in_flight(claimed)

        try:
            streams: "OrderedDict[str, list[OutboxEntry]]" = OrderedDict()
            for entry in batch:
                streams.setdefault(entry.record_id, []).append(entry)
            for entries in streams.values():
                entries.sort(key=lambda e: e.version)

            # Set by the first stream that hits a non-transient error
            halt = threading.Event()
            if self.config.upload_concurrency > 1 and len(streams) > 1:
                with ThreadPoolExecutor(max_workers=self.config.upload_concurrency) as pool:
                    futures = [pool.submit(self._push_stream, entries, cancel_event, halt) for entries in streams.values()]
                    outcomes = [future.result() for future in futures]
            else:
                outcomes = [self._push_stream(entries, cancel_event, halt) for entries in streams.values()]

            for outcome in outcomes:
                self._apply_outcome(outcome, report)

            errors = [outcome.error for outcome in outcomes if outcome.error is not None]
            if errors:
                raise errors[0]
        finally:
            # Anything still IN_FLIGHT was never settled by the store
            report.released += self.outbox.mark_pending(claimed)

    def _push_stream(
        self,
        entries: list[OutboxEntry],
        cancel_event: threading.Event,
        halt: threading.Event,
    ) -> _StreamOutcome:
        """Push one record's versions in order. Touches only the transport."""
        outcome = _StreamOutcome()
        for index, entry in enumerate(entries):
            if cancel_event.is_set() or halt.is_set():
                outcome.unsent = entries[index:]
                break
            try:
                result = self._push_with_retry(entry, cancel_event)
            except TransientIOError as exc:
                outcome.failure = (entry, str(exc))
                outcome.unsent = entries[index + 1:]
                break
            except Exception as exc:
                logger.error("Push of %s v%s failed: %s", entry.record_id, entry.version, exc)
                halt.set()
                outcome.error = exc
                outcome.unsent = entries[index:]
                break
            outcome.results.append((entry, result))
        return outcome

    def _push_with_retry(self, entry: OutboxEntry, cancel_event: threading.Event) -> PushResult:
        attempt = 0
        while True:
            try:
                results = self.transport.push([entry.record])
                if len(results) != 1:
                    raise TransientIOError(f"Expected 1 push result, got {len(results)}")
                return results[0]
            except TransientIOError as exc:
                attempt += 1
                if attempt > self.config.transport_retries or cancel_event.is_set():
                    raise
                delay = min(self.config.backoff_cap, self.config.backoff_base * (2 ** (attempt - 1)))
                logger.info(
                    "Push of %s v%s failed (%s); retry %s/%s in %.2fs",
                    entry.record_id, entry.version, exc, attempt, self.config.transport_retries, delay,
                )
                self.sleep(delay)

    def _apply_outcome(self, outcome: _StreamOutcome, report: SyncReport) -> None:
        for entry, result in outcome.results:
            if result.acknowledged:
                self.outbox.mark_acknowledged([entry.entry_id])
                report.acknowledged += 1
                if result.status == STATUS_DUPLICATE:
                    report.duplicates += 1
            else:
                self._reject(entry, result.reason or "", result.message, report)

        if outcome.failure is not None:
            entry, error = outcome.failure
            updated = self.outbox.record_failure(entry.entry_id, error)
            report.failed += 1
            if updated.attempt_count >= self.config.max_attempts:
                self._reject(entry, REASON_RETRY_LIMIT_EXCEEDED, error, report, count_attempt=False)

        if outcome.unsent:
            report.released += self.outbox.mark_pending([entry.entry_id for entry in outcome.unsent])

    def _reject(
        self,
        entry: OutboxEntry,
        reason: str,
        message: str | None,
        report: SyncReport,
        count_attempt: bool = True,
    ) -> None:
        self.outbox.mark_rejected(entry.entry_id, reason, message, count_attempt=count_attempt)
        report.rejected += 1
        report.rejections.append((entry.record_id, reason))
        if self.on_rejected is not None:
            self.on_rejected(entry.record_id, reason)

    # -- download ----------------------------------------------------------

    def _download(self, report: SyncReport) -> None:
        since = self.cache.cursor if self.cache is not None else None
        while True:
            page = self.transport.pull(self.tenant_id, self.device_id, since=since, limit=self.config.pull_page_size)
            if not page.records:
                break
            if self.cache is not None:
                self.cache.apply(page.records, cursor=page.cursor)
            report.pulled += len(page.records)
            since = page.cursor
            if not page.has_more:
                break
