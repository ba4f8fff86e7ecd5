# Overview: Per-device SQLite database holding the outbox, the read cache and device state.

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.exc import DatabaseError, OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker

from ..errors import StorageCorruption, TransientIOError

logger = logging.getLogger(__name__)

DeviceBase = declarative_base()


class OutboxRow(DeviceBase):
    """
    One queued submission.

    - Keyed by (record_id, version); id is the enqueue sequence.
    - record_json holds the full wire form so the row alone can be re-sent.
    - Acknowledged rows are deleted; rejected rows stay until resolved.
    """
    __tablename__ = "outbox"
    __table_args__ = (
        UniqueConstraint("record_id", "version", name="uq_outbox_record_version"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True)
    record_id = Column(String(64), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    kind = Column(String(32), nullable=False)
    record_json = Column(Text, nullable=False)

    sync_state = Column(String(16), nullable=False, default="PENDING", index=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    reject_reason = Column(String(32), nullable=True)

    enqueued_at = Column(DateTime, nullable=False)


class RecordHeadRow(DeviceBase):
    """Highest version ever enqueued per record_id (survives acknowledgement)."""
    __tablename__ = "record_heads"

    record_id = Column(String(64), primary_key=True)
    version = Column(Integer, nullable=False)


class CachedRecordRow(DeviceBase):
    """Server state of a record as last pulled."""
    __tablename__ = "cached_records"

    record_id = Column(String(64), primary_key=True)
    kind = Column(String(32), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    server_version = Column(Integer, nullable=False)
    data_json = Column(Text, nullable=False)
    cached_at = Column(DateTime, nullable=False)


class DeviceStateRow(DeviceBase):
    __tablename__ = "device_state"

    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=True)


class DeviceDatabase:
    """
    Engine + session factory over one SQLite file.

    Storage failures are translated at this boundary:
    - OperationalError (locked, disk I/O) -> TransientIOError
    - any other DatabaseError (not a database, malformed image) -> StorageCorruption
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.engine = create_engine(f"sqlite:///{self.path}")
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        try:
            DeviceBase.metadata.create_all(self.engine)
        except DatabaseError as exc:
            self._raise_translated(exc)

    def _raise_translated(self, exc: DatabaseError):
        if isinstance(exc, OperationalError):
            raise TransientIOError(f"Device database busy: {exc}") from exc
        logger.error("Device database %s is unreadable: %s", self.path, exc)
        raise StorageCorruption(f"Device database {self.path} is unreadable") from exc

    @contextmanager
    def session_scope(self):
        """Transactional scope: commit on success, rollback on error."""
        session = self.Session()
        try:
            yield session
            session.commit()
        except DatabaseError as exc:
            session.rollback()
            self._raise_translated(exc)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
