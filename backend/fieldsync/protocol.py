# Overview: Push/pull message shapes shared by the store, the HTTP blueprint and device transports.

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .errors import describe_reason


STATUS_ACCEPTED = "ACCEPTED"
STATUS_DUPLICATE = "DUPLICATE"
STATUS_REJECTED = "REJECTED"

PUSH_STATUSES = {STATUS_ACCEPTED, STATUS_DUPLICATE, STATUS_REJECTED}


@dataclass(frozen=True)
class PushResult:
    """Per-record outcome of a push."""
    record_id: str
    version: int | None
    status: str
    server_version: int | None = None
    reason: str | None = None
    message: str | None = None
    flags: tuple[str, ...] = ()

    @property
    def acknowledged(self) -> bool:
        return self.status in (STATUS_ACCEPTED, STATUS_DUPLICATE)

    @classmethod
    def accepted(cls, record_id: str, version: int, server_version: int, flags=()) -> "PushResult":
        return cls(record_id, version, STATUS_ACCEPTED, server_version=server_version, flags=tuple(flags))

    @classmethod
    def duplicate(cls, record_id: str, version: int, server_version: int | None) -> "PushResult":
        return cls(record_id, version, STATUS_DUPLICATE, server_version=server_version)

    @classmethod
    def rejected(cls, record_id: str, version: int | None, reason: str, message: str | None = None) -> "PushResult":
        return cls(record_id, version, STATUS_REJECTED, reason=reason, message=message or describe_reason(reason))

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "version": self.version,
            "status": self.status,
            "server_version": self.server_version,
            "reason": self.reason,
            "message": self.message,
            "flags": list(self.flags),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PushResult":
        status = data.get("status")
        if status not in PUSH_STATUSES:
            raise ValueError(f"Unknown push status: {status!r}")
        return cls(
            record_id=data.get("record_id") or "",
            version=data.get("version"),
            status=status,
            server_version=data.get("server_version"),
            reason=data.get("reason"),
            message=data.get("message"),
            flags=tuple(data.get("flags") or ()),
        )


@dataclass(frozen=True)
class PullPage:
    """
    One page of the tenant change stream.

    records: ServerRecord dicts, oldest change first
    cursor: position to pass as `since` for the next page
    has_more: another page is available right now
    """
    records: list[dict] = field(default_factory=list)
    cursor: int = 0
    has_more: bool = False

    def to_dict(self) -> dict:
        return {"records": list(self.records), "cursor": self.cursor, "has_more": self.has_more}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PullPage":
        return cls(
            records=list(data.get("records") or []),
            cursor=int(data.get("cursor") or 0),
            has_more=bool(data.get("has_more")),
        )
