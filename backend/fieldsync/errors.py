# Overview: Error taxonomy shared by the device pipeline and the authoritative store.

from __future__ import annotations


# Rejection reason codes carried in push results and on rejected outbox entries
REASON_VALIDATION_FAILED = "VALIDATION_FAILED"
REASON_CONFLICTING_OWNER = "CONFLICTING_OWNER"
REASON_PERIOD_CLOSED = "PERIOD_CLOSED"
REASON_SUPERSEDED = "SUPERSEDED"
REASON_TENANT_MISMATCH = "TENANT_MISMATCH"
REASON_TENANT_UNKNOWN = "TENANT_UNKNOWN"
REASON_KIND_MISMATCH = "KIND_MISMATCH"
REASON_RETRY_LIMIT_EXCEEDED = "RETRY_LIMIT_EXCEEDED"

REASON_MESSAGES = {
    REASON_VALIDATION_FAILED: "The record is malformed and was not accepted.",
    REASON_CONFLICTING_OWNER: "Another device already owns this record.",
    REASON_PERIOD_CLOSED: "The reconciliation period is closed; ask a manager to re-open it.",
    REASON_SUPERSEDED: "A newer version of this record was already accepted.",
    REASON_TENANT_MISMATCH: "This record belongs to a different organization.",
    REASON_TENANT_UNKNOWN: "The organization is unknown or inactive.",
    REASON_KIND_MISMATCH: "The record type does not match the stored record.",
    REASON_RETRY_LIMIT_EXCEEDED: "The record could not be delivered after repeated attempts.",
}


def describe_reason(reason: str | None) -> str:
    """Human-readable text for a rejection reason code."""
    if not reason:
        return ""
    return REASON_MESSAGES.get(reason, reason)


class SyncError(Exception):
    """Base class for sync core failures."""


class ValidationError(SyncError, ValueError):
    """Malformed record; rejected at capture and never enqueued."""

    def __init__(self, message: str, errors: list[str] | tuple[str, ...] | None = None):
        super().__init__(message)
        self.errors = tuple(errors or (message,))


class DuplicateSubmission(SyncError):
    """Record version already folded into the store; safe no-op."""

    def __init__(self, message: str = "", server_version: int | None = None):
        super().__init__(message or "Submission already applied")
        self.server_version = server_version


class BusinessRuleRejection(SyncError):
    """Terminal rejection surfaced to the operator, never auto-resolved."""

    reason = ""

    def __init__(self, message: str | None = None):
        super().__init__(message or describe_reason(self.reason))


class ConflictingOwner(BusinessRuleRejection):
    reason = REASON_CONFLICTING_OWNER


class PeriodClosed(BusinessRuleRejection):
    reason = REASON_PERIOD_CLOSED


class TenantMismatch(BusinessRuleRejection):
    reason = REASON_TENANT_MISMATCH


class UnknownTenant(BusinessRuleRejection):
    reason = REASON_TENANT_UNKNOWN


class SupersededSubmission(BusinessRuleRejection):
    reason = REASON_SUPERSEDED


class KindMismatch(BusinessRuleRejection):
    reason = REASON_KIND_MISMATCH


class InvalidSubmission(BusinessRuleRejection):
    """Server-side validation failure of a pushed record."""

    reason = REASON_VALIDATION_FAILED


class TransientIOError(SyncError):
    """Network or storage hiccup; retried with backoff."""


class StorageCorruption(SyncError):
    """Outbox or store unreadable; fatal for the device session."""


class SyncStateError(SyncError):
    """Illegal sync session transition."""


class OutboxError(SyncError):
    """Outbox contract violation (ordering, ownership, unknown entry)."""


class PeriodError(SyncError):
    """Invalid reconciliation period operation."""
