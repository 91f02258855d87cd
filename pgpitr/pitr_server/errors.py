"""
Error types for the PITR subsystem.

Error taxonomy:
- TransientStorageError: network/storage hiccup, retried with backoff
- RetryBudgetExhausted: a transient failure that ran out of retries (fatal)
- CorruptionError: checksum mismatch, never retried past one re-fetch
- ChainGapError: missing WAL between required LSNs
- ConcurrencyConflictError: second backup/recovery while one is active
- ReplicationLagError: repeated cross-region sync failure

Invariants:
    - All errors inherit from PitrError
    - Every error carries a stable code for programmatic handling
    - Details contain enough context to locate the artifact or range
"""

from __future__ import annotations

from typing import Any


class PitrError(Exception):
    """Base exception for all PITR errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "PITR_ERROR"
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable diagnostic."""
        return {"error": self.message, "error_code": self.code, "details": self.details}


class ConfigurationError(PitrError):
    """Configuration is missing or inconsistent."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR")


class TransientStorageError(PitrError):
    """A storage operation failed in a way that may succeed on retry.

    Raised when:
    - Connection to the backend drops or times out
    - The backend throttles or returns a 5xx
    """

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message, code="TRANSIENT_IO", details={"key": key})
        self.key = key


class ArtifactNotFoundError(PitrError):
    """Artifact does not exist in storage."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Artifact not found: {key}", code="NOT_FOUND", details={"key": key})
        self.key = key


class RetryBudgetExhausted(PitrError):
    """A retryable operation failed on every allowed attempt."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error}",
            code="RETRY_EXHAUSTED",
            details={"operation": operation, "attempts": attempts, "last_error": str(last_error)},
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class CorruptionError(PitrError):
    """Stored data does not match what was recorded."""

    def __init__(self, message: str, key: str | None = None, **details: Any) -> None:
        super().__init__(message, code="CORRUPTION", details={"key": key, **details})
        self.key = key


class ChecksumMismatchError(CorruptionError):
    """Checksum of fetched or stored bytes differs from the expected one.

    A truncated upload is reported as a checksum mismatch.
    """

    def __init__(self, key: str, expected: str | None, actual: str | None) -> None:
        super().__init__(
            f"Checksum mismatch for {key}: expected {expected}, got {actual}",
            key=key,
            expected=expected,
            actual=actual,
        )
        self.expected = expected
        self.actual = actual


class ChainGapError(PitrError):
    """The WAL chain between two LSNs is not contiguous.

    Attributes:
        timeline: Timeline on which the gap was found
        missing_from: First missing LSN (inclusive)
        missing_to: End of the missing range (exclusive)
    """

    def __init__(self, timeline: int, missing_from: int, missing_to: int) -> None:
        from .models import format_lsn

        super().__init__(
            f"WAL gap on timeline {timeline}: "
            f"{format_lsn(missing_from)} - {format_lsn(missing_to)} not archived",
            code="CHAIN_GAP",
            details={
                "timeline": timeline,
                "missing_from": missing_from,
                "missing_to": missing_to,
            },
        )
        self.timeline = timeline
        self.missing_from = missing_from
        self.missing_to = missing_to


class ConcurrencyConflictError(PitrError):
    """Operation rejected because an exclusive one is already running."""

    def __init__(self, operation: str, holder: str | None = None) -> None:
        super().__init__(
            f"{operation} already in progress" + (f" ({holder})" if holder else ""),
            code="CONCURRENCY_CONFLICT",
            details={"operation": operation, "holder": holder},
        )
        self.operation = operation
        self.holder = holder


class ReplicationLagError(PitrError):
    """An artifact repeatedly failed to replicate to a region."""

    def __init__(self, key: str, region: str, retry_count: int) -> None:
        super().__init__(
            f"Replication of {key} to {region} failed {retry_count} times",
            code="REPLICATION_LAG",
            details={"key": key, "region": region, "retry_count": retry_count},
        )


class TargetResolutionError(PitrError):
    """A recovery target could not be resolved to an LSN or base backup."""

    def __init__(self, message: str, target: str | None = None) -> None:
        super().__init__(message, code="TARGET_UNRESOLVED", details={"target": target})


class InvalidTransitionError(PitrError):
    """A state machine transition is not allowed from the current state."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot transition from {current} to {requested}",
            code="INVALID_TRANSITION",
            details={"current": current, "requested": requested},
        )
        self.current = current
        self.requested = requested


class ArchiveError(PitrError):
    """WAL segment could not be archived; the engine must keep the segment."""

    def __init__(self, segment: str, reason: str) -> None:
        super().__init__(
            f"Failed to archive WAL segment {segment}: {reason}",
            code="ARCHIVE_FAILED",
            details={"segment": segment},
        )
        self.segment = segment


class BackupError(PitrError):
    """Base backup failed."""

    def __init__(self, backup_id: str | None, reason: str) -> None:
        super().__init__(
            f"Base backup {backup_id or '<unstarted>'} failed: {reason}",
            code="BACKUP_FAILED",
            details={"backup_id": backup_id},
        )
        self.backup_id = backup_id


class EngineError(PitrError):
    """The database engine rejected or failed an operation."""

    def __init__(self, message: str, command: str | None = None) -> None:
        super().__init__(message, code="ENGINE_ERROR", details={"command": command})


class DuplicateRestorePointError(PitrError):
    """A restore point with this name already exists."""

    def __init__(self, name: str, lsn: int) -> None:
        super().__init__(
            f"Restore point '{name}' already exists",
            code="ALREADY_EXISTS",
            details={"name": name, "lsn": lsn},
        )
        self.name = name
        self.lsn = lsn
