"""
Core data model for the PITR subsystem.

This module defines the values shared by every component:
- LSN helpers (PostgreSQL "X/Y" notation <-> integer)
- Storage key layout: {timeline}/{kind}/{id}
- WAL segments, base backups, restore points, timeline history
- Recovery targets (exactly one of time, lsn, xid, name)
- Replication records

Invariants:
    - LSNs are non-negative integers, monotonically increasing across timelines
    - A WAL segment covers the half-open range [start_lsn, end_lsn)
    - Storage keys are deterministic functions of timeline, kind and id
    - All timestamps are Unix milliseconds

How to change safely:
    - Add fields with defaults and keep from_dict tolerant of missing keys
    - Never change key formats; archived artifacts depend on them
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import TargetResolutionError


def now_ms() -> int:
    """Current time as Unix milliseconds."""
    return int(time.time() * 1000)


def format_lsn(lsn: int) -> str:
    """Format an integer LSN in PostgreSQL notation (e.g. 0/16B3748)."""
    return f"{lsn >> 32:X}/{lsn & 0xFFFFFFFF:X}"


def parse_lsn(value: str | int) -> int:
    """Parse an LSN given as PostgreSQL notation or as an integer.

    Raises:
        ValueError: If the value is not a valid LSN
    """
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"LSN must be non-negative: {value}")
        return value

    text = value.strip()
    if "/" in text:
        high, _, low = text.partition("/")
        try:
            hi, lo = int(high, 16), int(low, 16)
        except ValueError:
            raise ValueError(f"Invalid LSN: {value!r}")
        if lo > 0xFFFFFFFF:
            raise ValueError(f"Invalid LSN: {value!r}")
        return (hi << 32) | lo

    try:
        lsn = int(text)
    except ValueError:
        raise ValueError(f"Invalid LSN: {value!r}")
    if lsn < 0:
        raise ValueError(f"LSN must be non-negative: {value}")
    return lsn


class ArtifactKind(Enum):
    """Kinds of stored artifacts."""

    WAL = "wal"
    BASE_BACKUP = "base-backup"
    METADATA = "metadata"


def artifact_key(timeline: int, kind: ArtifactKind, artifact_id: str) -> str:
    """Build the storage key for an artifact."""
    return f"{timeline:08X}/{kind.value}/{artifact_id}"


def parse_artifact_key(key: str) -> tuple[int, ArtifactKind, str]:
    """Split a storage key into (timeline, kind, id).

    Raises:
        ValueError: If the key does not follow the layout
    """
    parts = key.split("/", 2)
    if len(parts) != 3:
        raise ValueError(f"Not an artifact key: {key}")
    return int(parts[0], 16), ArtifactKind(parts[1]), parts[2]


def wal_segment_id(start_lsn: int, end_lsn: int) -> str:
    """Deterministic artifact id for a WAL segment covering [start, end)."""
    return f"{start_lsn:016X}-{end_lsn:016X}"


def wal_manifest_id(start_lsn: int, end_lsn: int) -> str:
    return f"wal-{wal_segment_id(start_lsn, end_lsn)}.json"


def backup_manifest_id(backup_id: str) -> str:
    return f"backup-{backup_id}.json"


def restore_point_manifest_id(name: str) -> str:
    return f"restore-point-{name}.json"


def timeline_manifest_id(timeline: int) -> str:
    return f"timeline-{timeline:08X}.json"


class BackupStatus(Enum):
    """Lifecycle of a base backup."""

    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


class RecordKind(Enum):
    """WAL records that the catalog indexes for target resolution."""

    COMMIT = "commit"
    RESTORE_POINT = "restore_point"


@dataclass(frozen=True)
class WalRecordRef:
    """Index entry for a WAL record relevant to recovery targets.

    Attributes:
        lsn: Position of the record
        timeline: Timeline the record was written on
        kind: Commit or restore point
        timestamp: Record timestamp (Unix ms)
        xid: Transaction id for commit records
        name: Restore point name for restore point records
    """

    lsn: int
    timeline: int
    kind: RecordKind
    timestamp: int
    xid: int | None = None
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "lsn": self.lsn,
            "timeline": self.timeline,
            "kind": self.kind.value,
            "timestamp": self.timestamp,
            "xid": self.xid,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WalRecordRef:
        return cls(
            lsn=data["lsn"],
            timeline=data["timeline"],
            kind=RecordKind(data["kind"]),
            timestamp=data["timestamp"],
            xid=data.get("xid"),
            name=data.get("name"),
        )


@dataclass
class WalSegment:
    """An archived WAL segment.

    Attributes:
        name: Engine segment name (e.g. 000000010000000000000003)
        timeline: Timeline id
        start_lsn: First LSN covered (inclusive)
        end_lsn: End of coverage (exclusive)
        produced_at: When the engine completed the segment (Unix ms)
        checksum: sha256 checksum of the stored bytes
        archived_at: When the segment was durably stored (Unix ms)
        storage_key: Storage key of the segment payload
        size_bytes: Payload size
        records: Commit / restore point records inside the segment
    """

    name: str
    timeline: int
    start_lsn: int
    end_lsn: int
    produced_at: int
    checksum: str
    archived_at: int
    storage_key: str
    size_bytes: int = 0
    records: list[WalRecordRef] = field(default_factory=list)

    def covers(self, lsn: int) -> bool:
        return self.start_lsn <= lsn < self.end_lsn

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "timeline": self.timeline,
            "start_lsn": self.start_lsn,
            "end_lsn": self.end_lsn,
            "produced_at": self.produced_at,
            "checksum": self.checksum,
            "archived_at": self.archived_at,
            "storage_key": self.storage_key,
            "size_bytes": self.size_bytes,
            "records": [r.to_dict() for r in self.records],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WalSegment:
        return cls(
            name=data["name"],
            timeline=data["timeline"],
            start_lsn=data["start_lsn"],
            end_lsn=data["end_lsn"],
            produced_at=data["produced_at"],
            checksum=data["checksum"],
            archived_at=data["archived_at"],
            storage_key=data["storage_key"],
            size_bytes=data.get("size_bytes", 0),
            records=[WalRecordRef.from_dict(r) for r in data.get("records", [])],
        )

    def __str__(self) -> str:
        return f"{self.name} [{format_lsn(self.start_lsn)}, {format_lsn(self.end_lsn)})"


@dataclass
class BaseBackup:
    """A base backup and its lifecycle status.

    Attributes:
        backup_id: Unique backup identifier
        timeline: Timeline at backup start
        start_lsn: Backup start LSN (replay begins here)
        end_lsn: LSN at the stop marker (None until stopped)
        created_at: Start time (Unix ms)
        status: pending, complete or failed
        storage_key: Storage key of the backup payload
        size_bytes: Payload size
        checksum: sha256 checksum of the payload
        label: Human readable label
        completed_at: When the backup was marked complete (Unix ms)
    """

    backup_id: str
    timeline: int
    start_lsn: int
    created_at: int
    status: BackupStatus = BackupStatus.PENDING
    end_lsn: int | None = None
    storage_key: str | None = None
    size_bytes: int = 0
    checksum: str | None = None
    label: str | None = None
    completed_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "backup_id": self.backup_id,
            "timeline": self.timeline,
            "start_lsn": self.start_lsn,
            "end_lsn": self.end_lsn,
            "created_at": self.created_at,
            "status": self.status.value,
            "storage_key": self.storage_key,
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
            "label": self.label,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BaseBackup:
        return cls(
            backup_id=data["backup_id"],
            timeline=data["timeline"],
            start_lsn=data["start_lsn"],
            created_at=data["created_at"],
            status=BackupStatus(data.get("status", "pending")),
            end_lsn=data.get("end_lsn"),
            storage_key=data.get("storage_key"),
            size_bytes=data.get("size_bytes", 0),
            checksum=data.get("checksum"),
            label=data.get("label"),
            completed_at=data.get("completed_at"),
        )


@dataclass(frozen=True)
class RestorePoint:
    """Named recovery marker. Immutable once created."""

    name: str
    lsn: int
    timestamp: int
    timeline: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "lsn": self.lsn,
            "timestamp": self.timestamp,
            "timeline": self.timeline,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RestorePoint:
        return cls(
            name=data["name"],
            lsn=data["lsn"],
            timestamp=data["timestamp"],
            timeline=data["timeline"],
        )


@dataclass(frozen=True)
class TimelineHistory:
    """Branch point of a timeline created by a promoted recovery."""

    timeline: int
    parent_timeline: int | None
    branch_lsn: int
    created_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "timeline": self.timeline,
            "parent_timeline": self.parent_timeline,
            "branch_lsn": self.branch_lsn,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TimelineHistory:
        return cls(
            timeline=data["timeline"],
            parent_timeline=data.get("parent_timeline"),
            branch_lsn=data["branch_lsn"],
            created_at=data["created_at"],
        )


@dataclass(frozen=True)
class Artifact:
    """Any stored object tracked by the catalog."""

    key: str
    kind: ArtifactKind
    timeline: int
    checksum: str
    size_bytes: int
    created_at: int


class TargetKind(Enum):
    """Recovery target discriminator."""

    TIME = "time"
    LSN = "lsn"
    XID = "xid"
    NAME = "name"


@dataclass(frozen=True)
class RecoveryTarget:
    """Where a recovery should stop.

    Exactly one kind with its value:
        time: Unix ms, stops at the first record at or after it
        lsn: integer LSN, stops on the first record starting at or after it
        xid: transaction id, stops at its commit record
        name: restore point name, stops at the restore point record

    Example:
        >>> RecoveryTarget.parse("lsn", "0/82")
        RecoveryTarget(kind=<TargetKind.LSN: 'lsn'>, value=130)
    """

    kind: TargetKind
    value: int | str

    @classmethod
    def time(cls, ts_ms: int) -> RecoveryTarget:
        return cls(TargetKind.TIME, int(ts_ms))

    @classmethod
    def lsn(cls, lsn: int) -> RecoveryTarget:
        return cls(TargetKind.LSN, parse_lsn(lsn))

    @classmethod
    def xid(cls, xid: int) -> RecoveryTarget:
        return cls(TargetKind.XID, int(xid))

    @classmethod
    def name(cls, name: str) -> RecoveryTarget:
        if not name:
            raise TargetResolutionError("Restore point name must not be empty")
        return cls(TargetKind.NAME, name)

    @classmethod
    def parse(cls, kind: str, value: Any) -> RecoveryTarget:
        """Build a target from loosely typed input (HTTP, CLI).

        Raises:
            TargetResolutionError: If the kind or value is invalid
        """
        try:
            target_kind = TargetKind(str(kind).lower())
        except ValueError:
            raise TargetResolutionError(
                f"Unknown recovery target kind '{kind}'. Must be one of: time, lsn, xid, name"
            )

        try:
            if target_kind == TargetKind.TIME:
                return cls.time(_parse_time(value))
            if target_kind == TargetKind.LSN:
                return cls.lsn(parse_lsn(value if isinstance(value, int) else str(value)))
            if target_kind == TargetKind.XID:
                return cls.xid(int(value))
            return cls.name(str(value))
        except (TypeError, ValueError) as e:
            raise TargetResolutionError(f"Invalid {target_kind.value} target {value!r}: {e}")

    def __str__(self) -> str:
        if self.kind == TargetKind.LSN:
            return f"lsn={format_lsn(int(self.value))}"
        return f"{self.kind.value}={self.value}"


def _parse_time(value: Any) -> int:
    """Accept Unix ms or an ISO 8601 string (naive means UTC)."""
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


class ReplicationStatus(Enum):
    """Per-region replication state of an artifact."""

    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


@dataclass
class ReplicationRecord:
    """Replication state of one artifact in one region.

    Attributes:
        artifact_key: Storage key of the artifact
        region: Destination region name
        source_checksum: Checksum at the source when last attempted
        status: pending, synced or failed
        last_attempt_at: Last attempt time (Unix ms)
        retry_count: Consecutive failed attempts
        last_error: Last failure message
    """

    artifact_key: str
    region: str
    source_checksum: str
    status: ReplicationStatus = ReplicationStatus.PENDING
    last_attempt_at: int | None = None
    retry_count: int = 0
    last_error: str | None = None
