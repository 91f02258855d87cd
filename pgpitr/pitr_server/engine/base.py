"""
Database engine contract.

The PITR components never talk to PostgreSQL directly; they drive a
DatabaseEngine. The contract has three parts:

    Archiving:   segment_notices() yields completed WAL segments,
                 acknowledge() lets the engine recycle a segment
    Backups:     start_backup() / read_snapshot() / stop_backup() bracket a
                 consistent copy, create_restore_point() / switch_wal()
    Restoring:   begin_restore() / restore_base() / stage_wal() /
                 replay_to() / promote() / abandon_restore()

Invariants:
    - A segment notice is re-delivered until it is acknowledged
    - stop_backup() forces a WAL switch so the end LSN lands in a complete segment
    - replay_to() stops after the target record and never past it; positions are
      reported as record start LSNs, as the catalog indexes them
    - Nothing in the restore path touches the live data until promote()

How to change safely:
    - Protocol changes require updating all implementations
    - Keep the in-memory engine's semantics identical to PostgreSQL's
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol, runtime_checkable

from ..models import TargetKind, TimelineHistory, WalRecordRef, WalSegment, format_lsn


@dataclass(frozen=True)
class SegmentNotice:
    """A WAL segment the engine has completed and wants archived.

    Attributes:
        name: Engine segment name
        timeline: Timeline id
        start_lsn: First LSN in the segment (inclusive)
        end_lsn: End of the segment (exclusive)
        produced_at: Completion time (Unix ms)
        payload: Segment bytes
        records: Commit / restore point records found in the segment
    """

    name: str
    timeline: int
    start_lsn: int
    end_lsn: int
    produced_at: int
    payload: bytes
    records: tuple[WalRecordRef, ...] = ()

    def __str__(self) -> str:
        return f"{self.name} [{format_lsn(self.start_lsn)}, {format_lsn(self.end_lsn)})"


@dataclass(frozen=True)
class BackupStart:
    """Result of placing the start-of-backup marker."""

    timeline: int
    start_lsn: int
    label: str


@dataclass(frozen=True)
class ReplayStop:
    """Where replay must pause.

    Attributes:
        timeline: Timeline the target was resolved on
        lsn: Start LSN of the target record (for lsn targets, the requested LSN)
        kind: Target kind as requested
        value: Target value as requested (restore point name, xid, Unix ms, LSN)
        history: Branch entries of the target timeline, newest first
    """

    timeline: int
    lsn: int
    kind: TargetKind = TargetKind.LSN
    value: Any = None
    history: tuple[TimelineHistory, ...] = ()

    def __str__(self) -> str:
        return f"{self.kind.value}={self.value} @ {format_lsn(self.lsn)} (timeline {self.timeline})"


@dataclass(frozen=True)
class ReplayPosition:
    """Where replay paused.

    Attributes:
        lsn: Start LSN of the last replayed record
        end_lsn: First LSN after that record; a promoted instance continues here
    """

    lsn: int
    end_lsn: int


@dataclass
class IntegrityReport:
    """Object counts and content checksum of an instance.

    Attributes:
        timeline: Timeline the instance is on
        position: LSN the instance has reached
        tables: Row count per table
        checksum: Checksum over the instance contents
    """

    timeline: int
    position: int
    tables: dict[str, int] = field(default_factory=dict)
    checksum: str | None = None

    @property
    def table_count(self) -> int:
        return len(self.tables)

    @property
    def row_count(self) -> int:
        return sum(self.tables.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "timeline": self.timeline,
            "position": self.position,
            "tables": dict(self.tables),
            "table_count": self.table_count,
            "row_count": self.row_count,
            "checksum": self.checksum,
        }


@runtime_checkable
class DatabaseEngine(Protocol):
    """Protocol for the database whose WAL and backups are managed."""

    instance_id: str

    async def current_position(self) -> tuple[int, int]:
        """Current (timeline, insert LSN)."""
        ...

    def segment_notices(self) -> AsyncIterator[SegmentNotice]:
        """Completed segments, in production order per timeline."""
        ...

    async def acknowledge(self, notice: SegmentNotice) -> None:
        """Allow the engine to recycle a durably archived segment."""
        ...

    async def switch_wal(self) -> int:
        """Close the current segment. Returns the switch LSN."""
        ...

    async def start_backup(self, label: str) -> BackupStart:
        """Place the start-of-backup marker."""
        ...

    async def read_snapshot(self) -> bytes:
        """Copy the data files while the backup is in progress."""
        ...

    async def stop_backup(self) -> int:
        """Place the stop marker, force a WAL switch, return the end LSN."""
        ...

    async def finalize_snapshot(self, snapshot: bytes) -> bytes:
        """Attach what the stop marker returned (PostgreSQL's backup_label)."""
        ...

    async def create_restore_point(self, name: str) -> tuple[int, int, int]:
        """Write a named restore point. Returns (timeline, record start LSN, timestamp)."""
        ...

    async def begin_restore(self) -> None:
        """Prepare a fresh, empty data directory for a restore."""
        ...

    async def restore_base(self, payload: bytes) -> None:
        """Unpack a base backup into the fresh data directory."""
        ...

    async def stage_wal(self, segment: WalSegment, payload: bytes) -> None:
        """Make a fetched WAL segment available for replay."""
        ...

    async def replay_to(self, stop: ReplayStop) -> ReplayPosition:
        """Replay staged WAL through the target record, then pause."""
        ...

    async def promote(self, new_timeline: int) -> None:
        """End recovery and open the instance read/write on new_timeline."""
        ...

    async def abandon_restore(self) -> None:
        """Discard the restore data directory."""
        ...

    async def integrity_report(self) -> IntegrityReport:
        """Object counts and checksum of the (restored) instance."""
        ...

    async def close(self) -> None:
        ...
