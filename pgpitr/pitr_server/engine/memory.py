"""
In-memory database engine for testing.

A miniature write-ahead-logged database that behaves like PostgreSQL at the
level the PITR components observe:
- Every WAL record occupies exactly one LSN
- A transaction's changes become visible at its commit record
- Segments are cut every `segment_size` LSNs or on switch_wal()
- Segment payloads are JSON lines, one record per line

Invariants:
    - All data is lost on process exit
    - Snapshots contain exactly the commits below the backup start LSN
    - Replay applies commits in LSN order and stops at the requested LSN

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the DatabaseEngine protocol
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

from ..errors import EngineError
from ..models import RecordKind, WalRecordRef, WalSegment, format_lsn, now_ms
from .base import BackupStart, IntegrityReport, ReplayPosition, ReplayStop, SegmentNotice

logger = logging.getLogger(__name__)


@dataclass
class _RestoreState:
    """A restore in progress (the fresh data directory)."""

    timeline: int | None = None
    start_lsn: int | None = None
    tables: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    staged: dict[int, dict[str, Any]] = field(default_factory=dict)
    reached_lsn: int | None = None


class InMemoryEngine:
    """In-memory implementation of DatabaseEngine.

    Example:
        >>> engine = InMemoryEngine(segment_size=10)
        >>> engine.advance_to(100)
        >>> xid, commit_lsn = engine.execute("users", {"id": 1})
        >>> engine.switch_wal_now()
    """

    def __init__(
        self,
        instance_id: str = "primary",
        segment_size: int = 16,
        timeline: int = 1,
        start_lsn: int = 0,
        clock: Callable[[], int] | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            instance_id: Instance identifier
            segment_size: LSNs per WAL segment
            timeline: Initial timeline
            start_lsn: Initial insert position
            clock: Millisecond clock for record timestamps (default wall clock)
        """
        if segment_size < 1:
            raise ValueError("segment_size must be positive")
        self.instance_id = instance_id
        self.segment_size = segment_size
        self.timeline = timeline
        self._clock = clock or now_ms
        self._position = start_lsn
        self._segment_start = start_lsn
        self._log: list[dict[str, Any]] = []
        self._tables: dict[str, list[dict[str, Any]]] = {}
        self._pending: dict[int, list[dict[str, Any]]] = {}
        self._next_xid = 1000
        self._backup_start: int | None = None
        self._backup_tables: dict[str, list[dict[str, Any]]] = {}
        self._notices: asyncio.Queue[SegmentNotice | None] = asyncio.Queue()
        self._unacked: dict[str, SegmentNotice] = {}
        self.recycled: list[str] = []
        self._restore: _RestoreState | None = None
        self.promoted_timelines: list[int] = []

    # Writing

    def begin(self) -> int:
        """Start a transaction and return its xid."""
        xid = self._next_xid
        self._next_xid += 1
        self._pending[xid] = []
        return xid

    def write(self, xid: int, table: str, row: dict[str, Any]) -> int:
        """Write a row inside a transaction. Returns the record LSN."""
        if xid not in self._pending:
            raise EngineError(f"Transaction {xid} is not open")
        change = {"table": table, "row": row}
        self._pending[xid].append(change)
        return self._append({"type": "insert", "xid": xid, **change})

    def commit(self, xid: int) -> int:
        """Commit a transaction. Returns the commit record LSN."""
        changes = self._pending.pop(xid, None)
        if changes is None:
            raise EngineError(f"Transaction {xid} is not open")
        return self._append(
            {"type": "commit", "xid": xid, "ts": self._clock(), "changes": changes}
        )

    def execute(self, table: str, row: dict[str, Any]) -> tuple[int, int]:
        """Insert one row in its own transaction. Returns (xid, commit LSN)."""
        xid = self.begin()
        self.write(xid, table, row)
        return xid, self.commit(xid)

    def advance_to(self, lsn: int) -> None:
        """Write filler records until the insert position reaches lsn."""
        while self._position < lsn:
            self._append({"type": "noop"})

    def switch_wal_now(self) -> int:
        """Close the current segment if it holds any record."""
        if self._position > self._segment_start:
            self._close_segment()
        return self._position

    @property
    def position(self) -> int:
        return self._position

    def rows(self, table: str) -> list[dict[str, Any]]:
        return list(self._tables.get(table, []))

    @property
    def unacknowledged(self) -> list[str]:
        return sorted(self._unacked)

    def _append(self, record: dict[str, Any]) -> int:
        lsn = self._position
        record = {"lsn": lsn, **record}
        self._log.append(record)
        self._position += 1
        if record["type"] == "commit":
            self._apply(self._tables, record)
        if self._position - self._segment_start >= self.segment_size:
            self._close_segment()
        return lsn

    def _close_segment(self) -> None:
        start, end = self._segment_start, self._position
        records = [r for r in self._log if r["lsn"] < end]
        self._log = [r for r in self._log if r["lsn"] >= end]
        payload = "".join(json.dumps(r, sort_keys=True) + "\n" for r in records).encode("utf-8")
        refs = tuple(self._record_ref(r) for r in records if r["type"] in ("commit", "restore_point"))
        notice = SegmentNotice(
            name=f"{self.timeline:08X}{start:016X}",
            timeline=self.timeline,
            start_lsn=start,
            end_lsn=end,
            produced_at=self._clock(),
            payload=payload,
            records=refs,
        )
        self._segment_start = end
        self._unacked[notice.name] = notice
        self._notices.put_nowait(notice)
        logger.debug("Segment completed", extra={"segment": str(notice)})

    def _record_ref(self, record: dict[str, Any]) -> WalRecordRef:
        if record["type"] == "commit":
            return WalRecordRef(
                lsn=record["lsn"],
                timeline=self.timeline,
                kind=RecordKind.COMMIT,
                timestamp=record["ts"],
                xid=record["xid"],
            )
        return WalRecordRef(
            lsn=record["lsn"],
            timeline=self.timeline,
            kind=RecordKind.RESTORE_POINT,
            timestamp=record["ts"],
            name=record["name"],
        )

    @staticmethod
    def _apply(tables: dict[str, list[dict[str, Any]]], record: dict[str, Any]) -> None:
        for change in record.get("changes", []):
            tables.setdefault(change["table"], []).append(dict(change["row"]))

    # Archiving

    async def current_position(self) -> tuple[int, int]:
        return self.timeline, self._position

    async def segment_notices(self) -> AsyncIterator[SegmentNotice]:
        while True:
            notice = await self._notices.get()
            if notice is None:
                return
            yield notice

    async def acknowledge(self, notice: SegmentNotice) -> None:
        if self._unacked.pop(notice.name, None) is not None:
            self.recycled.append(notice.name)

    def redeliver_unacknowledged(self) -> int:
        """Re-queue every unacknowledged segment, as PostgreSQL retries archive_command."""
        pending = sorted(self._unacked.values(), key=lambda n: (n.timeline, n.start_lsn))
        for notice in pending:
            self._notices.put_nowait(notice)
        return len(pending)

    async def switch_wal(self) -> int:
        return self.switch_wal_now()

    # Backups

    async def start_backup(self, label: str) -> BackupStart:
        if self._backup_start is not None:
            raise EngineError("A backup is already in progress", command="start_backup")
        self._backup_start = self._position
        self._backup_tables = json.loads(json.dumps(self._tables))
        return BackupStart(timeline=self.timeline, start_lsn=self._position, label=label)

    async def read_snapshot(self) -> bytes:
        if self._backup_start is None:
            raise EngineError("No backup in progress", command="read_snapshot")
        snapshot = {
            "timeline": self.timeline,
            "start_lsn": self._backup_start,
            "tables": self._backup_tables,
        }
        return json.dumps(snapshot, sort_keys=True).encode("utf-8")

    async def stop_backup(self) -> int:
        if self._backup_start is None:
            raise EngineError("No backup in progress", command="stop_backup")
        end_lsn = self._append({"type": "backup_end", "start_lsn": self._backup_start})
        self._backup_start = None
        self.switch_wal_now()
        return end_lsn

    async def finalize_snapshot(self, snapshot: bytes) -> bytes:
        return snapshot

    async def create_restore_point(self, name: str) -> tuple[int, int, int]:
        ts = self._clock()
        lsn = self._append({"type": "restore_point", "name": name, "ts": ts})
        return self.timeline, lsn, ts

    # Restoring

    async def begin_restore(self) -> None:
        if self._restore is not None:
            raise EngineError("A restore is already in progress", command="begin_restore")
        self._restore = _RestoreState()

    async def restore_base(self, payload: bytes) -> None:
        state = self._restore_state("restore_base")
        try:
            snapshot = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise EngineError(f"Unreadable base backup: {e}", command="restore_base")
        state.timeline = snapshot["timeline"]
        state.start_lsn = snapshot["start_lsn"]
        state.tables = snapshot["tables"]

    async def stage_wal(self, segment: WalSegment, payload: bytes) -> None:
        state = self._restore_state("stage_wal")
        try:
            lines = payload.decode("utf-8").splitlines()
            records = [json.loads(line) for line in lines if line]
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise EngineError(f"Unreadable WAL segment {segment.name}: {e}", command="stage_wal")
        for record in records:
            state.staged[record["lsn"]] = record

    async def replay_to(self, stop: ReplayStop) -> ReplayPosition:
        state = self._restore_state("replay_to")
        stop_lsn = stop.lsn
        if state.start_lsn is None:
            raise EngineError("No base backup restored", command="replay_to")
        if stop_lsn < state.start_lsn:
            raise EngineError(
                f"Target {format_lsn(stop_lsn)} is before backup start "
                f"{format_lsn(state.start_lsn)}",
                command="replay_to",
            )
        lsn = state.start_lsn
        while lsn <= stop_lsn:
            record = state.staged.get(lsn)
            if record is None:
                raise EngineError(
                    f"WAL record {format_lsn(lsn)} missing during replay",
                    command="replay_to",
                )
            if record["type"] == "commit":
                self._apply(state.tables, record)
            lsn += 1
        state.reached_lsn = stop_lsn
        logger.debug("Replay paused", extra={"reached_lsn": stop_lsn, "target": str(stop)})
        return ReplayPosition(lsn=stop_lsn, end_lsn=stop_lsn + 1)

    async def promote(self, new_timeline: int) -> None:
        state = self._restore_state("promote")
        if state.reached_lsn is None:
            raise EngineError("Cannot promote before replay", command="promote")
        self._tables = state.tables
        self.timeline = new_timeline
        self._position = state.reached_lsn + 1
        self._segment_start = self._position
        self._log = []
        self._pending.clear()
        self._restore = None
        self.promoted_timelines.append(new_timeline)

    async def abandon_restore(self) -> None:
        self._restore = None

    async def integrity_report(self) -> IntegrityReport:
        if self._restore is not None and self._restore.reached_lsn is not None:
            tables = self._restore.tables
            timeline = self._restore.timeline or self.timeline
            position = self._restore.reached_lsn
        else:
            tables = self._tables
            timeline = self.timeline
            position = self._position
        digest = hashlib.sha256(json.dumps(tables, sort_keys=True).encode("utf-8")).hexdigest()
        return IntegrityReport(
            timeline=timeline,
            position=position,
            tables={name: len(rows) for name, rows in sorted(tables.items())},
            checksum=f"sha256:{digest}",
        )

    @property
    def restoring(self) -> bool:
        return self._restore is not None

    async def close(self) -> None:
        self._notices.put_nowait(None)

    def _restore_state(self, command: str) -> _RestoreState:
        if self._restore is None:
            raise EngineError("No restore in progress", command=command)
        return self._restore
