"""
Durable backup catalog.

The catalog indexes every archived WAL segment, base backup, restore point and
timeline branch by timeline and LSN, and answers the questions recovery
planning asks:
- Which complete base backup is the newest one starting at or before an LSN?
- Which segments form an unbroken chain between two LSNs?
- At which LSN is a restore point, a commit time or a transaction id?

Storage:
    A single SQLite file (CATALOG_PATH). The file is an index only; every row
    can be reconstructed from the metadata manifests in artifact storage with
    rebuild_from_storage().

Timelines:
    A promoted recovery creates timeline N+1 branching from its parent at
    branch_lsn. Lookups on a timeline follow its history: LSNs below the
    branch point are served by the parent timeline.

Invariants:
    - wal_chain() returns a contiguous chain or raises ChainGapError, never a partial chain
    - Only complete backups are candidates for recovery planning
    - Restore point names are unique
    - All writes are transactional (BEGIN IMMEDIATE)

How to change safely:
    - Schema changes must be additive (new tables / nullable columns)
    - Anything added here must also be written to a manifest, or a rebuild loses it
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from ..errors import ChainGapError, DuplicateRestorePointError
from ..models import (
    Artifact,
    ArtifactKind,
    BackupStatus,
    BaseBackup,
    RecordKind,
    ReplicationRecord,
    ReplicationStatus,
    RestorePoint,
    TimelineHistory,
    WalRecordRef,
    WalSegment,
    now_ms,
)
from .metadata import parse_manifest

logger = logging.getLogger(__name__)

# Exclusive upper bound for the newest timeline in a lineage (SQLite INTEGER max)
_UNBOUNDED = (1 << 63) - 1


class BackupCatalog:
    """SQLite-backed catalog of backup artifacts.

    Example:
        >>> catalog = BackupCatalog("/var/lib/pgpitr/catalog.db")
        >>> await catalog.initialize()
        >>> backup = await catalog.find_base_backup_covering(0x3000028)
        >>> chain = await catalog.wal_chain(backup.start_lsn, 0x3000028, backup.timeline)
    """

    def __init__(self, path: str | Path, busy_timeout_ms: int = 5000) -> None:
        """Initialize the catalog.

        Args:
            path: SQLite file path
            busy_timeout_ms: SQLite busy timeout in milliseconds
        """
        self.path = Path(path)
        self.busy_timeout_ms = busy_timeout_ms

    @property
    def exists(self) -> bool:
        return self.path.exists()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection.

        Yields:
            SQLite connection
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            conn.execute("PRAGMA foreign_keys = ON")

            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create catalog tables."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS wal_segments (
                timeline INTEGER NOT NULL,
                start_lsn INTEGER NOT NULL,
                end_lsn INTEGER NOT NULL,
                name TEXT NOT NULL,
                produced_at INTEGER NOT NULL,
                checksum TEXT NOT NULL,
                archived_at INTEGER NOT NULL,
                storage_key TEXT NOT NULL,
                size_bytes INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (timeline, start_lsn)
            );

            CREATE TABLE IF NOT EXISTS wal_records (
                timeline INTEGER NOT NULL,
                lsn INTEGER NOT NULL,
                kind TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                xid INTEGER,
                name TEXT,
                PRIMARY KEY (timeline, lsn)
            );

            CREATE INDEX IF NOT EXISTS idx_wal_records_time
                ON wal_records(timeline, timestamp);
            CREATE INDEX IF NOT EXISTS idx_wal_records_xid
                ON wal_records(xid) WHERE xid IS NOT NULL;

            CREATE TABLE IF NOT EXISTS base_backups (
                backup_id TEXT PRIMARY KEY,
                timeline INTEGER NOT NULL,
                start_lsn INTEGER NOT NULL,
                end_lsn INTEGER,
                created_at INTEGER NOT NULL,
                status TEXT NOT NULL,
                storage_key TEXT,
                size_bytes INTEGER NOT NULL DEFAULT 0,
                checksum TEXT,
                label TEXT,
                completed_at INTEGER
            );

            CREATE INDEX IF NOT EXISTS idx_base_backups_lsn
                ON base_backups(timeline, status, start_lsn);

            CREATE TABLE IF NOT EXISTS restore_points (
                name TEXT PRIMARY KEY,
                lsn INTEGER NOT NULL,
                timestamp INTEGER NOT NULL,
                timeline INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS timelines (
                timeline INTEGER PRIMARY KEY,
                parent_timeline INTEGER,
                branch_lsn INTEGER NOT NULL,
                created_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS artifacts (
                key TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                timeline INTEGER NOT NULL,
                checksum TEXT NOT NULL,
                size_bytes INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS replication (
                artifact_key TEXT NOT NULL,
                region TEXT NOT NULL,
                source_checksum TEXT NOT NULL,
                status TEXT NOT NULL,
                last_attempt_at INTEGER,
                retry_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                PRIMARY KEY (artifact_key, region)
            );
        """)

    async def initialize(self) -> None:
        """Create the catalog file and schema if needed."""
        with self._get_connection() as conn:
            self._create_schema(conn)
        logger.debug("Catalog initialized", extra={"path": str(self.path)})

    # Registration

    async def register_segment(self, segment: WalSegment) -> None:
        """Register an archived segment, its record index and its artifact (idempotent)."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO wal_segments
                    (timeline, start_lsn, end_lsn, name, produced_at, checksum,
                     archived_at, storage_key, size_bytes)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(timeline, start_lsn) DO UPDATE SET
                    end_lsn = excluded.end_lsn,
                    name = excluded.name,
                    checksum = excluded.checksum,
                    storage_key = excluded.storage_key,
                    size_bytes = excluded.size_bytes
                """,
                (
                    segment.timeline,
                    segment.start_lsn,
                    segment.end_lsn,
                    segment.name,
                    segment.produced_at,
                    segment.checksum,
                    segment.archived_at,
                    segment.storage_key,
                    segment.size_bytes,
                ),
            )
            for record in segment.records:
                self._insert_record(conn, record)
                if record.kind == RecordKind.RESTORE_POINT and record.name:
                    conn.execute(
                        "INSERT OR IGNORE INTO restore_points (name, lsn, timestamp, timeline) "
                        "VALUES (?, ?, ?, ?)",
                        (record.name, record.lsn, record.timestamp, record.timeline),
                    )
            self._upsert_artifact(
                conn,
                Artifact(
                    key=segment.storage_key,
                    kind=ArtifactKind.WAL,
                    timeline=segment.timeline,
                    checksum=segment.checksum,
                    size_bytes=segment.size_bytes,
                    created_at=segment.archived_at,
                ),
            )

    def _insert_record(self, conn: sqlite3.Connection, record: WalRecordRef) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO wal_records (timeline, lsn, kind, timestamp, xid, name)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (record.timeline, record.lsn, record.kind.value, record.timestamp, record.xid, record.name),
        )

    async def register_backup(self, backup: BaseBackup) -> None:
        """Insert or replace a base backup entry."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO base_backups
                    (backup_id, timeline, start_lsn, end_lsn, created_at, status,
                     storage_key, size_bytes, checksum, label, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    backup.backup_id,
                    backup.timeline,
                    backup.start_lsn,
                    backup.end_lsn,
                    backup.created_at,
                    backup.status.value,
                    backup.storage_key,
                    backup.size_bytes,
                    backup.checksum,
                    backup.label,
                    backup.completed_at,
                ),
            )
            if backup.storage_key and backup.checksum:
                self._upsert_artifact(
                    conn,
                    Artifact(
                        key=backup.storage_key,
                        kind=ArtifactKind.BASE_BACKUP,
                        timeline=backup.timeline,
                        checksum=backup.checksum,
                        size_bytes=backup.size_bytes,
                        created_at=backup.created_at,
                    ),
                )

    async def mark_backup_status(self, backup_id: str, status: BackupStatus) -> None:
        completed_at = now_ms() if status == BackupStatus.COMPLETE else None
        with self._transaction() as conn:
            conn.execute(
                "UPDATE base_backups SET status = ?, completed_at = ? WHERE backup_id = ?",
                (status.value, completed_at, backup_id),
            )

    async def register_restore_point(self, point: RestorePoint) -> None:
        """Register a named restore point.

        Raises:
            DuplicateRestorePointError: If the name exists at a different LSN
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT lsn FROM restore_points WHERE name = ?", (point.name,)
            ).fetchone()
            if row is not None:
                if row["lsn"] != point.lsn:
                    raise DuplicateRestorePointError(point.name, row["lsn"])
                return
            conn.execute(
                "INSERT INTO restore_points (name, lsn, timestamp, timeline) VALUES (?, ?, ?, ?)",
                (point.name, point.lsn, point.timestamp, point.timeline),
            )
            self._insert_record(
                conn,
                WalRecordRef(
                    lsn=point.lsn,
                    timeline=point.timeline,
                    kind=RecordKind.RESTORE_POINT,
                    timestamp=point.timestamp,
                    name=point.name,
                ),
            )

    async def register_timeline(self, history: TimelineHistory) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO timelines (timeline, parent_timeline, branch_lsn, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (history.timeline, history.parent_timeline, history.branch_lsn, history.created_at),
            )

    async def register_artifact(self, artifact: Artifact) -> None:
        with self._transaction() as conn:
            self._upsert_artifact(conn, artifact)

    def _upsert_artifact(self, conn: sqlite3.Connection, artifact: Artifact) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO artifacts (key, kind, timeline, checksum, size_bytes, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                artifact.key,
                artifact.kind.value,
                artifact.timeline,
                artifact.checksum,
                artifact.size_bytes,
                artifact.created_at,
            ),
        )

    # Lookups

    async def get_backup(self, backup_id: str) -> BaseBackup | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM base_backups WHERE backup_id = ?", (backup_id,)
            ).fetchone()
        return self._row_to_backup(row) if row else None

    async def list_backups(
        self,
        status: BackupStatus | None = None,
        timeline: int | None = None,
    ) -> list[BaseBackup]:
        """Backups ordered oldest first."""
        sql = "SELECT * FROM base_backups WHERE 1 = 1"
        params: list[Any] = []
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        if timeline is not None:
            sql += " AND timeline = ?"
            params.append(timeline)
        sql += " ORDER BY created_at, start_lsn, backup_id"
        with self._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_backup(r) for r in rows]

    async def list_segments(self, timeline: int | None = None) -> list[WalSegment]:
        """Segments ordered by timeline and start LSN (without record indexes)."""
        with self._get_connection() as conn:
            if timeline is None:
                rows = conn.execute(
                    "SELECT * FROM wal_segments ORDER BY timeline, start_lsn"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM wal_segments WHERE timeline = ? ORDER BY start_lsn",
                    (timeline,),
                ).fetchall()
        return [self._row_to_segment(r) for r in rows]

    async def get_segment(self, timeline: int, start_lsn: int) -> WalSegment | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM wal_segments WHERE timeline = ? AND start_lsn = ?",
                (timeline, start_lsn),
            ).fetchone()
        return self._row_to_segment(row) if row else None

    async def list_restore_points(self) -> list[RestorePoint]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM restore_points ORDER BY lsn").fetchall()
        return [
            RestorePoint(name=r["name"], lsn=r["lsn"], timestamp=r["timestamp"], timeline=r["timeline"])
            for r in rows
        ]

    async def list_artifacts(self, kind: ArtifactKind | None = None) -> list[Artifact]:
        with self._get_connection() as conn:
            if kind is None:
                rows = conn.execute("SELECT * FROM artifacts ORDER BY key").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM artifacts WHERE kind = ? ORDER BY key", (kind.value,)
                ).fetchall()
        return [self._row_to_artifact(r) for r in rows]

    async def get_artifact(self, key: str) -> Artifact | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM artifacts WHERE key = ?", (key,)).fetchone()
        return self._row_to_artifact(row) if row else None

    async def latest_timeline(self) -> int:
        """Highest timeline known to the catalog (1 when empty)."""
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT MAX(tl) AS tl FROM (
                    SELECT MAX(timeline) AS tl FROM timelines
                    UNION ALL SELECT MAX(timeline) FROM wal_segments
                    UNION ALL SELECT MAX(timeline) FROM base_backups
                )
                """
            ).fetchone()
        return row["tl"] or 1

    async def latest_lsn(self, timeline: int | None = None) -> int | None:
        """Last LSN covered by archived WAL reachable from a timeline, or None.

        A timeline without segments of its own (just promoted) still reaches
        everything archived on its ancestors up to the branch point.
        """
        if timeline is None:
            timeline = await self.latest_timeline()
        with self._get_connection() as conn:
            for tl, low, high in reversed(await self._lineage(timeline)):
                row = conn.execute(
                    "SELECT MAX(end_lsn) AS end_lsn FROM wal_segments "
                    "WHERE timeline = ? AND start_lsn < ? AND end_lsn > ?",
                    (tl, high, low),
                ).fetchone()
                if row["end_lsn"] is not None:
                    return min(row["end_lsn"], high) - 1
        return None

    async def latest_record(self, timeline: int | None = None) -> WalRecordRef | None:
        """Newest indexed commit or restore point reachable from a timeline."""
        if timeline is None:
            timeline = await self.latest_timeline()
        with self._get_connection() as conn:
            for tl, low, high in reversed(await self._lineage(timeline)):
                row = conn.execute(
                    """
                    SELECT * FROM wal_records
                    WHERE timeline = ? AND lsn >= ? AND lsn < ?
                    ORDER BY lsn DESC LIMIT 1
                    """,
                    (tl, low, high),
                ).fetchone()
                if row is not None:
                    return self._row_to_record(row)
        return None

    async def timeline_history(self, timeline: int) -> list[TimelineHistory]:
        """Branch entries from the given timeline back to the root, newest first."""
        history: list[TimelineHistory] = []
        seen: set[int] = set()
        with self._get_connection() as conn:
            current: int | None = timeline
            while current is not None and current not in seen:
                seen.add(current)
                row = conn.execute(
                    "SELECT * FROM timelines WHERE timeline = ?", (current,)
                ).fetchone()
                if row is None:
                    break
                history.append(
                    TimelineHistory(
                        timeline=row["timeline"],
                        parent_timeline=row["parent_timeline"],
                        branch_lsn=row["branch_lsn"],
                        created_at=row["created_at"],
                    )
                )
                current = row["parent_timeline"]
        return history

    async def _lineage(self, timeline: int) -> list[tuple[int, int, int]]:
        """LSN ranges served by each timeline in a history, oldest first.

        Returns:
            List of (timeline, low, high): timeline serves LSNs in [low, high)
        """
        history = await self.timeline_history(timeline)
        ranges: list[tuple[int, int, int]] = []
        high = _UNBOUNDED
        current = timeline
        for entry in history:
            if entry.parent_timeline is None:
                break
            ranges.append((current, entry.branch_lsn, high))
            high = entry.branch_lsn
            current = entry.parent_timeline
        ranges.append((current, 0, high))
        ranges.reverse()
        return ranges

    async def find_base_backup_covering(
        self,
        target_lsn: int,
        timeline: int | None = None,
    ) -> BaseBackup | None:
        """Most recent complete backup with start LSN at or before target_lsn.

        Args:
            target_lsn: LSN recovery must reach
            timeline: Timeline of the target (default: latest)

        Returns:
            BaseBackup or None if no complete backup qualifies
        """
        if timeline is None:
            timeline = await self.latest_timeline()

        best: BaseBackup | None = None
        with self._get_connection() as conn:
            for tl, low, high in await self._lineage(timeline):
                row = conn.execute(
                    """
                    SELECT * FROM base_backups
                    WHERE timeline = ? AND status = ? AND start_lsn <= ?
                      AND start_lsn >= ? AND start_lsn < ?
                    ORDER BY start_lsn DESC, created_at DESC LIMIT 1
                    """,
                    (tl, BackupStatus.COMPLETE.value, target_lsn, low, high),
                ).fetchone()
                if row is not None:
                    candidate = self._row_to_backup(row)
                    if best is None or candidate.start_lsn >= best.start_lsn:
                        best = candidate
        return best

    async def wal_chain(self, from_lsn: int, to_lsn: int, timeline: int | None = None) -> list[WalSegment]:
        """Contiguous segments covering every LSN in [from_lsn, to_lsn].

        Args:
            from_lsn: First LSN needed (backup start)
            to_lsn: Last LSN needed (recovery stop point), inclusive
            timeline: Timeline of the target (default: latest)

        Returns:
            Segments in replay order

        Raises:
            ChainGapError: If any LSN in the range is not archived
        """
        if timeline is None:
            timeline = await self.latest_timeline()
        if to_lsn < from_lsn:
            return []

        chain: list[WalSegment] = []
        with self._get_connection() as conn:
            for tl, low, high in await self._lineage(timeline):
                need_from = max(from_lsn, low)
                need_to = min(to_lsn, high - 1)
                cursor = need_from
                while cursor <= need_to:
                    row = conn.execute(
                        """
                        SELECT * FROM wal_segments
                        WHERE timeline = ? AND start_lsn <= ? AND end_lsn > ?
                        ORDER BY start_lsn DESC LIMIT 1
                        """,
                        (tl, cursor, cursor),
                    ).fetchone()
                    if row is None:
                        nxt = conn.execute(
                            "SELECT MIN(start_lsn) AS s FROM wal_segments "
                            "WHERE timeline = ? AND start_lsn > ?",
                            (tl, cursor),
                        ).fetchone()
                        missing_to = nxt["s"] if nxt["s"] is not None else need_to + 1
                        raise ChainGapError(tl, cursor, missing_to)
                    segment = self._row_to_segment(row)
                    chain.append(segment)
                    cursor = segment.end_lsn
        return chain

    async def find_gaps(self, timeline: int | None = None) -> list[tuple[int, int]]:
        """Missing [from, to) ranges between the oldest and newest segment of a timeline."""
        if timeline is None:
            timeline = await self.latest_timeline()
        gaps: list[tuple[int, int]] = []
        covered_to: int | None = None
        for segment in await self.list_segments(timeline):
            if covered_to is not None and segment.start_lsn > covered_to:
                gaps.append((covered_to, segment.start_lsn))
            covered_to = segment.end_lsn if covered_to is None else max(covered_to, segment.end_lsn)
        return gaps

    async def resolve_restore_point(self, name: str) -> RestorePoint | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM restore_points WHERE name = ?", (name,)).fetchone()
        if row is None:
            return None
        return RestorePoint(
            name=row["name"], lsn=row["lsn"], timestamp=row["timestamp"], timeline=row["timeline"]
        )

    async def resolve_time(self, timestamp: int, timeline: int | None = None) -> WalRecordRef | None:
        """First indexed record with timestamp at or after the given time."""
        if timeline is None:
            timeline = await self.latest_timeline()
        with self._get_connection() as conn:
            for tl, low, high in await self._lineage(timeline):
                row = conn.execute(
                    """
                    SELECT * FROM wal_records
                    WHERE timeline = ? AND lsn >= ? AND lsn < ? AND timestamp >= ?
                    ORDER BY lsn LIMIT 1
                    """,
                    (tl, low, high, timestamp),
                ).fetchone()
                if row is not None:
                    return self._row_to_record(row)
        return None

    async def resolve_xid(self, xid: int, timeline: int | None = None) -> WalRecordRef | None:
        """Commit record of a transaction."""
        if timeline is None:
            timeline = await self.latest_timeline()
        with self._get_connection() as conn:
            for tl, low, high in await self._lineage(timeline):
                row = conn.execute(
                    """
                    SELECT * FROM wal_records
                    WHERE timeline = ? AND lsn >= ? AND lsn < ? AND kind = ? AND xid = ?
                    ORDER BY lsn LIMIT 1
                    """,
                    (tl, low, high, RecordKind.COMMIT.value, xid),
                ).fetchone()
                if row is not None:
                    return self._row_to_record(row)
        return None

    # Deletion (retention pruning only)

    async def delete_backup(self, backup_id: str) -> None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT storage_key FROM base_backups WHERE backup_id = ?", (backup_id,)
            ).fetchone()
            conn.execute("DELETE FROM base_backups WHERE backup_id = ?", (backup_id,))
            if row is not None and row["storage_key"]:
                conn.execute("DELETE FROM artifacts WHERE key = ?", (row["storage_key"],))

    async def delete_segment(self, timeline: int, start_lsn: int) -> None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT end_lsn, storage_key FROM wal_segments WHERE timeline = ? AND start_lsn = ?",
                (timeline, start_lsn),
            ).fetchone()
            if row is None:
                return
            conn.execute(
                "DELETE FROM wal_segments WHERE timeline = ? AND start_lsn = ?",
                (timeline, start_lsn),
            )
            conn.execute(
                "DELETE FROM wal_records WHERE timeline = ? AND lsn >= ? AND lsn < ? "
                "AND kind = ?",
                (timeline, start_lsn, row["end_lsn"], RecordKind.COMMIT.value),
            )
            conn.execute("DELETE FROM artifacts WHERE key = ?", (row["storage_key"],))

    async def delete_artifact(self, key: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM artifacts WHERE key = ?", (key,))

    # Replication records

    async def get_replication(self, artifact_key: str, region: str) -> ReplicationRecord | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM replication WHERE artifact_key = ? AND region = ?",
                (artifact_key, region),
            ).fetchone()
        return self._row_to_replication(row) if row else None

    async def upsert_replication(self, record: ReplicationRecord) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO replication
                    (artifact_key, region, source_checksum, status, last_attempt_at,
                     retry_count, last_error)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.artifact_key,
                    record.region,
                    record.source_checksum,
                    record.status.value,
                    record.last_attempt_at,
                    record.retry_count,
                    record.last_error,
                ),
            )

    async def delete_replication(self, artifact_key: str, region: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM replication WHERE artifact_key = ? AND region = ?",
                (artifact_key, region),
            )

    async def list_replication(
        self,
        region: str | None = None,
        status: ReplicationStatus | None = None,
    ) -> list[ReplicationRecord]:
        sql = "SELECT * FROM replication WHERE 1 = 1"
        params: list[Any] = []
        if region is not None:
            sql += " AND region = ?"
            params.append(region)
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY artifact_key, region"
        with self._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_replication(r) for r in rows]

    async def pending_replication(self, region: str) -> list[Artifact]:
        """Artifacts not yet synced to a region (or synced with an older checksum)."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT a.* FROM artifacts a
                LEFT JOIN replication r ON r.artifact_key = a.key AND r.region = ?
                WHERE r.status IS NULL OR r.status != ? OR r.source_checksum != a.checksum
                ORDER BY a.key
                """,
                (region, ReplicationStatus.SYNCED.value),
            ).fetchall()
        return [self._row_to_artifact(r) for r in rows]

    async def orphaned_replication(self, region: str) -> list[ReplicationRecord]:
        """Replication records whose artifact was pruned from the catalog."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM replication r
                LEFT JOIN artifacts a ON a.key = r.artifact_key
                WHERE r.region = ? AND a.key IS NULL
                ORDER BY r.artifact_key
                """,
                (region,),
            ).fetchall()
        return [self._row_to_replication(r) for r in rows]

    # Rebuild

    async def rebuild_from_storage(self, storage: Any) -> dict[str, int]:
        """Reconstruct the index from metadata manifests in storage.

        Args:
            storage: StorageBackend holding the artifacts

        Returns:
            Counts of restored entries per kind
        """
        await self.initialize()
        counts = {"segments": 0, "backups": 0, "restore_points": 0, "timelines": 0, "skipped": 0}

        for key in await storage.list(""):
            parts = key.split("/", 2)
            if len(parts) != 3 or parts[1] != ArtifactKind.METADATA.value:
                continue
            try:
                entry = parse_manifest(await storage.get(key))
            except ValueError as e:
                logger.warning(f"Skipping unreadable manifest {key}: {e}")
                counts["skipped"] += 1
                continue

            if isinstance(entry, WalSegment):
                await self.register_segment(entry)
                counts["segments"] += 1
            elif isinstance(entry, BaseBackup):
                await self.register_backup(entry)
                counts["backups"] += 1
            elif isinstance(entry, RestorePoint):
                await self.register_restore_point(entry)
                counts["restore_points"] += 1
            elif isinstance(entry, TimelineHistory):
                await self.register_timeline(entry)
                counts["timelines"] += 1
            else:
                continue

            checksum = await storage.checksum(key)
            if checksum:
                await self.register_artifact(
                    Artifact(
                        key=key,
                        kind=ArtifactKind.METADATA,
                        timeline=int(parts[0], 16),
                        checksum=checksum,
                        size_bytes=0,
                        created_at=now_ms(),
                    )
                )

        logger.info("Catalog rebuilt from storage", extra=counts)
        return counts

    # Row mapping

    @staticmethod
    def _row_to_backup(row: sqlite3.Row) -> BaseBackup:
        return BaseBackup(
            backup_id=row["backup_id"],
            timeline=row["timeline"],
            start_lsn=row["start_lsn"],
            end_lsn=row["end_lsn"],
            created_at=row["created_at"],
            status=BackupStatus(row["status"]),
            storage_key=row["storage_key"],
            size_bytes=row["size_bytes"],
            checksum=row["checksum"],
            label=row["label"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _row_to_segment(row: sqlite3.Row) -> WalSegment:
        return WalSegment(
            name=row["name"],
            timeline=row["timeline"],
            start_lsn=row["start_lsn"],
            end_lsn=row["end_lsn"],
            produced_at=row["produced_at"],
            checksum=row["checksum"],
            archived_at=row["archived_at"],
            storage_key=row["storage_key"],
            size_bytes=row["size_bytes"],
        )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> WalRecordRef:
        return WalRecordRef(
            lsn=row["lsn"],
            timeline=row["timeline"],
            kind=RecordKind(row["kind"]),
            timestamp=row["timestamp"],
            xid=row["xid"],
            name=row["name"],
        )

    @staticmethod
    def _row_to_artifact(row: sqlite3.Row) -> Artifact:
        return Artifact(
            key=row["key"],
            kind=ArtifactKind(row["kind"]),
            timeline=row["timeline"],
            checksum=row["checksum"],
            size_bytes=row["size_bytes"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_replication(row: sqlite3.Row) -> ReplicationRecord:
        return ReplicationRecord(
            artifact_key=row["artifact_key"],
            region=row["region"],
            source_checksum=row["source_checksum"],
            status=ReplicationStatus(row["status"]),
            last_attempt_at=row["last_attempt_at"],
            retry_count=row["retry_count"],
            last_error=row["last_error"],
        )
