"""
Base backup manager and retention pruning.

A base backup is a consistent copy of the data directory bracketed by the
engine's start/stop backup markers. Its start LSN plus the archived WAL from
that LSN forward is enough to reach any later point.

Lifecycle:
    start marker -> register pending -> copy -> stop marker (always issued)
    -> upload (retry) -> verify checksum -> manifest
    -> wait until WAL [start_lsn, end_lsn] is archived -> complete
    Any failure -> failed (terminal, never used for recovery)

Storage layout:
    {timeline:08X}/base-backup/{backup_id}.tar.gz
    {timeline:08X}/metadata/backup-{backup_id}.json

Retention:
    Keep the newest `retention_count` complete backups, every complete backup
    younger than `retention_age_days`, and for every restore point the backup
    recovery would choose to reach it. WAL ending at or before the oldest kept
    backup's start LSN is no longer needed and is deleted with its manifest.

Invariants:
    - At most one base backup is in flight; a second trigger is rejected, not queued
    - A backup is complete only after checksum verification and WAL coverage
    - Pruning never deletes the newest complete backup
    - Pruning never deletes what a restore point or a retained backup needs
    - Pruning removes catalog rows before storage objects; a failed delete
      leaves an orphaned object, never a cataloged artifact without its payload

How to change safely:
    - Run the retention property tests after touching prune()
    - Never mark complete before the WAL chain check
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..catalog import BackupCatalog, backup_manifest, restore_point_manifest
from ..engine.base import DatabaseEngine
from ..errors import (
    BackupError,
    ChainGapError,
    ChecksumMismatchError,
    ConcurrencyConflictError,
    DuplicateRestorePointError,
    PitrError,
    TargetResolutionError,
)
from ..models import (
    Artifact,
    ArtifactKind,
    BackupStatus,
    BaseBackup,
    RestorePoint,
    artifact_key,
    backup_manifest_id,
    now_ms,
    wal_manifest_id,
)
from ..notify import LoggingNotifier, NotificationHub, Severity
from ..retry import RetryPolicy
from ..storage.base import StorageBackend, compute_checksum

logger = logging.getLogger(__name__)

DAY_MS = 86_400_000


@dataclass(frozen=True)
class RetentionPolicy:
    """How many base backups to keep.

    A complete backup is retained if it is among the newest `retention_count`
    OR younger than `retention_age_days`.
    """

    retention_count: int = 7
    retention_age_days: int = 30

    @classmethod
    def from_config(cls, config: Any) -> RetentionPolicy:
        """Build from a BaseBackupConfig section."""
        return cls(
            retention_count=config.retention_count,
            retention_age_days=config.retention_age_days,
        )


@dataclass
class PruneResult:
    """Outcome of one retention pass."""

    kept_backups: list[str] = field(default_factory=list)
    deleted_backups: list[str] = field(default_factory=list)
    deleted_segments: list[str] = field(default_factory=list)
    orphaned_keys: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kept_backups": self.kept_backups,
            "deleted_backups": self.deleted_backups,
            "deleted_segments": self.deleted_segments,
            "orphaned_keys": self.orphaned_keys,
        }


def new_backup_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"base_{stamp}_{uuid.uuid4().hex[:8]}"


class BaseBackupManager:
    """Takes base backups and applies retention.

    Example:
        >>> manager = BaseBackupManager(engine, storage, catalog, policy, notifier)
        >>> backup = await manager.take_base_backup(label="nightly")
        >>> backup.status
        <BackupStatus.COMPLETE: 'complete'>
    """

    def __init__(
        self,
        engine: DatabaseEngine,
        storage: StorageBackend,
        catalog: BackupCatalog,
        retry_policy: RetryPolicy | None = None,
        notifier: NotificationHub | None = None,
        retention: RetentionPolicy | None = None,
        wal_wait_timeout: float = 600.0,
        wal_poll_interval: float = 0.5,
        interval_seconds: float = 86400,
        clock=now_ms,
    ) -> None:
        """Initialize the manager.

        Args:
            engine: Database engine to back up
            storage: Artifact storage
            catalog: Backup catalog
            retry_policy: Retry policy for storage calls
            notifier: Notification hub for failures
            retention: Retention policy applied after each backup
            wal_wait_timeout: Seconds to wait for the backup's WAL to be archived
            wal_poll_interval: Seconds between WAL coverage checks
            interval_seconds: Interval of the scheduled loop
            clock: Millisecond clock (tests pass a fake one)
        """
        self.engine = engine
        self.storage = storage
        self.catalog = catalog
        self.retry = retry_policy or RetryPolicy()
        self.notifier = notifier or NotificationHub([LoggingNotifier()])
        self.retention = retention or RetentionPolicy()
        self.wal_wait_timeout = wal_wait_timeout
        self.wal_poll_interval = wal_poll_interval
        self.interval_seconds = interval_seconds
        self._clock = clock

        self._lock = asyncio.Lock()
        self._current_id: str | None = None
        self._running = False
        self._completed_count = 0
        self._failed_count = 0
        self._last_backup: BaseBackup | None = None

    @property
    def in_progress(self) -> str | None:
        """Id of the backup in flight, if any."""
        return self._current_id if self._lock.locked() else None

    async def take_base_backup(self, label: str | None = None) -> BaseBackup:
        """Take a base backup now.

        Args:
            label: Optional human readable label

        Returns:
            The complete BaseBackup

        Raises:
            ConcurrencyConflictError: If a backup is already in flight
            BackupError: If the backup failed (it is then marked failed)
        """
        if self._lock.locked():
            raise ConcurrencyConflictError("base backup", holder=self._current_id)

        async with self._lock:
            backup_id = new_backup_id()
            self._current_id = backup_id
            try:
                backup = await self._run_backup(backup_id, label or backup_id)
            finally:
                self._current_id = None

        try:
            await self.prune()
        except PitrError as e:
            logger.error(f"Retention pruning failed: {e.message}", extra={"error_code": e.code})
        return backup

    async def _run_backup(self, backup_id: str, label: str) -> BaseBackup:
        backup: BaseBackup | None = None
        try:
            start = await self.engine.start_backup(label)
            backup = BaseBackup(
                backup_id=backup_id,
                timeline=start.timeline,
                start_lsn=start.start_lsn,
                created_at=self._clock(),
                status=BackupStatus.PENDING,
                storage_key=artifact_key(
                    start.timeline, ArtifactKind.BASE_BACKUP, f"{backup_id}.tar.gz"
                ),
                label=label,
            )
            await self.catalog.register_backup(backup)
            logger.info(
                "Base backup started",
                extra={"backup_id": backup_id, "timeline": start.timeline, "start_lsn": start.start_lsn},
            )

            try:
                snapshot = await self.engine.read_snapshot()
            finally:
                end_lsn = await self.engine.stop_backup()
            payload = await self.engine.finalize_snapshot(snapshot)
            backup.end_lsn = end_lsn

            checksum = compute_checksum(payload)
            await self.retry.run("backup put", self.storage.put, backup.storage_key, payload)
            stored = await self.retry.run("backup verify", self.storage.checksum, backup.storage_key)
            if stored != checksum:
                raise ChecksumMismatchError(backup.storage_key, checksum, stored)
            backup.checksum = checksum
            backup.size_bytes = len(payload)
            await self.catalog.register_backup(backup)
            await self._write_manifest(backup)

            await self._wait_for_wal(backup)

            backup.status = BackupStatus.COMPLETE
            backup.completed_at = self._clock()
            await self.catalog.register_backup(backup)
            await self._write_manifest(backup)

        except Exception as e:
            self._failed_count += 1
            reason = e.message if isinstance(e, PitrError) else str(e)
            if backup is not None:
                backup.status = BackupStatus.FAILED
                await self.catalog.register_backup(backup)
                try:
                    await self._write_manifest(backup)
                except PitrError as manifest_error:
                    logger.warning(f"Could not write failed backup manifest: {manifest_error.message}")
            logger.error(
                f"Base backup {backup_id} failed: {reason}",
                exc_info=not isinstance(e, PitrError),
                extra={"backup_id": backup_id},
            )
            await self.notifier.notify(
                "base_backup",
                Severity.CRITICAL if isinstance(e, (ChainGapError, ChecksumMismatchError)) else Severity.ERROR,
                f"Base backup {backup_id} failed: {reason}",
                backup_id=backup_id,
                error_code=getattr(e, "code", None),
            )
            if isinstance(e, BackupError):
                raise
            raise BackupError(backup_id, reason) from e

        self._completed_count += 1
        self._last_backup = backup
        logger.info(
            "Base backup complete",
            extra={
                "backup_id": backup_id,
                "start_lsn": backup.start_lsn,
                "end_lsn": backup.end_lsn,
                "size_bytes": backup.size_bytes,
            },
        )
        return backup

    async def create_restore_point(self, name: str) -> RestorePoint:
        """Write a named restore point and force a WAL switch.

        The switch closes the segment holding the point so the archiver ships
        it promptly instead of waiting for the segment to fill.

        Raises:
            DuplicateRestorePointError: If the name is already taken
        """
        if not name:
            raise TargetResolutionError("Restore point name must not be empty")
        existing = await self.catalog.resolve_restore_point(name)
        if existing is not None:
            raise DuplicateRestorePointError(name, existing.lsn)

        timeline, lsn, timestamp = await self.engine.create_restore_point(name)
        point = RestorePoint(name=name, lsn=lsn, timestamp=timestamp, timeline=timeline)
        await self.catalog.register_restore_point(point)

        key, manifest = restore_point_manifest(point)
        checksum = await self.retry.run("restore point manifest put", self.storage.put, key, manifest)
        await self.catalog.register_artifact(
            Artifact(
                key=key,
                kind=ArtifactKind.METADATA,
                timeline=timeline,
                checksum=checksum,
                size_bytes=len(manifest),
                created_at=timestamp,
            )
        )
        await self.engine.switch_wal()
        logger.info(
            "Restore point created",
            extra={"restore_point": name, "timeline": timeline, "lsn": lsn},
        )
        return point

    async def _write_manifest(self, backup: BaseBackup) -> None:
        key, manifest = backup_manifest(backup)
        checksum = await self.retry.run("backup manifest put", self.storage.put, key, manifest)
        await self.catalog.register_artifact(
            Artifact(
                key=key,
                kind=ArtifactKind.METADATA,
                timeline=backup.timeline,
                checksum=checksum,
                size_bytes=len(manifest),
                created_at=backup.created_at,
            )
        )

    async def _wait_for_wal(self, backup: BaseBackup) -> None:
        """Block until the catalog holds WAL [start_lsn, end_lsn]."""
        loop = asyncio.get_event_loop()
        deadline = loop.time() + self.wal_wait_timeout
        while True:
            try:
                await self.catalog.wal_chain(backup.start_lsn, backup.end_lsn, backup.timeline)
                return
            except ChainGapError as e:
                if loop.time() >= deadline:
                    raise BackupError(
                        backup.backup_id,
                        f"WAL needed by the backup was not archived within "
                        f"{self.wal_wait_timeout}s: {e.message}",
                    ) from e
            await asyncio.sleep(self.wal_poll_interval)

    async def prune(self) -> PruneResult:
        """Apply the retention policy.

        Returns:
            What was kept and deleted
        """
        result = PruneResult()
        complete = await self.catalog.list_backups(status=BackupStatus.COMPLETE)
        if not complete:
            return result

        ordered = sorted(complete, key=lambda b: (b.created_at, b.start_lsn))
        newest = ordered[-1]
        cutoff = self._clock() - self.retention.retention_age_days * DAY_MS

        keep = {b.backup_id for b in ordered[-self.retention.retention_count :]}
        keep |= {b.backup_id for b in ordered if b.created_at >= cutoff}
        keep.add(newest.backup_id)
        for point in await self.catalog.list_restore_points():
            chosen = await self.catalog.find_base_backup_covering(point.lsn, point.timeline)
            if chosen is not None:
                keep.add(chosen.backup_id)

        kept = [b for b in ordered if b.backup_id in keep]
        result.kept_backups = [b.backup_id for b in kept]

        for backup in ordered:
            if backup.backup_id not in keep:
                await self._delete_backup(backup, result)
                result.deleted_backups.append(backup.backup_id)

        for backup in await self.catalog.list_backups():
            if backup.status == BackupStatus.COMPLETE or backup.backup_id == self._current_id:
                continue
            if backup.created_at < newest.created_at:
                await self._delete_backup(backup, result)
                result.deleted_backups.append(backup.backup_id)

        oldest_start = min(b.start_lsn for b in kept)
        for segment in await self.catalog.list_segments():
            if segment.end_lsn > oldest_start:
                continue
            manifest_key = artifact_key(
                segment.timeline,
                ArtifactKind.METADATA,
                wal_manifest_id(segment.start_lsn, segment.end_lsn),
            )
            await self.catalog.delete_segment(segment.timeline, segment.start_lsn)
            await self.catalog.delete_artifact(manifest_key)
            result.deleted_segments.append(segment.storage_key)
            await self._delete_objects(result, manifest_key, segment.storage_key)

        if result.deleted_backups or result.deleted_segments:
            logger.info(
                "Retention pruning complete",
                extra={
                    "kept": len(result.kept_backups),
                    "deleted_backups": len(result.deleted_backups),
                    "deleted_segments": len(result.deleted_segments),
                },
            )
        return result

    async def _delete_backup(self, backup: BaseBackup, result: PruneResult) -> None:
        manifest_key = artifact_key(
            backup.timeline, ArtifactKind.METADATA, backup_manifest_id(backup.backup_id)
        )
        await self.catalog.delete_backup(backup.backup_id)
        await self.catalog.delete_artifact(manifest_key)
        logger.info(
            "Deleted base backup",
            extra={"backup_id": backup.backup_id, "status": backup.status.value},
        )
        await self._delete_objects(result, manifest_key, backup.storage_key)

    async def _delete_objects(
        self, result: PruneResult, manifest_key: str, payload_key: str | None
    ) -> None:
        """Delete a pruned artifact's objects, manifest first.

        The catalog rows are already gone, so a failure here only leaves an
        orphaned object behind. The payload is kept when its manifest could
        not be deleted, so a catalog rebuild never finds a manifest without
        its payload.
        """
        keys = [manifest_key] + ([payload_key] if payload_key else [])
        for index, key in enumerate(keys):
            try:
                await self.retry.run("pruned object delete", self.storage.delete, key)
            except PitrError as e:
                result.orphaned_keys.extend(keys[index:])
                logger.warning(
                    f"Could not delete pruned object {key}: {e.message}",
                    extra={"orphaned": keys[index:]},
                )
                return

    async def run(self) -> None:
        """Run the scheduled backup loop until stopped."""
        if self._running:
            logger.warning("Backup scheduler already running")
            return

        self._running = True
        logger.info("Starting backup scheduler", extra={"interval_seconds": self.interval_seconds})

        try:
            while self._running:
                await asyncio.sleep(self.interval_seconds)
                if not self._running:
                    break
                try:
                    await self.take_base_backup(label="scheduled")
                except PitrError as e:
                    logger.error(f"Scheduled base backup failed: {e.message}")
        except asyncio.CancelledError:
            logger.info("Backup scheduler cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the scheduled backup loop."""
        self._running = False

    @property
    def stats(self) -> dict[str, Any]:
        """Get backup manager statistics."""
        return {
            "running": self._running,
            "in_progress": self.in_progress,
            "completed_count": self._completed_count,
            "failed_count": self._failed_count,
            "last_backup_id": self._last_backup.backup_id if self._last_backup else None,
        }
