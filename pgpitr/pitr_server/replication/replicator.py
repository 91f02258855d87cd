"""
Cross-region replicator.

Copies every cataloged artifact from the primary storage to each destination
region and records per-region status in the catalog. Every pass compares the
destination checksum of every artifact, synced or not, so a replica that was
lost or altered after it was synced is copied again:

    for region, artifact:
        destination checksum == source checksum?  -> synced (no copy)
        else get (retry) -> verify source -> put (retry) -> verify -> synced
        failure -> failed, retry_count + 1, eligible again next sync

Artifacts pruned from the catalog are deleted from the destinations too, so
a region never holds more than the source.

Invariants:
    - An artifact is synced to a region only after the destination checksum matches
    - One artifact/region pair is copied by one worker at a time
    - Repeated sync() calls converge once the failures stop

How to change safely:
    - Keep sync() idempotent; it runs on a schedule and on demand
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from ..catalog import BackupCatalog
from ..errors import ChecksumMismatchError, PitrError, ReplicationLagError
from ..models import Artifact, ReplicationRecord, ReplicationStatus, now_ms
from ..notify import LoggingNotifier, NotificationHub, Severity
from ..retry import RetryPolicy
from ..storage.base import StorageBackend, compute_checksum

logger = logging.getLogger(__name__)


@dataclass
class RegionSyncResult:
    """Counts for one region in one sync pass.

    skipped counts artifacts the destination already held before they were
    recorded as synced; verified counts synced ones whose copy still matches.
    """

    copied: int = 0
    skipped: int = 0
    verified: int = 0
    failed: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "copied": self.copied,
            "skipped": self.skipped,
            "verified": self.verified,
            "failed": self.failed,
            "deleted": self.deleted,
            "errors": self.errors,
        }


class CrossRegionReplicator:
    """Keeps destination regions in step with the primary storage.

    Example:
        >>> replicator = CrossRegionReplicator(storage, catalog, {"eu-central-1": replica})
        >>> result = await replicator.sync()
        >>> result["eu-central-1"].failed
        0
    """

    def __init__(
        self,
        source: StorageBackend,
        catalog: BackupCatalog,
        destinations: dict[str, StorageBackend],
        retry_policy: RetryPolicy | None = None,
        notifier: NotificationHub | None = None,
        workers: int = 4,
        alert_after_failures: int = 3,
        mirror_deletes: bool = True,
        interval_seconds: float = 300,
    ) -> None:
        """Initialize the replicator.

        Args:
            source: Primary artifact storage
            catalog: Backup catalog (artifact list and replication records)
            destinations: Region name to destination storage
            retry_policy: Retry policy for storage calls
            notifier: Notification hub for replication lag
            workers: Maximum concurrent copies
            alert_after_failures: Consecutive failures before a lag warning
            mirror_deletes: Delete pruned artifacts from destinations
            interval_seconds: Interval of the scheduled loop
        """
        self.source = source
        self.catalog = catalog
        self.destinations = destinations
        self.retry = retry_policy or RetryPolicy()
        self.notifier = notifier or NotificationHub([LoggingNotifier()])
        self.workers = workers
        self.alert_after_failures = alert_after_failures
        self.mirror_deletes = mirror_deletes
        self.interval_seconds = interval_seconds

        self._semaphore = asyncio.Semaphore(workers)
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[str, str], int] = {}
        self._running = False
        self._sync_count = 0
        self._last_sync: dict[str, RegionSyncResult] = {}

    async def sync(self) -> dict[str, RegionSyncResult]:
        """Replicate everything pending to every region.

        Returns:
            Per-region results of this pass
        """
        results = {region: RegionSyncResult() for region in self.destinations}
        artifacts = await self.catalog.list_artifacts()
        jobs = []
        for region, destination in self.destinations.items():
            for artifact in artifacts:
                jobs.append(self._replicate(region, destination, artifact, results[region]))
            if self.mirror_deletes:
                for record in await self.catalog.orphaned_replication(region):
                    jobs.append(self._mirror_delete(region, destination, record, results[region]))

        await asyncio.gather(*jobs)

        self._sync_count += 1
        self._last_sync = results
        logger.info(
            "Replication pass complete",
            extra={region: result.to_dict() for region, result in results.items()},
        )
        return results

    async def _replicate(
        self,
        region: str,
        destination: StorageBackend,
        artifact: Artifact,
        result: RegionSyncResult,
    ) -> None:
        async with self._semaphore, self._pair_lock(artifact.key, region):
            record = await self.catalog.get_replication(artifact.key, region)
            synced = (
                record is not None
                and record.status == ReplicationStatus.SYNCED
                and record.source_checksum == artifact.checksum
            )
            if record is None:
                record = ReplicationRecord(
                    artifact_key=artifact.key, region=region, source_checksum=artifact.checksum
                )
            record.source_checksum = artifact.checksum

            try:
                copied = await self._copy(destination, artifact)
            except PitrError as e:
                record.last_attempt_at = now_ms()
                record.status = ReplicationStatus.FAILED
                record.retry_count += 1
                record.last_error = e.message
                result.failed += 1
                result.errors.append(f"{artifact.key}: {e.message}")
                logger.warning(
                    f"Replication of {artifact.key} to {region} failed: {e.message}",
                    extra={"region": region, "retry_count": record.retry_count},
                )
                await self.catalog.upsert_replication(record)
                if record.retry_count >= self.alert_after_failures:
                    lag = ReplicationLagError(artifact.key, region, record.retry_count)
                    await self.notifier.notify(
                        "replicator",
                        Severity.WARNING,
                        lag.message,
                        **lag.details,
                    )
                return

            if synced and not copied:
                result.verified += 1
                return
            if synced:
                logger.warning(
                    f"Replica of {artifact.key} in {region} no longer matched; copied again",
                    extra={"region": region},
                )
            record.last_attempt_at = now_ms()
            record.status = ReplicationStatus.SYNCED
            record.retry_count = 0
            record.last_error = None
            await self.catalog.upsert_replication(record)
            if copied:
                result.copied += 1
            else:
                result.skipped += 1

    @contextlib.asynccontextmanager
    async def _pair_lock(self, key: str, region: str) -> AsyncIterator[None]:
        """Serialize work on one artifact/region pair; the lock lives while in use."""
        pair = (key, region)
        lock = self._locks.setdefault(pair, asyncio.Lock())
        self._lock_users[pair] = self._lock_users.get(pair, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[pair] -= 1
            if not self._lock_users[pair]:
                del self._lock_users[pair]
                del self._locks[pair]

    async def _copy(self, destination: StorageBackend, artifact: Artifact) -> bool:
        """Copy one artifact. Returns False when the destination already had it."""
        existing = await self.retry.run("replica checksum", destination.checksum, artifact.key)
        if existing == artifact.checksum:
            return False

        payload = await self.retry.run("replica source get", self.source.get, artifact.key)
        actual = compute_checksum(payload)
        if actual != artifact.checksum:
            raise ChecksumMismatchError(artifact.key, artifact.checksum, actual)

        await self.retry.run("replica put", destination.put, artifact.key, payload)
        stored = await self.retry.run("replica verify", destination.checksum, artifact.key)
        if stored != artifact.checksum:
            raise ChecksumMismatchError(artifact.key, artifact.checksum, stored)
        return True

    async def _mirror_delete(
        self,
        region: str,
        destination: StorageBackend,
        record: ReplicationRecord,
        result: RegionSyncResult,
    ) -> None:
        async with self._semaphore, self._pair_lock(record.artifact_key, region):
            try:
                await self.retry.run("replica delete", destination.delete, record.artifact_key)
            except PitrError as e:
                result.errors.append(f"{record.artifact_key}: {e.message}")
                logger.warning(f"Could not delete {record.artifact_key} from {region}: {e.message}")
                return
            await self.catalog.delete_replication(record.artifact_key, region)
            result.deleted += 1

    async def verify(self) -> dict[str, dict[str, Any]]:
        """Compare each destination against the catalog.

        Synced records whose object is gone from the destination go back to
        pending, so the next sync() copies them again.

        Returns:
            Per-region counts and the keys that are missing or extra
        """
        artifacts = {a.key for a in await self.catalog.list_artifacts()}
        report: dict[str, dict[str, Any]] = {}
        for region, destination in self.destinations.items():
            keys = set(await self.retry.run("replica list", destination.list, ""))
            missing = sorted(artifacts - keys)
            extra = sorted(keys - artifacts)
            for record in await self.catalog.list_replication(region, ReplicationStatus.SYNCED):
                if record.artifact_key in artifacts and record.artifact_key not in keys:
                    record.status = ReplicationStatus.PENDING
                    record.last_error = "Missing from destination"
                    await self.catalog.upsert_replication(record)
                    logger.warning(
                        f"Synced replica of {record.artifact_key} is missing from {region}",
                        extra={"region": region},
                    )
            synced = await self.catalog.list_replication(region, ReplicationStatus.SYNCED)
            failed = await self.catalog.list_replication(region, ReplicationStatus.FAILED)
            pending = await self.catalog.pending_replication(region)
            report[region] = {
                "source_count": len(artifacts),
                "destination_count": len(keys),
                "synced_count": len(synced),
                "failed_count": len(failed),
                "pending_count": len(pending),
                "missing": missing,
                "extra": extra,
                "in_sync": not missing and not extra,
            }
        return report

    async def run(self) -> None:
        """Run scheduled sync passes until stopped."""
        if self._running:
            logger.warning("Replicator already running")
            return

        self._running = True
        logger.info(
            "Starting replicator",
            extra={"regions": sorted(self.destinations), "interval_seconds": self.interval_seconds},
        )
        try:
            while self._running:
                try:
                    await self.sync()
                except Exception as e:
                    logger.error(f"Replication pass error: {e}", exc_info=True)
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("Replicator cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the scheduled loop."""
        self._running = False

    async def close(self) -> None:
        for destination in self.destinations.values():
            await destination.close()

    @property
    def stats(self) -> dict[str, Any]:
        """Get replicator statistics."""
        return {
            "running": self._running,
            "regions": sorted(self.destinations),
            "sync_count": self._sync_count,
            "last_sync": {region: r.to_dict() for region, r in self._last_sync.items()},
        }
