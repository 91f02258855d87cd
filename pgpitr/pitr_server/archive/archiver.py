"""
WAL archiver.

The archiver consumes segment-completion notices from the database engine and
ships each segment to artifact storage:

    notice -> checksum at key? -> put (retry) -> verify -> manifest -> catalog -> ack

Storage layout:
    {timeline:08X}/wal/{start_lsn:016X}-{end_lsn:016X}
    {timeline:08X}/metadata/wal-{start_lsn:016X}-{end_lsn:016X}.json

Back-pressure:
    The engine may only recycle a segment once it is acknowledged. Uploads run
    in parallel (bounded), but acknowledgments are released strictly in LSN
    order per timeline. A segment that cannot be archived stays unacknowledged
    and blocks every later acknowledgment on its timeline until it is
    re-delivered and archived.

Invariants:
    - A segment is acknowledged only after it is stored, verified and cataloged
    - An existing object with a different checksum is never overwritten
    - Re-archiving an identical segment is a no-op upload
    - The archiver never deletes anything

How to change safely:
    - Keep the key layout stable; recovery and retention depend on it
    - Test duplicate delivery and failure paths after changing the sequence
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..catalog import BackupCatalog, segment_manifest
from ..engine.base import DatabaseEngine, SegmentNotice
from ..errors import ArchiveError, ChecksumMismatchError, CorruptionError, PitrError, RetryBudgetExhausted
from ..models import Artifact, ArtifactKind, WalSegment, artifact_key, now_ms, wal_segment_id
from ..notify import LoggingNotifier, NotificationHub, Severity
from ..retry import RetryPolicy
from ..storage.base import StorageBackend, compute_checksum

logger = logging.getLogger(__name__)


class _AckState(Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


@dataclass
class _PendingAck:
    notice: SegmentNotice
    state: _AckState = _AckState.PENDING
    error: str | None = None


class WalArchiver:
    """Ships completed WAL segments to storage.

    Example:
        >>> archiver = WalArchiver(engine, storage, catalog, policy, notifier)
        >>> await archiver.run()  # Runs until stopped
    """

    def __init__(
        self,
        engine: DatabaseEngine,
        storage: StorageBackend,
        catalog: BackupCatalog,
        retry_policy: RetryPolicy | None = None,
        notifier: NotificationHub | None = None,
        max_parallel_uploads: int = 4,
    ) -> None:
        """Initialize the archiver.

        Args:
            engine: Database engine producing segment notices
            storage: Artifact storage
            catalog: Backup catalog
            retry_policy: Retry policy for storage calls
            notifier: Notification hub for failures
            max_parallel_uploads: Maximum concurrent uploads
        """
        self.engine = engine
        self.storage = storage
        self.catalog = catalog
        self.retry = retry_policy or RetryPolicy()
        self.notifier = notifier or NotificationHub([LoggingNotifier()])
        self.max_parallel_uploads = max_parallel_uploads

        self._running = False
        self._semaphore = asyncio.Semaphore(max_parallel_uploads)
        self._ack_lock = asyncio.Lock()
        self._order: dict[int, list[_PendingAck]] = {}
        self._entries: dict[str, _PendingAck] = {}
        self._tasks: set[asyncio.Task] = set()
        self._archived_count = 0
        self._skipped_count = 0
        self._failed_count = 0
        self._acknowledged_count = 0
        self._last_archived: str | None = None

    async def run(self) -> None:
        """Run the archiver loop until stopped."""
        if self._running:
            logger.warning("Archiver already running")
            return

        self._running = True
        logger.info(
            "Starting WAL archiver",
            extra={
                "storage": self.storage.name,
                "max_parallel_uploads": self.max_parallel_uploads,
            },
        )

        try:
            async for notice in self.engine.segment_notices():
                if not self._running:
                    break
                self.submit(notice)
        except asyncio.CancelledError:
            logger.info("Archiver cancelled")
        except Exception as e:
            logger.error(f"Archiver error: {e}", exc_info=True)
        finally:
            self._running = False
            await self.drain()

    async def stop(self) -> None:
        """Stop the archiver loop."""
        self._running = False
        logger.info("Stopping WAL archiver")

    def submit(self, notice: SegmentNotice) -> None:
        """Queue a notice for archiving with ordered acknowledgment."""
        entry = self._entries.get(notice.name)
        if entry is not None:
            if entry.state == _AckState.FAILED:
                entry.state = _AckState.PENDING
                entry.error = None
                self._spawn(entry)
            return

        entry = _PendingAck(notice)
        self._entries[notice.name] = entry
        queue = self._order.setdefault(notice.timeline, [])
        queue.append(entry)
        queue.sort(key=lambda e: e.notice.start_lsn)
        self._spawn(entry)

    def _spawn(self, entry: _PendingAck) -> None:
        task = asyncio.create_task(self._archive_entry(entry))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait until every in-flight upload has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _archive_entry(self, entry: _PendingAck) -> None:
        async with self._semaphore:
            try:
                await self.store_segment(entry.notice)
                entry.state = _AckState.DONE
            except PitrError as e:
                entry.state = _AckState.FAILED
                entry.error = e.message
            except Exception as e:
                logger.error(f"Unexpected error archiving {entry.notice}: {e}", exc_info=True)
                entry.state = _AckState.FAILED
                entry.error = str(e)
        await self._release_acknowledgments(entry.notice.timeline)

    async def _release_acknowledgments(self, timeline: int) -> None:
        async with self._ack_lock:
            queue = self._order.get(timeline, [])
            while queue and queue[0].state == _AckState.DONE:
                head = queue.pop(0)
                await self.engine.acknowledge(head.notice)
                self._entries.pop(head.notice.name, None)
                self._acknowledged_count += 1
            if queue and queue[0].state == _AckState.FAILED:
                logger.warning(
                    "Acknowledgments blocked by unarchived segment",
                    extra={
                        "timeline": timeline,
                        "segment": queue[0].notice.name,
                        "waiting": len(queue) - 1,
                    },
                )

    async def archive_segment(self, notice: SegmentNotice) -> WalSegment:
        """Archive one segment and acknowledge it to the engine.

        For callers handling one segment at a time; the run loop uses
        submit() to keep acknowledgments ordered.

        Raises:
            ArchiveError: If the retry budget was exhausted
            CorruptionError: If a different object already exists at the key
        """
        segment = await self.store_segment(notice)
        await self.engine.acknowledge(notice)
        self._acknowledged_count += 1
        return segment

    async def store_segment(self, notice: SegmentNotice) -> WalSegment:
        """Store, verify, describe and catalog a segment (no acknowledgment)."""
        key = artifact_key(
            notice.timeline, ArtifactKind.WAL, wal_segment_id(notice.start_lsn, notice.end_lsn)
        )
        checksum = compute_checksum(notice.payload)

        try:
            existing = await self.retry.run("wal checksum", self.storage.checksum, key)
            archived_at = now_ms()

            if existing == checksum:
                known = await self.catalog.get_segment(notice.timeline, notice.start_lsn)
                if known is not None and known.checksum == checksum:
                    archived_at = known.archived_at
                self._skipped_count += 1
                logger.info(
                    "Segment already archived",
                    extra={"segment": notice.name, "key": key},
                )
            elif existing is not None:
                raise CorruptionError(
                    f"Refusing to overwrite {key}: stored checksum {existing} "
                    f"differs from segment checksum {checksum}",
                    key=key,
                    expected=checksum,
                    actual=existing,
                )
            else:
                await self.retry.run("wal put", self.storage.put, key, notice.payload)
                stored = await self.retry.run("wal verify", self.storage.checksum, key)
                if stored != checksum:
                    raise ChecksumMismatchError(key, checksum, stored)
                self._archived_count += 1

            segment = WalSegment(
                name=notice.name,
                timeline=notice.timeline,
                start_lsn=notice.start_lsn,
                end_lsn=notice.end_lsn,
                produced_at=notice.produced_at,
                checksum=checksum,
                archived_at=archived_at,
                storage_key=key,
                size_bytes=len(notice.payload),
                records=list(notice.records),
            )

            manifest_key, manifest = segment_manifest(segment)
            manifest_checksum = await self.retry.run(
                "wal manifest put", self.storage.put, manifest_key, manifest
            )
            await self.catalog.register_segment(segment)
            await self.catalog.register_artifact(
                Artifact(
                    key=manifest_key,
                    kind=ArtifactKind.METADATA,
                    timeline=segment.timeline,
                    checksum=manifest_checksum,
                    size_bytes=len(manifest),
                    created_at=archived_at,
                )
            )

        except RetryBudgetExhausted as e:
            self._failed_count += 1
            error = ArchiveError(notice.name, str(e))
            await self._report_failure(notice, key, error)
            raise error from e
        except CorruptionError as e:
            self._failed_count += 1
            await self._report_failure(notice, key, e)
            raise

        self._last_archived = notice.name
        logger.info(
            "Archived WAL segment",
            extra={
                "segment": notice.name,
                "timeline": notice.timeline,
                "key": key,
                "size_bytes": len(notice.payload),
            },
        )
        return segment

    async def _report_failure(self, notice: SegmentNotice, key: str, error: PitrError) -> None:
        logger.error(
            f"Failed to archive {notice}: {error.message}",
            extra={"segment": notice.name, "key": key, "error_code": error.code},
        )
        await self.notifier.notify(
            "archiver",
            Severity.CRITICAL,
            f"WAL segment {notice.name} could not be archived; the engine keeps it",
            segment=notice.name,
            timeline=notice.timeline,
            start_lsn=notice.start_lsn,
            end_lsn=notice.end_lsn,
            key=key,
            error_code=error.code,
            error=error.message,
        )

    @property
    def blocked_segments(self) -> list[str]:
        """Segments whose failure is blocking acknowledgments."""
        return sorted(
            queue[0].notice.name
            for queue in self._order.values()
            if queue and queue[0].state == _AckState.FAILED
        )

    @property
    def stats(self) -> dict[str, Any]:
        """Get archiver statistics."""
        return {
            "running": self._running,
            "archived_count": self._archived_count,
            "skipped_count": self._skipped_count,
            "failed_count": self._failed_count,
            "acknowledged_count": self._acknowledged_count,
            "pending_acks": sum(len(q) for q in self._order.values()),
            "in_flight": len(self._tasks),
            "blocked_segments": self.blocked_segments,
            "last_archived": self._last_archived,
        }
