"""
Unit tests for the WAL archiver.

Tests cover:
- Segments stored, verified, cataloged, then acknowledged
- Duplicate delivery is a no-op upload
- Conflicting objects are never overwritten
- A failed segment blocks later acknowledgments until re-delivered
"""

import pytest

from pgpitr.pitr_server.archive import WalArchiver
from pgpitr.pitr_server.catalog import decode_manifest
from pgpitr.pitr_server.engine import SegmentNotice
from pgpitr.pitr_server.errors import ArchiveError, ChecksumMismatchError, CorruptionError
from pgpitr.pitr_server.models import ArtifactKind, artifact_key, wal_segment_id
from pgpitr.pitr_server.notify import Severity
from pgpitr.pitr_server.storage import InMemoryStorageBackend


def wal_key(timeline, start, end):
    return artifact_key(timeline, ArtifactKind.WAL, wal_segment_id(start, end))


def make_notice(start, end, payload=None, timeline=1):
    return SegmentNotice(
        name=f"{timeline:08X}{start:016X}",
        timeline=timeline,
        start_lsn=start,
        end_lsn=end,
        produced_at=1000,
        payload=payload or f"segment {start}-{end}".encode(),
    )


class MisreportingStorage(InMemoryStorageBackend):
    """Reports a wrong checksum for anything it has stored."""

    async def checksum(self, key):
        recorded = await super().checksum(key)
        return "sha256:bogus" if recorded else None


class TestWalArchiver:
    """Tests for WalArchiver."""

    @pytest.mark.asyncio
    async def test_archives_and_acknowledges(self, engine, storage, catalog, archiver, archive_all):
        xid, commit_lsn = engine.execute("users", {"id": 1})
        engine.advance_to(32)

        await archive_all(engine, archiver)

        assert engine.unacknowledged == []
        assert engine.recycled == ["000000010000000000000000", "000000010000000000000010"]
        assert wal_key(1, 0, 16) in storage
        assert wal_key(1, 16, 32) in storage
        segments = await catalog.list_segments(1)
        assert [(s.start_lsn, s.end_lsn) for s in segments] == [(0, 16), (16, 32)]
        assert (await catalog.resolve_xid(xid, 1)).lsn == commit_lsn
        assert archiver.stats["archived_count"] == 2
        assert archiver.stats["acknowledged_count"] == 2

    @pytest.mark.asyncio
    async def test_manifest_written(self, engine, storage, catalog, archiver, archive_all):
        engine.execute("users", {"id": 1})
        engine.advance_to(16)

        await archive_all(engine, archiver)

        manifest_key = "00000001/metadata/wal-0000000000000000-0000000000000010.json"
        manifest_type, data = decode_manifest(await storage.get(manifest_key))
        assert manifest_type == "wal"
        assert data["storage_key"] == wal_key(1, 0, 16)
        assert len(data["records"]) == 1
        assert await catalog.get_artifact(manifest_key) is not None

    @pytest.mark.asyncio
    async def test_stored_checksum_matches_catalog(self, engine, storage, catalog, archiver, archive_all):
        engine.advance_to(16)

        await archive_all(engine, archiver)

        segment = (await catalog.list_segments(1))[0]
        assert await storage.checksum(segment.storage_key) == segment.checksum

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_noop(self, engine, storage, catalog, archiver):
        notice = make_notice(0, 16)

        first = await archiver.archive_segment(notice)
        puts = storage.calls["put"]
        second = await archiver.archive_segment(notice)

        # Only the manifest is rewritten
        assert storage.calls["put"] == puts + 1
        assert second.checksum == first.checksum
        assert second.archived_at == first.archived_at
        assert archiver.stats["skipped_count"] == 1
        assert len(await catalog.list_segments(1)) == 1

    @pytest.mark.asyncio
    async def test_conflicting_object_not_overwritten(self, engine, storage, catalog, archiver, events):
        await storage.put(wal_key(1, 0, 16), b"something else")

        with pytest.raises(CorruptionError):
            await archiver.archive_segment(make_notice(0, 16))

        assert await storage.get(wal_key(1, 0, 16)) == b"something else"
        assert await catalog.list_segments(1) == []
        critical = events.by_severity(Severity.CRITICAL)
        assert len(critical) == 1
        assert critical[0].details["error_code"] == "CORRUPTION"

    @pytest.mark.asyncio
    async def test_verify_mismatch_fails(self, engine, catalog, fast_retry, notifier):
        archiver = WalArchiver(engine, MisreportingStorage(), catalog, fast_retry, notifier)

        with pytest.raises(ChecksumMismatchError):
            await archiver.archive_segment(make_notice(0, 16))

        assert await catalog.list_segments(1) == []
        assert archiver.stats["failed_count"] == 1

    @pytest.mark.asyncio
    async def test_retry_exhaustion_raises_archive_error(self, engine, storage, catalog, archiver, events):
        storage.inject_failure("put", times=None, key_prefix=wal_key(1, 0, 16))

        with pytest.raises(ArchiveError) as exc_info:
            await archiver.archive_segment(make_notice(0, 16))

        assert exc_info.value.segment == "000000010000000000000000"
        assert engine.recycled == []
        assert events.by_component("archiver")[0].details["start_lsn"] == 0

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, engine, storage, catalog, archiver):
        storage.inject_failure("put", times=2, key_prefix="00000001/wal/")

        segment = await archiver.archive_segment(make_notice(0, 16))

        assert segment.storage_key in storage

    @pytest.mark.asyncio
    async def test_failure_blocks_later_acknowledgments(
        self, engine, storage, catalog, archiver, archive_all
    ):
        engine.advance_to(48)
        storage.inject_failure("put", times=None, key_prefix=wal_key(1, 0, 16))

        await archive_all(engine, archiver)

        # Later segments are stored but may not be recycled ahead of the failed one
        assert wal_key(1, 16, 32) in storage
        assert wal_key(1, 32, 48) in storage
        assert engine.recycled == []
        assert engine.unacknowledged == [
            "000000010000000000000000",
            "000000010000000000000010",
            "000000010000000000000020",
        ]
        assert archiver.blocked_segments == ["000000010000000000000000"]

        storage.clear_failures()
        assert engine.redeliver_unacknowledged() == 3
        await archive_all(engine, archiver)

        assert engine.recycled == [
            "000000010000000000000000",
            "000000010000000000000010",
            "000000010000000000000020",
        ]
        assert archiver.blocked_segments == []
        assert archiver.stats["pending_acks"] == 0

    @pytest.mark.asyncio
    async def test_timelines_acknowledge_independently(self, engine, storage, catalog, archiver):
        storage.inject_failure("put", times=None, key_prefix=wal_key(1, 0, 16))

        archiver.submit(make_notice(0, 16, timeline=1))
        archiver.submit(make_notice(16, 32, timeline=2))
        await archiver.drain()

        assert archiver.blocked_segments == ["000000010000000000000000"]
        assert archiver.stats["acknowledged_count"] == 1

    @pytest.mark.asyncio
    async def test_stop_ends_run_loop(self, engine, archiver):
        await archiver.stop()
        assert archiver.stats["running"] is False
