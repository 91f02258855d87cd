"""
Retention safety and cross-region convergence over realistic histories.

Tests cover:
- Seeded random schedules of writes, backups and restore points: after every
  prune, each restore point and the latest archived LSN stay recoverable
- Replication with flaky destinations converges to the source
- Pruned artifacts disappear from destinations
- A destination region can serve a recovery on its own
"""

import asyncio
import random

import pytest

from pgpitr.pitr_server.backup import DAY_MS, BaseBackupManager, RetentionPolicy
from pgpitr.pitr_server.engine import InMemoryEngine
from pgpitr.pitr_server.models import BackupStatus, RecoveryTarget
from pgpitr.pitr_server.recovery import RecoveryEngine, SessionState
from pgpitr.pitr_server.replication import CrossRegionReplicator
from pgpitr.pitr_server.storage import InMemoryStorageBackend


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class TestRetentionSafety:
    """Pruning never removes what a restore point or the newest backup needs."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", range(6))
    async def test_random_schedule(self, seed, engine, storage, catalog, archiver, fast_retry, notifier):
        rng = random.Random(seed)
        clock = FakeClock(1000 * DAY_MS)
        manager = BaseBackupManager(
            engine,
            storage,
            catalog,
            fast_retry,
            notifier,
            retention=RetentionPolicy(
                retention_count=rng.randint(1, 3), retention_age_days=rng.randint(0, 4)
            ),
            wal_wait_timeout=5.0,
            wal_poll_interval=0.01,
            clock=clock,
        )
        task = asyncio.create_task(archiver.run())

        expected = {}
        last_backup = await manager.take_base_backup()
        for step in range(30):
            clock.now += rng.randint(0, 2) * DAY_MS
            action = rng.choice(["write", "write", "write", "backup", "point"])
            if action == "write":
                for _ in range(rng.randint(1, 6)):
                    engine.execute("events", {"step": step})
            elif action == "backup":
                last_backup = await manager.take_base_backup()
            else:
                name = f"point-{step}"
                expected[name] = engine.rows("events")
                await manager.create_restore_point(name)

        engine.switch_wal_now()
        await engine.close()
        await task
        await manager.prune()

        complete = await catalog.list_backups(status=BackupStatus.COMPLETE)
        assert last_backup.backup_id in {b.backup_id for b in complete}
        assert await catalog.find_gaps(1) == []

        recovery = RecoveryEngine(storage, catalog, fast_retry, notifier)
        for name, rows in expected.items():
            target = InMemoryEngine(instance_id=f"check-{name}")
            session = await recovery.recover(target, RecoveryTarget.name(name), sandbox=True)
            assert session.state == SessionState.PROMOTED, session.error
            assert target.rows("events") == rows

        latest = await catalog.latest_lsn(1)
        target = InMemoryEngine(instance_id="check-latest")
        session = await recovery.recover(target, RecoveryTarget.lsn(latest), sandbox=True)
        assert session.state == SessionState.PROMOTED, session.error
        assert target.rows("events") == engine.rows("events")

    @pytest.mark.asyncio
    async def test_pruned_wal_is_gone_from_storage(self, engine, storage, catalog, archiver, fast_retry, notifier):
        clock = FakeClock(1000 * DAY_MS)
        manager = BaseBackupManager(
            engine,
            storage,
            catalog,
            fast_retry,
            notifier,
            retention=RetentionPolicy(retention_count=1, retention_age_days=0),
            wal_wait_timeout=5.0,
            wal_poll_interval=0.01,
            clock=clock,
        )
        task = asyncio.create_task(archiver.run())
        first = await manager.take_base_backup()
        engine.advance_to(64)
        clock.now += DAY_MS
        second = await manager.take_base_backup()
        await engine.close()
        await task

        assert await catalog.get_backup(first.backup_id) is None
        assert first.storage_key not in storage
        segments = await catalog.list_segments(1)
        assert segments[0].end_lsn > second.start_lsn
        for key in await storage.list("00000001/wal/"):
            assert key in {s.storage_key for s in segments}


class TestReplicationConvergence:
    """Repeated sync passes converge once failures stop."""

    @pytest.fixture
    def regions(self):
        return {"eu-west-1": InMemoryStorageBackend(), "us-west-2": InMemoryStorageBackend()}

    @pytest.fixture
    def replicator(self, storage, catalog, regions, fast_retry, notifier):
        return CrossRegionReplicator(storage, catalog, regions, fast_retry, notifier, workers=3)

    async def build_history(self, engine, storage, catalog, archiver, fast_retry, notifier):
        manager = BaseBackupManager(
            engine,
            storage,
            catalog,
            fast_retry,
            notifier,
            retention=RetentionPolicy(retention_count=1, retention_age_days=0),
            wal_wait_timeout=5.0,
            wal_poll_interval=0.01,
            clock=FakeClock(1000 * DAY_MS),
        )
        task = asyncio.create_task(archiver.run())
        await manager.take_base_backup()
        for i in range(10):
            engine.execute("orders", {"id": i})
        await manager.create_restore_point("end-of-day")
        await engine.close()
        await task

    @pytest.mark.asyncio
    async def test_converges_despite_flaky_region(
        self, engine, storage, catalog, archiver, fast_retry, notifier, regions, replicator
    ):
        await self.build_history(engine, storage, catalog, archiver, fast_retry, notifier)
        # The first nine puts to one region fail
        regions["us-west-2"].inject_failure("put", times=9)

        for _ in range(5):
            await replicator.sync()
            report = await replicator.verify()
            if all(r["in_sync"] for r in report.values()):
                break

        assert all(r["in_sync"] for r in report.values()), report
        assert sorted(await regions["us-west-2"].list()) == sorted(await storage.list())

    @pytest.mark.asyncio
    async def test_prune_is_mirrored(
        self, engine, storage, catalog, archiver, fast_retry, notifier, regions, replicator
    ):
        clock = FakeClock(1000 * DAY_MS)
        manager = BaseBackupManager(
            engine,
            storage,
            catalog,
            fast_retry,
            notifier,
            retention=RetentionPolicy(retention_count=1, retention_age_days=0),
            wal_wait_timeout=5.0,
            wal_poll_interval=0.01,
            clock=clock,
        )
        task = asyncio.create_task(archiver.run())
        first = await manager.take_base_backup()
        engine.advance_to(48)
        while engine.unacknowledged:
            await asyncio.sleep(0.01)
        await replicator.sync()
        before = set(await storage.list())

        clock.now += DAY_MS
        await manager.take_base_backup()
        await engine.close()
        await task
        removed = before - set(await storage.list())
        results = await replicator.sync()

        assert first.storage_key in removed
        assert results["eu-west-1"].deleted == len(removed)
        for region in regions.values():
            for key in removed:
                assert key not in region
        report = await replicator.verify()
        assert all(r["in_sync"] for r in report.values()), report

    @pytest.mark.asyncio
    async def test_region_serves_recovery(
        self, engine, storage, catalog, archiver, fast_retry, notifier, regions, replicator
    ):
        await self.build_history(engine, storage, catalog, archiver, fast_retry, notifier)
        await replicator.sync()

        recovery = RecoveryEngine(regions["eu-west-1"], catalog, fast_retry, notifier)
        target = InMemoryEngine(instance_id="dr-site")
        session = await recovery.recover(target, RecoveryTarget.name("end-of-day"), sandbox=True)

        assert session.state == SessionState.PROMOTED
        assert len(target.rows("orders")) == 10
