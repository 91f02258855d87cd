"""
Unit tests for the recovery engine.

Tests cover:
- Recovery to each target kind
- Session state machine and transitions
- Planning failures (unresolvable targets, chain gaps)
- Checksum verification with a bounded re-fetch
- Concurrency and cancellation
- Checking where replay paused against the resolved target
- Forgetting old finished sessions
"""

import asyncio

import pytest

from pgpitr.pitr_server.backup import BaseBackupManager
from pgpitr.pitr_server.engine import InMemoryEngine, ReplayPosition, ReplayStop
from pgpitr.pitr_server.errors import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    TargetResolutionError,
)
from pgpitr.pitr_server.models import RecoveryTarget, TargetKind
from pgpitr.pitr_server.notify import Severity
from pgpitr.pitr_server.recovery import RecoveryEngine, RecoverySession, SessionState
from pgpitr.pitr_server.recovery.engine import target_reached
from pgpitr.pitr_server.storage import InMemoryStorageBackend


class TickingClock:
    """Millisecond clock that advances one second per reading."""

    def __init__(self, start=1_700_000_000_000):
        self.now = start

    def __call__(self):
        self.now += 1000
        return self.now


class DamagingStorage(InMemoryStorageBackend):
    """Returns truncated bytes for the first reads of selected keys."""

    def __init__(self):
        super().__init__()
        self.bad_reads = {}

    async def get(self, key):
        data = await super().get(key)
        if self.bad_reads.get(key, 0) > 0:
            self.bad_reads[key] -= 1
            return data[:-1]
        return data


class BlockingEngine(InMemoryEngine):
    """Engine that parks inside one restore step until released."""

    def __init__(self, block_in, **kwargs):
        super().__init__(**kwargs)
        self.block_in = block_in
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def _park(self, step):
        if step == self.block_in:
            self.entered.set()
            await self.release.wait()

    async def replay_to(self, stop):
        await self._park("replay_to")
        return await super().replay_to(stop)

    async def promote(self, new_timeline):
        await self._park("promote")
        await super().promote(new_timeline)


class ShiftedReplayEngine(InMemoryEngine):
    """Reports replay pausing `shift` LSNs away from the requested stop.

    `record_size` is the size of the record it paused on.
    """

    def __init__(self, shift=0, record_size=1, **kwargs):
        super().__init__(**kwargs)
        self.shift = shift
        self.record_size = record_size

    async def replay_to(self, stop):
        position = await super().replay_to(stop)
        lsn = position.lsn + self.shift
        return ReplayPosition(lsn=lsn, end_lsn=lsn + self.record_size)


@pytest.fixture
def engine():
    return InMemoryEngine(instance_id="primary", segment_size=16, clock=TickingClock())


@pytest.fixture
def storage():
    return DamagingStorage()


@pytest.fixture
async def history(engine, storage, catalog, archiver, fast_retry, notifier):
    """Archive: backup at LSN 2, rows 1..3, restore point 'rp' between rows 2 and 3.

    LSN layout:
        0-1  row 1 (insert, commit)
        2    backup end marker (backup start)
        3-4  row 2
        5    restore point 'rp'
        6-7  row 3
    """
    task = asyncio.create_task(archiver.run())
    manager = BaseBackupManager(
        engine, storage, catalog, fast_retry, notifier, wal_wait_timeout=5.0, wal_poll_interval=0.01
    )

    engine.execute("users", {"id": 1})
    backup = await manager.take_base_backup()
    xid2, commit2 = engine.execute("users", {"id": 2})
    point = await manager.create_restore_point("rp")
    xid3, commit3 = engine.execute("users", {"id": 3})
    engine.switch_wal_now()

    await engine.close()
    await task
    return {
        "backup": backup,
        "xid2": xid2,
        "commit2": commit2,
        "point": point,
        "xid3": xid3,
        "commit3": commit3,
    }


@pytest.fixture
def recovery(storage, catalog, fast_retry, notifier):
    return RecoveryEngine(storage, catalog, fast_retry, notifier)


@pytest.fixture
def target():
    return InMemoryEngine(instance_id="restore-target", segment_size=16)


def ids(engine):
    return [row["id"] for row in engine.rows("users")]


class TestRecoveryTargets:
    """Recovery to each target kind."""

    @pytest.mark.asyncio
    async def test_recover_to_lsn(self, history, recovery, target, catalog):
        session = await recovery.recover(target, RecoveryTarget.lsn(history["commit2"]))

        assert session.state == SessionState.PROMOTED
        assert session.reached_lsn == history["commit2"]
        assert session.backup.backup_id == history["backup"].backup_id
        assert ids(target) == [1, 2]
        assert target.timeline == 2
        assert session.new_timeline == 2

    @pytest.mark.asyncio
    async def test_recover_to_restore_point(self, history, recovery, target):
        session = await recovery.recover(target, RecoveryTarget.name("rp"))

        assert session.state == SessionState.PROMOTED
        assert session.reached_lsn == history["point"].lsn
        assert ids(target) == [1, 2]

    @pytest.mark.asyncio
    async def test_recover_to_xid(self, history, recovery, target):
        session = await recovery.recover(target, RecoveryTarget.xid(history["xid3"]))

        assert session.reached_lsn == history["commit3"]
        assert ids(target) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_recover_to_time(self, history, recovery, target, catalog):
        commit = await catalog.resolve_xid(history["xid2"], 1)

        session = await recovery.recover(target, RecoveryTarget.time(commit.timestamp))

        assert session.reached_lsn == history["commit2"]
        assert ids(target) == [1, 2]

    @pytest.mark.asyncio
    async def test_recover_to_backup_start(self, history, recovery, target):
        session = await recovery.recover(target, RecoveryTarget.lsn(history["backup"].start_lsn))

        assert session.state == SessionState.PROMOTED
        assert ids(target) == [1]

    @pytest.mark.asyncio
    async def test_timeline_registered(self, history, recovery, target, catalog, storage):
        session = await recovery.recover(target, RecoveryTarget.lsn(history["commit2"]))

        assert await catalog.latest_timeline() == 2
        (entry, *_) = await catalog.timeline_history(2)
        assert entry.parent_timeline == 1
        assert entry.branch_lsn == session.reached_lsn + 1
        assert "00000002/metadata/timeline-00000002.json" in storage

    @pytest.mark.asyncio
    async def test_sandbox_does_not_register_timeline(self, history, recovery, target, catalog):
        session = await recovery.recover(target, RecoveryTarget.name("rp"), sandbox=True)

        assert session.state == SessionState.PROMOTED
        assert session.integrity.tables == {"users": 2}
        assert await catalog.latest_timeline() == 1

    @pytest.mark.asyncio
    async def test_integrity_report(self, history, recovery, target):
        session = await recovery.recover(target, RecoveryTarget.xid(history["xid3"]))

        report = session.integrity.to_dict()
        assert report["row_count"] == 3
        assert report["table_count"] == 1
        assert report["checksum"].startswith("sha256:")


class TestRecoveryFailures:
    """Planning and fetch failures."""

    @pytest.mark.asyncio
    async def test_target_before_any_backup(self, history, recovery, target):
        session = await recovery.recover(target, RecoveryTarget.lsn(1))

        assert session.state == SessionState.FAILED
        assert session.error["error_code"] == "TARGET_UNRESOLVED"
        assert ids(target) == []

    @pytest.mark.asyncio
    async def test_unknown_restore_point(self, history, recovery, target):
        session = await recovery.recover(target, RecoveryTarget.name("nope"))

        assert session.state == SessionState.FAILED
        assert session.error["error_code"] == "TARGET_UNRESOLVED"

    @pytest.mark.asyncio
    async def test_unknown_xid(self, history, recovery, target):
        session = await recovery.recover(target, RecoveryTarget.xid(999_999))

        assert session.error["error_code"] == "TARGET_UNRESOLVED"

    @pytest.mark.asyncio
    async def test_time_after_all_records(self, history, recovery, target):
        session = await recovery.recover(target, RecoveryTarget.time(4_000_000_000_000))

        assert session.error["error_code"] == "TARGET_UNRESOLVED"

    @pytest.mark.asyncio
    async def test_chain_gap_fails_critical(self, history, recovery, target, catalog, events):
        await catalog.delete_segment(1, 3)

        session = await recovery.recover(target, RecoveryTarget.xid(history["xid3"]))

        assert session.state == SessionState.FAILED
        assert session.error["error_code"] == "CHAIN_GAP"
        assert session.error["details"]["missing_from"] == 3
        assert events.by_component("recovery")[0].severity == Severity.CRITICAL

    @pytest.mark.asyncio
    async def test_corrupt_segment_fails_and_abandons(self, history, recovery, target, catalog, storage):
        segment = (await catalog.list_segments(1))[1]
        storage.corrupt(segment.storage_key, b"garbage")

        session = await recovery.recover(target, RecoveryTarget.xid(history["xid3"]))

        assert session.state == SessionState.FAILED
        assert session.error["error_code"] == "CORRUPTION"
        assert not target.restoring
        assert ids(target) == []
        assert target.timeline == 1

    @pytest.mark.asyncio
    async def test_truncated_backup_is_checksum_mismatch(self, history, recovery, target, storage):
        storage.truncate(history["backup"].storage_key, 10)

        session = await recovery.recover(target, RecoveryTarget.name("rp"))

        assert session.error["error_code"] == "CORRUPTION"
        assert session.error["details"]["key"] == history["backup"].storage_key

    @pytest.mark.asyncio
    async def test_single_refetch_recovers(self, history, recovery, target, storage):
        storage.bad_reads[history["backup"].storage_key] = 1

        session = await recovery.recover(target, RecoveryTarget.name("rp"))

        assert session.state == SessionState.PROMOTED

    @pytest.mark.asyncio
    async def test_refetch_budget_is_bounded(self, history, target, storage, catalog, fast_retry, notifier):
        recovery = RecoveryEngine(storage, catalog, fast_retry, notifier, refetch_attempts=1)
        storage.bad_reads[history["backup"].storage_key] = 2

        session = await recovery.recover(target, RecoveryTarget.name("rp"))

        assert session.state == SessionState.FAILED
        assert session.error["error_code"] == "CORRUPTION"

    @pytest.mark.asyncio
    async def test_missing_artifact(self, history, recovery, target, storage):
        await storage.delete(history["backup"].storage_key)

        session = await recovery.recover(target, RecoveryTarget.name("rp"))

        assert session.error["error_code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_failed_session_frees_instance(self, history, recovery, target):
        await recovery.recover(target, RecoveryTarget.name("nope"))

        assert recovery.active_session(target.instance_id) is None
        session = await recovery.recover(target, RecoveryTarget.name("rp"))
        assert session.state == SessionState.PROMOTED


class TestSessionLifecycle:
    """State machine, concurrency and cancellation."""

    def test_invalid_transition_rejected(self):
        session = RecoverySession("s1", "primary", RecoveryTarget.lsn(5))

        with pytest.raises(InvalidTransitionError) as exc_info:
            session.transition(SessionState.PROMOTED)

        assert exc_info.value.current == "idle"
        assert exc_info.value.requested == "promoted"

    def test_terminal_states_are_final(self):
        session = RecoverySession("s1", "primary", RecoveryTarget.lsn(5))
        session.transition(SessionState.ABORTED)

        assert not session.active
        assert session.finished_at is not None
        with pytest.raises(InvalidTransitionError):
            session.transition(SessionState.PLANNING)

    def test_happy_path_transitions(self):
        session = RecoverySession("s1", "primary", RecoveryTarget.lsn(5))
        for state in (
            SessionState.PLANNING,
            SessionState.FETCHING_BASE,
            SessionState.REPLAYING_WAL,
            SessionState.TARGET_REACHED,
            SessionState.PROMOTED,
        ):
            session.transition(state)
        assert session.state == SessionState.PROMOTED

    def test_target_reached_cannot_abort(self):
        session = RecoverySession("s1", "primary", RecoveryTarget.lsn(5))
        for state in (
            SessionState.PLANNING,
            SessionState.FETCHING_BASE,
            SessionState.REPLAYING_WAL,
            SessionState.TARGET_REACHED,
        ):
            session.transition(state)

        with pytest.raises(InvalidTransitionError):
            session.transition(SessionState.ABORTED)

    @pytest.mark.asyncio
    async def test_second_session_for_instance_rejected(self, history, recovery, target):
        first = await recovery.start_recovery(target, RecoveryTarget.name("rp"))

        with pytest.raises(ConcurrencyConflictError):
            await recovery.start_recovery(target, RecoveryTarget.name("rp"))

        aborted = await recovery.cancel(target.instance_id)
        assert aborted.session_id == first.session_id
        assert aborted.state == SessionState.ABORTED
        assert recovery.active_session(target.instance_id) is None

    @pytest.mark.asyncio
    async def test_other_instances_run_concurrently(self, history, recovery, target):
        other = InMemoryEngine(instance_id="other", segment_size=16)

        first = await recovery.start_recovery(target, RecoveryTarget.name("rp"), sandbox=True)
        second = await recovery.start_recovery(other, RecoveryTarget.name("rp"), sandbox=True)

        assert (await recovery.wait(first.session_id)).state == SessionState.PROMOTED
        assert (await recovery.wait(second.session_id)).state == SessionState.PROMOTED

    @pytest.mark.asyncio
    async def test_cancel_during_replay(self, history, recovery):
        target = BlockingEngine("replay_to", instance_id="restore-target")
        session = await recovery.start_recovery(target, RecoveryTarget.name("rp"))
        await target.entered.wait()
        assert session.state == SessionState.REPLAYING_WAL

        result = await recovery.cancel(target.instance_id)

        assert result.state == SessionState.ABORTED
        assert not target.restoring
        assert target.rows("users") == []
        assert recovery.active_session(target.instance_id) is None

    @pytest.mark.asyncio
    async def test_cancel_after_target_reached_rejected(self, history, recovery):
        target = BlockingEngine("promote", instance_id="restore-target")
        session = await recovery.start_recovery(target, RecoveryTarget.name("rp"))
        await target.entered.wait()
        assert session.state == SessionState.TARGET_REACHED

        with pytest.raises(InvalidTransitionError):
            await recovery.cancel(target.instance_id)

        target.release.set()
        finished = await recovery.wait(session.session_id)
        assert finished.state == SessionState.PROMOTED

    @pytest.mark.asyncio
    async def test_cancel_unknown_instance(self, recovery):
        with pytest.raises(TargetResolutionError):
            await recovery.cancel("nobody")

    @pytest.mark.asyncio
    async def test_session_lookup_and_dict(self, history, recovery, target):
        session = await recovery.recover(target, RecoveryTarget.name("rp"))

        assert recovery.get_session(session.session_id) is session
        assert recovery.sessions == [session]
        data = session.to_dict()
        assert data["state"] == "promoted"
        assert data["target"] == {"kind": "name", "value": "rp"}
        assert data["backup_id"] == history["backup"].backup_id
        assert len(data["chain"]) == 2


class TestReplayPosition:
    """Where replay paused, compared against the resolved target."""

    def test_lsn_target_accepts_later_record(self):
        stop = ReplayStop(timeline=1, lsn=100, kind=TargetKind.LSN, value=100)

        assert target_reached(stop, 100)
        assert target_reached(stop, 104)
        assert not target_reached(stop, 99)

    def test_record_targets_need_exact_record(self):
        for kind in (TargetKind.NAME, TargetKind.XID, TargetKind.TIME):
            stop = ReplayStop(timeline=1, lsn=100, kind=kind)

            assert target_reached(stop, 100)
            assert not target_reached(stop, 101)
            assert not target_reached(stop, 99)

    @pytest.mark.asyncio
    async def test_lsn_inside_record_reaches_next_record(self, history, recovery):
        target = ShiftedReplayEngine(shift=1, instance_id="restore-target", segment_size=16)

        session = await recovery.recover(target, RecoveryTarget.lsn(history["commit2"]))

        assert session.state == SessionState.PROMOTED
        assert session.reached_lsn == history["commit2"] + 1

    @pytest.mark.asyncio
    async def test_early_pause_fails(self, history, recovery):
        target = ShiftedReplayEngine(shift=-1, instance_id="restore-target", segment_size=16)

        session = await recovery.recover(target, RecoveryTarget.lsn(history["commit2"]))

        assert session.state == SessionState.FAILED
        assert session.error["error_code"] == "ENGINE_ERROR"
        assert "Replay stopped at" in session.error["error"]
        assert target.timeline == 1

    @pytest.mark.asyncio
    async def test_restore_point_off_by_one_fails(self, history, recovery):
        target = ShiftedReplayEngine(shift=1, instance_id="restore-target", segment_size=16)

        session = await recovery.recover(target, RecoveryTarget.name("rp"))

        assert session.state == SessionState.FAILED
        assert session.new_timeline is None

    @pytest.mark.asyncio
    async def test_new_timeline_branches_after_reached_record(self, history, recovery, catalog):
        target = ShiftedReplayEngine(record_size=40, instance_id="restore-target", segment_size=16)

        session = await recovery.recover(target, RecoveryTarget.name("rp"))

        assert session.reached_lsn == history["point"].lsn
        assert session.branch_lsn == history["point"].lsn + 40
        (entry, *_) = await catalog.timeline_history(2)
        assert entry.branch_lsn == history["point"].lsn + 40


class TestFinishedSessions:
    """Old finished sessions are forgotten."""

    @pytest.mark.asyncio
    async def test_oldest_finished_sessions_dropped(
        self, history, storage, catalog, fast_retry, notifier
    ):
        recovery = RecoveryEngine(storage, catalog, fast_retry, notifier, max_finished_sessions=1)
        sessions = []
        for n in range(3):
            target = InMemoryEngine(instance_id=f"sandbox-{n}", segment_size=16)
            sessions.append(
                await recovery.recover(target, RecoveryTarget.name("rp"), sandbox=True)
            )

        assert all(s.state == SessionState.PROMOTED for s in sessions)
        assert recovery.get_session(sessions[0].session_id) is None
        assert recovery.sessions == sessions[1:]
        assert sessions[0].session_id not in recovery._tasks
        with pytest.raises(TargetResolutionError):
            await recovery.wait(sessions[0].session_id)

    @pytest.mark.asyncio
    async def test_active_session_never_dropped(self, history, storage, catalog, fast_retry, notifier):
        recovery = RecoveryEngine(storage, catalog, fast_retry, notifier, max_finished_sessions=0)
        blocked = BlockingEngine("replay_to", instance_id="blocked", segment_size=16)
        running = await recovery.start_recovery(blocked, RecoveryTarget.name("rp"), sandbox=True)
        await blocked.entered.wait()

        other = InMemoryEngine(instance_id="other", segment_size=16)
        await recovery.recover(other, RecoveryTarget.name("rp"), sandbox=True)

        assert recovery.get_session(running.session_id) is running
        blocked.release.set()
        assert (await recovery.wait(running.session_id)).state == SessionState.PROMOTED

    @pytest.mark.asyncio
    async def test_unknown_session_wait_raises(self, recovery):
        with pytest.raises(TargetResolutionError):
            await recovery.wait("missing")
