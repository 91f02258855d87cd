"""
Recovery engine: restores a base backup and replays WAL to a target.

Session state machine:

    Idle -> Planning -> FetchingBase -> ReplayingWAL -> TargetReached -> Promoted
      |        |             |               |               |
      +--------+-------------+---------------+--> Aborted     +--> Failed
               +-------------+---------------+--> Failed

    Planning       resolve the target to (timeline, lsn), choose the newest
                   complete backup at or before it and the WAL chain from the
                   backup start to the target
    FetchingBase   fresh data directory, fetch + verify + unpack the backup
    ReplayingWAL   fetch + verify + stage every segment, replay to the target
    TargetReached  replay stopped exactly at the target record (inclusive)
    Promoted       the instance opened on a new timeline (irreversible)

Invariants:
    - At most one active session per instance
    - Every fetched artifact is checksum-verified; one re-fetch, then corruption
    - Nothing replaces the live data before promotion
    - A session that fails or is aborted leaves no partial data directory
    - Cancel is rejected once the target is reached

How to change safely:
    - Add states to _TRANSITIONS, never bypass transition()
    - Scenario tests in tests/integration cover every terminal state
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..catalog import BackupCatalog, timeline_manifest
from ..engine.base import DatabaseEngine, IntegrityReport, ReplayStop
from ..errors import (
    ChainGapError,
    ChecksumMismatchError,
    ConcurrencyConflictError,
    CorruptionError,
    EngineError,
    InvalidTransitionError,
    PitrError,
    TargetResolutionError,
)
from ..models import (
    Artifact,
    ArtifactKind,
    BaseBackup,
    RecoveryTarget,
    TargetKind,
    TimelineHistory,
    WalSegment,
    format_lsn,
    now_ms,
)
from ..notify import LoggingNotifier, NotificationHub, Severity
from ..retry import RetryPolicy
from ..storage.base import StorageBackend, compute_checksum

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Recovery session lifecycle."""

    IDLE = "idle"
    PLANNING = "planning"
    FETCHING_BASE = "fetching_base"
    REPLAYING_WAL = "replaying_wal"
    TARGET_REACHED = "target_reached"
    PROMOTED = "promoted"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.PROMOTED, SessionState.FAILED, SessionState.ABORTED)


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.PLANNING, SessionState.ABORTED}),
    SessionState.PLANNING: frozenset(
        {SessionState.FETCHING_BASE, SessionState.FAILED, SessionState.ABORTED}
    ),
    SessionState.FETCHING_BASE: frozenset(
        {SessionState.REPLAYING_WAL, SessionState.FAILED, SessionState.ABORTED}
    ),
    SessionState.REPLAYING_WAL: frozenset(
        {SessionState.TARGET_REACHED, SessionState.FAILED, SessionState.ABORTED}
    ),
    SessionState.TARGET_REACHED: frozenset({SessionState.PROMOTED, SessionState.FAILED}),
    SessionState.PROMOTED: frozenset(),
    SessionState.FAILED: frozenset(),
    SessionState.ABORTED: frozenset(),
}


@dataclass
class RecoverySession:
    """One recovery of one instance to one target.

    Attributes:
        session_id: Unique session identifier
        instance_id: Instance being restored
        target: Requested recovery target
        sandbox: Validation session (timeline not registered)
        state: Current state
        backup: Chosen base backup
        chain: WAL segments to replay, in order
        target_timeline: Timeline the target was resolved on
        target_lsn: LSN replay must stop at
        started_at: Session start (Unix ms)
        finished_at: When a terminal state was entered (Unix ms)
        reached_lsn: Start LSN of the last replayed record
        branch_lsn: First LSN after it, where the new timeline begins
        new_timeline: Timeline the instance was promoted onto
        integrity: Object counts of the restored instance
        error: Failure diagnostic
    """

    session_id: str
    instance_id: str
    target: RecoveryTarget
    sandbox: bool = False
    state: SessionState = SessionState.IDLE
    backup: BaseBackup | None = None
    chain: list[WalSegment] = field(default_factory=list)
    target_timeline: int | None = None
    target_lsn: int | None = None
    started_at: int = field(default_factory=now_ms)
    finished_at: int | None = None
    reached_lsn: int | None = None
    branch_lsn: int | None = None
    new_timeline: int | None = None
    integrity: IntegrityReport | None = None
    error: dict[str, Any] | None = None

    def transition(self, new_state: SessionState) -> None:
        """Move to new_state.

        Raises:
            InvalidTransitionError: If the table does not allow it
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state.value, new_state.value)
        logger.debug(
            "Recovery session transition",
            extra={
                "session_id": self.session_id,
                "from_state": self.state.value,
                "to_state": new_state.value,
            },
        )
        self.state = new_state
        if new_state.terminal:
            self.finished_at = now_ms()

    @property
    def active(self) -> bool:
        return not self.state.terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "instance_id": self.instance_id,
            "target": {"kind": self.target.kind.value, "value": self.target.value},
            "sandbox": self.sandbox,
            "state": self.state.value,
            "backup_id": self.backup.backup_id if self.backup else None,
            "chain": [segment.name for segment in self.chain],
            "target_timeline": self.target_timeline,
            "target_lsn": self.target_lsn,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "reached_lsn": self.reached_lsn,
            "branch_lsn": self.branch_lsn,
            "new_timeline": self.new_timeline,
            "integrity": self.integrity.to_dict() if self.integrity else None,
            "error": self.error,
        }


def target_reached(stop: ReplayStop, reached_lsn: int) -> bool:
    """Whether replay paused on the record the target resolved to.

    Name, xid and time targets resolve to a cataloged record, so replay must
    pause exactly on it. An LSN target may fall inside a record; replay then
    pauses on the first record starting at or after it.
    """
    if stop.kind == TargetKind.LSN:
        return reached_lsn >= stop.lsn
    return reached_lsn == stop.lsn


class RecoveryEngine:
    """Plans and runs recovery sessions.

    Example:
        >>> recovery = RecoveryEngine(storage, catalog, policy, notifier)
        >>> session = await recovery.recover(engine, RecoveryTarget.name("before-migration"))
        >>> session.state
        <SessionState.PROMOTED: 'promoted'>
    """

    def __init__(
        self,
        storage: StorageBackend,
        catalog: BackupCatalog,
        retry_policy: RetryPolicy | None = None,
        notifier: NotificationHub | None = None,
        refetch_attempts: int = 1,
        max_finished_sessions: int = 100,
    ) -> None:
        """Initialize the recovery engine.

        Args:
            storage: Artifact storage to fetch from
            catalog: Backup catalog used for planning
            retry_policy: Retry policy for storage calls
            notifier: Notification hub for failures
            refetch_attempts: Re-downloads allowed after a checksum mismatch
            max_finished_sessions: Terminal sessions kept for lookup, oldest dropped first
        """
        self.storage = storage
        self.catalog = catalog
        self.retry = retry_policy or RetryPolicy()
        self.notifier = notifier or NotificationHub([LoggingNotifier()])
        self.refetch_attempts = refetch_attempts
        self.max_finished_sessions = max_finished_sessions

        self._active: dict[str, RecoverySession] = {}
        self._sessions: dict[str, RecoverySession] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    async def start_recovery(
        self,
        engine: DatabaseEngine,
        target: RecoveryTarget,
        instance_id: str | None = None,
        sandbox: bool = False,
    ) -> RecoverySession:
        """Start a session in the background and return it.

        Raises:
            ConcurrencyConflictError: If the instance already has an active session
        """
        instance_id = instance_id or engine.instance_id
        current = self._active.get(instance_id)
        if current is not None and current.active:
            raise ConcurrencyConflictError(f"recovery of {instance_id}", holder=current.session_id)

        session = RecoverySession(
            session_id=uuid.uuid4().hex,
            instance_id=instance_id,
            target=target,
            sandbox=sandbox,
        )
        self._forget_finished()
        self._active[instance_id] = session
        self._sessions[session.session_id] = session
        self._tasks[session.session_id] = asyncio.create_task(self._run(session, engine))
        logger.info(
            "Recovery session started",
            extra={
                "session_id": session.session_id,
                "instance_id": instance_id,
                "target": str(target),
                "sandbox": sandbox,
            },
        )
        return session

    async def recover(
        self,
        engine: DatabaseEngine,
        target: RecoveryTarget,
        instance_id: str | None = None,
        sandbox: bool = False,
    ) -> RecoverySession:
        """Run a session to a terminal state and return it."""
        session = await self.start_recovery(engine, target, instance_id, sandbox)
        return await self.wait(session.session_id)

    async def wait(self, session_id: str) -> RecoverySession:
        """Wait until a session reaches a terminal state.

        Raises:
            TargetResolutionError: If the session is unknown or already forgotten
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise TargetResolutionError(f"Unknown recovery session {session_id}")
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.wait({task})
            self._tasks.pop(session_id, None)
        return session

    async def cancel(self, instance_id: str) -> RecoverySession:
        """Abort the active session of an instance.

        Raises:
            InvalidTransitionError: If the session already reached its target
            TargetResolutionError: If the instance has no session
        """
        session = self._active.get(instance_id)
        if session is None:
            raise TargetResolutionError(f"No recovery session for instance {instance_id}")
        if SessionState.ABORTED not in _TRANSITIONS[session.state]:
            raise InvalidTransitionError(session.state.value, SessionState.ABORTED.value)

        task = self._tasks.get(session.session_id)
        if session.state == SessionState.IDLE:
            # The task has not run yet, so its cleanup will not run either
            session.transition(SessionState.ABORTED)
            del self._active[instance_id]
        if task is not None:
            task.cancel()
        return await self.wait(session.session_id)

    def get_session(self, session_id: str) -> RecoverySession | None:
        return self._sessions.get(session_id)

    def active_session(self, instance_id: str) -> RecoverySession | None:
        session = self._active.get(instance_id)
        return session if session is not None and session.active else None

    @property
    def sessions(self) -> list[RecoverySession]:
        return sorted(self._sessions.values(), key=lambda s: s.started_at)

    def _forget_finished(self) -> None:
        """Drop the oldest terminal sessions beyond max_finished_sessions."""
        finished = [
            session
            for session in self._sessions.values()
            if session.state.terminal
            and (session.session_id not in self._tasks or self._tasks[session.session_id].done())
        ]
        excess = len(finished) - self.max_finished_sessions
        if excess <= 0:
            return
        finished.sort(key=lambda s: (s.finished_at or 0, s.started_at))
        for session in finished[:excess]:
            del self._sessions[session.session_id]
            self._tasks.pop(session.session_id, None)
        logger.debug("Forgot finished recovery sessions", extra={"count": excess})

    async def _run(self, session: RecoverySession, engine: DatabaseEngine) -> None:
        restoring = False
        try:
            session.transition(SessionState.PLANNING)
            await self._plan(session)

            session.transition(SessionState.FETCHING_BASE)
            await engine.begin_restore()
            restoring = True
            backup = session.backup
            payload = await self._fetch_verified(backup.storage_key, backup.checksum)
            await engine.restore_base(payload)

            session.transition(SessionState.REPLAYING_WAL)
            for segment in session.chain:
                payload = await self._fetch_verified(segment.storage_key, segment.checksum)
                await engine.stage_wal(segment, payload)
            stop = ReplayStop(
                timeline=session.target_timeline,
                lsn=session.target_lsn,
                kind=session.target.kind,
                value=session.target.value,
                history=tuple(await self.catalog.timeline_history(session.target_timeline)),
            )
            position = await engine.replay_to(stop)
            session.reached_lsn = position.lsn
            session.branch_lsn = position.end_lsn
            if not target_reached(stop, position.lsn):
                raise EngineError(
                    f"Replay stopped at {format_lsn(position.lsn)}, "
                    f"expected {format_lsn(session.target_lsn)}",
                    command="replay_to",
                )

            session.transition(SessionState.TARGET_REACHED)
            logger.info(
                "Recovery target reached",
                extra={"session_id": session.session_id, "reached_lsn": position.lsn},
            )

            session.new_timeline = max(
                await self.catalog.latest_timeline(), session.target_timeline or 1
            ) + 1
            await engine.promote(session.new_timeline)
            restoring = False
            if not session.sandbox:
                await self._register_timeline(session)
            session.integrity = await engine.integrity_report()
            session.transition(SessionState.PROMOTED)

        except asyncio.CancelledError:
            if restoring:
                await engine.abandon_restore()
            if SessionState.ABORTED in _TRANSITIONS[session.state]:
                session.transition(SessionState.ABORTED)
            elif not session.state.terminal:
                session.error = {"error": "Cancelled", "error_code": "CANCELLED", "details": {}}
                session.transition(SessionState.FAILED)
            logger.info("Recovery session aborted", extra={"session_id": session.session_id})

        except Exception as e:
            await self._fail(session, e)
            if restoring:
                try:
                    await engine.abandon_restore()
                except PitrError as cleanup_error:
                    logger.error(f"Could not discard restore directory: {cleanup_error.message}")

        finally:
            if self._active.get(session.instance_id) is session:
                del self._active[session.instance_id]

        if session.state == SessionState.PROMOTED:
            logger.info(
                "Recovery complete",
                extra={
                    "session_id": session.session_id,
                    "reached_lsn": session.reached_lsn,
                    "new_timeline": session.new_timeline,
                    "sandbox": session.sandbox,
                },
            )

    async def _plan(self, session: RecoverySession) -> None:
        """Resolve the target and choose the backup and WAL chain."""
        target = session.target
        latest_timeline = await self.catalog.latest_timeline()

        if target.kind == TargetKind.LSN:
            timeline, lsn = latest_timeline, int(target.value)
        elif target.kind == TargetKind.NAME:
            point = await self.catalog.resolve_restore_point(str(target.value))
            if point is None:
                raise TargetResolutionError(f"Unknown restore point '{target.value}'", str(target))
            timeline, lsn = point.timeline, point.lsn
        elif target.kind == TargetKind.XID:
            record = await self.catalog.resolve_xid(int(target.value), latest_timeline)
            if record is None:
                raise TargetResolutionError(
                    f"No archived commit for transaction {target.value}", str(target)
                )
            timeline, lsn = record.timeline, record.lsn
        else:
            record = await self.catalog.resolve_time(int(target.value), latest_timeline)
            if record is None:
                raise TargetResolutionError(
                    f"No archived record at or after {target.value}", str(target)
                )
            timeline, lsn = record.timeline, record.lsn

        backup = await self.catalog.find_base_backup_covering(lsn, timeline)
        if backup is None:
            raise TargetResolutionError(
                f"No complete base backup at or before {format_lsn(lsn)} on timeline {timeline}",
                str(target),
            )

        session.target_timeline = timeline
        session.target_lsn = lsn
        session.backup = backup
        session.chain = await self.catalog.wal_chain(backup.start_lsn, lsn, timeline)
        logger.info(
            "Recovery planned",
            extra={
                "session_id": session.session_id,
                "target_timeline": timeline,
                "target_lsn": lsn,
                "backup_id": backup.backup_id,
                "segments": len(session.chain),
            },
        )

    async def _fetch_verified(self, key: str | None, expected: str | None) -> bytes:
        """Fetch an artifact and check it against its cataloged checksum."""
        if key is None or expected is None:
            raise CorruptionError("Artifact has no storage key or checksum", key=key)
        actual = None
        for attempt in range(self.refetch_attempts + 1):
            payload = await self.retry.run("recovery fetch", self.storage.get, key)
            actual = compute_checksum(payload)
            if actual == expected:
                return payload
            logger.warning(
                "Checksum mismatch on fetch",
                extra={"key": key, "attempt": attempt + 1, "expected": expected, "actual": actual},
            )
        raise ChecksumMismatchError(key, expected, actual)

    async def _register_timeline(self, session: RecoverySession) -> None:
        history = TimelineHistory(
            timeline=session.new_timeline,
            parent_timeline=session.target_timeline,
            branch_lsn=session.branch_lsn,
            created_at=now_ms(),
        )
        await self.catalog.register_timeline(history)
        key, manifest = timeline_manifest(history)
        checksum = await self.retry.run("timeline manifest put", self.storage.put, key, manifest)
        await self.catalog.register_artifact(
            Artifact(
                key=key,
                kind=ArtifactKind.METADATA,
                timeline=history.timeline,
                checksum=checksum,
                size_bytes=len(manifest),
                created_at=history.created_at,
            )
        )

    async def _fail(self, session: RecoverySession, error: Exception) -> None:
        if isinstance(error, PitrError):
            session.error = error.to_dict()
            logger.error(
                f"Recovery failed: {error.message}",
                extra={"session_id": session.session_id, "error_code": error.code},
            )
        else:
            session.error = {"error": str(error), "error_code": "INTERNAL_ERROR", "details": {}}
            logger.error(f"Recovery failed: {error}", exc_info=True)
        if not session.state.terminal:
            session.transition(SessionState.FAILED)

        critical = isinstance(error, (CorruptionError, ChainGapError))
        await self.notifier.notify(
            "recovery",
            Severity.CRITICAL if critical else Severity.ERROR,
            f"Recovery of {session.instance_id} to {session.target} failed: "
            f"{session.error['error']}",
            session_id=session.session_id,
            sandbox=session.sandbox,
            error_code=session.error["error_code"],
        )
