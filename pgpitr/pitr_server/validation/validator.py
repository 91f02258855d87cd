"""
Validator: periodic trial restores into a sandbox.

A validation run proves the archive can actually be restored:

    1. Recover a fresh sandbox engine to the newest archived record
    2. Record the sandbox object and row counts
    3. Download a random sample of artifacts and check their checksums
    4. Check WAL contiguity of the current timeline

All of it runs within a time budget. The outcome is pass, fail or timeout;
the report is stored as {timeline:08X}/metadata/validation-{ts}.json and a
fail or timeout is notified.

Invariants:
    - Validation never touches the production engine
    - Validation never blocks archiving or base backups
    - Exactly one report is written per run, whatever the outcome

How to change safely:
    - Add checks to _check(), keep every failure as a string in report.failures
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from ..catalog import BackupCatalog, encode_manifest, validation_report_key
from ..engine.base import DatabaseEngine
from ..errors import InvalidTransitionError, PitrError
from ..models import Artifact, ArtifactKind, BackupStatus, RecoveryTarget, format_lsn, now_ms
from ..notify import LoggingNotifier, NotificationHub, Severity
from ..recovery import RecoveryEngine, SessionState
from ..retry import RetryPolicy
from ..storage.base import StorageBackend, compute_checksum

logger = logging.getLogger(__name__)


class ValidationOutcome(Enum):
    PASS = "pass"
    FAIL = "fail"
    TIMEOUT = "timeout"


@dataclass
class ValidationReport:
    """Result of one validation run."""

    report_id: str
    started_at: int
    outcome: ValidationOutcome = ValidationOutcome.FAIL
    finished_at: int | None = None
    timeline: int | None = None
    target_lsn: int | None = None
    backup_id: str | None = None
    session: dict[str, Any] | None = None
    integrity: dict[str, Any] | None = None
    spot_checks: list[dict[str, Any]] = field(default_factory=list)
    gaps: list[tuple[int, int]] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    storage_key: str | None = None

    @property
    def passed(self) -> bool:
        return self.outcome == ValidationOutcome.PASS

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_id": self.report_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "outcome": self.outcome.value,
            "timeline": self.timeline,
            "target_lsn": self.target_lsn,
            "backup_id": self.backup_id,
            "session": self.session,
            "integrity": self.integrity,
            "spot_checks": self.spot_checks,
            "gaps": [list(gap) for gap in self.gaps],
            "failures": self.failures,
            "storage_key": self.storage_key,
        }


class Validator:
    """Runs trial restores against sandbox engines.

    Example:
        >>> validator = Validator(recovery, catalog, storage, sandbox_factory(config))
        >>> report = await validator.validate()
        >>> report.outcome
        <ValidationOutcome.PASS: 'pass'>
    """

    def __init__(
        self,
        recovery: RecoveryEngine,
        catalog: BackupCatalog,
        storage: StorageBackend,
        sandbox_factory: Callable[[], DatabaseEngine],
        retry_policy: RetryPolicy | None = None,
        notifier: NotificationHub | None = None,
        time_budget_seconds: float = 3600.0,
        spot_check_count: int = 5,
        interval_seconds: float = 7 * 86400,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the validator.

        Args:
            recovery: Recovery engine used for the trial restore
            catalog: Backup catalog
            storage: Artifact storage (spot checks and report)
            sandbox_factory: Builds a fresh, isolated engine per run
            retry_policy: Retry policy for storage calls
            notifier: Notification hub for fail/timeout outcomes
            time_budget_seconds: Budget for a whole run
            spot_check_count: Number of random artifacts to checksum
            interval_seconds: Interval of the scheduled loop
            rng: Random source for spot check sampling
        """
        self.recovery = recovery
        self.catalog = catalog
        self.storage = storage
        self.sandbox_factory = sandbox_factory
        self.retry = retry_policy or RetryPolicy()
        self.notifier = notifier or NotificationHub([LoggingNotifier()])
        self.time_budget_seconds = time_budget_seconds
        self.spot_check_count = spot_check_count
        self.interval_seconds = interval_seconds
        self._rng = rng or random.Random()

        self._running = False
        self._runs = 0
        self._last_report: ValidationReport | None = None

    async def validate(self) -> ValidationReport:
        """Run one validation and store its report."""
        report = ValidationReport(report_id=uuid.uuid4().hex, started_at=now_ms())
        sandbox = self.sandbox_factory()
        logger.info("Validation started", extra={"report_id": report.report_id})

        try:
            await asyncio.wait_for(self._check(report, sandbox), timeout=self.time_budget_seconds)
        except asyncio.TimeoutError:
            report.outcome = ValidationOutcome.TIMEOUT
            report.failures.append(f"Validation exceeded its {self.time_budget_seconds}s budget")
            await self._cancel_sandbox_session(sandbox)
        except PitrError as e:
            report.outcome = ValidationOutcome.FAIL
            report.failures.append(e.message)
        finally:
            await sandbox.close()

        report.finished_at = now_ms()
        await self._store_report(report)

        self._runs += 1
        self._last_report = report
        logger.info(
            "Validation finished",
            extra={
                "report_id": report.report_id,
                "outcome": report.outcome.value,
                "failures": len(report.failures),
            },
        )
        if not report.passed:
            await self.notifier.notify(
                "validator",
                Severity.WARNING if report.outcome == ValidationOutcome.TIMEOUT else Severity.ERROR,
                f"Backup validation {report.outcome.value}: " + "; ".join(report.failures),
                report_id=report.report_id,
                report_key=report.storage_key,
            )
        return report

    async def _check(self, report: ValidationReport, sandbox: DatabaseEngine) -> None:
        backups = await self.catalog.list_backups(status=BackupStatus.COMPLETE)
        if not backups:
            report.failures.append("No complete base backup to validate")
            report.outcome = ValidationOutcome.FAIL
            return

        report.timeline = await self.catalog.latest_timeline()
        covered = await self.catalog.latest_lsn(report.timeline)
        backup = (
            await self.catalog.find_base_backup_covering(covered, report.timeline)
            if covered is not None
            else None
        )
        if backup is None:
            report.failures.append(
                f"No archived WAL and base backup reachable from timeline {report.timeline}"
            )
            report.outcome = ValidationOutcome.FAIL
            return
        # Replay must stop on a record: the newest indexed one, or the backup
        # end when nothing was committed after the backup
        record = await self.catalog.latest_record(report.timeline)
        report.target_lsn = max(backup.end_lsn or backup.start_lsn, record.lsn if record else 0)

        session = await self.recovery.recover(
            sandbox, RecoveryTarget.lsn(report.target_lsn), sandbox=True
        )
        report.session = session.to_dict()
        report.backup_id = session.backup.backup_id if session.backup else None
        if session.state != SessionState.PROMOTED:
            reason = (session.error or {}).get("error", session.state.value)
            report.failures.append(f"Trial restore did not complete: {reason}")
        elif session.reached_lsn < report.target_lsn:
            report.failures.append(
                f"Trial restore reached {format_lsn(session.reached_lsn)} "
                f"instead of {format_lsn(report.target_lsn)}"
            )
        if session.integrity is not None:
            report.integrity = session.integrity.to_dict()

        await self._spot_check(report)

        report.gaps = await self.catalog.find_gaps(report.timeline)
        for gap_from, gap_to in report.gaps:
            report.failures.append(
                f"WAL gap on timeline {report.timeline}: "
                f"{format_lsn(gap_from)} - {format_lsn(gap_to)}"
            )

        report.outcome = ValidationOutcome.FAIL if report.failures else ValidationOutcome.PASS

    async def _spot_check(self, report: ValidationReport) -> None:
        artifacts = [
            a for a in await self.catalog.list_artifacts() if a.kind != ArtifactKind.METADATA
        ]
        sample = self._rng.sample(artifacts, min(self.spot_check_count, len(artifacts)))
        for artifact in sample:
            try:
                payload = await self.retry.run("spot check fetch", self.storage.get, artifact.key)
                actual = compute_checksum(payload)
            except PitrError as e:
                actual = None
                report.failures.append(f"Spot check of {artifact.key} failed: {e.message}")
            ok = actual == artifact.checksum
            if actual is not None and not ok:
                report.failures.append(f"Checksum mismatch on {artifact.key}")
            report.spot_checks.append(
                {"key": artifact.key, "expected": artifact.checksum, "actual": actual, "ok": ok}
            )

    async def _cancel_sandbox_session(self, sandbox: DatabaseEngine) -> None:
        session = self.recovery.active_session(sandbox.instance_id)
        if session is None:
            return
        try:
            await self.recovery.cancel(sandbox.instance_id)
        except InvalidTransitionError:
            await self.recovery.wait(session.session_id)

    async def _store_report(self, report: ValidationReport) -> None:
        timeline = report.timeline or await self.catalog.latest_timeline()
        key = validation_report_key(timeline, report.started_at)
        report.storage_key = key
        payload = encode_manifest("validation", report.to_dict())
        try:
            checksum = await self.retry.run("validation report put", self.storage.put, key, payload)
        except PitrError as e:
            logger.error(f"Could not store validation report: {e.message}")
            report.storage_key = None
            return
        await self.catalog.register_artifact(
            Artifact(
                key=key,
                kind=ArtifactKind.METADATA,
                timeline=timeline,
                checksum=checksum,
                size_bytes=len(payload),
                created_at=report.started_at,
            )
        )

    async def run(self) -> None:
        """Run scheduled validations until stopped."""
        if self._running:
            logger.warning("Validator already running")
            return

        self._running = True
        logger.info("Starting validator", extra={"interval_seconds": self.interval_seconds})
        try:
            while self._running:
                await asyncio.sleep(self.interval_seconds)
                if not self._running:
                    break
                try:
                    await self.validate()
                except Exception as e:
                    logger.error(f"Validation run error: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.info("Validator cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the scheduled loop."""
        self._running = False

    @property
    def last_report(self) -> ValidationReport | None:
        return self._last_report

    @property
    def stats(self) -> dict[str, Any]:
        """Get validator statistics."""
        return {
            "running": self._running,
            "runs": self._runs,
            "last_outcome": self._last_report.outcome.value if self._last_report else None,
            "last_report_key": self._last_report.storage_key if self._last_report else None,
        }
