"""
pgpitr server - Main entry point.

This module starts the PITR supervisor with all components:
- WAL archiver (engine -> storage, always on)
- Base backup manager (on demand, optional schedule)
- Recovery engine (on demand)
- Validator (on demand, optional weekly schedule)
- Cross-region replicator (on demand, optional schedule)
- HTTP trigger API

Usage:
    python -m pgpitr.pitr_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Triggers never raise; every outcome is a TriggerResult
    - The catalog is rebuilt from storage manifests when its file is missing
    - Graceful shutdown drains in-flight archive uploads

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

import json_log_formatter

from .archive import WalArchiver
from .backup import BaseBackupManager, RetentionPolicy
from .catalog import BackupCatalog
from .config import ServerConfig
from .engine import DatabaseEngine, create_engine, sandbox_factory
from .errors import PitrError, TargetResolutionError
from .models import BackupStatus, RecoveryTarget
from .notify import NotificationHub, create_notifier
from .recovery import RecoveryEngine, SessionState
from .replication import CrossRegionReplicator
from .retry import RetryPolicy
from .storage import StorageBackend, create_replica_backends, create_storage_backend
from .validation import Validator

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


@dataclass
class TriggerResult:
    """Outcome of an operator trigger.

    Attributes:
        operation: Trigger name
        success: Whether the operation succeeded
        diagnostic: Error diagnostic (PitrError.to_dict()) on failure
        data: Operation result
    """

    operation: str
    success: bool
    diagnostic: dict[str, Any] | None = None
    data: dict[str, Any] | None = None

    @property
    def error_code(self) -> str | None:
        return self.diagnostic.get("error_code") if self.diagnostic else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "success": self.success,
            "diagnostic": self.diagnostic,
            "data": self.data,
        }


class PitrSupervisor:
    """Owns component lifecycles and the trigger interface.

    Components can be injected (tests use the in-memory engine and storage);
    anything not injected is built from configuration.

    Example:
        >>> supervisor = PitrSupervisor(config)
        >>> await supervisor.initialize()
        >>> result = await supervisor.take_base_backup()
        >>> result.success
        True
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        engine: DatabaseEngine | None = None,
        storage: StorageBackend | None = None,
        replicas: dict[str, StorageBackend] | None = None,
        catalog: BackupCatalog | None = None,
        notifier: NotificationHub | None = None,
        sandbox: Callable[[], DatabaseEngine] | None = None,
    ) -> None:
        """Initialize the supervisor.

        Args:
            config: Server configuration (loaded from env if not provided)
            engine: Production database engine
            storage: Primary artifact storage
            replicas: Region name to destination storage
            catalog: Backup catalog
            notifier: Notification hub
            sandbox: Factory for validation sandbox engines
        """
        self.config = config or ServerConfig.from_env()
        self.engine = engine
        self.storage = storage
        self.replicas = replicas
        self.catalog = catalog
        self.notifier = notifier
        self._sandbox = sandbox

        self.archiver: WalArchiver | None = None
        self.backups: BaseBackupManager | None = None
        self.recovery: RecoveryEngine | None = None
        self.validator: Validator | None = None
        self.replicator: CrossRegionReplicator | None = None

        self._initialized = False
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._archiver_task: asyncio.Task | None = None
        self._tasks: list[asyncio.Task] = []

    async def initialize(self) -> None:
        """Build every component without starting background loops."""
        if self._initialized:
            return

        config = self.config
        retry = RetryPolicy.from_config(config.retry)
        self.engine = self.engine or create_engine(config)
        self.storage = self.storage or create_storage_backend(config)
        self.replicas = self.replicas if self.replicas is not None else create_replica_backends(config)
        self.notifier = self.notifier or create_notifier(config.notifications)
        self._sandbox = self._sandbox or sandbox_factory(config)

        if self.catalog is None:
            Path(config.catalog.path).parent.mkdir(parents=True, exist_ok=True)
            self.catalog = BackupCatalog(config.catalog.path, config.catalog.busy_timeout_ms)
        missing = not self.catalog.exists
        await self.catalog.initialize()
        if missing and config.catalog.rebuild_if_missing:
            counts = await self.catalog.rebuild_from_storage(self.storage)
            logger.info("Catalog rebuilt from storage manifests", extra=counts)

        self.archiver = WalArchiver(
            engine=self.engine,
            storage=self.storage,
            catalog=self.catalog,
            retry_policy=retry,
            notifier=self.notifier,
            max_parallel_uploads=config.archiver.max_parallel_uploads,
        )
        self.backups = BaseBackupManager(
            engine=self.engine,
            storage=self.storage,
            catalog=self.catalog,
            retry_policy=retry,
            notifier=self.notifier,
            retention=RetentionPolicy.from_config(config.backup),
            wal_wait_timeout=config.backup.wal_wait_timeout_seconds,
            interval_seconds=config.backup.interval_seconds,
        )
        self.recovery = RecoveryEngine(
            storage=self.storage,
            catalog=self.catalog,
            retry_policy=retry,
            notifier=self.notifier,
            refetch_attempts=config.recovery.refetch_attempts,
            max_finished_sessions=config.recovery.max_finished_sessions,
        )
        self.validator = Validator(
            recovery=self.recovery,
            catalog=self.catalog,
            storage=self.storage,
            sandbox_factory=self._sandbox,
            retry_policy=retry,
            notifier=self.notifier,
            time_budget_seconds=config.validator.time_budget_seconds,
            spot_check_count=config.validator.spot_check_count,
            interval_seconds=config.validator.interval_seconds,
        )
        self.replicator = CrossRegionReplicator(
            source=self.storage,
            catalog=self.catalog,
            destinations=self.replicas,
            retry_policy=retry,
            notifier=self.notifier,
            workers=config.replicator.workers,
            alert_after_failures=config.replicator.alert_after_failures,
            mirror_deletes=config.replicator.mirror_deletes,
            interval_seconds=config.replicator.interval_seconds,
        )
        self._initialized = True

    async def start(self) -> None:
        """Start the server and run until shutdown is requested."""
        if self._running:
            logger.warning("Supervisor already running")
            return

        logger.info("Starting pgpitr server")
        self.config.log_config()

        try:
            await self.initialize()

            if self.config.archiver.enabled:
                self._archiver_task = asyncio.create_task(self.archiver.run())
            if self.config.backup.schedule_enabled:
                self._tasks.append(asyncio.create_task(self.backups.run()))
            if self.config.validator.schedule_enabled:
                self._tasks.append(asyncio.create_task(self.validator.run()))
            if self.config.replicator.schedule_enabled and self.replicas:
                self._tasks.append(asyncio.create_task(self.replicator.run()))
            if self.config.http.enabled:
                from .api import run_http_server

                self._tasks.append(
                    asyncio.create_task(
                        run_http_server(self, self.config.http.host, self.config.http.port)
                    )
                )

            self._running = True
            logger.info("pgpitr server started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self, drain_timeout: float = 30.0) -> None:
        """Stop the server gracefully.

        Args:
            drain_timeout: Seconds to wait for in-flight archive uploads
        """
        if not self._initialized:
            return

        logger.info("Stopping pgpitr server")

        for component in (self.archiver, self.backups, self.validator, self.replicator):
            if component is not None:
                await component.stop()

        # Closing the engine ends the archiver's notice stream
        if self.engine is not None:
            await self.engine.close()

        if self._archiver_task is not None:
            try:
                await asyncio.wait_for(self._archiver_task, timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("Archiver did not drain in time")
            self._archiver_task = None

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self.replicator is not None:
            await self.replicator.close()
        if self.storage is not None:
            await self.storage.close()
        if self.notifier is not None:
            await self.notifier.close()

        self._running = False
        self._initialized = False
        logger.info("pgpitr server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()

    # Trigger interface

    async def _trigger(
        self,
        operation: str,
        fn: Callable[..., Awaitable[dict[str, Any] | None]],
        *args: Any,
        **kwargs: Any,
    ) -> TriggerResult:
        await self.initialize()
        try:
            data = await fn(*args, **kwargs)
        except PitrError as e:
            logger.warning(
                f"Trigger {operation} failed: {e.message}",
                extra={"operation": operation, "error_code": e.code},
            )
            return TriggerResult(operation, False, diagnostic=e.to_dict())
        except Exception as e:
            logger.error(f"Trigger {operation} error: {e}", exc_info=True)
            return TriggerResult(
                operation,
                False,
                diagnostic={"error": str(e), "error_code": "INTERNAL_ERROR", "details": {}},
            )
        return TriggerResult(operation, True, data=data)

    async def take_base_backup(self, label: str | None = None) -> TriggerResult:
        async def run() -> dict[str, Any]:
            backup = await self.backups.take_base_backup(label)
            return backup.to_dict()

        return await self._trigger("take_base_backup", run)

    async def create_restore_point(self, name: str) -> TriggerResult:
        async def run() -> dict[str, Any]:
            point = await self.backups.create_restore_point(name)
            return point.to_dict()

        return await self._trigger("create_restore_point", run)

    async def recover(self, kind: str, value: Any, wait: bool = True) -> TriggerResult:
        """Recover the production instance to a target.

        Args:
            kind: time, lsn, xid or name
            value: Target value
            wait: Wait for a terminal state instead of returning the running session
        """
        await self.initialize()
        try:
            target = RecoveryTarget.parse(kind, value)
        except TargetResolutionError as e:
            return TriggerResult("recover", False, diagnostic=e.to_dict())

        async def run() -> dict[str, Any]:
            if wait:
                session = await self.recovery.recover(self.engine, target)
            else:
                session = await self.recovery.start_recovery(self.engine, target)
            return session.to_dict()

        result = await self._trigger("recover", run)
        if result.success and result.data["state"] == SessionState.FAILED.value:
            result.success = False
            result.diagnostic = result.data["error"]
        return result

    async def cancel_recovery(self, instance_id: str | None = None) -> TriggerResult:
        async def run() -> dict[str, Any]:
            session = await self.recovery.cancel(instance_id or self.engine.instance_id)
            return session.to_dict()

        return await self._trigger("cancel_recovery", run)

    async def recovery_status(self, session_id: str) -> TriggerResult:
        async def run() -> dict[str, Any]:
            session = self.recovery.get_session(session_id)
            if session is None:
                raise TargetResolutionError(f"Unknown recovery session {session_id}")
            return session.to_dict()

        return await self._trigger("recovery_status", run)

    async def validate(self) -> TriggerResult:
        async def run() -> dict[str, Any]:
            report = await self.validator.validate()
            return report.to_dict()

        result = await self._trigger("validate", run)
        if result.success and result.data["outcome"] != "pass":
            result.success = False
            result.diagnostic = {
                "error": "; ".join(result.data["failures"]),
                "error_code": f"VALIDATION_{result.data['outcome'].upper()}",
                "details": {"report_key": result.data["storage_key"]},
            }
        return result

    async def sync(self) -> TriggerResult:
        async def run() -> dict[str, Any]:
            results = await self.replicator.sync()
            return {region: r.to_dict() for region, r in results.items()}

        result = await self._trigger("sync", run)
        if result.success and any(r["failed"] for r in result.data.values()):
            result.success = False
            result.diagnostic = {
                "error": "Some artifacts failed to replicate",
                "error_code": "REPLICATION_INCOMPLETE",
                "details": {},
            }
        return result

    async def verify_replication(self) -> TriggerResult:
        return await self._trigger("verify_replication", self.replicator.verify)

    async def list_backups(self) -> TriggerResult:
        async def run() -> dict[str, Any]:
            backups = await self.catalog.list_backups()
            return {"backups": [b.to_dict() for b in backups]}

        return await self._trigger("list_backups", run)

    async def list_restore_points(self) -> TriggerResult:
        async def run() -> dict[str, Any]:
            points = await self.catalog.list_restore_points()
            return {"restore_points": [p.to_dict() for p in points]}

        return await self._trigger("list_restore_points", run)

    async def health(self) -> TriggerResult:
        """Archive health: blocked acknowledgments, WAL gaps, newest backup."""

        async def run() -> dict[str, Any]:
            timeline = await self.catalog.latest_timeline()
            gaps = await self.catalog.find_gaps(timeline)
            complete = await self.catalog.list_backups(status=BackupStatus.COMPLETE)
            archiver = self.archiver.stats
            active = self.recovery.active_session(self.engine.instance_id)
            return {
                "healthy": not gaps and not archiver["blocked_segments"],
                "timeline": timeline,
                "latest_lsn": await self.catalog.latest_lsn(timeline),
                "wal_gaps": [list(gap) for gap in gaps],
                "latest_backup": complete[-1].backup_id if complete else None,
                "archiver": archiver,
                "backups": self.backups.stats,
                "recovery": active.to_dict() if active else None,
                "validator": self.validator.stats,
                "replicator": self.replicator.stats,
            }

        result = await self._trigger("health", run)
        if result.success and not result.data["healthy"]:
            result.success = False
        return result


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except PitrError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    supervisor = PitrSupervisor(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        supervisor.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(supervisor.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(supervisor.stop())
        loop.close()


if __name__ == "__main__":
    main()
