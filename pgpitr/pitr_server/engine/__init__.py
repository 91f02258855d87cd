"""
Database engines driven by the PITR components.
"""

from __future__ import annotations

from typing import Any, Callable

from .base import (
    BackupStart,
    DatabaseEngine,
    IntegrityReport,
    ReplayPosition,
    ReplayStop,
    SegmentNotice,
)
from .memory import InMemoryEngine


def create_engine(config: Any, sandbox: bool = False) -> DatabaseEngine:
    """Create an engine from a ServerConfig.

    Args:
        config: ServerConfig instance
        sandbox: Build an isolated engine for validation restores

    Returns:
        DatabaseEngine instance
    """
    from ..config import EngineKind

    if config.engine.kind == EngineKind.POSTGRES:
        from .postgres import PostgresEngine

        return PostgresEngine(
            config.engine,
            sandbox=sandbox,
            replay_timeout=config.recovery.replay_timeout_seconds,
        )
    instance_id = config.engine.instance_id + ("-sandbox" if sandbox else "")
    return InMemoryEngine(instance_id=instance_id)


def sandbox_factory(config: Any) -> Callable[[], DatabaseEngine]:
    """Factory producing a fresh sandbox engine per validation run."""
    return lambda: create_engine(config, sandbox=True)


__all__ = [
    "BackupStart",
    "DatabaseEngine",
    "IntegrityReport",
    "ReplayPosition",
    "ReplayStop",
    "SegmentNotice",
    "InMemoryEngine",
    "create_engine",
    "sandbox_factory",
]
