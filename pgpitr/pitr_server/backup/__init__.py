"""
Base backups and retention.
"""

from .base_backup import DAY_MS, BaseBackupManager, PruneResult, RetentionPolicy

__all__ = ["DAY_MS", "BaseBackupManager", "PruneResult", "RetentionPolicy"]
