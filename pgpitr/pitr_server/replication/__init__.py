"""
Cross-region replication of stored artifacts.
"""

from .replicator import CrossRegionReplicator, RegionSyncResult

__all__ = ["CrossRegionReplicator", "RegionSyncResult"]
