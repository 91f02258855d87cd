"""
pgpitr - Continuous backup and point-in-time recovery for PostgreSQL.

This package keeps a PostgreSQL instance recoverable to any point in time:
- WAL segments are shipped to durable storage as they complete
- Consistent base backups are taken on demand or on a schedule
- A durable catalog indexes every artifact by timeline and LSN
- A recovery engine restores a backup and replays WAL up to a target
- A validator rehearses recovery in a sandbox
- A replicator mirrors artifacts into secondary regions

Architecture:
    ┌────────────┐  segment ready   ┌──────────┐   put    ┌──────────────┐
    │ PostgreSQL │─────────────────▶│ Archiver │─────────▶│   Storage    │
    │  (engine)  │◀─── ack ─────────└────┬─────┘          │ {tl}/{kind}/ │
    └─────┬──────┘                       │ register       └──────┬───────┘
          │ start/stop backup            ▼                       │
    ┌─────┴──────┐   register   ┌──────────────┐   plan    ┌─────┴──────┐
    │ BaseBackup │─────────────▶│   Catalog    │◀──────────│  Recovery  │
    │  Manager   │              │   (SQLite)   │           │   Engine   │
    └────────────┘              └──────┬───────┘           └─────┬──────┘
                                       │ pending                 │ sandbox
                                ┌──────┴───────┐           ┌─────┴──────┐
                                │  Replicator  │           │ Validator  │
                                └──────────────┘           └────────────┘

Invariants:
    - Archived WAL per timeline is contiguous between oldest and newest segment
    - A segment is acknowledged to the engine only after it is durably stored
    - A base backup is complete only when its WAL chain is archived
    - Retention never removes what a restore point or retained backup needs
    - Replicas are marked synced only after checksums match

How to change safely:
    - Storage key layout is a compatibility contract, never rename keys
    - Add manifest fields additively, the catalog is rebuilt from them
    - Test recovery end to end before changing replay or planning
"""

from ._version import __version__

__all__ = ["__version__"]
