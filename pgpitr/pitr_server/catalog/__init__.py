"""
Backup catalog: the durable index of archived artifacts.
"""

from .catalog import BackupCatalog
from .metadata import (
    backup_manifest,
    decode_manifest,
    encode_manifest,
    parse_manifest,
    restore_point_manifest,
    segment_manifest,
    timeline_manifest,
    validation_report_key,
)

__all__ = [
    "BackupCatalog",
    "backup_manifest",
    "decode_manifest",
    "encode_manifest",
    "parse_manifest",
    "restore_point_manifest",
    "segment_manifest",
    "timeline_manifest",
    "validation_report_key",
]
