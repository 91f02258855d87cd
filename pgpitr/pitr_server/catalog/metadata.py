"""
Metadata manifests stored next to the artifacts they describe.

Every WAL segment, base backup, restore point and timeline branch gets a JSON
manifest under {timeline}/metadata/. The manifests are the source of truth the
catalog is rebuilt from when its index is lost.

Manifest format:
    {"format_version": 1, "type": "wal" | "backup" | ..., "data": {...}}

Invariants:
    - Manifest keys are deterministic, rewriting one is idempotent
    - Readers ignore unknown fields

How to change safely:
    - Bump FORMAT_VERSION only for incompatible changes and keep reading old ones
"""

from __future__ import annotations

import json
from typing import Any

from ..models import (
    ArtifactKind,
    BaseBackup,
    RestorePoint,
    TimelineHistory,
    WalSegment,
    artifact_key,
    backup_manifest_id,
    restore_point_manifest_id,
    timeline_manifest_id,
    wal_manifest_id,
)

FORMAT_VERSION = 1


def encode_manifest(manifest_type: str, data: dict[str, Any]) -> bytes:
    return json.dumps(
        {"format_version": FORMAT_VERSION, "type": manifest_type, "data": data},
        indent=2,
        sort_keys=True,
    ).encode("utf-8")


def decode_manifest(payload: bytes) -> tuple[str, dict[str, Any]]:
    """Decode a manifest into (type, data).

    Raises:
        ValueError: If the payload is not a manifest
    """
    try:
        document = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Not a manifest: {e}")
    if not isinstance(document, dict) or "type" not in document or "data" not in document:
        raise ValueError("Not a manifest: missing type or data")
    return document["type"], document["data"]


def segment_manifest(segment: WalSegment) -> tuple[str, bytes]:
    key = artifact_key(
        segment.timeline,
        ArtifactKind.METADATA,
        wal_manifest_id(segment.start_lsn, segment.end_lsn),
    )
    return key, encode_manifest("wal", segment.to_dict())


def backup_manifest(backup: BaseBackup) -> tuple[str, bytes]:
    key = artifact_key(backup.timeline, ArtifactKind.METADATA, backup_manifest_id(backup.backup_id))
    return key, encode_manifest("backup", backup.to_dict())


def restore_point_manifest(point: RestorePoint) -> tuple[str, bytes]:
    key = artifact_key(point.timeline, ArtifactKind.METADATA, restore_point_manifest_id(point.name))
    return key, encode_manifest("restore-point", point.to_dict())


def timeline_manifest(history: TimelineHistory) -> tuple[str, bytes]:
    key = artifact_key(
        history.timeline, ArtifactKind.METADATA, timeline_manifest_id(history.timeline)
    )
    return key, encode_manifest("timeline", history.to_dict())


def validation_report_key(timeline: int, timestamp: int) -> str:
    return artifact_key(timeline, ArtifactKind.METADATA, f"validation-{timestamp}.json")


def parse_manifest(payload: bytes) -> WalSegment | BaseBackup | RestorePoint | TimelineHistory | None:
    """Decode a manifest into its model object (None for report manifests)."""
    manifest_type, data = decode_manifest(payload)
    if manifest_type == "wal":
        return WalSegment.from_dict(data)
    if manifest_type == "backup":
        return BaseBackup.from_dict(data)
    if manifest_type == "restore-point":
        return RestorePoint.from_dict(data)
    if manifest_type == "timeline":
        return TimelineHistory.from_dict(data)
    return None
