"""
Artifact storage backends.

The backend is selected once at configuration time (STORAGE_BACKEND) and
handed to every component at construction.
"""

from __future__ import annotations

from typing import Any

from .base import StorageBackend, compute_checksum
from .local import LocalStorageBackend
from .memory import InMemoryStorageBackend


def create_storage_backend(config: Any) -> StorageBackend:
    """Create the primary storage backend from a ServerConfig.

    Args:
        config: ServerConfig instance

    Returns:
        StorageBackend for the configured medium
    """
    from ..config import StorageBackend as BackendKind

    if config.storage_backend == BackendKind.S3:
        from .s3 import S3StorageBackend

        return S3StorageBackend(config.s3)
    if config.storage_backend == BackendKind.LOCAL:
        return LocalStorageBackend(config.local.root)
    return InMemoryStorageBackend()


def create_replica_backends(config: Any) -> dict[str, StorageBackend]:
    """Create one destination backend per configured replica region.

    Replicas are S3 buckets in other regions; they share the primary S3
    credentials and, when set, the replica endpoint.
    """
    if not config.replicas.regions:
        return {}

    from dataclasses import replace

    from .s3 import S3StorageBackend

    replica_s3 = replace(
        config.s3,
        endpoint_url=config.replicas.endpoint_url or config.s3.endpoint_url,
        storage_class=config.replicas.storage_class,
    )
    return {
        region: S3StorageBackend(replica_s3, bucket=bucket, region=region, name=f"s3://{bucket}")
        for region, bucket in sorted(config.replicas.regions.items())
    }


__all__ = [
    "StorageBackend",
    "compute_checksum",
    "LocalStorageBackend",
    "InMemoryStorageBackend",
    "create_storage_backend",
    "create_replica_backends",
]
