"""
Storage backend interface.

Every artifact (WAL segment, base backup, metadata manifest) lives under the
logical key layout {timeline}/{kind}/{id}. Backends differ only in the medium;
the strategy is chosen once at configuration time by create_storage_backend().

Each stored object carries its checksum:
    - S3 and S3-compatible stores: object metadata x-amz-meta-sha256
    - Local filesystem: sidecar file <key>.sha256
    - In-memory: kept alongside the bytes

Invariants:
    - put() returns the checksum of exactly the bytes given
    - checksum() reports what was recorded at put time, not a recomputation
    - list() returns artifact keys only, sorted, never checksum sidecars
    - delete() is idempotent

How to change safely:
    - New backends must pass the shared storage contract tests
    - Never let a backend rewrite keys; the layout is a compatibility contract
"""

from __future__ import annotations

import hashlib
from typing import Protocol, runtime_checkable


def compute_checksum(data: bytes) -> str:
    """Compute the SHA-256 checksum of data in sha256:<hex> form."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


@runtime_checkable
class StorageBackend(Protocol):
    """Protocol for artifact storage.

    Implementations raise TransientStorageError for failures that may
    succeed on retry and ArtifactNotFoundError for missing keys. Callers wrap
    every call with a RetryPolicy.
    """

    name: str

    async def put(self, key: str, data: bytes) -> str:
        """Store data under key and record its checksum.

        Returns:
            Checksum of the stored bytes
        """
        ...

    async def get(self, key: str) -> bytes:
        """Fetch the bytes stored under key.

        Raises:
            ArtifactNotFoundError: If nothing is stored under key
        """
        ...

    async def checksum(self, key: str) -> str | None:
        """Recorded checksum of the object at key, or None if absent."""
        ...

    async def list(self, prefix: str = "") -> list[str]:
        """Keys starting with prefix, sorted."""
        ...

    async def delete(self, key: str) -> None:
        """Remove the object at key (no-op if absent)."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...
