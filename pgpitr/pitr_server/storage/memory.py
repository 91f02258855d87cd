"""
In-memory storage backend for testing.

Provides the full StorageBackend contract plus failure injection so tests can
exercise retries, retry exhaustion, corruption and truncated uploads without
a real object store.

Invariants:
    - All data is lost on process exit
    - corrupt() changes bytes without touching the recorded checksum

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the StorageBackend protocol
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from ..errors import ArtifactNotFoundError, TransientStorageError
from .base import compute_checksum

logger = logging.getLogger(__name__)


@dataclass
class _InjectedFailure:
    operation: str
    remaining: int | None
    key_prefix: str | None
    error: Exception | None


class InMemoryStorageBackend:
    """Dictionary-backed storage.

    Example:
        >>> storage = InMemoryStorageBackend()
        >>> storage.inject_failure("put", times=2)
        >>> await policy.run("put", storage.put, "00000001/wal/x", b"...")  # 3rd try wins
    """

    def __init__(self, name: str = "memory") -> None:
        self.name = name
        self._objects: dict[str, bytes] = {}
        self._checksums: dict[str, str] = {}
        self._failures: list[_InjectedFailure] = []
        self._lock = asyncio.Lock()
        self.calls: dict[str, int] = {"put": 0, "get": 0, "checksum": 0, "list": 0, "delete": 0}

    async def put(self, key: str, data: bytes) -> str:
        self._record_call("put", key)
        checksum = compute_checksum(data)
        async with self._lock:
            self._objects[key] = bytes(data)
            self._checksums[key] = checksum
        logger.debug("Stored object", extra={"key": key, "size_bytes": len(data)})
        return checksum

    async def get(self, key: str) -> bytes:
        self._record_call("get", key)
        if key not in self._objects:
            raise ArtifactNotFoundError(key)
        return self._objects[key]

    async def checksum(self, key: str) -> str | None:
        self._record_call("checksum", key)
        return self._checksums.get(key)

    async def list(self, prefix: str = "") -> list[str]:
        self._record_call("list", prefix)
        return sorted(k for k in self._objects if k.startswith(prefix))

    async def delete(self, key: str) -> None:
        self._record_call("delete", key)
        async with self._lock:
            self._objects.pop(key, None)
            self._checksums.pop(key, None)

    async def close(self) -> None:
        pass

    # Testing helpers

    def inject_failure(
        self,
        operation: str,
        times: int | None = 1,
        key_prefix: str | None = None,
        error: Exception | None = None,
    ) -> None:
        """Make the next `times` calls of an operation fail.

        Args:
            operation: put, get, checksum, list or delete
            times: Number of failing calls (None = until cleared)
            key_prefix: Only fail calls whose key starts with this prefix
            error: Exception to raise (default TransientStorageError)
        """
        self._failures.append(_InjectedFailure(operation, times, key_prefix, error))

    def clear_failures(self) -> None:
        self._failures.clear()

    def corrupt(self, key: str, data: bytes) -> None:
        """Replace stored bytes while keeping the recorded checksum."""
        self._objects[key] = data

    def truncate(self, key: str, keep_bytes: int) -> None:
        """Simulate a partially written object."""
        self._objects[key] = self._objects[key][:keep_bytes]

    def keys(self) -> list[str]:
        return sorted(self._objects)

    def __contains__(self, key: str) -> bool:
        return key in self._objects

    def __len__(self) -> int:
        return len(self._objects)

    def _record_call(self, operation: str, key: str) -> None:
        self.calls[operation] += 1
        for failure in self._failures:
            if failure.operation != operation:
                continue
            if failure.key_prefix is not None and not key.startswith(failure.key_prefix):
                continue
            if failure.remaining is not None:
                if failure.remaining <= 0:
                    continue
                failure.remaining -= 1
            raise failure.error or TransientStorageError(
                f"Injected {operation} failure", key=key
            )
