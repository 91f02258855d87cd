"""
Filesystem storage backend (local disk, NFS mounts, SFTP-backed volumes).

Objects are written to a temporary file and renamed into place so a reader
never observes a partial object. The checksum lives in a sidecar file
<key>.sha256 written after the object itself.

Invariants:
    - An object without a sidecar is treated as absent by checksum()
    - Keys map 1:1 to relative paths under the root

How to change safely:
    - Keep the sidecar suffix stable; existing archives depend on it
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path

from ..errors import ArtifactNotFoundError, TransientStorageError
from .base import compute_checksum

logger = logging.getLogger(__name__)

CHECKSUM_SUFFIX = ".sha256"


class LocalStorageBackend:
    """Stores artifacts under a root directory."""

    def __init__(self, root: str | Path, name: str = "local") -> None:
        self.name = name
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Key escapes storage root: {key}")
        return path

    async def put(self, key: str, data: bytes) -> str:
        checksum = compute_checksum(data)
        await self._run(self._write, self._path(key), data, checksum)
        logger.debug("Stored object", extra={"key": key, "size_bytes": len(data)})
        return checksum

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise ArtifactNotFoundError(key)
        return await self._run(path.read_bytes)

    async def checksum(self, key: str) -> str | None:
        sidecar = self._path(key + CHECKSUM_SUFFIX)
        if not sidecar.exists() or not self._path(key).exists():
            return None
        text = await self._run(sidecar.read_text)
        return text.strip()

    async def list(self, prefix: str = "") -> list[str]:
        return await self._run(self._scan, prefix)

    async def delete(self, key: str) -> None:
        await self._run(self._remove, self._path(key))

    async def close(self) -> None:
        pass

    async def _run(self, fn, *args):
        try:
            return await asyncio.get_event_loop().run_in_executor(None, fn, *args)
        except (ArtifactNotFoundError, ValueError):
            raise
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(str(e.filename)) from e
        except OSError as e:
            raise TransientStorageError(f"Filesystem error: {e}", key=str(e.filename)) from e

    def _write(self, path: Path, data: bytes, checksum: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._atomic_write(path, data)
        self._atomic_write(path.with_name(path.name + CHECKSUM_SUFFIX), checksum.encode("utf-8"))

    def _atomic_write(self, path: Path, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _scan(self, prefix: str) -> list[str]:
        keys = []
        for path in self.root.rglob("*"):
            if not path.is_file():
                continue
            if path.name.endswith(CHECKSUM_SUFFIX) or path.name.startswith(".tmp-"):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def _remove(self, path: Path) -> None:
        for target in (path, path.with_name(path.name + CHECKSUM_SUFFIX)):
            try:
                target.unlink()
            except FileNotFoundError:
                pass
