"""
S3 storage backend (AWS S3 and S3-compatible stores such as MinIO or
Hetzner Object Storage, selected via endpoint_url).

Layout:
    s3://<bucket>/<prefix>/<timeline>/<kind>/<id>

The checksum is stored as user metadata (x-amz-meta-sha256) in the same
PUT as the payload, so an object and its checksum appear atomically.

Invariants:
    - Throttling, 5xx and connection errors become TransientStorageError
    - Missing objects become ArtifactNotFoundError (or None for checksum())
    - The client is created lazily and reused until close()

How to change safely:
    - Never change the metadata field name; verification reads it back
    - Test against MinIO before relying on a new S3 feature
"""

from __future__ import annotations

import logging
from typing import Any

import aiohttp
from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import ArtifactNotFoundError, PitrError, TransientStorageError
from .base import compute_checksum

logger = logging.getLogger(__name__)

CHECKSUM_METADATA_FIELD = "sha256"

_S3_ERRORS = (ClientError, BotoCoreError, aiohttp.ClientError, ConnectionError)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_TRANSIENT_CODES = {
    "500",
    "502",
    "503",
    "504",
    "InternalError",
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "ServiceUnavailable",
    "SlowDown",
    "Throttling",
    "ThrottlingException",
}


class S3StorageBackend:
    """Stores artifacts in an S3 bucket.

    Example:
        >>> storage = S3StorageBackend(config.s3)
        >>> checksum = await storage.put("00000001/wal/...", data)
        >>> await storage.close()
    """

    def __init__(
        self,
        s3_config: Any,
        bucket: str | None = None,
        region: str | None = None,
        name: str | None = None,
    ) -> None:
        """Initialize the backend.

        Args:
            s3_config: S3Config instance
            bucket: Override the configured bucket (replica destinations)
            region: Override the configured region (replica destinations)
            name: Display name used in logs
        """
        self.s3_config = s3_config
        self.bucket = bucket or s3_config.bucket
        self.region = region or s3_config.region
        self.prefix = s3_config.prefix.strip("/")
        self.name = name or f"s3://{self.bucket}"
        self._session = None
        self._s3_ctx = None
        self._s3_client = None

    async def _client(self):
        if self._s3_client is None:
            self._session = get_session()

            client_kwargs = {
                "region_name": self.region,
            }

            if self.s3_config.endpoint_url:
                client_kwargs["endpoint_url"] = self.s3_config.endpoint_url

            if self.s3_config.access_key_id:
                client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
                client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key

            self._s3_ctx = self._session.create_client("s3", **client_kwargs)
            self._s3_client = await self._s3_ctx.__aenter__()
        return self._s3_client

    async def close(self) -> None:
        """Close S3 client."""
        if self._s3_client:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None

    def _object_key(self, key: str) -> str:
        return f"{self.prefix}/{key}" if self.prefix else key

    def _artifact_key(self, object_key: str) -> str:
        if self.prefix and object_key.startswith(self.prefix + "/"):
            return object_key[len(self.prefix) + 1 :]
        return object_key

    async def put(self, key: str, data: bytes) -> str:
        checksum = compute_checksum(data)
        client = await self._client()
        try:
            await client.put_object(
                Bucket=self.bucket,
                Key=self._object_key(key),
                Body=data,
                StorageClass=self.s3_config.storage_class,
                Metadata={CHECKSUM_METADATA_FIELD: checksum},
            )
        except _S3_ERRORS as e:
            raise self._translate(e, key) from e

        logger.debug(
            "Uploaded object",
            extra={"bucket": self.bucket, "key": key, "size_bytes": len(data)},
        )
        return checksum

    async def get(self, key: str) -> bytes:
        client = await self._client()
        try:
            response = await client.get_object(Bucket=self.bucket, Key=self._object_key(key))
            async with response["Body"] as stream:
                return await stream.read()
        except _S3_ERRORS as e:
            raise self._translate(e, key) from e

    async def checksum(self, key: str) -> str | None:
        client = await self._client()
        try:
            response = await client.head_object(Bucket=self.bucket, Key=self._object_key(key))
        except _S3_ERRORS as e:
            error = self._translate(e, key)
            if isinstance(error, ArtifactNotFoundError):
                return None
            raise error from e
        return response.get("Metadata", {}).get(CHECKSUM_METADATA_FIELD)

    async def list(self, prefix: str = "") -> list[str]:
        client = await self._client()
        keys: list[str] = []
        try:
            paginator = client.get_paginator("list_objects_v2")
            async for page in paginator.paginate(
                Bucket=self.bucket, Prefix=self._object_key(prefix)
            ):
                for obj in page.get("Contents", []):
                    keys.append(self._artifact_key(obj["Key"]))
        except _S3_ERRORS as e:
            raise self._translate(e, prefix) from e
        return sorted(keys)

    async def delete(self, key: str) -> None:
        client = await self._client()
        try:
            await client.delete_object(Bucket=self.bucket, Key=self._object_key(key))
        except _S3_ERRORS as e:
            error = self._translate(e, key)
            if not isinstance(error, ArtifactNotFoundError):
                raise error from e

    def _translate(self, error: Exception, key: str) -> PitrError:
        """Map botocore / transport errors onto the PITR error taxonomy."""
        if isinstance(error, ClientError):
            code = str(error.response.get("Error", {}).get("Code", ""))
            if code in _NOT_FOUND_CODES:
                return ArtifactNotFoundError(key)
            if code in _TRANSIENT_CODES:
                return TransientStorageError(f"S3 {code} for {key}", key=key)
            return PitrError(
                f"S3 request failed for {key}: {code}",
                code="STORAGE_ERROR",
                details={"key": key, "s3_code": code, "bucket": self.bucket},
            )
        return TransientStorageError(f"S3 transport error for {key}: {error}", key=key)
