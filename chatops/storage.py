"""Durable object storage used for rehosted media."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

try:  # pragma: no cover - optional dependency
    import boto3  # type: ignore
except Exception:  # pragma: no cover - fallback when boto3 is unavailable
    boto3 = None  # type: ignore

logger = logging.getLogger(__name__)


class ObjectStorage(Protocol):
    """Put/get/signed-URL service keyed by object name."""

    def put(self, key: str, data: bytes, content_type: str) -> str: ...

    def get(self, key: str) -> bytes: ...

    def signed_url(self, key: str, expires_in: int = 3600) -> str: ...


class S3ObjectStorage:
    """S3/MinIO backed storage; ``endpoint_url`` selects MinIO."""

    def __init__(
        self,
        bucket: str,
        *,
        endpoint_url: str | None = None,
        region: str | None = None,
        client: Any | None = None,
    ) -> None:
        if client is None:
            if boto3 is None:
                raise RuntimeError("S3 media storage requires 'boto3' to be installed")
            client = boto3.client("s3", endpoint_url=endpoint_url, region_name=region)
        self._client = client
        self._bucket = bucket

    def put(self, key: str, data: bytes, content_type: str) -> str:
        self._client.put_object(
            Bucket=self._bucket, Key=key, Body=data, ContentType=content_type
        )
        logger.info("Stored %s (%d bytes) in bucket %s", key, len(data), self._bucket)
        return key

    def get(self, key: str) -> bytes:
        response = self._client.get_object(Bucket=self._bucket, Key=key)
        return response["Body"].read()

    def signed_url(self, key: str, expires_in: int = 3600) -> str:
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self._bucket, "Key": key},
            ExpiresIn=expires_in,
        )


class LocalDiskStorage:
    """Writes files below ``base_dir``; used as the ephemeral fallback."""

    def __init__(self, base_dir: str | Path, public_prefix: str = "/storage") -> None:
        self.base_dir = Path(base_dir)
        self.public_prefix = public_prefix.rstrip("/")

    def write(self, relative_path: str, data: bytes) -> str:
        """Persist ``data`` and return the public reference for it."""

        target = self.base_dir / relative_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return f"{self.public_prefix}/{relative_path}"
