"""
Object Store — raw document bytes in S3

The ingestion pipeline only needs two operations on already-uploaded
documents: read the bytes back (extraction / OCR) and write an object
(uploads and fixtures). Both go through the ObjectStore protocol so services
can be exercised with an in-memory double.

Error mapping:
  Any botocore failure → StorageUnavailable
    missing key (NoSuchKey / 404) → StorageUnavailable(missing=True)
  The original exception is chained so is_retryable() can classify it.
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from typing import Protocol

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from docingest.core.config import settings
from docingest.core.errors import StorageUnavailable

logger = logging.getLogger(__name__)

_MISSING_CODES = ("NoSuchKey", "404", "NotFound")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StoredObject:
    """Represents a stored object — returned by put()."""
    key:          str
    bucket:       str
    size_bytes:   int
    content_type: str
    etag:         str
    version_id:   str | None = None


class ObjectStore(Protocol):
    async def get(self, storage_key: str) -> bytes: ...

    async def put(
        self,
        storage_key:  str,
        body:         bytes,
        content_type: str | None = None,
        metadata:     dict[str, str] | None = None,
    ) -> StoredObject: ...


# ---------------------------------------------------------------------------
# S3 implementation
# ---------------------------------------------------------------------------

class S3ObjectStore:
    """
    Async S3 access for one bucket.

    Storage keys are recorded server-side at upload time and read back from
    the documents table; they are never taken from a client without an
    ownership check first.
    """

    def __init__(self, bucket: str | None = None, region: str | None = None) -> None:
        self._bucket  = bucket or settings.s3_bucket
        self._region  = region or settings.aws_region
        self._session = aioboto3.Session()

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            region_name=self._region,
            # In production: IAM role assumed via ECS task role / IRSA.
            # In local dev: reads AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY.
        )

    async def get(self, storage_key: str) -> bytes:
        try:
            async with self._client() as s3:
                resp = await s3.get_object(Bucket=self._bucket, Key=storage_key)
                body = await resp["Body"].read()
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            missing = code in _MISSING_CODES
            logger.error(
                "S3 get failed | bucket=%s key=%s code=%s missing=%s",
                self._bucket, storage_key, code, missing,
            )
            raise StorageUnavailable(
                f"Object could not be read: {storage_key}",
                storage_key=storage_key,
                missing=missing,
            ) from exc
        except BotoCoreError as exc:
            logger.error("S3 get failed | bucket=%s key=%s error=%s", self._bucket, storage_key, exc)
            raise StorageUnavailable(
                f"Object store unreachable: {exc}",
                storage_key=storage_key,
                missing=False,
            ) from exc

        logger.info("S3 get ok | key=%s size=%d", storage_key, len(body))
        return body

    async def put(
        self,
        storage_key:  str,
        body:         bytes,
        content_type: str | None = None,
        metadata:     dict[str, str] | None = None,
    ) -> StoredObject:
        ct = content_type or mimetypes.guess_type(storage_key)[0] or "application/octet-stream"
        try:
            async with self._client() as s3:
                resp = await s3.put_object(
                    Bucket=self._bucket,
                    Key=storage_key,
                    Body=body,
                    ContentType=ct,
                    Metadata=metadata or {},
                )
        except (ClientError, BotoCoreError) as exc:
            logger.error("S3 put failed | bucket=%s key=%s error=%s", self._bucket, storage_key, exc)
            raise StorageUnavailable(
                f"Object could not be written: {storage_key}",
                storage_key=storage_key,
                missing=False,
            ) from exc

        logger.info("S3 upload ok | key=%s size=%d content_type=%s", storage_key, len(body), ct)
        return StoredObject(
            key=storage_key,
            bucket=self._bucket,
            size_bytes=len(body),
            content_type=ct,
            etag=resp.get("ETag", "").strip('"'),
            version_id=resp.get("VersionId"),
        )
