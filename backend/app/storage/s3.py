"""
S3 Storage Service — Scope-Bucketed

Layout (two buckets, one per scope):

    org-documents     /<tenant_id>/<document_id>/<sanitized_filename>
    global-documents  /<document_id>/<sanitized_filename>

Keys are always built server-side (Scope.storage_path) — a client never
supplies a raw key except when echoing back the storage_path of an upload
ticket it was issued.

Object lifecycle:
  - Browsers upload directly with a presigned PUT (short TTL).
  - Reads go through presigned GET URLs issued on document detail.
  - Replace never deletes the previous object; archived versions keep
    pointing at it. Only document deletion removes objects.

Every call carries explicit connect/read timeouts and a bounded retry
budget (botocore Config) so a slow bucket cannot pin a worker.
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass

import aioboto3
from botocore.config import Config
from botocore.exceptions import ClientError

from app.core.config import settings
from app.models.scope import Scope

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class S3Object:
    """Represents a stored object — returned by put_object."""
    key:          str
    bucket:       str
    size_bytes:   int
    content_type: str
    etag:         str
    version_id:   str | None = None


@dataclass(frozen=True)
class PresignedUrl:
    url:        str
    expires_in: int   # seconds
    method:     str   # GET | PUT


# ---------------------------------------------------------------------------
# S3 Service
# ---------------------------------------------------------------------------

class S3StorageService:
    """
    Async S3 operations bound to one bucket.

    One instance is created per request (via FastAPI dependency) from the
    request's Scope, so org handlers can never touch the global bucket and
    vice versa.
    """

    def __init__(self, bucket: str) -> None:
        self._bucket = bucket
        self._session = aioboto3.Session()

    @classmethod
    def for_scope(cls, scope: Scope) -> "S3StorageService":
        return cls(bucket=scope.bucket)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            region_name=settings.aws_region,
            endpoint_url=settings.s3_endpoint_url or None,
            aws_access_key_id=settings.aws_access_key_id or None,
            aws_secret_access_key=settings.aws_secret_access_key or None,
            config=Config(
                connect_timeout=settings.s3_connect_timeout,
                read_timeout=settings.s3_read_timeout,
                retries={"max_attempts": settings.s3_max_attempts, "mode": "standard"},
            ),
        )

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def put_object(
        self,
        key: str,
        body: bytes,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> S3Object:
        """Upload bytes under an already-built key."""
        ct = content_type or mimetypes.guess_type(key)[0] or "application/octet-stream"

        async with self._client() as s3:
            resp = await s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=body,
                ContentType=ct,
                Metadata=metadata or {},
            )

        logger.info(
            "S3 upload ok | bucket=%s key=%s size=%d",
            self._bucket, key, len(body),
        )

        return S3Object(
            key=key,
            bucket=self._bucket,
            size_bytes=len(body),
            content_type=ct,
            etag=resp.get("ETag", "").strip('"'),
            version_id=resp.get("VersionId"),
        )

    async def get_object(self, key: str) -> bytes:
        """Download an object; a missing key raises FileNotFoundError."""
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {key}") from exc
                raise

    async def delete_objects(self, keys: list[str]) -> None:
        """Batch delete (document removal purges the head and every archived version)."""
        if not keys:
            return
        async with self._client() as s3:
            await s3.delete_objects(
                Bucket=self._bucket,
                Delete={"Objects": [{"Key": k} for k in keys], "Quiet": True},
            )
        logger.info("S3 batch delete | bucket=%s count=%d", self._bucket, len(keys))

    async def generate_presigned_get(
        self,
        key: str,
        expires_in: int | None = None,
    ) -> PresignedUrl:
        """Short-lived presigned GET URL scoped to the exact object key."""
        ttl = expires_in or settings.signed_url_ttl_seconds
        async with self._client() as s3:
            url = await s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self._bucket, "Key": key},
                ExpiresIn=ttl,
            )
        return PresignedUrl(url=url, expires_in=ttl, method="GET")

    async def generate_presigned_put(
        self,
        key: str,
        content_type: str,
        metadata: dict[str, str] | None = None,
        expires_in: int | None = None,
    ) -> PresignedUrl:
        """
        Short-lived presigned PUT URL for direct browser upload.
        The client must send the same Content-Type (and x-amz-meta-* headers
        for any metadata) or S3 rejects the signature.
        """
        ttl = expires_in or settings.upload_url_ttl_seconds
        params: dict = {
            "Bucket":      self._bucket,
            "Key":         key,
            "ContentType": content_type,
        }
        if metadata:
            params["Metadata"] = metadata

        async with self._client() as s3:
            url = await s3.generate_presigned_url(
                "put_object",
                Params=params,
                ExpiresIn=ttl,
            )
        return PresignedUrl(url=url, expires_in=ttl, method="PUT")
