"""
Upload Service — signed upload URLs and the global direct upload

Signed-URL issuance is stateless: nothing is written to the database until
the client finalizes (create or replace). Validation order:

  1. MIME type against ALLOWED_CONTENT_TYPES
  2. Declared size against the ceiling (inclusive)
  3. Filename sanitized server-side
  4. Storage path built from the Scope (never from client input)
  5. Presigned PUT requested from the scope bucket
"""

from __future__ import annotations

import logging
import re
import secrets
import uuid
from dataclasses import dataclass

from app.core.config import settings
from app.core.exceptions import PayloadTooLarge, ValidationFailed
from app.models.scope import Scope
from app.schemas.documents import (
    ALLOWED_CONTENT_TYPES,
    MAX_DIRECT_UPLOAD_BYTES,
    MAX_FILE_SIZE_BYTES,
)
from app.storage.s3 import S3StorageService

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_filename(filename: str) -> str:
    """Replace every character outside [A-Za-z0-9._-] with '_' and cap the length."""
    safe = _UNSAFE_FILENAME_CHARS.sub("_", filename)[: settings.max_filename_length]
    return safe or "file"


def validate_upload(content_type: str, file_size: int, max_bytes: int = MAX_FILE_SIZE_BYTES) -> None:
    if content_type not in ALLOWED_CONTENT_TYPES:
        raise ValidationFailed(
            f"File type '{content_type}' is not supported. "
            "Allowed: PDF, DOC, DOCX, TXT, MD, JPEG, PNG, WEBP.",
            error_code="UNSUPPORTED_FILE_TYPE",
            field="content_type",
        )
    if file_size > max_bytes:
        raise PayloadTooLarge(
            f"File exceeds the {max_bytes // (1024 * 1024)} MB limit "
            f"(received {file_size:,} bytes).",
            field="file_size",
        )


@dataclass(frozen=True)
class UploadTicket:
    document_id:  uuid.UUID
    storage_path: str
    signed_url:   str
    token:        str
    expires_in:   int
    new_version:  int | None = None


class UploadService:

    def __init__(self, scope: Scope, storage: S3StorageService) -> None:
        self._scope = scope
        self._storage = storage

    async def issue_upload_url(
        self,
        filename: str,
        content_type: str,
        file_size: int,
    ) -> UploadTicket:
        """Signed PUT for a brand-new document; the document id is generated here."""
        return await self._issue(uuid.uuid4(), filename, content_type, file_size)

    async def issue_replace_url(
        self,
        document,
        filename: str,
        content_type: str,
        file_size: int,
    ) -> UploadTicket:
        """Signed PUT for a replacement; carries the version number the finalize must present."""
        return await self._issue(
            document.id, filename, content_type, file_size,
            new_version=document.current_version + 1,
        )

    async def upload_direct(
        self,
        filename: str,
        content_type: str,
        body: bytes,
    ) -> dict:
        """Server-side multipart upload (global documents), capped at MAX_DIRECT_UPLOAD_BYTES."""
        validate_upload(content_type, len(body), max_bytes=MAX_DIRECT_UPLOAD_BYTES)

        document_id = uuid.uuid4()
        safe_name = sanitize_filename(filename)
        key = self._scope.storage_path(document_id, safe_name)
        await self._storage.put_object(key, body, content_type=content_type)

        logger.info("Direct upload | scope=%s doc=%s size=%d", self._scope, document_id, len(body))
        return {
            "document_id":       document_id,
            "storage_path":      key,
            "file_type":         content_type,
            "file_size":         len(body),
            "original_filename": filename,
        }

    async def _issue(
        self,
        document_id: uuid.UUID,
        filename: str,
        content_type: str,
        file_size: int,
        new_version: int | None = None,
    ) -> UploadTicket:
        validate_upload(content_type, file_size)

        key = self._scope.storage_path(document_id, sanitize_filename(filename))
        token = secrets.token_urlsafe(24)
        presigned = await self._storage.generate_presigned_put(
            key,
            content_type=content_type,
            metadata={"upload-token": token},
        )

        logger.info(
            "Upload URL issued | scope=%s doc=%s key=%s replace=%s",
            self._scope, document_id, key, new_version is not None,
        )
        return UploadTicket(
            document_id=document_id,
            storage_path=key,
            signed_url=presigned.url,
            token=token,
            expires_in=presigned.expires_in,
            new_version=new_version,
        )
