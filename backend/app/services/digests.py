"""
Extraction State Machine — DocumentDigest lifecycle

    pending ──▶ processing ──▶ completed
                    │
                    └────────▶ failed

    any ──▶ pending   (reprocess, replace)

Every write is an optimistic compare-and-swap on digest.row_version (the
mapper's version_id_col). A concurrent writer that got there first makes
the flush fail with StaleDataError, surfaced to callers as Conflict.
"""

from __future__ import annotations

import hashlib
import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import Conflict, NotFound
from app.models.scope import Scope
from app.schemas.documents import ExtractionStatus
from app.services.lookups import find_digest, get_document

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    ExtractionStatus.PENDING.value:    frozenset({ExtractionStatus.PROCESSING.value}),
    ExtractionStatus.PROCESSING.value: frozenset(
        {ExtractionStatus.COMPLETED.value, ExtractionStatus.FAILED.value}
    ),
    ExtractionStatus.COMPLETED.value:  frozenset(),
    ExtractionStatus.FAILED.value:     frozenset(),
}


def content_hash(content_md: str) -> str:
    """SHA-256 hex digest of the extracted text."""
    return hashlib.sha256(content_md.encode("utf-8")).hexdigest()


class DigestStateMachine:
    """
    Owns every extraction_status change for one scope.

    Methods flush but never commit; the caller's transaction decides.
    """

    def __init__(self, session: AsyncSession, scope: Scope) -> None:
        self._db = session
        self._scope = scope

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, document_id: uuid.UUID):
        await get_document(self._db, self._scope, document_id)
        digest = await find_digest(self._db, self._scope, document_id)
        if digest is None:
            raise NotFound("Digest not found", error_code="DIGEST_NOT_FOUND")
        return digest

    # ------------------------------------------------------------------
    # Resets (any → pending)
    # ------------------------------------------------------------------

    async def ensure(self, document_id: uuid.UUID):
        """Return the digest, creating a pending one if the document has none."""
        digest = await find_digest(self._db, self._scope, document_id)
        if digest is None:
            digest = self._scope.family.digest(
                document_id=document_id,
                extraction_status=ExtractionStatus.PENDING.value,
            )
            self._db.add(digest)
            await self._flush(digest)
            logger.info("Digest created | scope=%s doc=%s", self._scope, document_id)
        return digest

    async def reprocess(self, document_id: uuid.UUID):
        """Caller-triggered reset: create if missing, else back to pending with the error cleared."""
        await get_document(self._db, self._scope, document_id)
        existing = await find_digest(self._db, self._scope, document_id)
        if existing is None:
            return await self.ensure(document_id)

        existing.extraction_status = ExtractionStatus.PENDING.value
        existing.extraction_error = None
        await self._flush(existing)
        logger.info("Digest reset to pending | scope=%s doc=%s", self._scope, document_id)
        return existing

    async def invalidate(self, document_id: uuid.UUID):
        """
        Replace-time reset: the current text becomes previous_content_md and
        the digest returns to pending with no content or hash.
        """
        digest = await find_digest(self._db, self._scope, document_id)
        if digest is None:
            return await self.ensure(document_id)

        digest.previous_content_md = digest.content_md
        digest.content_md = None
        digest.content_hash = None
        digest.extraction_status = ExtractionStatus.PENDING.value
        digest.extraction_error = None
        await self._flush(digest)
        return digest

    # ------------------------------------------------------------------
    # Forward transitions
    # ------------------------------------------------------------------

    async def mark_processing(self, digest) -> None:
        self._transition(digest, ExtractionStatus.PROCESSING)
        digest.extraction_error = None
        await self._flush(digest)

    async def mark_completed(
        self,
        digest,
        content_md: str,
        method: str,
        metadata: dict | None = None,
    ) -> None:
        self._transition(digest, ExtractionStatus.COMPLETED)
        digest.content_md = content_md
        digest.content_hash = content_hash(content_md)
        digest.extraction_method = method
        digest.extraction_error = None
        digest.digest_metadata = dict(metadata or {})
        await self._flush(digest)
        logger.info(
            "Extraction completed | scope=%s doc=%s method=%s chars=%d",
            self._scope, digest.document_id, method, len(content_md),
        )

    async def mark_failed(self, digest, error: str, method: str | None = None) -> None:
        self._transition(digest, ExtractionStatus.FAILED)
        digest.extraction_error = error or "Unknown extraction error"
        if method:
            digest.extraction_method = method
        await self._flush(digest)
        logger.warning(
            "Extraction failed | scope=%s doc=%s error=%s",
            self._scope, digest.document_id, digest.extraction_error,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _transition(digest, target: ExtractionStatus) -> None:
        current = digest.extraction_status
        if target.value not in ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise Conflict(
                f"Cannot move digest from '{current}' to '{target.value}'",
                error_code="INVALID_TRANSITION",
            )
        digest.extraction_status = target.value

    async def _flush(self, digest) -> None:
        # the session expires every instance once a flush fails
        document_id = digest.document_id
        try:
            await self._db.flush()
        except StaleDataError as exc:
            logger.warning("Concurrent digest update | doc=%s", document_id)
            raise Conflict(
                "The digest was modified concurrently; reload and retry",
                error_code="CONCURRENT_UPDATE",
            ) from exc
