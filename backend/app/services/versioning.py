"""
Version Archiver — replace protocol

One replace = three writes in ONE transaction (unit_of_work):

  1. Archive   INSERT <version>(version_number = current_version, old path/size)
  2. Swap      UPDATE <document> SET storage_path, file_size, file_type,
               original_filename, current_version = current_version + 1
  3. Invalidate the digest (content_md → previous_content_md, back to pending)

A failed archive surfaces ARCHIVE_FAILED and nothing else runs. A failure in
step 2 or 3 rolls the archive back too, so a replace is either fully applied
or not applied at all and can simply be retried.

The caller presents the new_version it was given by the replace upload URL;
anything other than current_version + 1 means another replace won the race
and the request is rejected as stale.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ArchiveFailed, Conflict, ValidationFailed
from app.db.session import unit_of_work
from app.models.scope import Scope
from app.services.digests import DigestStateMachine
from app.services.lookups import get_document

logger = logging.getLogger(__name__)


@dataclass
class ReplaceResult:
    document:         Any
    archived_version: Any
    digest:           Any


class VersionArchiver:

    def __init__(self, session: AsyncSession, scope: Scope) -> None:
        self._db = session
        self._scope = scope
        self._family = scope.family

    async def replace(
        self,
        document_id: uuid.UUID,
        *,
        storage_path: str,
        new_version: int,
        actor: str | None,
        file_size: int | None = None,
        file_type: str | None = None,
        original_filename: str | None = None,
    ) -> ReplaceResult:
        if not storage_path:
            raise ValidationFailed("storage_path is required", field="storage_path")

        async with unit_of_work(self._db):
            doc = await get_document(self._db, self._scope, document_id)

            if new_version != doc.current_version + 1:
                raise Conflict(
                    f"Stale replace: expected new_version {doc.current_version + 1}, got {new_version}",
                    error_code="STALE_VERSION",
                )

            archived = await self._archive(doc, actor)
            self._swap(doc, storage_path, file_size, file_type, original_filename)
            await self._db.flush()
            digest = await self._invalidate_digest(doc.id)

        logger.info(
            "Replace ok | scope=%s doc=%s archived=v%d current=v%d",
            self._scope, doc.id, archived.version_number, doc.current_version,
        )
        return ReplaceResult(document=doc, archived_version=archived, digest=digest)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _archive(self, doc, actor: str | None):
        version = self._family.version(
            document_id=doc.id,
            version_number=doc.current_version,
            storage_path=doc.storage_path,
            file_size=doc.file_size,
            replaced_by=actor,
        )
        document_id = doc.id
        self._db.add(version)
        try:
            await self._db.flush()
        except SQLAlchemyError as exc:
            logger.exception("Archive failed | scope=%s doc=%s", self._scope, document_id)
            raise ArchiveFailed("Failed to archive current version") from exc
        return version

    @staticmethod
    def _swap(doc, storage_path, file_size, file_type, original_filename) -> None:
        doc.storage_path = storage_path
        doc.file_size = file_size
        doc.file_type = file_type
        doc.original_filename = original_filename
        doc.current_version = doc.current_version + 1

    async def _invalidate_digest(self, document_id: uuid.UUID):
        return await DigestStateMachine(self._db, self._scope).invalidate(document_id)
