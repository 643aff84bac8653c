"""
Document Registry — CRUD over documents and folders for one Scope.

Stateless; one instance per request with injected dependencies:
    registry = DocumentRegistry(session=db, scope=scope, storage=storage)

Creation inserts the sibling pending digest in the same transaction so a
document never exists without its ledger row.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFound, ValidationFailed
from app.models.documents import ContextChunk
from app.models.scope import Scope
from app.schemas.documents import GLOBAL_CATEGORIES, ORG_CATEGORIES, SourceType
from app.services.digests import DigestStateMachine
from app.services.lookups import find_digest, get_document
from app.storage.s3 import S3StorageService

logger = logging.getLogger(__name__)

_ROOT_FOLDER_TOKENS = frozenset({"root", "null"})
_UPDATABLE_FIELDS = ("name", "description", "category", "folder_id")


@dataclass
class DocumentDetail:
    document:   Any
    digest:     Any | None
    versions:   list = field(default_factory=list)
    signed_url: str | None = None


def categories_for(scope: Scope) -> frozenset[str]:
    return ORG_CATEGORIES if scope.is_org else GLOBAL_CATEGORIES


def parse_folder_filter(folder_id: str | None) -> tuple[bool, uuid.UUID | None]:
    """
    Returns (apply_filter, folder_uuid).
    "root" / "null" mean top-level only, i.e. (True, None).
    """
    if folder_id is None or folder_id == "":
        return False, None
    if folder_id.lower() in _ROOT_FOLDER_TOKENS:
        return True, None
    try:
        return True, uuid.UUID(folder_id)
    except ValueError as exc:
        raise ValidationFailed(f"Invalid folder_id '{folder_id}'", field="folder_id") from exc


class DocumentRegistry:

    def __init__(
        self,
        session: AsyncSession,
        scope: Scope,
        storage: S3StorageService | None = None,
    ) -> None:
        self._db = session
        self._scope = scope
        self._storage = storage
        self._family = scope.family

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        *,
        name: str,
        category: str,
        source_type: str,
        actor: str | None,
        document_id: uuid.UUID | None = None,
        description: str | None = None,
        folder_id: uuid.UUID | None = None,
        storage_path: str | None = None,
        original_url: str | None = None,
        original_filename: str | None = None,
        raw_content: str | None = None,
        file_type: str | None = None,
        file_size: int | None = None,
    ):
        if not name or not name.strip():
            raise ValidationFailed("name is required", field="name")
        self._check_category(category)
        try:
            source = SourceType(source_type).value
        except ValueError:
            raise ValidationFailed(f"Unknown source_type '{source_type}'", field="source_type") from None
        if source == SourceType.URL.value and not original_url:
            raise ValidationFailed("original_url is required for url documents", field="original_url")
        if source == SourceType.FILE.value and not storage_path:
            raise ValidationFailed("storage_path is required for file documents", field="storage_path")
        if folder_id is not None:
            await self._get_folder(folder_id)

        doc = self._family.document(
            id=document_id or uuid.uuid4(),
            name=name.strip(),
            description=description,
            category=category,
            folder_id=folder_id,
            source_type=source,
            storage_path=storage_path,
            original_url=original_url,
            original_filename=original_filename,
            raw_content=raw_content,
            file_type=file_type,
            file_size=file_size,
            current_version=1,
            uploaded_by=actor,
            **self._scope.owner_columns(),
        )
        self._db.add(doc)
        await self._db.flush()

        await DigestStateMachine(self._db, self._scope).ensure(doc.id)

        logger.info(
            "Document created | scope=%s doc=%s source=%s category=%s",
            self._scope, doc.id, source, category,
        )
        return doc

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def list(
        self,
        folder_id: str | None = None,
        category: str | None = None,
        search: str | None = None,
    ) -> list[tuple[Any, str | None]]:
        """Rows of (document, extraction_status) ordered by name."""
        doc_model, digest_model = self._family.document, self._family.digest

        stmt = (
            select(doc_model, digest_model.extraction_status)
            .outerjoin(digest_model, digest_model.document_id == doc_model.id)
            .order_by(doc_model.name)
        )
        stmt = self._scope.restrict(stmt, doc_model)

        apply_folder, folder_uuid = parse_folder_filter(folder_id)
        if apply_folder:
            stmt = stmt.where(
                doc_model.folder_id.is_(None) if folder_uuid is None
                else doc_model.folder_id == folder_uuid
            )
        if category:
            stmt = stmt.where(doc_model.category == category)
        if search:
            stmt = stmt.where(doc_model.name.icontains(search, autoescape=True))

        result = await self._db.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]

    async def get_detail(self, document_id: uuid.UUID) -> DocumentDetail:
        doc = await get_document(self._db, self._scope, document_id)
        digest = await find_digest(self._db, self._scope, document_id)
        versions = await self.list_versions(document_id)

        signed_url: str | None = None
        if doc.storage_path and self._storage is not None:
            try:
                presigned = await self._storage.generate_presigned_get(doc.storage_path)
                signed_url = presigned.url
            except (BotoCoreError, ClientError) as exc:
                logger.warning("Signed URL failed | doc=%s error=%s", document_id, exc)

        return DocumentDetail(document=doc, digest=digest, versions=versions, signed_url=signed_url)

    async def list_versions(self, document_id: uuid.UUID) -> list:
        model = self._family.version
        result = await self._db.execute(
            select(model)
            .where(model.document_id == document_id)
            .order_by(model.version_number.desc())
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Update / delete
    # ------------------------------------------------------------------

    async def update(self, document_id: uuid.UUID, changes: dict[str, Any]):
        doc = await get_document(self._db, self._scope, document_id)
        unknown = set(changes) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValidationFailed(f"Fields not updatable: {', '.join(sorted(unknown))}")

        if "name" in changes:
            if not changes["name"] or not changes["name"].strip():
                raise ValidationFailed("name cannot be empty", field="name")
            changes["name"] = changes["name"].strip()
        if "category" in changes:
            self._check_category(changes["category"])
        if changes.get("folder_id") is not None:
            await self._get_folder(changes["folder_id"])

        for key, value in changes.items():
            setattr(doc, key, value)
        await self._db.flush()
        logger.info("Document updated | scope=%s doc=%s fields=%s", self._scope, document_id, sorted(changes))
        return doc

    async def delete(self, document_id: uuid.UUID) -> None:
        """
        Remove the current object and every archived version object, then the
        rows (digest, chunks, versions, document). Storage failures are logged,
        not fatal: an orphaned object is preferable to an undeletable row.
        """
        doc = await get_document(self._db, self._scope, document_id)
        versions = await self.list_versions(document_id)

        keys = [p for p in [doc.storage_path, *(v.storage_path for v in versions)] if p]
        if keys and self._storage is not None:
            try:
                await self._storage.delete_objects(sorted(set(keys)))
            except (BotoCoreError, ClientError) as exc:
                logger.warning("Storage purge failed | doc=%s keys=%d error=%s", document_id, len(keys), exc)

        digest = await find_digest(self._db, self._scope, document_id)
        if digest is not None:
            fk = getattr(ContextChunk, self._family.chunk_digest_fk)
            await self._db.execute(delete(ContextChunk).where(fk == digest.id))
            await self._db.delete(digest)
            await self._db.flush()

        version_model = self._family.version
        await self._db.execute(delete(version_model).where(version_model.document_id == document_id))
        await self._db.delete(doc)
        await self._db.flush()
        logger.info("Document deleted | scope=%s doc=%s objects=%d", self._scope, document_id, len(keys))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_category(self, category: str) -> None:
        allowed = categories_for(self._scope)
        if category not in allowed:
            raise ValidationFailed(
                f"Invalid category '{category}'. Allowed: {', '.join(sorted(allowed))}",
                field="category",
            )

    async def _get_folder(self, folder_id: uuid.UUID):
        return await FolderRepository(self._db, self._scope).get(folder_id)


class FolderRepository:

    def __init__(self, session: AsyncSession, scope: Scope) -> None:
        self._db = session
        self._scope = scope
        self._model = scope.family.folder

    async def get(self, folder_id: uuid.UUID):
        stmt = self._scope.restrict(select(self._model).where(self._model.id == folder_id), self._model)
        folder = (await self._db.execute(stmt)).scalars().first()
        if folder is None:
            raise NotFound("Folder not found", error_code="FOLDER_NOT_FOUND")
        return folder

    async def list(self, parent_folder_id: str | None = None) -> list:
        apply_filter, parent_uuid = parse_folder_filter(parent_folder_id)
        stmt = self._scope.restrict(select(self._model), self._model).order_by(self._model.name)
        if not apply_filter or parent_uuid is None:
            stmt = stmt.where(self._model.parent_folder_id.is_(None))
        else:
            stmt = stmt.where(self._model.parent_folder_id == parent_uuid)
        return list((await self._db.execute(stmt)).scalars().all())

    async def create(self, name: str, actor: str | None, parent_folder_id: uuid.UUID | None = None):
        if not name or not name.strip():
            raise ValidationFailed("Folder name is required", field="name")
        if parent_folder_id is not None:
            await self.get(parent_folder_id)

        folder = self._model(
            name=name.strip(),
            parent_folder_id=parent_folder_id,
            created_by=actor,
            **self._scope.owner_columns(),
        )
        self._db.add(folder)
        await self._db.flush()
        logger.info("Folder created | scope=%s folder=%s", self._scope, folder.id)
        return folder

    async def rename(self, folder_id: uuid.UUID, name: str):
        if not name or not name.strip():
            raise ValidationFailed("Folder name is required", field="name")
        folder = await self.get(folder_id)
        folder.name = name.strip()
        await self._db.flush()
        return folder

    async def delete(self, folder_id: uuid.UUID) -> None:
        """Only empty folders (no documents, no subfolders) can be deleted."""
        folder = await self.get(folder_id)
        doc_model = self._scope.family.document

        doc_count = await self._db.scalar(
            select(func.count()).select_from(doc_model).where(doc_model.folder_id == folder_id)
        )
        child_count = await self._db.scalar(
            select(func.count()).select_from(self._model).where(self._model.parent_folder_id == folder_id)
        )
        if doc_count or child_count:
            raise ValidationFailed(
                "Folder is not empty. Move or delete its documents and subfolders first.",
                error_code="FOLDER_NOT_EMPTY",
            )

        await self._db.delete(folder)
        await self._db.flush()
        logger.info("Folder deleted | scope=%s folder=%s", self._scope, folder_id)
