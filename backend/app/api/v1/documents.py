"""
Document API Routers

One router factory, two mounts:

    /api/v1/documents          organization documents (caller's tenant)
    /api/v1/global-documents   shared documents (writes: platform_admin)

Every route resolves its Scope from the verified token, never from the
request, so an org document of another tenant is indistinguishable from an
absent one (404).

Upload lifecycle:
  ┌──────────────────────────────────────────────────────────────┐
  │ 1. POST {base}/upload-url        → signed PUT + document_id   │
  │ 2. client PUTs the bytes straight to S3                       │
  │ 3. POST {base}  intent=create    → document + pending digest  │
  │ 4. POST {base}/process           → extract, chunk, tree index │
  └──────────────────────────────────────────────────────────────┘
Replace lifecycle:
  POST {base}/{id}/upload-url → signed PUT + new_version
  POST {base}/{id}/replace  intent=finalize → archive, swap, reset digest

Folder routes are registered before /{document_id} so "folders" is never
parsed as a document id.
"""

import logging
from typing import Annotated, Callable
from uuid import UUID

from fastapi import APIRouter, Depends, File, Query, UploadFile, status
from fastapi.responses import JSONResponse

from app.auth.dependencies import (
    Embedder,
    PageIndex,
    Publisher,
    TenantDB,
    get_global_scope,
    get_global_storage,
    get_org_scope,
    get_org_storage,
)
from app.auth.rbac import require_role
from app.auth.token import TokenPayload
from app.core.exceptions import ValidationFailed
from app.models.scope import Scope, ScopeKind
from app.processing.extractor import TextExtractor
from app.schemas.documents import (
    DigestOut,
    DirectUploadResponse,
    DocumentCreateRequest,
    DocumentDetailResponse,
    DocumentListItem,
    DocumentOut,
    DocumentUpdateRequest,
    FolderCreateRequest,
    FolderOut,
    FolderRenameRequest,
    ProcessRequest,
    ProcessResponse,
    ReplaceRequest,
    ReplaceResponse,
    SourceType,
    UploadUrlRequest,
    UploadUrlResponse,
    VersionOut,
    error_responses,
)
from app.services.chunk_indexer import ChunkIndexer
from app.services.digests import DigestStateMachine
from app.services.extraction import DocumentProcessor
from app.services.lookups import get_document
from app.services.pageindex import ReasoningTreeIndexer
from app.services.registry import DocumentRegistry, FolderRepository
from app.services.uploads import UploadService
from app.services.versioning import VersionArchiver
from app.storage.s3 import S3StorageService

logger = logging.getLogger(__name__)

_CREATE_INTENT = "create"
_FINALIZE_INTENT = "finalize"


def _check_intent(intent: str, expected: str) -> None:
    if intent != expected:
        raise ValidationFailed(
            f"Invalid intent '{intent}'. Expected '{expected}'.",
            error_code="INVALID_INTENT",
            field="intent",
        )


def _check_storage_path(scope: Scope, document_id: UUID | None, storage_path: str) -> None:
    """A client-supplied path must sit under the prefix the server issued for this scope."""
    if document_id is not None:
        prefix = scope.storage_path(document_id, "")
    else:
        prefix = f"{scope.tenant_id}/" if scope.is_org else ""
    if not storage_path.startswith(prefix) or ".." in storage_path:
        raise ValidationFailed("storage_path is outside this document's storage prefix", field="storage_path")


def _list_item(doc, extraction_status: str | None) -> DocumentListItem:
    return DocumentListItem(
        **DocumentOut.model_validate(doc).model_dump(),
        extraction_status=extraction_status,
    )


def build_document_router(kind: ScopeKind) -> APIRouter:
    """Create the router for one scope kind with its role policy and dependencies."""
    is_org = kind is ScopeKind.ORG

    get_scope: Callable[..., Scope] = get_org_scope if is_org else get_global_scope
    get_storage: Callable[..., S3StorageService] = get_org_storage if is_org else get_global_storage

    reader = require_role("viewer")
    writer = require_role("member" if is_org else "platform_admin")
    deleter = require_role("admin" if is_org else "platform_admin")

    ScopeDep = Annotated[Scope, Depends(get_scope)]
    StorageDep = Annotated[S3StorageService, Depends(get_storage)]
    Reader = Annotated[TokenPayload, Depends(reader)]
    Writer = Annotated[TokenPayload, Depends(writer)]
    Deleter = Annotated[TokenPayload, Depends(deleter)]

    router = APIRouter(
        prefix="/documents" if is_org else "/global-documents",
        tags=["Documents" if is_org else "Global Documents"],
    )

    # -----------------------------------------------------------------------
    # Folders
    # -----------------------------------------------------------------------

    @router.get(
        "/folders",
        response_model=list[FolderOut],
        summary="List folders under a parent (top level by default)",
        responses=error_responses(401, 403, 404),
    )
    async def list_folders(
        db: TenantDB, scope: ScopeDep, user: Reader,
        parent_folder_id: str | None = Query(None, description="Folder id, or 'root'"),
    ) -> list[FolderOut]:
        folders = await FolderRepository(db, scope).list(parent_folder_id)
        return [FolderOut.model_validate(f) for f in folders]

    @router.post(
        "/folders",
        response_model=FolderOut,
        status_code=status.HTTP_201_CREATED,
        responses=error_responses(400, 401, 403, 404),
    )
    async def create_folder(
        body: FolderCreateRequest, db: TenantDB, scope: ScopeDep, user: Writer,
    ) -> FolderOut:
        folder = await FolderRepository(db, scope).create(body.name, user.actor, body.parent_folder_id)
        return FolderOut.model_validate(folder)

    @router.put(
        "/folders/{folder_id}",
        response_model=FolderOut,
        responses=error_responses(400, 401, 403, 404),
    )
    async def rename_folder(
        folder_id: UUID, body: FolderRenameRequest, db: TenantDB, scope: ScopeDep, user: Writer,
    ) -> FolderOut:
        folder = await FolderRepository(db, scope).rename(folder_id, body.name)
        return FolderOut.model_validate(folder)

    @router.delete(
        "/folders/{folder_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        responses=error_responses(400, 401, 403, 404),
    )
    async def delete_folder(folder_id: UUID, db: TenantDB, scope: ScopeDep, user: Deleter) -> None:
        await FolderRepository(db, scope).delete(folder_id)

    # -----------------------------------------------------------------------
    # Uploads
    # -----------------------------------------------------------------------

    @router.post(
        "/upload-url",
        response_model=UploadUrlResponse,
        summary="Signed upload URL for a new document",
        responses=error_responses(400, 401, 403, 413),
    )
    async def create_upload_url(
        body: UploadUrlRequest, scope: ScopeDep, storage: StorageDep, user: Writer,
    ) -> UploadUrlResponse:
        ticket = await UploadService(scope, storage).issue_upload_url(
            body.filename, body.content_type, body.file_size
        )
        return UploadUrlResponse(
            signed_url=ticket.signed_url,
            token=ticket.token,
            storage_path=ticket.storage_path,
            document_id=ticket.document_id,
            expires_in=ticket.expires_in,
        )

    if not is_org:
        @router.post(
            "/upload",
            response_model=DirectUploadResponse,
            status_code=status.HTTP_201_CREATED,
            summary="Server-side multipart upload (25 MB)",
            responses=error_responses(400, 401, 403, 413),
        )
        async def upload_direct(
            scope: ScopeDep, storage: StorageDep, user: Writer,
            file: UploadFile = File(..., description="PDF, DOC, DOCX, TXT, MD or image"),
        ) -> DirectUploadResponse:
            body = await file.read()
            stored = await UploadService(scope, storage).upload_direct(
                file.filename or "file",
                file.content_type or "application/octet-stream",
                body,
            )
            return DirectUploadResponse(**stored)

    # -----------------------------------------------------------------------
    # Processing hook
    # -----------------------------------------------------------------------

    @router.post(
        "/process",
        response_model=ProcessResponse,
        summary="Extract text, then chunk-index and tree-index the document",
        responses={
            **error_responses(401, 403, 404, 409),
            202: {"model": ProcessResponse, "description": "Queued on a worker (background=true)"},
            422: {"model": ProcessResponse, "description": "Extraction failed; recorded on the digest"},
        },
    )
    async def process_document(
        body: ProcessRequest,
        db: TenantDB, scope: ScopeDep, storage: StorageDep, user: Writer,
        embedder: Embedder, pageindex: PageIndex, publisher: Publisher,
    ):
        if body.background:
            await get_document(db, scope, body.document_id)
            digest = await DigestStateMachine(db, scope).ensure(body.document_id)
            await db.commit()
            await publisher.publish_processing(body.document_id, scope)
            queued = ProcessResponse(
                success=True,
                document_id=body.document_id,
                extraction_status=digest.extraction_status,
                extraction_method=digest.extraction_method,
            )
            return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=queued.model_dump(mode="json"))

        processor = DocumentProcessor(
            db,
            scope,
            extractor=TextExtractor(storage),
            chunk_indexer=ChunkIndexer(db, embedder),
            tree_indexer=ReasoningTreeIndexer(db, pageindex, storage_factory=lambda _scope: storage),
        )
        outcome = await processor.process(body.document_id)
        response = ProcessResponse(
            success=outcome.success,
            document_id=outcome.document_id,
            extraction_status=outcome.extraction_status,
            extraction_method=outcome.extraction_method,
            extraction_error=outcome.extraction_error,
            word_count=outcome.word_count,
        )
        if not outcome.success:
            return JSONResponse(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                content=response.model_dump(mode="json"),
            )
        return response

    # -----------------------------------------------------------------------
    # Collection
    # -----------------------------------------------------------------------

    @router.get(
        "",
        response_model=list[DocumentListItem],
        responses=error_responses(400, 401, 403),
    )
    async def list_documents(
        db: TenantDB, scope: ScopeDep, user: Reader,
        folder_id: str | None = Query(None, description="Folder id, or 'root' for top level"),
        category: str | None = None,
        search: str | None = Query(None, max_length=255),
    ) -> list[DocumentListItem]:
        rows = await DocumentRegistry(db, scope).list(folder_id=folder_id, category=category, search=search)
        return [_list_item(doc, extraction_status) for doc, extraction_status in rows]

    @router.post(
        "",
        response_model=DocumentOut,
        status_code=status.HTTP_201_CREATED,
        responses=error_responses(400, 401, 403, 404),
    )
    async def create_document(
        body: DocumentCreateRequest, db: TenantDB, scope: ScopeDep, user: Writer,
    ) -> DocumentOut:
        _check_intent(body.intent, _CREATE_INTENT)
        if body.source_type is SourceType.FILE and body.storage_path:
            _check_storage_path(scope, body.document_id, body.storage_path)

        doc = await DocumentRegistry(db, scope).create(
            name=body.name,
            category=body.category,
            source_type=body.source_type.value,
            actor=user.actor,
            document_id=body.document_id,
            description=body.description,
            folder_id=body.folder_id,
            storage_path=body.storage_path,
            original_url=body.original_url,
            original_filename=body.original_filename,
            raw_content=body.raw_content,
            file_type=body.file_type,
            file_size=body.file_size,
        )
        return DocumentOut.model_validate(doc)

    # -----------------------------------------------------------------------
    # Single document
    # -----------------------------------------------------------------------

    @router.get(
        "/{document_id}",
        response_model=DocumentDetailResponse,
        responses=error_responses(401, 403, 404),
    )
    async def get_document_detail(
        document_id: UUID, db: TenantDB, scope: ScopeDep, storage: StorageDep, user: Reader,
    ) -> DocumentDetailResponse:
        detail = await DocumentRegistry(db, scope, storage).get_detail(document_id)
        return DocumentDetailResponse(
            document=DocumentOut.model_validate(detail.document),
            digest=DigestOut.model_validate(detail.digest) if detail.digest else None,
            versions=[VersionOut.model_validate(v) for v in detail.versions],
            signed_url=detail.signed_url,
        )

    @router.put(
        "/{document_id}",
        response_model=DocumentOut,
        responses=error_responses(400, 401, 403, 404),
    )
    async def update_document(
        document_id: UUID, body: DocumentUpdateRequest, db: TenantDB, scope: ScopeDep, user: Writer,
    ) -> DocumentOut:
        doc = await DocumentRegistry(db, scope).update(document_id, body.model_dump(exclude_unset=True))
        return DocumentOut.model_validate(doc)

    @router.delete(
        "/{document_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        responses=error_responses(401, 403, 404),
    )
    async def delete_document(
        document_id: UUID, db: TenantDB, scope: ScopeDep, storage: StorageDep, user: Deleter,
    ) -> None:
        await DocumentRegistry(db, scope, storage).delete(document_id)

    @router.post(
        "/{document_id}/upload-url",
        response_model=UploadUrlResponse,
        summary="Signed upload URL for a replacement file",
        responses=error_responses(400, 401, 403, 404, 413),
    )
    async def create_replace_upload_url(
        document_id: UUID, body: UploadUrlRequest,
        db: TenantDB, scope: ScopeDep, storage: StorageDep, user: Writer,
    ) -> UploadUrlResponse:
        doc = await get_document(db, scope, document_id)
        ticket = await UploadService(scope, storage).issue_replace_url(
            doc, body.filename, body.content_type, body.file_size
        )
        return UploadUrlResponse(
            signed_url=ticket.signed_url,
            token=ticket.token,
            storage_path=ticket.storage_path,
            document_id=ticket.document_id,
            expires_in=ticket.expires_in,
            new_version=ticket.new_version,
        )

    @router.post(
        "/{document_id}/replace",
        response_model=ReplaceResponse,
        summary="Finalize a replacement: archive, swap, reset the digest",
        responses=error_responses(400, 401, 403, 404, 409, 500),
    )
    async def replace_document(
        document_id: UUID, body: ReplaceRequest, db: TenantDB, scope: ScopeDep, user: Writer,
    ) -> ReplaceResponse:
        _check_intent(body.intent, _FINALIZE_INTENT)
        if not body.storage_path:
            raise ValidationFailed("storage_path is required", field="storage_path")
        if body.new_version is None:
            raise ValidationFailed("new_version is required", field="new_version")
        _check_storage_path(scope, document_id, body.storage_path)

        result = await VersionArchiver(db, scope).replace(
            document_id,
            storage_path=body.storage_path,
            new_version=body.new_version,
            actor=user.actor,
            file_size=body.file_size,
            file_type=body.file_type,
            original_filename=body.original_filename,
        )
        return ReplaceResponse(
            document=DocumentOut.model_validate(result.document),
            archived_version=VersionOut.model_validate(result.archived_version),
        )

    @router.get(
        "/{document_id}/digest",
        response_model=DigestOut,
        responses=error_responses(401, 403, 404),
    )
    async def get_digest(document_id: UUID, db: TenantDB, scope: ScopeDep, user: Reader) -> DigestOut:
        digest = await DigestStateMachine(db, scope).get(document_id)
        return DigestOut.model_validate(digest)

    @router.post(
        "/{document_id}/digest",
        response_model=DigestOut,
        summary="Reset the digest to pending for another extraction run",
        responses=error_responses(401, 403, 404, 409),
    )
    async def reprocess_digest(document_id: UUID, db: TenantDB, scope: ScopeDep, user: Writer) -> DigestOut:
        digest = await DigestStateMachine(db, scope).reprocess(document_id)
        return DigestOut.model_validate(digest)

    return router


router = build_document_router(ScopeKind.ORG)
global_router = build_document_router(ScopeKind.GLOBAL)
