"""
Documents API — Pydantic Request/Response Schemas

Covers both scope families (/documents and /global-documents):
  - Upload-URL issuance (new document and replacement)
  - Create / update / detail / list bodies
  - Replace finalize, digest, process and folder payloads
  - Batch reindex summary
  - Structured error bodies shared by every route

Design decisions:
  - document_id is always server-generated (UUID4); never client-chosen
    except when echoing back the id from an upload ticket.
  - Status enums mirror the digest CHECK constraints in app.models.documents.
  - All timestamps are ISO-8601 UTC strings.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.core.config import settings


# ---------------------------------------------------------------------------
# Allowed MIME types, enforced before a signed URL is issued
# ---------------------------------------------------------------------------

ALLOWED_CONTENT_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "application/msword",                     # legacy .doc
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",  # .docx
        "text/plain",
        "text/markdown",
        "image/jpeg",
        "image/png",
        "image/webp",
    }
)

# Inclusive ceilings
MAX_FILE_SIZE_BYTES: int = settings.max_upload_bytes
MAX_DIRECT_UPLOAD_BYTES: int = settings.max_direct_upload_bytes


ORG_CATEGORIES: frozenset[str] = frozenset(
    {
        "employee_handbook",
        "leadership_resource",
        "development_resource",
        "organization_info",
        "benefits",
        "other",
    }
)

GLOBAL_CATEGORIES: frozenset[str] = frozenset(
    {
        "cfa_general",
        "cfa_design_system",
        "levelset_general",
        "levelset_design_system",
        "locale_information",
        "other",
    }
)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SourceType(str, Enum):
    FILE = "file"
    URL  = "url"
    TEXT = "text"


class ExtractionStatus(str, Enum):
    """
    Maps to <digest>.extraction_status.
    Transitions: pending → processing → completed | failed;  any → pending
    """
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"


class EmbeddingStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"


class ExtractionMethod(str, Enum):
    WEB_SCRAPE   = "web_scrape"
    PDF_EXTRACT  = "pdf_extract"
    DOCX_EXTRACT = "docx_extract"
    OCR          = "ocr"
    TEXT_EXTRACT = "text_extract"
    RAW_TEXT     = "raw_text"


# ---------------------------------------------------------------------------
# Upload URLs
# ---------------------------------------------------------------------------

class UploadUrlRequest(BaseModel):
    filename:     str = Field(..., min_length=1, max_length=1024)
    content_type: str = Field(..., min_length=1)
    file_size:    int = Field(..., ge=0, description="Declared size in bytes")


class UploadUrlResponse(BaseModel):
    signed_url:   str
    token:        str  = Field(..., description="Opaque upload token bound to the object metadata")
    storage_path: str
    document_id:  UUID
    expires_in:   int
    new_version:  int | None = Field(None, description="Set only for replacement uploads")


class DirectUploadResponse(BaseModel):
    document_id:       UUID
    storage_path:      str
    file_type:         str
    file_size:         int
    original_filename: str


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class DocumentCreateRequest(BaseModel):
    intent:            str = ""
    document_id:       UUID | None = Field(None, description="Id from a prior upload ticket")
    name:              str = Field(..., min_length=1, max_length=255)
    category:          str
    source_type:       SourceType
    description:       str | None = None
    folder_id:         UUID | None = None
    storage_path:      str | None = None
    original_url:      str | None = None
    original_filename: str | None = None
    raw_content:       str | None = None
    file_type:         str | None = None
    file_size:         int | None = Field(None, ge=0)


class DocumentUpdateRequest(BaseModel):
    """Only fields present in the body are applied; folder_id may be set to null."""
    name:        str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    category:    str | None = None
    folder_id:   UUID | None = None


class DocumentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:                UUID
    name:              str
    description:       str | None
    category:          str
    folder_id:         UUID | None
    source_type:       str
    storage_path:      str | None
    original_url:      str | None
    original_filename: str | None
    file_type:         str | None
    file_size:         int | None
    current_version:   int
    uploaded_by:       str | None
    created_at:        datetime
    updated_at:        datetime


class DocumentListItem(DocumentOut):
    extraction_status: ExtractionStatus | None = None


class VersionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:             UUID
    document_id:    UUID
    version_number: int
    storage_path:   str | None
    file_size:      int | None
    replaced_by:    str | None
    created_at:     datetime


class DigestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id:                   UUID
    document_id:          UUID
    extraction_status:    ExtractionStatus
    extraction_error:     str | None
    extraction_method:    str | None
    content_md:           str | None
    previous_content_md:  str | None
    content_hash:         str | None
    embedding_status:     EmbeddingStatus | None
    pageindex_tree_id:    str | None
    pageindex_indexed:    bool
    pageindex_indexed_at: datetime | None
    pageindex_status:     str | None
    pageindex_error:      str | None
    metadata:             dict[str, Any] = Field(default_factory=dict, validation_alias="digest_metadata")
    updated_at:           datetime


class DocumentDetailResponse(BaseModel):
    document:   DocumentOut
    digest:     DigestOut | None
    versions:   list[VersionOut]
    signed_url: str | None = Field(None, description="Time-limited read URL for the current file")


# ---------------------------------------------------------------------------
# Replace (finalize)
# ---------------------------------------------------------------------------

class ReplaceRequest(BaseModel):
    intent:            str = ""
    storage_path:      str | None = None
    new_version:       int | None = Field(None, ge=2)
    file_size:         int | None = Field(None, ge=0)
    file_type:         str | None = None
    original_filename: str | None = None


class ReplaceResponse(BaseModel):
    document:         DocumentOut
    archived_version: VersionOut


# ---------------------------------------------------------------------------
# Processing hook
# ---------------------------------------------------------------------------

class ProcessRequest(BaseModel):
    document_id: UUID
    background:  bool = Field(False, description="Queue the run on a worker and return 202")


class ProcessResponse(BaseModel):
    success:           bool
    document_id:       UUID
    extraction_status: ExtractionStatus
    extraction_method: str | None
    extraction_error:  str | None = None
    word_count:        int | None = None


# ---------------------------------------------------------------------------
# Folders
# ---------------------------------------------------------------------------

class FolderCreateRequest(BaseModel):
    name:             str = Field(..., max_length=255)
    parent_folder_id: UUID | None = None


class FolderRenameRequest(BaseModel):
    name: str = Field(..., max_length=255)


class FolderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:               UUID
    name:             str
    parent_folder_id: UUID | None
    created_by:       str | None
    created_at:       datetime
    updated_at:       datetime


# ---------------------------------------------------------------------------
# Batch reindex
# ---------------------------------------------------------------------------

class ReindexScopeResult(BaseModel):
    total:     int = 0
    success:   int = 0
    failed:    int = 0
    pageindex: int = Field(0, description="PDFs submitted to the reasoning-tree index")
    errors:    list[str] = Field(default_factory=list)


class ReindexResponse(BaseModel):
    success: bool
    summary: dict[str, str]                  # {"global_documents": "3/5 indexed", ...}
    details: dict[str, ReindexScopeResult]   # {"global": {...}, "org": {...}}


class PageIndexStatusResponse(BaseModel):
    tree_id: str
    status:  str


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# HTTP status code → error code mapping (for OpenAPI documentation)
# ---------------------------------------------------------------------------

HTTP_ERROR_MAP: dict[int, str] = {
    400: "INVALID_REQUEST",     # bad intent, unsupported type, folder not empty
    401: "UNAUTHORIZED",        # missing/invalid/expired JWT
    403: "FORBIDDEN",           # valid JWT, insufficient role
    404: "NOT_FOUND",           # absent or outside the caller's scope
    409: "CONFLICT",            # stale new_version, illegal transition, concurrent update
    413: "FILE_TOO_LARGE",      # declared size above the ceiling
    422: "VALIDATION_ERROR",    # FastAPI Pydantic validation failure
    500: "INTERNAL_ERROR",      # unhandled exception / archive failure
    502: "UPSTREAM_ERROR",      # reasoning-tree API unavailable
}


def error_responses(*codes: int) -> dict[int | str, dict[str, Any]]:
    """OpenAPI `responses=` map for the given status codes."""
    return {
        code: {"model": ErrorResponse, "description": HTTP_ERROR_MAP[code]}
        for code in codes
    }
