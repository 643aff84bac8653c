"""
Scope tag — organization (one tenant) or global (shared).

Every repository, service and route is parameterized by a Scope instead of
branching on table names. The Scope resolves the model family, the storage
bucket, the chunk discriminator and the tenant filter.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy import Select

from app.core.config import settings
from app.models.documents import (
    Document,
    DocumentDigest,
    DocumentFolder,
    DocumentVersion,
    GlobalDocument,
    GlobalDocumentDigest,
    GlobalDocumentFolder,
    GlobalDocumentVersion,
)


class ScopeKind(str, Enum):
    ORG    = "org"
    GLOBAL = "global"


@dataclass(frozen=True)
class ModelFamily:
    document: type
    version:  type
    digest:   type
    folder:   type
    chunk_source_type: str    # context_chunks.source_type
    chunk_digest_fk:   str    # context_chunks column pointing at the digest


_FAMILIES: dict[ScopeKind, ModelFamily] = {
    ScopeKind.ORG: ModelFamily(
        document=Document,
        version=DocumentVersion,
        digest=DocumentDigest,
        folder=DocumentFolder,
        chunk_source_type="org_document",
        chunk_digest_fk="document_digest_id",
    ),
    ScopeKind.GLOBAL: ModelFamily(
        document=GlobalDocument,
        version=GlobalDocumentVersion,
        digest=GlobalDocumentDigest,
        folder=GlobalDocumentFolder,
        chunk_source_type="global_document",
        chunk_digest_fk="global_document_digest_id",
    ),
}


def family_for(kind: ScopeKind) -> ModelFamily:
    return _FAMILIES[kind]


@dataclass(frozen=True)
class Scope:
    kind:      ScopeKind
    tenant_id: uuid.UUID | None = None

    @classmethod
    def org(cls, tenant_id: uuid.UUID) -> "Scope":
        return cls(kind=ScopeKind.ORG, tenant_id=tenant_id)

    @classmethod
    def global_(cls) -> "Scope":
        return cls(kind=ScopeKind.GLOBAL)

    def __post_init__(self) -> None:
        if self.kind is ScopeKind.ORG and self.tenant_id is None:
            raise ValueError("Organization scope requires a tenant_id")

    @property
    def is_org(self) -> bool:
        return self.kind is ScopeKind.ORG

    @property
    def family(self) -> ModelFamily:
        return _FAMILIES[self.kind]

    @property
    def bucket(self) -> str:
        if self.is_org:
            return settings.s3_org_documents_bucket
        return settings.s3_global_documents_bucket

    def storage_path(self, document_id: uuid.UUID, safe_filename: str) -> str:
        """
        {tenantId}/{documentId}/{filename} for org documents,
        {documentId}/{filename} for global documents.
        """
        if self.is_org:
            return f"{self.tenant_id}/{document_id}/{safe_filename}"
        return f"{document_id}/{safe_filename}"

    def owner_columns(self) -> dict[str, Any]:
        """Column values every new org-scoped row must carry."""
        return {"org_id": self.tenant_id} if self.is_org else {}

    def restrict(self, stmt: Select, model: type) -> Select:
        """Add the tenant filter for org-scoped models; global rows are unfiltered."""
        if self.is_org:
            return stmt.where(model.org_id == self.tenant_id)
        return stmt

    def __str__(self) -> str:
        return f"org:{self.tenant_id}" if self.is_org else "global"
