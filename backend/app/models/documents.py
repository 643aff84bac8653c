"""
SQLAlchemy ORM Models — Documents, Versions, Digests, Folders, Chunks

Two parallel table families share one shape:

    organization scope : documents, document_versions, document_digests,
                         document_folders            (org_id NOT NULL)
    global scope       : global_documents, global_document_versions,
                         global_document_digests, global_document_folders

context_chunks is shared by both families and points at exactly one digest
(document_digest_id XOR global_document_digest_id, discriminated by source_type).

Column types are dialect-neutral (Uuid, JSON with a JSONB variant, pgvector
Vector with a JSON variant) so the same metadata runs on PostgreSQL and on
SQLite in the test suite. Defaults are Python-side for the same reason.

Digests carry a row_version counter registered as the mapper's version_id_col:
every ORM UPDATE is a compare-and-swap and a lost race raises StaleDataError.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.core.config import settings

JSONType = JSON().with_variant(JSONB(), "postgresql")
EmbeddingType = Vector(settings.embedding_dimensions).with_variant(JSON(), "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Shared column sets
# ---------------------------------------------------------------------------

class _Timestamps:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow,
    )


class _FolderColumns(_Timestamps):
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class _DocumentColumns(_Timestamps):
    """
    Mutable head of a document.

    current_version starts at 1 and is bumped by exactly one per replace;
    it always equals 1 + the number of archived versions.
    """

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    source_type: Mapped[str] = mapped_column(String(8), nullable=False, default="file")

    storage_path: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Object key inside the scope bucket; NULL for url/text documents",
    )
    original_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    original_filename: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_content: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Body of source_type='text' documents",
    )
    file_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    current_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    uploaded_by: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Token subject of the creating user",
    )


class _VersionColumns:
    """Append-only snapshot of the pre-replace head."""

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    storage_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    replaced_by: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )


class _DigestColumns(_Timestamps):
    """
    Extraction + indexing ledger, one per document.

    extraction_status: pending → processing → completed | failed
                       any → pending (reprocess / replace)
    embedding_status:  NULL | processing | completed | failed
    content_hash is the SHA-256 of content_md and is NULL whenever content_md is.
    """

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    extraction_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    extraction_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extraction_method: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    content_md: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    previous_content_md: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    content_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    embedding_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    pageindex_tree_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pageindex_indexed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pageindex_indexed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    pageindex_status: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pageindex_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    digest_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
        comment="Extraction metadata, e.g. word_count",
    )


_EXTRACTION_CHECK = "extraction_status IN ('pending', 'processing', 'completed', 'failed')"
_EMBEDDING_CHECK = (
    "embedding_status IS NULL OR embedding_status IN ('processing', 'completed', 'failed')"
)
_SOURCE_CHECK = "source_type IN ('file', 'url', 'text')"


# ---------------------------------------------------------------------------
# Organization scope
# ---------------------------------------------------------------------------

class DocumentFolder(_FolderColumns, Base):
    __tablename__ = "document_folders"
    __table_args__ = (Index("idx_document_folders_org_parent", "org_id", "parent_folder_id"),)

    org_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    parent_folder_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("document_folders.id", ondelete="RESTRICT"), nullable=True,
    )


class Document(_DocumentColumns, Base):
    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(_SOURCE_CHECK, name="documents_source_type_check"),
        CheckConstraint("current_version >= 1", name="documents_current_version_check"),
        Index("idx_documents_org_folder", "org_id", "folder_id"),
        Index("idx_documents_org_category", "org_id", "category"),
    )

    org_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    folder_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("document_folders.id", ondelete="SET NULL"), nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} org={self.org_id} "
            f"v={self.current_version} name={self.name!r}>"
        )


class DocumentVersion(_VersionColumns, Base):
    __tablename__ = "document_versions"
    __table_args__ = (
        UniqueConstraint("document_id", "version_number", name="uq_document_versions_number"),
    )

    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True,
    )


class DocumentDigest(_DigestColumns, Base):
    __tablename__ = "document_digests"
    __table_args__ = (
        CheckConstraint(_EXTRACTION_CHECK, name="document_digests_extraction_check"),
        CheckConstraint(_EMBEDDING_CHECK, name="document_digests_embedding_check"),
        Index("idx_document_digests_reindex", "extraction_status", "embedding_status"),
    )

    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": row_version}


# ---------------------------------------------------------------------------
# Global scope
# ---------------------------------------------------------------------------

class GlobalDocumentFolder(_FolderColumns, Base):
    __tablename__ = "global_document_folders"

    parent_folder_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("global_document_folders.id", ondelete="RESTRICT"), nullable=True,
    )


class GlobalDocument(_DocumentColumns, Base):
    __tablename__ = "global_documents"
    __table_args__ = (
        CheckConstraint(_SOURCE_CHECK, name="global_documents_source_type_check"),
        CheckConstraint("current_version >= 1", name="global_documents_current_version_check"),
        Index("idx_global_documents_folder", "folder_id"),
    )

    folder_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("global_document_folders.id", ondelete="SET NULL"), nullable=True,
    )

    def __repr__(self) -> str:
        return f"<GlobalDocument id={self.id} v={self.current_version} name={self.name!r}>"


class GlobalDocumentVersion(_VersionColumns, Base):
    __tablename__ = "global_document_versions"
    __table_args__ = (
        UniqueConstraint(
            "document_id", "version_number", name="uq_global_document_versions_number",
        ),
    )

    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("global_documents.id", ondelete="CASCADE"), nullable=False, index=True,
    )


class GlobalDocumentDigest(_DigestColumns, Base):
    __tablename__ = "global_document_digests"
    __table_args__ = (
        CheckConstraint(_EXTRACTION_CHECK, name="global_document_digests_extraction_check"),
        CheckConstraint(_EMBEDDING_CHECK, name="global_document_digests_embedding_check"),
        Index("idx_global_document_digests_reindex", "extraction_status", "embedding_status"),
    )

    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("global_documents.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": row_version}


# ---------------------------------------------------------------------------
# Chunk index (context_chunks)
# ---------------------------------------------------------------------------

class ContextChunk(Base):
    """
    One retrieval slice of a digest's content_md plus its embedding.
    The full set for a digest is deleted and re-inserted on every embedding run.
    """

    __tablename__ = "context_chunks"
    __table_args__ = (
        CheckConstraint(
            "source_type IN ('org_document', 'global_document')",
            name="context_chunks_source_type_check",
        ),
        Index("idx_context_chunks_document_digest", "document_digest_id"),
        Index("idx_context_chunks_global_digest", "global_document_digest_id"),
        Index("idx_context_chunks_org", "org_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    source_type: Mapped[str] = mapped_column(String(16), nullable=False)
    document_digest_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("document_digests.id", ondelete="CASCADE"), nullable=True,
    )
    global_document_digest_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("global_document_digests.id", ondelete="CASCADE"), nullable=True,
    )
    org_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    heading: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False)
    embedding: Mapped[Optional[list[float]]] = mapped_column(EmbeddingType, nullable=True)

    chunk_metadata: Mapped[dict] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<ContextChunk {self.source_type} idx={self.chunk_index} tokens={self.token_count}>"
