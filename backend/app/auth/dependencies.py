"""
Composed FastAPI dependencies

The single wiring point for a request: caller identity, DB session, the
document Scope, scope storage, and the shared external clients. Route
handlers import from here, never from db/session or storage/s3 directly,
so tests can swap any piece with app.dependency_overrides.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.token import TokenPayload, get_current_user
from app.core.config import settings
from app.db.session import get_db
from app.models.scope import Scope
from app.processing.embeddings import EmbeddingPipeline
from app.services.dispatch import TaskPublisher
from app.services.pageindex import PageIndexClient
from app.storage.s3 import S3StorageService


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

async def get_tenant_db(
    user: Annotated[TokenPayload, Depends(get_current_user)],
) -> AsyncGenerator[AsyncSession, None]:
    """Authenticated request session; commits after the handler, rolls back on error."""
    async for session in get_db():
        yield session


# ---------------------------------------------------------------------------
# Scope and storage
# ---------------------------------------------------------------------------

def get_org_scope(
    user: Annotated[TokenPayload, Depends(get_current_user)],
) -> Scope:
    """Organization scope of the caller's tenant; never taken from the request."""
    return Scope.org(user.tenant_id)


def get_global_scope() -> Scope:
    return Scope.global_()


def get_org_storage() -> S3StorageService:
    return S3StorageService(settings.s3_org_documents_bucket)


def get_global_storage() -> S3StorageService:
    return S3StorageService(settings.s3_global_documents_bucket)


# ---------------------------------------------------------------------------
# Shared clients (process-wide singletons)
# ---------------------------------------------------------------------------

@lru_cache
def get_embedder() -> EmbeddingPipeline:
    return EmbeddingPipeline.from_settings()


@lru_cache
def get_pageindex_client() -> PageIndexClient:
    return PageIndexClient.from_settings()


def get_task_publisher() -> TaskPublisher:
    return TaskPublisher()


# ---------------------------------------------------------------------------
# Type aliases for route signatures
# ---------------------------------------------------------------------------

TenantDB      = Annotated[AsyncSession,      Depends(get_tenant_db)]
CurrentUser   = Annotated[TokenPayload,      Depends(get_current_user)]
Embedder      = Annotated[EmbeddingPipeline, Depends(get_embedder)]
PageIndex     = Annotated[PageIndexClient,   Depends(get_pageindex_client)]
Publisher     = Annotated[TaskPublisher,     Depends(get_task_publisher)]
