"""Scope-aware row lookups shared by the document services."""

from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFound
from app.models.scope import Scope


async def find_document(session: AsyncSession, scope: Scope, document_id: uuid.UUID):
    model = scope.family.document
    stmt = scope.restrict(select(model).where(model.id == document_id), model)
    return (await session.execute(stmt)).scalars().first()


async def get_document(session: AsyncSession, scope: Scope, document_id: uuid.UUID):
    """
    Load a document visible in `scope`.

    A document of another tenant is indistinguishable from an absent one.
    """
    doc = await find_document(session, scope, document_id)
    if doc is None:
        raise NotFound("Document not found", error_code="DOCUMENT_NOT_FOUND")
    return doc


async def find_digest(session: AsyncSession, scope: Scope, document_id: uuid.UUID):
    """Digest lookup by document id; callers are responsible for the scope check."""
    model = scope.family.digest
    result = await session.execute(select(model).where(model.document_id == document_id))
    return result.scalars().first()
