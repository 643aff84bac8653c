"""
Batch Reindexer — recovery job for "extracted but not yet embedded"

For each scope (global first, then org across every tenant):

  1. Snapshot eligible digest ids:
        extraction_status = completed
        AND (embedding_status IS NULL OR embedding_status != completed)
  2. Index each one in its own session (ChunkIndexer); one item's failure
     never touches another's progress
  3. Submit completed PDFs that have no reasoning tree yet (ReasoningTreeIndexer)

Always returns a complete per-scope tally. Digests already embedded are not
selected again, which makes repeated runs cheap.
"""

from __future__ import annotations

import logging
import uuid
from typing import Callable

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import DocumentServiceError
from app.db.session import session_scope
from app.models.scope import Scope, ScopeKind, family_for
from app.processing.embeddings import EmbeddingPipeline
from app.schemas.documents import EmbeddingStatus, ExtractionStatus, ReindexScopeResult
from app.services.chunk_indexer import ChunkIndexer
from app.services.pageindex import PageIndexClient, ReasoningTreeIndexer

logger = logging.getLogger(__name__)

_SUMMARY_KEYS = {
    ScopeKind.GLOBAL: "global_documents",
    ScopeKind.ORG:    "org_documents",
}


def summarize(result: ReindexScopeResult) -> str:
    return f"{result.success}/{result.total} indexed"


class BatchReindexer:

    def __init__(
        self,
        embedder: EmbeddingPipeline,
        pageindex: PageIndexClient | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        storage_factory: Callable | None = None,
    ) -> None:
        self._embedder = embedder
        self._pageindex = pageindex
        self._session_factory = session_factory
        self._storage_factory = storage_factory

    async def run(self) -> tuple[dict[str, str], dict[str, ReindexScopeResult]]:
        """Returns (summary, details) keyed for the reindex response."""
        summary: dict[str, str] = {}
        details: dict[str, ReindexScopeResult] = {}
        for kind in (ScopeKind.GLOBAL, ScopeKind.ORG):
            result = await self.run_scope(kind)
            summary[_SUMMARY_KEYS[kind]] = summarize(result)
            details[kind.value] = result

        logger.info("Batch reindex finished | %s", ", ".join(f"{k}={v}" for k, v in summary.items()))
        return summary, details

    async def run_scope(self, kind: ScopeKind) -> ReindexScopeResult:
        result = ReindexScopeResult()

        for digest_id, org_id in await self._eligible(kind):
            result.total += 1
            error = await self._index_one(kind, digest_id, org_id)
            if error is None:
                result.success += 1
            else:
                result.failed += 1
                result.errors.append(f"{digest_id}: {error}")

        if self._pageindex is not None and self._pageindex.configured:
            result.pageindex = await self._submit_trees(kind)

        logger.info(
            "Reindex scope done | scope=%s total=%d success=%d failed=%d pageindex=%d",
            kind.value, result.total, result.success, result.failed, result.pageindex,
        )
        return result

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def _eligible(self, kind: ScopeKind) -> list[tuple[uuid.UUID, uuid.UUID | None]]:
        family = family_for(kind)
        digest, doc = family.digest, family.document
        columns = [digest.id, doc.org_id] if kind is ScopeKind.ORG else [digest.id]

        stmt = (
            select(*columns)
            .join(doc, doc.id == digest.document_id)
            .where(digest.extraction_status == ExtractionStatus.COMPLETED.value)
            .where(
                or_(
                    digest.embedding_status.is_(None),
                    digest.embedding_status != EmbeddingStatus.COMPLETED.value,
                )
            )
            .order_by(digest.created_at)
        )
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).all()
        return [(row[0], row[1] if len(row) > 1 else None) for row in rows]

    # ------------------------------------------------------------------
    # Per-item work
    # ------------------------------------------------------------------

    async def _index_one(self, kind: ScopeKind, digest_id: uuid.UUID, org_id: uuid.UUID | None) -> str | None:
        scope = _scope_for(kind, org_id)
        try:
            async with session_scope(self._session_factory) as session:
                digest = await session.get(scope.family.digest, digest_id)
                if digest is None:
                    return "digest no longer exists"
                outcome = await ChunkIndexer(session, self._embedder).index(digest, scope)
                return None if outcome.ok else outcome.error
        except DocumentServiceError as exc:
            return exc.message
        except Exception as exc:
            logger.exception("Reindex item failed | scope=%s digest=%s", kind.value, digest_id)
            return str(exc) or type(exc).__name__

    async def _submit_trees(self, kind: ScopeKind) -> int:
        family = family_for(kind)
        digest, doc = family.digest, family.document
        stmt = (
            select(digest, doc)
            .join(doc, doc.id == digest.document_id)
            .where(digest.extraction_status == ExtractionStatus.COMPLETED.value)
            .where(digest.pageindex_indexed.is_(False))
            .where(doc.storage_path.is_not(None))
            .where(doc.file_type.ilike("%pdf%"))
        )

        submitted = 0
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).all()
            kwargs = {"storage_factory": self._storage_factory} if self._storage_factory else {}
            indexer = ReasoningTreeIndexer(session, self._pageindex, **kwargs)
            for row_digest, row_doc in rows:
                scope = _scope_for(kind, getattr(row_doc, "org_id", None))
                if await indexer.index(row_digest, row_doc, scope):
                    submitted += 1
        return submitted


def _scope_for(kind: ScopeKind, org_id: uuid.UUID | None) -> Scope:
    return Scope.org(org_id) if kind is ScopeKind.ORG else Scope.global_()
