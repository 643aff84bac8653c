"""
Celery Tasks

process_document
  Runs the processing hook for one document outside a request. Arguments
  are ids only; the scope is rebuilt from them and the document is loaded
  fresh from the database.

reindex_documents (beat)
  Batch reindex across both scopes. Always completes with a full tally;
  per-document failures land in the tally, not in a task retry.

sync_pageindex_status (beat)
  Mirrors the reasoning-tree processing status onto digests.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from celery import Task

from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                return pool.submit(asyncio.run, coro).result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Processing hook
# ---------------------------------------------------------------------------

@celery_app.task(
    name="app.workers.tasks.process_document",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=270,
    time_limit=330,
)
def process_document(
    self: Task,
    *,
    document_id: str,
    scope:       str,
    tenant_id:   str | None = None,
) -> dict[str, Any]:
    return run_async(
        _process_document_async(
            task=self,
            document_id=uuid.UUID(document_id),
            scope=scope,
            tenant_id=uuid.UUID(tenant_id) if tenant_id else None,
        )
    )


async def _process_document_async(
    task: Task,
    document_id: uuid.UUID,
    scope: str,
    tenant_id: uuid.UUID | None,
) -> dict[str, Any]:
    from app.core.exceptions import Conflict, NotFound
    from app.db.session import session_scope
    from app.models.scope import Scope, ScopeKind
    from app.processing.embeddings import EmbeddingPipeline
    from app.processing.extractor import TextExtractor
    from app.services.chunk_indexer import ChunkIndexer
    from app.services.extraction import DocumentProcessor
    from app.services.pageindex import PageIndexClient, ReasoningTreeIndexer
    from app.storage.s3 import S3StorageService

    doc_scope = Scope.org(tenant_id) if ScopeKind(scope) is ScopeKind.ORG else Scope.global_()
    storage = S3StorageService.for_scope(doc_scope)

    try:
        async with session_scope() as db:
            processor = DocumentProcessor(
                db,
                doc_scope,
                extractor=TextExtractor(storage),
                chunk_indexer=ChunkIndexer(db, EmbeddingPipeline.from_settings()),
                tree_indexer=ReasoningTreeIndexer(db, PageIndexClient.from_settings()),
            )
            outcome = await processor.process(document_id)
    except NotFound:
        logger.error("Document not found | doc=%s scope=%s", document_id, doc_scope)
        return {"status": "not_found"}
    except Conflict as exc:
        logger.warning("Processing skipped | doc=%s reason=%s", document_id, exc.message)
        return {"status": "skipped", "reason": exc.error_code}

    return {
        "status":            outcome.extraction_status,
        "document_id":       str(outcome.document_id),
        "extraction_method": outcome.extraction_method,
        "extraction_error":  outcome.extraction_error,
        "chunks":            outcome.chunks_indexed,
        "pageindex_indexed": outcome.pageindex_indexed,
    }


# ---------------------------------------------------------------------------
# Scheduled jobs
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.tasks.reindex_documents")
def reindex_documents() -> dict[str, Any]:
    return run_async(_reindex_documents_async())


async def _reindex_documents_async() -> dict[str, Any]:
    from app.processing.embeddings import EmbeddingPipeline
    from app.services.pageindex import PageIndexClient
    from app.services.reindex import BatchReindexer

    summary, details = await BatchReindexer(
        EmbeddingPipeline.from_settings(),
        PageIndexClient.from_settings(),
    ).run()
    return {
        "success": True,
        "summary": summary,
        "details": {k: v.model_dump() for k, v in details.items()},
    }


@celery_app.task(name="app.workers.tasks.sync_pageindex_status")
def sync_pageindex_status() -> dict[str, int]:
    return run_async(_sync_pageindex_status_async())


async def _sync_pageindex_status_async() -> dict[str, int]:
    from app.services.pageindex import PageIndexClient, PageIndexStatusSync

    return await PageIndexStatusSync(PageIndexClient.from_settings()).run()
