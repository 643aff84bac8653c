"""
Document Processor — the processing hook

  1. Claim the digest: pending → processing           (commit)
     completed / failed digests are reset to pending first; a digest that is
     already processing belongs to another run and is refused (409).
  2. Extract text (TextExtractor)
  3. processing → completed (content_md, content_hash)  or  → failed (error)
                                                        (commit)
  4. Index, only when the extracted text is non-empty:
       a. ChunkIndexer         skipped when content_hash did not change and
                               the chunk set is already complete
       b. ReasoningTreeIndexer PDF only

Step 4 is a side effect of processing. Its failures are logged and recorded
on the digest (embedding_status / pageindex_error) but never change the
outcome reported for extraction.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ChunkIndexingError, Conflict, ExtractionError
from app.models.scope import Scope
from app.processing.extractor import TextExtractor, select_method
from app.schemas.documents import EmbeddingStatus, ExtractionStatus
from app.services.chunk_indexer import ChunkIndexer
from app.services.digests import DigestStateMachine
from app.services.lookups import get_document
from app.services.pageindex import ReasoningTreeIndexer

logger = logging.getLogger(__name__)


@dataclass
class ProcessOutcome:
    document_id:       uuid.UUID
    success:           bool
    extraction_status: str
    extraction_method: str | None
    extraction_error:  str | None = None
    word_count:        int | None = None
    chunks_indexed:    int | None = None
    pageindex_indexed: bool = False


class DocumentProcessor:

    def __init__(
        self,
        session: AsyncSession,
        scope: Scope,
        extractor: TextExtractor,
        chunk_indexer: ChunkIndexer | None = None,
        tree_indexer: ReasoningTreeIndexer | None = None,
    ) -> None:
        self._db = session
        self._scope = scope
        self._extractor = extractor
        self._chunk_indexer = chunk_indexer
        self._tree_indexer = tree_indexer
        self._digests = DigestStateMachine(session, scope)

    async def process(self, document_id: uuid.UUID) -> ProcessOutcome:
        doc = await get_document(self._db, self._scope, document_id)
        digest = await self._claim(doc.id)
        previous_hash = digest.content_hash

        method = select_method(doc.source_type, doc.file_type)
        try:
            result = await self._extractor.extract(doc)
        except ExtractionError as exc:
            await self._digests.mark_failed(digest, str(exc), method=method.value)
            await self._db.commit()
            return ProcessOutcome(
                document_id=doc.id,
                success=False,
                extraction_status=ExtractionStatus.FAILED.value,
                extraction_method=method.value,
                extraction_error=digest.extraction_error,
            )

        await self._digests.mark_completed(
            digest, result.text, result.method.value, result.metadata
        )
        if digest.content_hash != previous_hash:
            digest.embedding_status = None
            digest.pageindex_indexed = False
        await self._db.commit()

        outcome = ProcessOutcome(
            document_id=doc.id,
            success=True,
            extraction_status=ExtractionStatus.COMPLETED.value,
            extraction_method=result.method.value,
            word_count=result.word_count,
        )
        if result.text.strip():
            outcome.chunks_indexed = await self._index_chunks(digest)
            outcome.pageindex_indexed = await self._index_tree(digest, doc)
        return outcome

    async def _claim(self, document_id: uuid.UUID):
        digest = await self._digests.ensure(document_id)
        if digest.extraction_status == ExtractionStatus.PROCESSING.value:
            raise Conflict(
                "Document is already being processed",
                error_code="PROCESSING_IN_PROGRESS",
            )
        if digest.extraction_status != ExtractionStatus.PENDING.value:
            digest = await self._digests.reprocess(document_id)
        await self._digests.mark_processing(digest)
        await self._db.commit()
        return digest

    async def _index_chunks(self, digest) -> int | None:
        if self._chunk_indexer is None:
            return None
        if digest.embedding_status == EmbeddingStatus.COMPLETED.value:
            logger.info("Chunks up to date, skipping | digest=%s", digest.id)
            return None
        try:
            outcome = await self._chunk_indexer.index(digest, self._scope)
        except ChunkIndexingError as exc:
            logger.warning("Chunk indexing failed after extraction | digest=%s error=%s", digest.id, exc)
            return None
        return outcome.chunks if outcome.ok else None

    async def _index_tree(self, digest, doc) -> bool:
        if self._tree_indexer is None or digest.pageindex_indexed:
            return bool(digest.pageindex_indexed)
        return await self._tree_indexer.index(digest, doc, self._scope)
