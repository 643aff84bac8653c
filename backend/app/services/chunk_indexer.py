"""
Chunk Indexer — context_chunks for one digest

Flow for a digest whose extraction is completed:
  1. embedding_status → processing                       (commit)
  2. Chunk content_md (HeadingChunker)
  3. Embed every chunk (EmbeddingPipeline)
  4. DELETE the digest's existing chunks, INSERT the new set
  5. embedding_status → completed                        (commit)

Zero chunks still completes. Any failure after step 1 rolls back the
partial write, records embedding_status = failed, and re-raises.

Empty content is not an error: it is reported as a failed IndexOutcome and
nothing is written. Callers decide eligibility (the indexer never compares
content hashes).

The indexer owns its commits so a failure marker survives the rollback of
the work that failed.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ChunkIndexingError
from app.models.documents import ContextChunk
from app.models.scope import Scope
from app.processing.chunking import HeadingChunker
from app.processing.embeddings import EmbeddingPipeline
from app.schemas.documents import EmbeddingStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexOutcome:
    digest_id: uuid.UUID
    ok:        bool
    chunks:    int = 0
    error:     str | None = None


class ChunkIndexer:

    def __init__(
        self,
        session: AsyncSession,
        embedder: EmbeddingPipeline,
        chunker: HeadingChunker | None = None,
    ) -> None:
        self._db = session
        self._embedder = embedder
        self._chunker = chunker or HeadingChunker()

    async def index(self, digest, scope: Scope, org_id: uuid.UUID | None = None) -> IndexOutcome:
        """
        Rebuild the chunk set of `digest`.

        org_id defaults to the scope's tenant; global digests carry none.
        """
        if not (digest.content_md or "").strip():
            return IndexOutcome(digest_id=digest.id, ok=False, error="no content_md")

        digest_id = digest.id
        await self._set_status(digest, EmbeddingStatus.PROCESSING)

        try:
            chunks = self._chunker.chunk(digest.content_md)
            vectors = await self._embedder.embed_texts([c.content for c in chunks]) if chunks else []
            if len(vectors) != len(chunks):
                raise ChunkIndexingError(
                    f"Embedding count mismatch: {len(vectors)} vectors for {len(chunks)} chunks"
                )

            family = scope.family
            fk_name = family.chunk_digest_fk
            await self._db.execute(
                delete(ContextChunk).where(getattr(ContextChunk, fk_name) == digest_id)
            )
            self._db.add_all(
                ContextChunk(
                    source_type=family.chunk_source_type,
                    org_id=org_id if org_id is not None else scope.tenant_id,
                    chunk_index=chunk.chunk_index,
                    heading=chunk.heading,
                    content=chunk.content,
                    token_count=chunk.token_count,
                    embedding=vector,
                    chunk_metadata={"document_id": str(digest.document_id), **chunk.metadata},
                    **{fk_name: digest_id},
                )
                for chunk, vector in zip(chunks, vectors)
            )
            digest.embedding_status = EmbeddingStatus.COMPLETED.value
            await self._db.commit()
        except Exception as exc:
            logger.exception("Chunk indexing failed | digest=%s", digest_id)
            await self._db.rollback()
            await self._db.refresh(digest)
            await self._set_status(digest, EmbeddingStatus.FAILED)
            if isinstance(exc, ChunkIndexingError):
                raise
            raise ChunkIndexingError(str(exc) or type(exc).__name__) from exc

        logger.info("Chunks indexed | digest=%s chunks=%d", digest_id, len(chunks))
        return IndexOutcome(digest_id=digest_id, ok=True, chunks=len(chunks))

    async def _set_status(self, digest, status: EmbeddingStatus) -> None:
        digest.embedding_status = status.value
        await self._db.commit()
