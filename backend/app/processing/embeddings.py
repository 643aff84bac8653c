"""
Embedding Pipeline  —  Batch Embeddings with Retry
══════════════════════════════════════════════════

Design goals:
  • Batch efficiency: one API call per EMBEDDING_BATCH_SIZE texts (default 100)
  • Retry logic: exponential back-off on rate limits and transient errors
  • All-or-nothing: the chunk indexer replaces a digest's whole chunk set,
    so a batch that still fails after retries fails the whole call
  • Explicit deadline: every request carries the configured client timeout

OpenAI embedding model selection:
  text-embedding-3-small  → 1536 dims  (default; matches context_chunks.embedding)
  text-embedding-3-large  → 3072 dims  (requires EMBEDDING_DIMENSIONS + migration)

Retry policy:
  On RateLimitError / APIError (5xx) / APIConnectionError
                         → wait RETRY_BASE_DELAY × 2^attempt (capped)
  On AuthenticationError / BadRequestError → fail immediately (not transient)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Sequence

from openai import AsyncOpenAI, AuthenticationError, BadRequestError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

EMBEDDING_BATCH_SIZE     = 100    # texts per OpenAI API call
MAX_CONCURRENT_BATCHES   = 4      # concurrent embedding requests
MAX_RETRIES              = 3      # per-batch retry limit
RETRY_BASE_DELAY         = 2.0    # seconds, doubles each retry
RETRY_MAX_DELAY          = 60.0   # cap

_NON_RETRYABLE = (AuthenticationError, BadRequestError)


class EmbeddingPipeline:
    """
    Stateless embedding pipeline.

    Usage:
        pipeline = EmbeddingPipeline.from_settings()
        vectors  = await pipeline.embed_texts([c.content for c in chunks])
        # vectors[i] is the embedding of texts[i]
    """

    def __init__(
        self,
        model:            str   = "text-embedding-3-small",
        dimensions:       int   = 1536,
        api_key:          str   = "",
        timeout:          float = 30.0,
        retry_base_delay: float = RETRY_BASE_DELAY,
    ) -> None:
        self._model            = model
        self._dimensions       = dimensions
        self._api_key          = api_key
        self._timeout          = timeout
        self._retry_base_delay = retry_base_delay
        self._client: AsyncOpenAI | None = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            # SDK retries disabled; _embed_batch_with_retry owns the retry budget
            self._client = AsyncOpenAI(
                api_key=self._api_key or None,
                timeout=self._timeout,
                max_retries=0,
            )
        return self._client

    @classmethod
    def from_settings(cls) -> "EmbeddingPipeline":
        from app.core.config import settings

        return cls(
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            api_key=settings.openai_api_key,
            timeout=settings.embedding_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        """
        Embed all texts, preserving input order.

        Raises the last error of the first batch that exhausts its retries.
        """
        if not texts:
            return []

        t0 = time.monotonic()
        batches = [
            list(texts[i : i + EMBEDDING_BATCH_SIZE])
            for i in range(0, len(texts), EMBEDDING_BATCH_SIZE)
        ]

        logger.info(
            "EmbeddingPipeline | texts=%d batches=%d model=%s",
            len(texts), len(batches), self._model,
        )

        semaphore = asyncio.Semaphore(MAX_CONCURRENT_BATCHES)
        results = await asyncio.gather(
            *(
                self._embed_batch_with_retry(batch, batch_idx, semaphore)
                for batch_idx, batch in enumerate(batches)
            )
        )

        vectors = [vector for batch_vectors in results for vector in batch_vectors]

        logger.info(
            "EmbeddingPipeline done | vectors=%d elapsed_ms=%.0f",
            len(vectors), (time.monotonic() - t0) * 1000,
        )
        return vectors

    # ------------------------------------------------------------------
    # Batch processing with retry
    # ------------------------------------------------------------------

    async def _embed_batch_with_retry(
        self,
        batch:     list[str],
        batch_idx: int,
        semaphore: asyncio.Semaphore,
    ) -> list[list[float]]:
        last_error: Exception | None = None

        for attempt in range(MAX_RETRIES + 1):
            if attempt > 0:
                delay = min(self._retry_base_delay * (2 ** (attempt - 1)), RETRY_MAX_DELAY)
                logger.warning(
                    "Embedding retry | batch=%d attempt=%d delay=%.1fs error=%s",
                    batch_idx, attempt, delay, last_error,
                )
                await asyncio.sleep(delay)

            async with semaphore:
                try:
                    return await self._call_openai(batch, batch_idx)
                except _NON_RETRYABLE as exc:
                    logger.error("Non-retryable embedding error batch=%d: %s", batch_idx, exc)
                    raise
                except Exception as exc:
                    last_error = exc
                    logger.warning(
                        "Retryable embedding error batch=%d attempt=%d: %s %s",
                        batch_idx, attempt, type(exc).__name__, exc,
                    )

        raise last_error or RuntimeError(f"Embedding batch {batch_idx} failed after {MAX_RETRIES} retries")

    async def _call_openai(self, batch: list[str], batch_idx: int) -> list[list[float]]:
        t_api = time.monotonic()

        kwargs: dict = {"model": self._model, "input": batch}
        if self._dimensions != 1536:
            # only text-embedding-3-* models accept the dimensions parameter
            kwargs["dimensions"] = self._dimensions

        response = await self._get_client().embeddings.create(**kwargs)

        logger.debug(
            "OpenAI embeddings | batch=%d size=%d tokens=%s api_ms=%.0f",
            batch_idx, len(batch),
            response.usage.total_tokens if response.usage else "?",
            (time.monotonic() - t_api) * 1000,
        )

        ordered = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in ordered]
