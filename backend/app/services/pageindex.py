"""
PageIndex — external reasoning-tree index

PageIndex builds a hierarchical tree of a PDF and answers questions over it
with page-level citations. This module holds:

  PageIndexClient       HTTP client (submit, status, chat) with explicit
                        timeouts and bounded exponential-backoff retry
  ReasoningTreeIndexer  PDF-only submission of a digest's document; failures
                        are recorded on the digest and never propagate
  PageIndexStatusSync   scheduled poll that mirrors the external processing
                        status into digest.pageindex_status

Wire format:
  POST {base}/doc/                      multipart "file"   → {"doc_id": ...}
  GET  {base}/doc/{id}/?type=tree                          → {"status": ...}
  POST {base}/chat/completions/         JSON               → {"choices": [...]}
  Auth header: api_key: <key>
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.exceptions import UpstreamError
from app.db.session import session_scope
from app.models.scope import Scope, ScopeKind, family_for
from app.storage.s3 import S3StorageService

logger = logging.getLogger(__name__)

RETRY_MAX_DELAY = 30.0
_TERMINAL_STATUSES = frozenset({"completed", "failed"})


class PageIndexError(UpstreamError):
    error_code = "PAGEINDEX_ERROR"

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

class PageIndexClient:
    """
    Thin async client. A new httpx.AsyncClient is opened per call so the
    client object itself is safe to share across requests and tasks.
    """

    def __init__(
        self,
        api_key:          str,
        base_url:         str   = "https://api.pageindex.ai",
        timeout:          float = 60.0,
        max_attempts:     int   = 3,
        retry_base_delay: float = 1.0,
        transport:        httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._retry_base_delay = retry_base_delay
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "PageIndexClient":
        return cls(
            api_key=settings.pageindex_api_key,
            base_url=settings.pageindex_api_url,
            timeout=settings.pageindex_timeout_seconds,
            max_attempts=settings.pageindex_max_attempts,
            retry_base_delay=settings.pageindex_retry_base_delay,
        )

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def submit(self, pdf_bytes: bytes, filename: str) -> str:
        """Upload a PDF; returns the tree id (PageIndex doc_id)."""
        data = await self._request_with_retry(
            "POST", "/doc/",
            files={"file": (filename, pdf_bytes, "application/pdf")},
        )
        doc_id = data.get("doc_id")
        if not doc_id:
            raise PageIndexError("PageIndex submit returned no doc_id")
        return str(doc_id)

    async def get_status(self, tree_id: str) -> str:
        data = await self._request_with_retry("GET", f"/doc/{tree_id}/", params={"type": "tree"})
        return str(data.get("status", "unknown"))

    async def chat(self, tree_ids: list[str], question: str, temperature: float = 0.3) -> str:
        """Single non-streaming completion over one or more trees; returns the raw answer text."""
        payload = {
            "doc_id": tree_ids[0] if len(tree_ids) == 1 else tree_ids,
            "messages": [{"role": "user", "content": question}],
            "stream": False,
            "temperature": temperature,
            "enable_citations": True,
        }
        data = await self._request_with_retry("POST", "/chat/completions/", json=payload)
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise PageIndexError("Unexpected PageIndex chat response shape") from exc

    # ------------------------------------------------------------------
    # Transport with retry
    # ------------------------------------------------------------------

    async def _request_with_retry(self, method: str, path: str, **kwargs: Any) -> dict:
        if not self.configured:
            raise PageIndexError("PAGEINDEX_API_KEY is not configured")

        last_error: PageIndexError | None = None
        for attempt in range(self._max_attempts):
            if attempt > 0:
                delay = min(self._retry_base_delay * (2 ** (attempt - 1)), RETRY_MAX_DELAY)
                logger.warning(
                    "PageIndex retry | %s %s attempt=%d delay=%.1fs error=%s",
                    method, path, attempt + 1, delay, last_error,
                )
                await asyncio.sleep(delay)
            try:
                return await self._request(method, path, **kwargs)
            except PageIndexError as exc:
                if not exc.retryable:
                    raise
                last_error = exc

        raise last_error or PageIndexError(f"PageIndex {method} {path} failed")

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            try:
                resp = await client.request(method, path, headers={"api_key": self._api_key}, **kwargs)
            except httpx.TransportError as exc:
                raise PageIndexError(f"PageIndex unreachable: {exc}", retryable=True) from exc
            except httpx.HTTPError as exc:
                raise PageIndexError(f"PageIndex {method} {path} failed: {exc}") from exc

        if resp.status_code == 429 or resp.status_code >= 500:
            raise PageIndexError(
                f"PageIndex {method} {path} failed ({resp.status_code}): {resp.text[:200]}",
                retryable=True,
            )
        if resp.status_code >= 400:
            raise PageIndexError(f"PageIndex {method} {path} failed ({resp.status_code}): {resp.text[:200]}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise PageIndexError(f"PageIndex {method} {path} returned a non-JSON body: {resp.text[:200]}") from exc
        if not isinstance(data, dict):
            raise PageIndexError(f"PageIndex {method} {path} returned an unexpected body")
        return data


# ---------------------------------------------------------------------------
# Indexer
# ---------------------------------------------------------------------------

def is_pdf(file_type: str | None) -> bool:
    return bool(file_type) and "pdf" in file_type


class ReasoningTreeIndexer:
    """
    Submit a digest's PDF to PageIndex.

    Skips silently (no network) for non-PDFs, documents without a storage
    path, and when no API key is configured. Never raises for submission
    failures: pageindex_indexed stays false and pageindex_error records why.
    """

    def __init__(
        self,
        session: AsyncSession,
        client: PageIndexClient,
        storage_factory: Callable[[Scope], S3StorageService] = S3StorageService.for_scope,
    ) -> None:
        self._db = session
        self._client = client
        self._storage_factory = storage_factory

    async def index(self, digest, document, scope: Scope) -> bool:
        if not is_pdf(document.file_type) or not document.storage_path:
            logger.debug("PageIndex skip (not a stored PDF) | doc=%s type=%s", document.id, document.file_type)
            return False
        if not self._client.configured:
            logger.warning("PAGEINDEX_API_KEY not configured, skipping indexing | doc=%s", document.id)
            return False

        filename = document.storage_path.rsplit("/", 1)[-1] or "document.pdf"
        try:
            pdf_bytes = await self._storage_factory(scope).get_object(document.storage_path)
            tree_id = await self._client.submit(pdf_bytes, filename)
        except (PageIndexError, ClientError, BotoCoreError, OSError) as exc:
            logger.error("PageIndex indexing failed | digest=%s error=%s", digest.id, exc)
            digest.pageindex_error = str(exc)[:1000]
            await self._db.commit()
            return False

        digest.pageindex_tree_id = tree_id
        digest.pageindex_indexed = True
        digest.pageindex_indexed_at = datetime.now(timezone.utc)
        digest.pageindex_status = None
        digest.pageindex_error = None
        await self._db.commit()

        logger.info("PageIndex indexed | digest=%s file=%s tree=%s", digest.id, filename, tree_id)
        return True


# ---------------------------------------------------------------------------
# Scheduled status sync
# ---------------------------------------------------------------------------

class PageIndexStatusSync:
    """Mirror PageIndex processing status into digests that are not yet terminal."""

    def __init__(
        self,
        client: PageIndexClient,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        batch_size: int = 100,
    ) -> None:
        self._client = client
        self._session_factory = session_factory
        self._batch_size = batch_size

    async def run(self) -> dict[str, int]:
        counts = {"checked": 0, "updated": 0, "errors": 0}
        if not self._client.configured:
            return counts

        for kind in ScopeKind:
            model = family_for(kind).digest
            async with session_scope(self._session_factory) as session:
                result = await session.execute(
                    select(model)
                    .where(model.pageindex_tree_id.is_not(None))
                    .where(
                        model.pageindex_status.is_(None)
                        | model.pageindex_status.not_in(_TERMINAL_STATUSES)
                    )
                    .limit(self._batch_size)
                )
                for digest in result.scalars().all():
                    counts["checked"] += 1
                    try:
                        status = await self._client.get_status(digest.pageindex_tree_id)
                    except PageIndexError as exc:
                        counts["errors"] += 1
                        logger.warning("PageIndex status failed | tree=%s error=%s", digest.pageindex_tree_id, exc)
                        continue
                    if status != digest.pageindex_status:
                        digest.pageindex_status = status
                        counts["updated"] += 1
                await session.flush()

        logger.info(
            "PageIndex status sync | checked=%d updated=%d errors=%d",
            counts["checked"], counts["updated"], counts["errors"],
        )
        return counts
