"""Publishes processing-hook runs to the Celery broker."""

from __future__ import annotations

import asyncio
import logging
import uuid

from app.models.scope import Scope

logger = logging.getLogger(__name__)


class TaskPublisher:
    """
    Sends process_document to the broker. The import is deferred so the
    broker connection is not required at module load time.
    """

    async def publish_processing(self, document_id: uuid.UUID, scope: Scope) -> None:
        from app.workers.tasks import process_document

        kwargs = {
            "document_id": str(document_id),
            "scope":       scope.kind.value,
            "tenant_id":   str(scope.tenant_id) if scope.tenant_id else None,
        }
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: process_document.apply_async(kwargs=kwargs, countdown=2),
        )
        logger.info("Processing task published | doc=%s scope=%s", document_id, scope)
