"""
Unit Tests — Celery task bodies and the task publisher
══════════════════════════════════════════════════════
The async task bodies run directly against the per-test SQLite database
(app.db.session.AsyncSessionLocal is patched); no broker is involved.
"""

from __future__ import annotations

import uuid
from unittest.mock import MagicMock, patch

import pytest


@pytest.fixture
def worker_env(monkeypatch, session_factory, mock_storage, fake_embedder, disabled_pageindex):
    """Everything the task bodies build from settings, swapped for test doubles."""
    monkeypatch.setattr("app.db.session.AsyncSessionLocal", session_factory)
    monkeypatch.setattr("app.storage.s3.S3StorageService.for_scope", lambda scope: mock_storage)
    monkeypatch.setattr("app.processing.embeddings.EmbeddingPipeline.from_settings", lambda: fake_embedder)
    monkeypatch.setattr("app.services.pageindex.PageIndexClient.from_settings", lambda: disabled_pageindex)


@pytest.mark.unit
class TestProcessDocumentTask:

    async def test_processes_org_document(self, worker_env, org_scope, seed_document, test_tenant_id):
        from app.workers.tasks import _process_document_async

        doc = await seed_document(
            org_scope, source_type="text", raw_content="Policy body text",
            storage_path=None, original_filename=None, file_type=None, file_size=None,
        )

        result = await _process_document_async(
            task=MagicMock(), document_id=doc.id, scope="org", tenant_id=test_tenant_id,
        )

        assert result["status"] == "completed"
        assert result["document_id"] == str(doc.id)
        assert result["extraction_method"] == "raw_text"
        assert result["chunks"] == 1

    async def test_unknown_document_is_reported(self, worker_env):
        from app.workers.tasks import _process_document_async

        result = await _process_document_async(
            task=MagicMock(), document_id=uuid.uuid4(), scope="global", tenant_id=None,
        )

        assert result == {"status": "not_found"}

    async def test_busy_digest_is_skipped(self, worker_env, db_session, global_scope, seed_document):
        from app.services.digests import DigestStateMachine
        from app.workers.tasks import _process_document_async

        doc = await seed_document(global_scope)
        machine = DigestStateMachine(db_session, global_scope)
        await machine.mark_processing(await machine.ensure(doc.id))
        await db_session.commit()

        result = await _process_document_async(
            task=MagicMock(), document_id=doc.id, scope="global", tenant_id=None,
        )

        assert result == {"status": "skipped", "reason": "PROCESSING_IN_PROGRESS"}


@pytest.mark.unit
class TestScheduledTasks:

    async def test_reindex_returns_serializable_tally(
        self, worker_env, org_scope, seed_document, complete_digest,
    ):
        from app.workers.tasks import _reindex_documents_async

        doc = await seed_document(org_scope)
        await complete_digest(org_scope, doc.id, "## Heading\nIndexed body.")

        result = await _reindex_documents_async()

        assert result["success"] is True
        assert result["summary"] == {"global_documents": "0/0 indexed", "org_documents": "1/1 indexed"}
        assert result["details"]["org"]["success"] == 1
        assert result["details"]["global"]["errors"] == []

    async def test_status_sync_without_key_is_a_no_op(self, worker_env):
        from app.workers.tasks import _sync_pageindex_status_async

        assert await _sync_pageindex_status_async() == {"checked": 0, "updated": 0, "errors": 0}


@pytest.mark.unit
class TestTaskPublisher:

    async def test_publishes_ids_only(self, org_scope, test_tenant_id):
        from app.services.dispatch import TaskPublisher
        from app.workers.tasks import process_document

        document_id = uuid.uuid4()
        with patch.object(process_document, "apply_async") as apply_async:
            await TaskPublisher().publish_processing(document_id, org_scope)

        apply_async.assert_called_once_with(
            kwargs={"document_id": str(document_id), "scope": "org", "tenant_id": str(test_tenant_id)},
            countdown=2,
        )

    async def test_global_scope_has_no_tenant(self, global_scope):
        from app.services.dispatch import TaskPublisher
        from app.workers.tasks import process_document

        with patch.object(process_document, "apply_async") as apply_async:
            await TaskPublisher().publish_processing(uuid.uuid4(), global_scope)

        assert apply_async.call_args.kwargs["kwargs"]["tenant_id"] is None
        assert apply_async.call_args.kwargs["kwargs"]["scope"] == "global"


@pytest.mark.unit
class TestCeleryConfig:

    def test_routes_and_beat_schedule(self):
        from app.workers.celery_app import celery_app

        routes = celery_app.conf.task_routes
        assert routes["app.workers.tasks.process_document"]["queue"] == "documents.process"
        assert routes["app.workers.tasks.reindex_documents"]["queue"] == "documents.index"
        assert set(celery_app.conf.beat_schedule) == {"reindex-documents", "sync-pageindex-status"}
