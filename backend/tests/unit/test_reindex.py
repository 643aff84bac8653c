"""
Unit Tests — BatchReindexer
═══════════════════════════
Eligibility (completed extraction, embedding not completed), per-item
isolation, the per-scope tally and the summary strings.
"""

from __future__ import annotations

import httpx
import pytest
from botocore.exceptions import ClientError

from app.models.scope import ScopeKind
from app.schemas.documents import ReindexScopeResult
from app.services.pageindex import PageIndexClient
from app.services.reindex import BatchReindexer, summarize

SECTION = "## Section\n" + "Policy text that is long enough to stand alone. " * 25


async def _seed_text_documents(seed_document, complete_digest, scope, contents: list[str]):
    digests = []
    for i, content in enumerate(contents):
        doc = await seed_document(
            scope,
            name=f"Doc {i}",
            source_type="text",
            raw_content=content,
            storage_path=None,
            original_filename=None,
            file_type=None,
            file_size=None,
        )
        digests.append(await complete_digest(scope, doc.id, content))
    return digests


@pytest.mark.unit
class TestSummarize:

    def test_format(self):
        assert summarize(ReindexScopeResult(total=5, success=3, failed=2)) == "3/5 indexed"


@pytest.mark.unit
class TestBatchReindexer:

    async def test_tally_counts_every_eligible_digest(
        self, session_factory, org_scope, seed_document, complete_digest, fake_embedder,
    ):
        digests = await _seed_text_documents(
            seed_document, complete_digest, org_scope, [SECTION, SECTION, "", SECTION, "  "],
        )

        result = await BatchReindexer(fake_embedder, session_factory=session_factory).run_scope(ScopeKind.ORG)

        assert (result.total, result.success, result.failed) == (5, 3, 2)
        assert len(result.errors) == 2
        assert result.errors[0] == f"{digests[2].id}: no content_md"
        assert result.pageindex == 0

    async def test_completed_digests_are_not_selected_again(
        self, session_factory, org_scope, seed_document, complete_digest, fake_embedder,
    ):
        await _seed_text_documents(seed_document, complete_digest, org_scope, [SECTION, SECTION, ""])
        reindexer = BatchReindexer(fake_embedder, session_factory=session_factory)

        first = await reindexer.run_scope(ScopeKind.ORG)
        second = await reindexer.run_scope(ScopeKind.ORG)

        assert (first.total, first.success) == (3, 2)
        assert (second.total, second.success, second.failed) == (1, 0, 1)

    async def test_pending_extractions_are_ignored(
        self, session_factory, org_scope, seed_document, fake_embedder,
    ):
        await seed_document(org_scope)

        result = await BatchReindexer(fake_embedder, session_factory=session_factory).run_scope(ScopeKind.ORG)

        assert result.total == 0

    async def test_one_failure_does_not_stop_the_batch(
        self, session_factory, org_scope, seed_document, complete_digest, fake_embedder,
    ):
        await _seed_text_documents(seed_document, complete_digest, org_scope, [SECTION, SECTION, SECTION])
        calls = {"n": 0}

        async def _flaky(texts):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("embedding service unavailable")
            return [[0.5] * 8 for _ in texts]

        fake_embedder.embed_texts.side_effect = _flaky

        result = await BatchReindexer(fake_embedder, session_factory=session_factory).run_scope(ScopeKind.ORG)

        assert (result.total, result.success, result.failed) == (3, 2, 1)
        assert "embedding service unavailable" in result.errors[0]

    async def test_run_covers_both_scopes(
        self, session_factory, org_scope, global_scope, seed_document, complete_digest, fake_embedder,
    ):
        await _seed_text_documents(seed_document, complete_digest, org_scope, [SECTION, ""])
        await _seed_text_documents(seed_document, complete_digest, global_scope, [SECTION])

        summary, details = await BatchReindexer(fake_embedder, session_factory=session_factory).run()

        assert summary == {"global_documents": "1/1 indexed", "org_documents": "1/2 indexed"}
        assert set(details) == {"global", "org"}
        assert details["org"].failed == 1

    async def test_org_chunks_carry_their_tenant(
        self, session_factory, db_session, org_scope, seed_document, complete_digest, fake_embedder,
        test_tenant_id,
    ):
        from sqlalchemy import select
        from app.models.documents import ContextChunk

        await _seed_text_documents(seed_document, complete_digest, org_scope, [SECTION])

        await BatchReindexer(fake_embedder, session_factory=session_factory).run_scope(ScopeKind.ORG)

        org_ids = (await db_session.execute(select(ContextChunk.org_id))).scalars().all()
        assert org_ids == [test_tenant_id]

    async def test_tree_submission_failure_is_isolated(
        self, session_factory, org_scope, seed_document, complete_digest, fake_embedder, mock_storage,
    ):
        for name in ("Scanned Policy", "Benefits Guide"):
            doc = await seed_document(org_scope, name=name)
            await complete_digest(org_scope, doc.id, SECTION, method="pdf_extract")
        mock_storage.get_object.side_effect = [
            ClientError({"Error": {"Code": "SlowDown", "Message": "throttled"}}, "GetObject"),
            b"%PDF-1.4 scan",
        ]
        pageindex = PageIndexClient(
            api_key="pi-test-key",
            base_url="https://pageindex.test",
            retry_base_delay=0,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"doc_id": "pi-ok"})),
        )

        result = await BatchReindexer(
            fake_embedder, pageindex, session_factory=session_factory, storage_factory=lambda _s: mock_storage,
        ).run_scope(ScopeKind.ORG)

        assert (result.total, result.success, result.failed) == (2, 2, 0)
        assert result.pageindex == 1
