"""
Integration Tests — /api/v1/documents (organization scope)
══════════════════════════════════════════════════════════
These tests exercise the FULL FastAPI routing stack, including:
  - Dependency injection chain (auth overridden, storage mocked)
  - Role policy per route
  - Response status codes, bodies and the ErrorResponse envelope
  - The upload → create → replace → delete lifecycle

What is mocked vs real
──────────────────────
  ✅ Real: FastAPI routing, Pydantic validation, services, SQL (SQLite)
  🔲 Mock: JWT verification  (dependency_overrides → TokenPayload per role)
  🔲 Mock: S3 storage        (mock_storage fixture)
  🔲 Mock: embeddings        (fake_embedder fixture)

How to run
──────────
  pytest -m integration backend/tests/integration/test_documents_api.py -v
"""

from __future__ import annotations

import uuid

import pytest

BASE = "/api/v1/documents"


async def _issue_and_create(client, name: str = "Employee Handbook", **overrides) -> dict:
    ticket = (await client.post(f"{BASE}/upload-url", json={
        "filename": "handbook.pdf", "content_type": "application/pdf", "file_size": 2048,
    })).json()
    body = {
        "intent":            "create",
        "document_id":       ticket["document_id"],
        "name":              name,
        "category":          "employee_handbook",
        "source_type":       "file",
        "storage_path":      ticket["storage_path"],
        "original_filename": "handbook.pdf",
        "file_type":         "application/pdf",
        "file_size":         2048,
    }
    body.update(overrides)
    resp = await client.post(BASE, json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.integration
class TestUploadUrl:

    async def test_returns_ticket_under_tenant_prefix(self, async_client, test_tenant_id):
        resp = await async_client.post(f"{BASE}/upload-url", json={
            "filename": "Q3 report.pdf", "content_type": "application/pdf", "file_size": 1024,
        })

        assert resp.status_code == 200
        data = resp.json()
        assert data["storage_path"] == f"{test_tenant_id}/{data['document_id']}/Q3_report.pdf"
        assert data["signed_url"].startswith("https://s3.test/")
        assert data["token"]
        assert data["new_version"] is None

    async def test_size_ceiling_is_inclusive(self, async_client):
        ok = await async_client.post(f"{BASE}/upload-url", json={
            "filename": "a.pdf", "content_type": "application/pdf", "file_size": 100 * 1024 * 1024,
        })
        too_big = await async_client.post(f"{BASE}/upload-url", json={
            "filename": "a.pdf", "content_type": "application/pdf", "file_size": 100 * 1024 * 1024 + 1,
        })

        assert ok.status_code == 200
        assert too_big.status_code == 413
        assert too_big.json()["error_code"] == "FILE_TOO_LARGE"

    async def test_unsupported_type(self, async_client):
        resp = await async_client.post(f"{BASE}/upload-url", json={
            "filename": "a.exe", "content_type": "application/x-msdownload", "file_size": 10,
        })

        assert resp.status_code == 400
        assert resp.json()["error_code"] == "UNSUPPORTED_FILE_TYPE"
        assert resp.json()["details"][0]["field"] == "content_type"

    async def test_viewer_cannot_upload(self, async_client, set_role):
        set_role("viewer")

        resp = await async_client.post(f"{BASE}/upload-url", json={
            "filename": "a.pdf", "content_type": "application/pdf", "file_size": 10,
        })

        assert resp.status_code == 403
        assert resp.json()["error_code"] == "FORBIDDEN"


@pytest.mark.integration
class TestCreateAndRead:

    async def test_create_with_ticket(self, async_client):
        doc = await _issue_and_create(async_client)

        assert doc["current_version"] == 1
        assert doc["uploaded_by"] == "member@tenant.example.com"

        detail = (await async_client.get(f"{BASE}/{doc['id']}")).json()
        assert detail["document"]["id"] == doc["id"]
        assert detail["digest"]["extraction_status"] == "pending"
        assert detail["versions"] == []
        assert detail["signed_url"].startswith("https://s3.test/")

    async def test_wrong_intent_is_rejected(self, async_client):
        resp = await async_client.post(BASE, json={
            "intent": "upload", "name": "Notes", "category": "other",
            "source_type": "text", "raw_content": "hello",
        })

        assert resp.status_code == 400
        assert resp.json()["error_code"] == "INVALID_INTENT"

    async def test_foreign_storage_path_is_rejected(self, async_client, other_tenant_id):
        document_id = uuid.uuid4()
        resp = await async_client.post(BASE, json={
            "intent": "create", "document_id": str(document_id), "name": "Sneaky",
            "category": "other", "source_type": "file",
            "storage_path": f"{other_tenant_id}/{document_id}/secret.pdf",
        })

        assert resp.status_code == 400
        assert resp.json()["details"][0]["field"] == "storage_path"

    async def test_text_and_url_documents(self, async_client):
        text = await async_client.post(BASE, json={
            "intent": "create", "name": "Welcome Note", "category": "organization_info",
            "source_type": "text", "raw_content": "Welcome aboard.",
        })
        url = await async_client.post(BASE, json={
            "intent": "create", "name": "Benefits Portal", "category": "benefits",
            "source_type": "url", "original_url": "https://benefits.example.com",
        })

        assert text.status_code == 201
        assert url.status_code == 201
        assert url.json()["original_url"] == "https://benefits.example.com"

    async def test_missing_fields_return_validation_envelope(self, async_client):
        resp = await async_client.post(BASE, json={"intent": "create"})

        assert resp.status_code == 422
        body = resp.json()
        assert body["error_code"] == "VALIDATION_ERROR"
        assert body["details"]
        assert body["request_id"]

    async def test_list_shows_extraction_status_and_filters(self, async_client):
        await _issue_and_create(async_client, name="Zeta Policy")
        await _issue_and_create(async_client, name="Alpha Policy", category="benefits")

        everything = (await async_client.get(BASE)).json()
        benefits = (await async_client.get(BASE, params={"category": "benefits"})).json()

        assert [d["name"] for d in everything] == ["Alpha Policy", "Zeta Policy"]
        assert all(d["extraction_status"] == "pending" for d in everything)
        assert [d["name"] for d in benefits] == ["Alpha Policy"]

    async def test_other_tenant_gets_404(self, async_client, set_role, other_tenant_id):
        doc = await _issue_and_create(async_client)
        set_role("owner", tenant_id=other_tenant_id)

        resp = await async_client.get(f"{BASE}/{doc['id']}")

        assert resp.status_code == 404
        assert resp.json()["error_code"] == "DOCUMENT_NOT_FOUND"
        assert (await async_client.get(BASE)).json() == []

    async def test_request_id_is_echoed(self, async_client):
        resp = await async_client.get(f"{BASE}/{uuid.uuid4()}", headers={"X-Request-ID": "req-123"})

        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.json()["request_id"] == "req-123"


@pytest.mark.integration
class TestUpdateAndDelete:

    async def test_update_metadata(self, async_client):
        doc = await _issue_and_create(async_client)

        resp = await async_client.put(f"{BASE}/{doc['id']}", json={"name": "Handbook 2025", "category": "benefits"})

        assert resp.status_code == 200
        assert resp.json()["name"] == "Handbook 2025"
        assert resp.json()["category"] == "benefits"

    async def test_invalid_category(self, async_client):
        doc = await _issue_and_create(async_client)

        resp = await async_client.put(f"{BASE}/{doc['id']}", json={"category": "cfa_general"})

        assert resp.status_code == 400

    async def test_member_cannot_delete(self, async_client):
        doc = await _issue_and_create(async_client)

        resp = await async_client.delete(f"{BASE}/{doc['id']}")

        assert resp.status_code == 403

    async def test_admin_deletes_document_and_objects(self, async_client, set_role, mock_storage):
        doc = await _issue_and_create(async_client)
        set_role("admin")

        resp = await async_client.delete(f"{BASE}/{doc['id']}")

        assert resp.status_code == 204
        mock_storage.delete_objects.assert_awaited_once_with([doc["storage_path"]])
        assert (await async_client.get(f"{BASE}/{doc['id']}")).status_code == 404


@pytest.mark.integration
class TestReplace:

    async def _replace_ticket(self, client, doc_id: str) -> dict:
        resp = await client.post(f"{BASE}/{doc_id}/upload-url", json={
            "filename": "handbook-v2.pdf", "content_type": "application/pdf", "file_size": 4096,
        })
        assert resp.status_code == 200, resp.text
        return resp.json()

    async def test_full_replace_flow(self, async_client):
        doc = await _issue_and_create(async_client)
        ticket = await self._replace_ticket(async_client, doc["id"])
        assert ticket["new_version"] == 2
        assert ticket["document_id"] == doc["id"]

        resp = await async_client.post(f"{BASE}/{doc['id']}/replace", json={
            "intent": "finalize",
            "storage_path": ticket["storage_path"],
            "new_version": 2,
            "file_size": 4096,
            "file_type": "application/pdf",
            "original_filename": "handbook-v2.pdf",
        })

        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["document"]["current_version"] == 2
        assert data["document"]["storage_path"] == ticket["storage_path"]
        assert data["archived_version"]["version_number"] == 1
        assert data["archived_version"]["storage_path"] == doc["storage_path"]

        detail = (await async_client.get(f"{BASE}/{doc['id']}")).json()
        assert [v["version_number"] for v in detail["versions"]] == [1]
        assert detail["digest"]["extraction_status"] == "pending"

    async def test_stale_new_version_conflicts(self, async_client):
        doc = await _issue_and_create(async_client)
        ticket = await self._replace_ticket(async_client, doc["id"])
        body = {"intent": "finalize", "storage_path": ticket["storage_path"], "new_version": 2}

        first = await async_client.post(f"{BASE}/{doc['id']}/replace", json=body)
        second = await async_client.post(f"{BASE}/{doc['id']}/replace", json=body)

        assert first.status_code == 200
        assert second.status_code == 409
        assert second.json()["error_code"] == "STALE_VERSION"

    async def test_wrong_intent(self, async_client):
        doc = await _issue_and_create(async_client)
        ticket = await self._replace_ticket(async_client, doc["id"])

        resp = await async_client.post(f"{BASE}/{doc['id']}/replace", json={
            "intent": "create", "storage_path": ticket["storage_path"], "new_version": 2,
        })

        assert resp.status_code == 400
        assert resp.json()["error_code"] == "INVALID_INTENT"

    async def test_path_of_another_document_is_rejected(self, async_client, test_tenant_id):
        doc = await _issue_and_create(async_client)

        resp = await async_client.post(f"{BASE}/{doc['id']}/replace", json={
            "intent": "finalize",
            "storage_path": f"{test_tenant_id}/{uuid.uuid4()}/other.pdf",
            "new_version": 2,
        })

        assert resp.status_code == 400

    async def test_replace_unknown_document(self, async_client, test_tenant_id):
        doc_id = uuid.uuid4()

        resp = await async_client.post(f"{BASE}/{doc_id}/replace", json={
            "intent": "finalize", "storage_path": f"{test_tenant_id}/{doc_id}/a.pdf", "new_version": 2,
        })

        assert resp.status_code == 404


@pytest.mark.integration
class TestFolders:

    async def test_folder_routes_are_not_document_ids(self, async_client):
        resp = await async_client.get(f"{BASE}/folders")

        assert resp.status_code == 200
        assert resp.json() == []

    async def test_folder_lifecycle(self, async_client, set_role):
        created = await async_client.post(f"{BASE}/folders", json={"name": "Policies"})
        assert created.status_code == 201
        folder_id = created.json()["id"]

        await _issue_and_create(async_client, name="Filed", folder_id=folder_id)
        in_folder = (await async_client.get(BASE, params={"folder_id": folder_id})).json()
        assert [d["name"] for d in in_folder] == ["Filed"]

        renamed = await async_client.put(f"{BASE}/folders/{folder_id}", json={"name": "HR Policies"})
        assert renamed.json()["name"] == "HR Policies"

        set_role("admin")
        blocked = await async_client.delete(f"{BASE}/folders/{folder_id}")
        assert blocked.status_code == 400
        assert blocked.json()["error_code"] == "FOLDER_NOT_EMPTY"

    async def test_empty_folder_delete(self, async_client, set_role):
        folder_id = (await async_client.post(f"{BASE}/folders", json={"name": "Scratch"})).json()["id"]
        set_role("admin")

        assert (await async_client.delete(f"{BASE}/folders/{folder_id}")).status_code == 204
        assert (await async_client.get(f"{BASE}/folders")).json() == []


@pytest.mark.integration
class TestDigestRoutes:

    async def test_get_and_reset_digest(self, async_client, org_scope, complete_digest):
        doc = await _issue_and_create(async_client)
        await complete_digest(org_scope, uuid.UUID(doc["id"]), "Extracted text")

        digest = (await async_client.get(f"{BASE}/{doc['id']}/digest")).json()
        assert digest["extraction_status"] == "completed"
        assert digest["content_md"] == "Extracted text"

        reset = await async_client.post(f"{BASE}/{doc['id']}/digest")
        assert reset.status_code == 200
        assert reset.json()["extraction_status"] == "pending"
        assert reset.json()["extraction_error"] is None

    async def test_digest_of_unknown_document(self, async_client):
        resp = await async_client.get(f"{BASE}/{uuid.uuid4()}/digest")
        assert resp.status_code == 404


@pytest.mark.integration
class TestHealth:

    async def test_liveness(self, async_client):
        resp = await async_client.get("/health")

        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_unknown_route_uses_error_envelope(self, async_client):
        resp = await async_client.get("/api/v1/nowhere")

        assert resp.status_code == 404
        assert resp.json()["error_code"] == "NOT_FOUND"
