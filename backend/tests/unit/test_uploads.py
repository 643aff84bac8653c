"""
Unit Tests — UploadService
══════════════════════════
Validation order and ceilings (inclusive), filename sanitization, scope
storage paths, replacement tickets and the global direct upload.
S3 is fully mocked (mock_storage).
"""

from __future__ import annotations

import uuid
from types import SimpleNamespace

import pytest

from app.core.exceptions import PayloadTooLarge, ValidationFailed
from app.services.uploads import UploadService, sanitize_filename, validate_upload

MB = 1024 * 1024


@pytest.mark.unit
class TestValidateUpload:

    def test_exactly_100_mb_is_accepted(self):
        validate_upload("application/pdf", 100 * MB)

    def test_one_byte_over_100_mb_is_rejected(self):
        with pytest.raises(PayloadTooLarge) as exc_info:
            validate_upload("application/pdf", 100 * MB + 1)

        assert exc_info.value.status_code == 413
        assert exc_info.value.field == "file_size"

    def test_unsupported_type_is_rejected_before_size(self):
        with pytest.raises(ValidationFailed) as exc_info:
            validate_upload("application/zip", 200 * MB)

        assert exc_info.value.error_code == "UNSUPPORTED_FILE_TYPE"

    @pytest.mark.parametrize(
        "content_type",
        ["application/pdf", "text/markdown", "image/webp",
         "application/vnd.openxmlformats-officedocument.wordprocessingml.document"],
    )
    def test_allowed_types(self, content_type):
        validate_upload(content_type, 1024)


@pytest.mark.unit
class TestSanitizeFilename:

    def test_unsafe_characters_become_underscores(self):
        assert sanitize_filename("my report (final).pdf") == "my_report__final_.pdf"

    def test_path_separators_are_neutralized(self):
        assert "/" not in sanitize_filename("../../etc/passwd")

    def test_length_is_capped(self):
        assert len(sanitize_filename("a" * 300 + ".pdf")) == 100

    def test_empty_name_gets_placeholder(self):
        assert sanitize_filename("") == "file"


@pytest.mark.unit
class TestUploadService:

    async def test_org_ticket_path_is_tenant_prefixed(self, org_scope, mock_storage, test_tenant_id):
        ticket = await UploadService(org_scope, mock_storage).issue_upload_url(
            "Handbook 2024.pdf", "application/pdf", 2048
        )

        assert ticket.storage_path == f"{test_tenant_id}/{ticket.document_id}/Handbook_2024.pdf"
        assert ticket.signed_url.startswith("https://s3.test/")
        assert ticket.new_version is None
        assert ticket.token

        kwargs = mock_storage.generate_presigned_put.call_args.kwargs
        assert kwargs["content_type"] == "application/pdf"
        assert kwargs["metadata"] == {"upload-token": ticket.token}

    async def test_global_ticket_path_has_no_tenant(self, global_scope, mock_storage):
        ticket = await UploadService(global_scope, mock_storage).issue_upload_url(
            "guide.md", "text/markdown", 10
        )
        assert ticket.storage_path == f"{ticket.document_id}/guide.md"

    async def test_each_ticket_gets_a_fresh_document_id(self, org_scope, mock_storage):
        service = UploadService(org_scope, mock_storage)
        first = await service.issue_upload_url("a.pdf", "application/pdf", 1)
        second = await service.issue_upload_url("a.pdf", "application/pdf", 1)
        assert first.document_id != second.document_id

    async def test_oversized_request_never_presigns(self, org_scope, mock_storage):
        with pytest.raises(PayloadTooLarge):
            await UploadService(org_scope, mock_storage).issue_upload_url(
                "big.pdf", "application/pdf", 100 * MB + 1
            )
        mock_storage.generate_presigned_put.assert_not_awaited()

    async def test_replace_ticket_carries_next_version(self, org_scope, mock_storage):
        doc = SimpleNamespace(id=uuid.uuid4(), current_version=3)

        ticket = await UploadService(org_scope, mock_storage).issue_replace_url(
            doc, "v4.pdf", "application/pdf", 1024
        )

        assert ticket.document_id == doc.id
        assert ticket.new_version == 4
        assert ticket.storage_path.endswith(f"/{doc.id}/v4.pdf")


@pytest.mark.unit
class TestDirectUpload:

    async def test_stores_under_global_prefix(self, global_scope, mock_storage):
        stored = await UploadService(global_scope, mock_storage).upload_direct(
            "Brand Guide.pdf", "application/pdf", b"%PDF-1.4 body"
        )

        assert stored["storage_path"] == f"{stored['document_id']}/Brand_Guide.pdf"
        assert stored["file_size"] == len(b"%PDF-1.4 body")
        assert stored["original_filename"] == "Brand Guide.pdf"
        mock_storage.put_object.assert_awaited_once()

    async def test_exactly_25_mb_is_accepted(self, global_scope, mock_storage):
        stored = await UploadService(global_scope, mock_storage).upload_direct(
            "big.txt", "text/plain", b"x" * (25 * MB)
        )
        assert stored["file_size"] == 25 * MB

    async def test_over_25_mb_is_rejected(self, global_scope, mock_storage):
        with pytest.raises(PayloadTooLarge):
            await UploadService(global_scope, mock_storage).upload_direct(
                "big.txt", "text/plain", b"x" * (25 * MB + 1)
            )
        mock_storage.put_object.assert_not_awaited()
