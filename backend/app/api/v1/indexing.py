"""
Indexing API

POST /api/v1/documents/reindex                       batch reindex, both scopes
GET  /api/v1/documents/pageindex/{tree_id}/status    live reasoning-tree status

Both are mounted on the /documents prefix ahead of the document router so
"reindex" and "pageindex" never match /{document_id}.
"""

from typing import Annotated

from fastapi import APIRouter, Depends

from app.auth.dependencies import Embedder, PageIndex
from app.auth.rbac import require_role
from app.auth.token import TokenPayload
from app.core.exceptions import UpstreamError
from app.schemas.documents import PageIndexStatusResponse, ReindexResponse, error_responses
from app.services.reindex import BatchReindexer

router = APIRouter(prefix="/documents", tags=["Indexing"])


@router.post(
    "/reindex",
    response_model=ReindexResponse,
    summary="Chunk-index every extracted but unembedded digest",
    responses=error_responses(401, 403),
)
async def reindex_documents(
    user: Annotated[TokenPayload, Depends(require_role("platform_admin"))],
    embedder: Embedder,
    pageindex: PageIndex,
) -> ReindexResponse:
    summary, details = await BatchReindexer(embedder, pageindex).run()
    return ReindexResponse(success=True, summary=summary, details=details)


@router.get(
    "/pageindex/{tree_id}/status",
    response_model=PageIndexStatusResponse,
    responses=error_responses(401, 403, 502),
)
async def get_pageindex_status(
    tree_id: str,
    user: Annotated[TokenPayload, Depends(require_role("viewer"))],
    pageindex: PageIndex,
) -> PageIndexStatusResponse:
    if not pageindex.configured:
        raise UpstreamError("Reasoning-tree index is not configured", error_code="PAGEINDEX_NOT_CONFIGURED")
    return PageIndexStatusResponse(tree_id=tree_id, status=await pageindex.get_status(tree_id))
