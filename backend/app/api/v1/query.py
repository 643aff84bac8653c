"""
Query API — questions over reasoning trees

POST /api/v1/query

  - Requires a valid JWT (minimum role: viewer)
  - tree_ids omitted → every indexed tree visible to the caller
    (the caller's org documents plus global documents)
  - tree_ids = [] or nothing indexed → {answer: "", sources: []}, no upstream call
  - Inline <doc=...;page=N> markers become structured sources and are
    stripped from the answer text
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.auth.dependencies import PageIndex, TenantDB
from app.auth.rbac import require_role
from app.auth.token import TokenPayload
from app.models.scope import Scope
from app.schemas.documents import error_responses
from app.services.query import QueryFacade, indexed_tree_ids, parse_tree_ids

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/query", tags=["Query"])


class QueryRequest(BaseModel):
    question: str = Field(
        ...,
        min_length=1,
        max_length=2_000,
        description="Natural-language question.",
        examples=["What is our leave policy for new hires?"],
    )
    tree_ids: list[str] | None = Field(
        None,
        description="Reasoning-tree ids to ask. Omit to use every indexed document you can see.",
    )


class QuerySource(BaseModel):
    page: int
    text: str = Field(..., description="The literal citation marker from the answer")


class QueryResponse(BaseModel):
    answer:   str
    sources:  list[QuerySource]
    tree_ids: list[str]


@router.post(
    "",
    response_model=QueryResponse,
    summary="Ask a question over indexed documents",
    responses=error_responses(401, 403, 422, 502),
)
async def query_documents(
    body: QueryRequest,
    db: TenantDB,
    pageindex: PageIndex,
    user: Annotated[TokenPayload, Depends(require_role("viewer"))],
) -> QueryResponse:
    if body.tree_ids is None:
        tree_ids = await indexed_tree_ids(db, [Scope.org(user.tenant_id), Scope.global_()])
    else:
        tree_ids = parse_tree_ids(body.tree_ids)

    result = await QueryFacade(pageindex).answer(tree_ids, body.question)
    logger.info(
        "Query answered | tenant=%s trees=%d sources=%d",
        user.tenant_id, len(tree_ids), len(result.sources),
    )
    return QueryResponse(
        answer=result.answer,
        sources=[QuerySource(**s) for s in result.sources],
        tree_ids=tree_ids,
    )
