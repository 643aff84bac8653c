"""
Query Facade — questions over reasoning trees

  answer(tree_ids, question) → QueryAnswer(answer, sources)

PageIndex answers inline-cite pages as <doc=report.pdf;page=4>. The raw
answer is scanned for those markers (sources, in order of appearance, not
deduplicated) and then every <doc=...> marker is stripped to produce the
caller-facing text.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.scope import Scope
from app.services.pageindex import PageIndexClient

logger = logging.getLogger(__name__)

_CITATION = re.compile(r"<doc=([^;>]*);page=(\d+)>")
_ANY_DOC_MARKER = re.compile(r"\.?\s*<doc=[^>]*>")


@dataclass
class QueryAnswer:
    answer:  str
    sources: list[dict] = field(default_factory=list)


def extract_citations(text: str) -> list[dict]:
    return [
        {"page": int(match.group(2)), "text": match.group(0)}
        for match in _CITATION.finditer(text)
    ]


def strip_citations(text: str) -> str:
    return _ANY_DOC_MARKER.sub("", text).strip()


class QueryFacade:

    def __init__(self, client: PageIndexClient) -> None:
        self._client = client

    async def answer(self, tree_ids: list[str], question: str) -> QueryAnswer:
        if not tree_ids:
            return QueryAnswer(answer="", sources=[])

        raw = await self._client.chat(
            tree_ids, question, temperature=settings.pageindex_query_temperature
        )
        sources = extract_citations(raw)
        logger.info("PageIndex query | trees=%d sources=%d", len(tree_ids), len(sources))
        return QueryAnswer(answer=strip_citations(raw), sources=sources)


async def indexed_tree_ids(session: AsyncSession, scopes: list[Scope]) -> list[str]:
    """Tree ids of every indexed digest visible to the given scopes."""
    tree_ids: list[str] = []
    for scope in scopes:
        family = scope.family
        stmt = (
            select(family.digest.pageindex_tree_id)
            .join(family.document, family.document.id == family.digest.document_id)
            .where(family.digest.pageindex_indexed.is_(True))
            .where(family.digest.pageindex_tree_id.is_not(None))
        )
        stmt = scope.restrict(stmt, family.document)
        tree_ids.extend((await session.execute(stmt)).scalars().all())
    return tree_ids


def parse_tree_ids(values: list[str] | None) -> list[str]:
    return [v.strip() for v in (values or []) if v and v.strip()]


__all__ = [
    "QueryAnswer",
    "QueryFacade",
    "extract_citations",
    "indexed_tree_ids",
    "parse_tree_ids",
    "strip_citations",
]
