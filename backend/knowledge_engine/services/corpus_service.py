"""
Document corpus provider backed by the tenant tables in Supabase.

Each knowledge table is read with the tenant and ``is_active`` filters and its
rows are mapped onto Document snapshots:

    ai_knowledge_articles  -> article  (title, content, category)
    faqs                   -> faq      (question -> title, answer -> content)
    ai_business_policies   -> policy   (title, policy_text, policy_type -> category)
    services               -> service  (name -> title, description + ai_description)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

from ..retrieval.errors import CorpusLoadError
from ..retrieval.types import Document, SourceType


logger = logging.getLogger("knowledge_engine.services.corpus")

DEFAULT_PAGE_SIZE = 1000


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Ignoring unparseable timestamp", extra={"value": str(value)})
        return None


def _text(row: Dict[str, Any], column: str) -> str:
    value = row.get(column)
    return str(value).strip() if value is not None else ""


def _article(row: Dict[str, Any]) -> Document:
    return Document(
        id=str(row["id"]),
        source_type=SourceType.ARTICLE,
        source_id=str(row["id"]),
        title=_text(row, "title"),
        content=_text(row, "content"),
        category=_text(row, "category"),
        updated_at=parse_timestamp(row.get("updated_at")),
    )


def _faq(row: Dict[str, Any]) -> Document:
    return Document(
        id=str(row["id"]),
        source_type=SourceType.FAQ,
        source_id=str(row["id"]),
        title=_text(row, "question"),
        content=_text(row, "answer"),
        category=_text(row, "category"),
        updated_at=parse_timestamp(row.get("updated_at")),
    )


def _policy(row: Dict[str, Any]) -> Document:
    return Document(
        id=str(row["id"]),
        source_type=SourceType.POLICY,
        source_id=str(row["id"]),
        title=_text(row, "title"),
        content=_text(row, "policy_text"),
        category=_text(row, "policy_type"),
        updated_at=parse_timestamp(row.get("updated_at")),
    )


def _service(row: Dict[str, Any]) -> Document:
    content = " ".join(
        part for part in (_text(row, "description"), _text(row, "ai_description")) if part
    )
    return Document(
        id=str(row["id"]),
        source_type=SourceType.SERVICE,
        source_id=str(row["id"]),
        title=_text(row, "name"),
        content=content,
        category=_text(row, "category"),
        updated_at=parse_timestamp(row.get("updated_at")),
    )


@dataclass(frozen=True)
class CorpusTable:
    name: str
    columns: str
    to_document: Callable[[Dict[str, Any]], Document]


CORPUS_TABLES = (
    CorpusTable("ai_knowledge_articles", "id, title, content, category, updated_at", _article),
    CorpusTable("faqs", "id, question, answer, category, updated_at", _faq),
    CorpusTable("ai_business_policies", "id, policy_type, title, policy_text, updated_at", _policy),
    CorpusTable("services", "id, name, description, ai_description, category, updated_at", _service),
)


class SupabaseCorpusProvider:
    """
    Loads a tenant's active knowledge-base rows through a supabase-py client.

    PostgREST caps each response (1000 rows by default), so every table is
    read in ``page_size`` pages ordered by id until a short page comes back.
    """

    def __init__(self, client, tables=CORPUS_TABLES, page_size: int = DEFAULT_PAGE_SIZE):
        if page_size <= 0:
            raise ValueError(f"page_size must be positive, got {page_size}")
        self.client = client
        self.tables = tables
        self.page_size = page_size

    def load_documents(self, tenant_id: str) -> List[Document]:
        documents: List[Document] = []
        for table in self.tables:
            for row in self._rows(tenant_id, table):
                try:
                    documents.append(table.to_document(row))
                except (KeyError, ValueError) as exc:
                    logger.warning(
                        "Skipping malformed corpus row",
                        extra={"tenant_id": tenant_id, "table": table.name, "error": str(exc)},
                    )

        logger.info(
            "Loaded tenant corpus",
            extra={"tenant_id": tenant_id, "document_count": len(documents)},
        )
        return documents

    def _rows(self, tenant_id: str, table: CorpusTable) -> Iterator[Dict[str, Any]]:
        start = 0
        while True:
            try:
                response = (
                    self.client.table(table.name)
                    .select(table.columns)
                    .eq("tenant_id", tenant_id)
                    .eq("is_active", True)
                    .order("id")
                    .range(start, start + self.page_size - 1)
                    .execute()
                )
            except Exception as exc:
                raise CorpusLoadError(tenant_id, f"reading {table.name} failed: {exc}") from exc

            rows = response.data or []
            yield from rows
            if len(rows) < self.page_size:
                return
            start += self.page_size
