#!/usr/bin/env python3
"""
Vector Sync Script.

Compares each tenant's knowledge-base documents (the corpus provider) with the
vectors stored for that tenant in Chroma, and optionally embeds missing
documents and removes vectors whose documents no longer exist.

Usage:
    python -m knowledge_engine.scripts.sync_vectors TENANT [TENANT ...] [--fix] [--verbose]

Options:
    --fix       Embed and upsert missing documents, delete orphaned vectors
    --verbose   Show detailed information about each document
"""

import argparse
import logging
import sys
from dataclasses import dataclass, field
from typing import List, Optional, Set

from ..core.config import get_settings
from ..core.supabase_client import get_supabase_client
from ..logging_utils import setup_logging, tenant_context
from ..retrieval.protocols import DocumentCorpusProvider, EmbeddingGenerator
from ..services.corpus_service import SupabaseCorpusProvider
from ..services.embedding_service import OpenAIEmbeddingGenerator
from ..services.vector_store import ChromaSimilarityProvider, create_chroma_client


@dataclass
class SyncReport:
    """Result of comparing one tenant's corpus with its stored vectors."""

    tenant_id: str
    corpus_documents: Set[str] = field(default_factory=set)
    vector_documents: Set[str] = field(default_factory=set)

    missing_vectors: Set[str] = field(default_factory=set)   # in corpus, not in Chroma
    orphaned_vectors: Set[str] = field(default_factory=set)  # in Chroma, not in corpus

    upserted: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def synced_documents(self) -> Set[str]:
        return self.corpus_documents & self.vector_documents

    @property
    def total_inconsistencies(self) -> int:
        return len(self.missing_vectors) + len(self.orphaned_vectors)

    @property
    def is_consistent(self) -> bool:
        return self.total_inconsistencies == 0

    @property
    def fully_fixed(self) -> bool:
        return not self.errors and len(self.upserted) + len(self.removed) == self.total_inconsistencies

    def summary(self) -> str:
        lines = [
            "=" * 60,
            f"VECTOR SYNC REPORT: {self.tenant_id}",
            "=" * 60,
            f"Corpus documents:   {len(self.corpus_documents)}",
            f"Stored vectors:     {len(self.vector_documents)}",
            f"In sync:            {len(self.synced_documents)}",
            "-" * 60,
        ]

        if self.is_consistent:
            lines.append("✓ Vectors match the corpus")
        else:
            lines.append(f"✗ Found {self.total_inconsistencies} inconsistencies:")
            if self.missing_vectors:
                lines.append(f"\n  Missing vectors ({len(self.missing_vectors)}):")
                lines.extend(f"    - {key}" for key in sorted(self.missing_vectors))
            if self.orphaned_vectors:
                lines.append(f"\n  Orphaned vectors ({len(self.orphaned_vectors)}):")
                lines.extend(f"    - {key}" for key in sorted(self.orphaned_vectors))

        if self.upserted or self.removed:
            lines.append("-" * 60)
            lines.append("FIXES APPLIED:")
            if self.upserted:
                lines.append(f"  Embedded and upserted: {len(self.upserted)}")
            if self.removed:
                lines.append(f"  Removed: {len(self.removed)}")

        if self.errors:
            lines.append("-" * 60)
            lines.append("FIX ERRORS:")
            lines.extend(f"  - {error}" for error in self.errors)

        lines.append("=" * 60)
        return "\n".join(lines)


class VectorSynchronizer:
    """Keeps a tenant's Chroma vectors in line with its document corpus."""

    def __init__(
        self,
        corpus_provider: DocumentCorpusProvider,
        vector_store: ChromaSimilarityProvider,
        embedding_generator: EmbeddingGenerator,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._corpus_provider = corpus_provider
        self._vector_store = vector_store
        self._embedding_generator = embedding_generator
        self._logger = logger or logging.getLogger("knowledge_engine.scripts.sync_vectors")

    def sync(self, tenant_id: str, apply_fixes: bool = False) -> SyncReport:
        """
        Compare one tenant's corpus with its vectors.

        Args:
            tenant_id: Tenant to check
            apply_fixes: Embed missing documents and delete orphaned vectors

        Returns:
            SyncReport with findings and fix results
        """
        report = SyncReport(tenant_id=tenant_id)
        with tenant_context(tenant_id):
            documents = {d.key: d for d in self._corpus_provider.load_documents(tenant_id)}
            report.corpus_documents = set(documents)
            report.vector_documents = self._vector_store.document_keys(tenant_id)

            report.missing_vectors = report.corpus_documents - report.vector_documents
            report.orphaned_vectors = report.vector_documents - report.corpus_documents
            if not report.is_consistent:
                self._logger.warning(
                    "Vectors out of sync with corpus",
                    extra={"missing": len(report.missing_vectors), "orphaned": len(report.orphaned_vectors)},
                )

            if apply_fixes and not report.is_consistent:
                self._apply_fixes(report, documents)
        return report

    def _apply_fixes(self, report: SyncReport, documents) -> None:
        for key in sorted(report.missing_vectors):
            document = documents[key]
            try:
                vector = self._embedding_generator.generate(document.text)
                self._vector_store.upsert(report.tenant_id, [document], [vector])
                report.upserted.append(key)
            except Exception as exc:
                message = f"Failed to embed {key}: {exc}"
                report.errors.append(message)
                self._logger.error(message)

        if report.orphaned_vectors:
            orphaned = sorted(report.orphaned_vectors)
            try:
                self._vector_store.delete_documents(report.tenant_id, orphaned)
                report.removed.extend(orphaned)
            except Exception as exc:
                message = f"Failed to delete orphaned vectors: {exc}"
                report.errors.append(message)
                self._logger.error(message)


def build_synchronizer() -> VectorSynchronizer:
    settings = get_settings()
    if not settings.openai_api_key:
        raise RuntimeError("OPENAI_API_KEY is required to embed documents")
    return VectorSynchronizer(
        corpus_provider=SupabaseCorpusProvider(get_supabase_client()),
        vector_store=ChromaSimilarityProvider(
            create_chroma_client(settings),
            collection_name=settings.chroma_collection,
        ),
        embedding_generator=OpenAIEmbeddingGenerator(
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            max_chars=settings.embedding_max_chars,
            api_key=settings.openai_api_key,
        ),
    )


def main(argv: Optional[List[str]] = None, synchronizer: Optional[VectorSynchronizer] = None) -> int:
    """
    Entry point.

    Returns:
        Exit code: 0 if consistent (or fully fixed), 1 if inconsistencies
        remain, 2 on error
    """
    parser = argparse.ArgumentParser(
        description="Sync tenant knowledge-base vectors with the document corpus",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("tenants", nargs="+", help="Tenant ids to check")
    parser.add_argument("--fix", action="store_true", help="Embed missing documents and delete orphaned vectors")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show detailed information")
    args = parser.parse_args(argv)

    settings = get_settings()
    if synchronizer is None:
        settings = settings.model_copy(update={"log_level": "DEBUG" if args.verbose else settings.log_level})
        setup_logging(settings)
    logger = logging.getLogger("knowledge_engine.scripts.sync_vectors")

    try:
        synchronizer = synchronizer or build_synchronizer()
        reports = [synchronizer.sync(tenant_id, apply_fixes=args.fix) for tenant_id in args.tenants]
    except Exception as exc:
        logger.error("Vector sync failed", extra={"error": str(exc)})
        return 2

    for report in reports:
        print(report.summary())

    if any(report.errors for report in reports):
        return 2
    if all(report.is_consistent or (args.fix and report.fully_fixed) for report in reports):
        return 0
    return 1


if __name__ == "__main__":
    sys.exit(main())
