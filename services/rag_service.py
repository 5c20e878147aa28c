# services/rag_service.py
"""Query -> search -> context pipeline with a stable {success, error} result shape"""
import logging
import time
from typing import List, Optional

from config import settings
from core.domain import RAGContext, RecordKind, SearchFilters, SearchResult
from core.exceptions import MedicalRAGError
from core.interfaces import IMedicalStore
from infrastructure.context_assembler import ContextAssembler
from infrastructure.vector_search import VectorSearchEngine
from services.lifecycle_controller import LifecycleController

logger = logging.getLogger(settings.LOGGER_NAME)


class RAGService:
    """
    Orchestrates vector search and context assembly for one query.

    Nothing raised below this point escapes: every failure is turned into
    RAGContext(success=False, error=...), so callers can tell "no answer"
    (no quality results) apart from "system failure" only by the error text.
    """

    def __init__(
        self,
        controller: LifecycleController,
        search_engine: VectorSearchEngine,
        assembler: ContextAssembler,
        store: IMedicalStore,
        max_results: int = settings.MAX_RESULTS,
        threshold: float = settings.SIMILARITY_THRESHOLD,
        max_context_length: int = settings.MAX_CONTEXT_LENGTH,
        include_related_qa: bool = settings.INCLUDE_RELATED_QA,
    ):
        self.controller = controller
        self.search_engine = search_engine
        self.assembler = assembler
        self.store = store
        self.max_results = max_results
        self.threshold = threshold
        self.max_context_length = max_context_length
        self.include_related_qa = include_related_qa

    async def retrieve_context(
        self,
        query: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        filters: Optional[SearchFilters] = None,
        max_context_length: Optional[int] = None,
    ) -> RAGContext:
        start_time = time.monotonic()
        try:
            if not query or not query.strip():
                raise ValueError("Query is required for RAG search")
            self.controller.require_ready()

            logger.info(f"Starting RAG search for: \"{query[:80]}\"")
            results = await self.search_engine.search(
                query,
                limit=limit if limit is not None else self.max_results,
                threshold=threshold if threshold is not None else self.threshold,
                filters=filters,
            )
            if self.include_related_qa:
                results = await self._with_related_qa(results)

            context = await self.assembler.build_context(
                query,
                results,
                max_context_length if max_context_length is not None else self.max_context_length,
            )
            duration_ms = (time.monotonic() - start_time) * 1000
            logger.info(
                f"RAG search finished in {duration_ms:.0f}ms: {len(results)} results, "
                f"success={context.success}"
            )
            return context

        except (MedicalRAGError, ValueError) as e:
            message = e.message if isinstance(e, MedicalRAGError) else str(e)
            logger.warning(f"RAG search failed: {e}")
            return RAGContext(text="", sources=[], success=False, error=message)
        except Exception as e:
            logger.error(f"RAG search failed after {(time.monotonic() - start_time) * 1000:.0f}ms: {e}", exc_info=True)
            return RAGContext(text="", sources=[], success=False, error=str(e))

    async def _with_related_qa(self, results: List[SearchResult]) -> List[SearchResult]:
        """Append Q&A pairs of matched documents; they carry the document's similarity."""
        document_results = [r for r in results if r.kind == RecordKind.DOCUMENT]
        if not document_results:
            return results

        related = await self.store.get_qa_by_documents([r.id for r in document_results])
        seen = {r.id for r in results if r.kind == RecordKind.QA}
        extended = list(results)
        for result in document_results:
            for qa in related.get(result.id, []):
                if qa.id in seen:
                    continue
                seen.add(qa.id)
                extended.append(SearchResult(record=qa, similarity=result.similarity))

        added = len(extended) - len(results)
        if added:
            logger.debug(f"Added {added} related Q&A pairs from matched documents")
        return extended
