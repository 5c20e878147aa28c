# infrastructure/context_assembler.py
"""Turns ranked search results into a bounded, citation-ready context block"""
import logging
from typing import Dict, List, Optional

from config import settings
from core.domain import (
    MedicalDocument,
    MedicalQA,
    RAGContext,
    RecordKind,
    SearchResult,
    Source,
    TRUNCATION_NOTICE,
)
from core.interfaces import IMedicalStore
from utils.common import truncate_text

logger = logging.getLogger(settings.LOGGER_NAME)

CONTEXT_TEMPLATE = """CONTEXT: The following medical documents and Q&A passages are provided as reference.

DOCUMENTS:
{documents}

PASSAGES:
{passages}

Use this context to provide accurate medical information. When you rely on a passage, cite it by its number, e.g. [1].

USER QUESTION: {query}"""

NO_PASSAGES_PLACEHOLDER = "No relevant passages found."
NO_QUERY_PLACEHOLDER = "No question provided."
NO_QUALITY_RESULTS_ERROR = "No relevant medical information found for this query"


def has_quality_results(results: List[SearchResult], min_similarity: float = settings.QUALITY_MIN_SIMILARITY) -> bool:
    """
    At least one result, and either a document above the similarity floor or any Q&A at all.
    """
    if not results:
        return False
    return any(
        r.kind == RecordKind.QA or r.similarity >= min_similarity
        for r in results
    )


def bound_text(text: str, max_length: int) -> str:
    """Hard-cut text so that text + truncation marker fits in max_length."""
    if len(text) <= max_length:
        return text
    if max_length <= 0:
        return ""
    if max_length <= len(TRUNCATION_NOTICE):
        return TRUNCATION_NOTICE[:max_length]
    return text[:max_length - len(TRUNCATION_NOTICE)] + TRUNCATION_NOTICE


class ContextAssembler:
    """
    Builds the prompt context and the citation list for one query.

    Q&A answers are the numbered evidence ([1], [2], ...). Each cited answer
    contributes its owning document to `sources`, in first-citation order and
    once per document; owning documents are fetched in one batch lookup.
    """

    def __init__(
        self,
        store: IMedicalStore,
        max_qa_passages: int = settings.MAX_QA_PASSAGES,
        answer_excerpt_length: int = settings.ANSWER_EXCERPT_LENGTH,
        question_excerpt_length: int = settings.QUESTION_EXCERPT_LENGTH,
        document_excerpt_length: int = settings.DOCUMENT_EXCERPT_LENGTH,
        source_excerpt_length: int = settings.SOURCE_EXCERPT_LENGTH,
        quality_min_similarity: float = settings.QUALITY_MIN_SIMILARITY,
    ):
        self._store = store
        self.max_qa_passages = max_qa_passages
        self.answer_excerpt_length = answer_excerpt_length
        self.question_excerpt_length = question_excerpt_length
        self.document_excerpt_length = document_excerpt_length
        self.source_excerpt_length = source_excerpt_length
        self.quality_min_similarity = quality_min_similarity

    async def build_context(
        self,
        query: str,
        results: List[SearchResult],
        max_context_length: int = settings.MAX_CONTEXT_LENGTH,
    ) -> RAGContext:
        if not has_quality_results(results, self.quality_min_similarity):
            logger.info("No quality search results found, returning empty context")
            return RAGContext(text="", sources=[], success=False, error=NO_QUALITY_RESULTS_ERROR)

        # stable: equal similarities keep the incoming order
        ordered = sorted(results, key=lambda r: -r.similarity)
        document_results = [r for r in ordered if r.kind == RecordKind.DOCUMENT]
        passages = [r for r in ordered if r.kind == RecordKind.QA][:self.max_qa_passages]

        text = CONTEXT_TEMPLATE.format(
            documents=self._format_documents(document_results) or NO_PASSAGES_PLACEHOLDER,
            passages=self._format_passages(passages) or NO_PASSAGES_PLACEHOLDER,
            query=query.strip() if query and query.strip() else NO_QUERY_PLACEHOLDER,
        )
        bounded = bound_text(text, max_context_length)
        if len(bounded) < len(text):
            logger.warning(f"Context truncated from {len(text)} to {len(bounded)} characters")

        sources = await self._extract_sources(passages, document_results)
        logger.info(f"RAG context generated ({len(bounded)} chars, {len(sources)} sources)")
        return RAGContext(text=bounded, sources=sources, success=True)

    # ============= Formatting =============

    def _format_documents(self, document_results: List[SearchResult]) -> str:
        lines = []
        for result in document_results:
            document: MedicalDocument = result.record
            content = truncate_text(document.content, self.document_excerpt_length)
            url_text = f" (Source: {document.url})" if document.url else ""
            lines.append(f"- {document.title}: {content}{url_text} [{round(result.similarity * 100)}% match]")
        return "\n".join(lines)

    def _format_passages(self, passages: List[SearchResult]) -> str:
        lines = []
        for number, result in enumerate(passages, start=1):
            qa: MedicalQA = result.record
            question = truncate_text(qa.question, self.question_excerpt_length)
            answer = truncate_text(qa.answer, self.answer_excerpt_length)
            lines.append(f"[{number}] Q: {question} A: {answer}")
        return "\n".join(lines)

    @staticmethod
    def format_sources_for_display(sources: List[Source]) -> str:
        """Render sources as a markdown block appended to chat replies."""
        if not sources:
            return ""

        lines = []
        for source in sources:
            similarity = (
                f" ({round(source.similarity * 100)}% match)"
                if source.similarity is not None and source.similarity > 0 else ""
            )
            url = f" - {source.url}" if source.url else ""
            lines.append(f"• {source.title}{similarity}{url}")
        return "\n\n**Sources:**\n" + "\n".join(lines)

    # ============= Sources =============

    async def _extract_sources(
        self,
        passages: List[SearchResult],
        document_results: List[SearchResult],
    ) -> List[Source]:
        matched: Dict[str, SearchResult] = {r.id: r for r in document_results}

        cited_ids: List[str] = []
        for result in passages:
            document_id = result.record.document_id
            if document_id not in cited_ids:
                cited_ids.append(document_id)

        missing = [doc_id for doc_id in cited_ids if doc_id not in matched]
        fetched = await self._store.get_documents_by_ids(missing) if missing else {}

        sources: List[Source] = []
        seen = set()
        for result in passages:
            qa: MedicalQA = result.record
            if qa.document_id in seen:
                continue
            seen.add(qa.document_id)

            if qa.document_id in matched:
                hit = matched[qa.document_id]
                sources.append(self._document_source(hit.record, hit.similarity))
            elif qa.document_id in fetched:
                sources.append(self._document_source(fetched[qa.document_id], None))
            else:
                logger.debug(f"Document {qa.document_id} for Q&A {qa.id} not found, citing the Q&A itself")
                sources.append(self._qa_source(qa, result.similarity))

        # matched documents no answer cited
        for result in document_results:
            if result.id not in seen:
                seen.add(result.id)
                sources.append(self._document_source(result.record, result.similarity))
        return sources

    def _document_source(self, document: MedicalDocument, similarity: Optional[float]) -> Source:
        return Source(
            id=document.id,
            title=document.title,
            excerpt=truncate_text(document.content, self.source_excerpt_length),
            type=RecordKind.DOCUMENT,
            similarity=similarity,
            url=document.url,
            year=document.year,
            specialty=document.specialty,
        )

    def _qa_source(self, qa: MedicalQA, similarity: Optional[float]) -> Source:
        return Source(
            id=qa.id,
            title=f"Q&A: {truncate_text(qa.question, 80)}",
            excerpt=truncate_text(qa.answer, self.source_excerpt_length),
            type=RecordKind.QA,
            similarity=similarity,
        )
