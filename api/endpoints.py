# api/endpoints.py
"""
API endpoints for the offline medical knowledge store.

Database lifecycle actions (download, pause, resume, cancel, reset, refresh),
vector search, RAG context retrieval and grounded chat.
"""
import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from config import settings
from core.domain import MedicalQA, SearchFilters, SearchResult, Source
from core.exceptions import (
    DownloadInProgressError,
    EmbeddingQueueFullError,
    MedicalRAGError,
    NotReadyError,
)
from infrastructure.vector_search import VectorSearchEngine
from services.chat_service import ChatService
from services.factory import get_chat_service, get_controller, get_rag_service, get_search_engine
from services.lifecycle_controller import LifecycleController
from services.rag_service import RAGService
from utils.common import format_bytes, format_time
from api.schemas import (
    ArtifactStatusResponse,
    ChatRequest,
    ChatResponse,
    ContextRequest,
    ContextResponse,
    DatabaseStatusResponse,
    DownloadProgressResponse,
    SearchFiltersModel,
    SearchRequest,
    SearchResponse,
    SearchResultItem,
    SourceItem,
    StatsResponse,
)

logger = logging.getLogger(settings.LOGGER_NAME)

router = APIRouter()


# ---------- Helpers ----------
def _http_error(e: Exception) -> HTTPException:
    """Map the error taxonomy onto HTTP status codes."""
    if isinstance(e, DownloadInProgressError):
        return HTTPException(status_code=409, detail=e.message)
    if isinstance(e, (NotReadyError, EmbeddingQueueFullError)):
        return HTTPException(status_code=503, detail=e.message)
    if isinstance(e, ValueError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, MedicalRAGError):
        return HTTPException(status_code=500, detail=e.message)
    logger.error(f"Unexpected API error: {e}", exc_info=True)
    return HTTPException(status_code=500, detail="Internal server error")


def _to_filters(model: Optional[SearchFiltersModel]) -> Optional[SearchFilters]:
    if model is None:
        return None
    filters = SearchFilters(specialty=model.specialty, year=model.year)
    return None if filters.is_empty() else filters


def _status_response(controller: LifecycleController) -> DatabaseStatusResponse:
    snapshot = controller.snapshot()
    artifact = snapshot.artifact
    progress = None
    if snapshot.progress is not None:
        p = snapshot.progress
        progress = DownloadProgressResponse(
            bytes_written=p.bytes_written,
            bytes_expected=p.bytes_expected,
            percentage=round(p.percentage, 2),
            speed_bytes_per_sec=p.speed_bytes_per_sec,
            eta_seconds=p.eta_seconds,
            speed_human=f"{format_bytes(int(p.speed_bytes_per_sec))}/s" if p.speed_bytes_per_sec else None,
            eta_human=format_time(p.eta_seconds) if p.eta_seconds is not None else None,
        )
    return DatabaseStatusResponse(
        state=snapshot.state,
        download_state=snapshot.download_state,
        is_ready=snapshot.is_ready,
        error=snapshot.error,
        artifact=ArtifactStatusResponse(
            **asdict(artifact),
            size_human=format_bytes(artifact.size_bytes) if artifact.size_bytes is not None else None,
        ),
        progress=progress,
    )


def _source_item(source: Source) -> SourceItem:
    return SourceItem(**asdict(source))


def _result_item(result: SearchResult) -> SearchResultItem:
    record = result.record
    if isinstance(record, MedicalQA):
        return SearchResultItem(
            id=record.id,
            type=result.kind,
            similarity=round(result.similarity, 4),
            question=record.question,
            answer=record.answer,
            document_id=record.document_id,
        )
    return SearchResultItem(
        id=record.id,
        type=result.kind,
        similarity=round(result.similarity, 4),
        title=record.title,
        content=record.content,
        url=record.url,
        year=record.year,
        specialty=record.specialty,
    )


# ---------- Database lifecycle ----------
@router.get("/database/status", response_model=DatabaseStatusResponse)
async def database_status(controller: LifecycleController = Depends(get_controller)) -> DatabaseStatusResponse:
    await controller.refresh_status()
    return _status_response(controller)


@router.post("/database/download", response_model=DatabaseStatusResponse)
async def start_download(controller: LifecycleController = Depends(get_controller)) -> DatabaseStatusResponse:
    try:
        await controller.start_download()
    except MedicalRAGError as e:
        raise _http_error(e)
    return _status_response(controller)


@router.post("/database/pause", response_model=DatabaseStatusResponse)
async def pause_download(controller: LifecycleController = Depends(get_controller)) -> DatabaseStatusResponse:
    await controller.pause_download()
    return _status_response(controller)


@router.post("/database/resume", response_model=DatabaseStatusResponse)
async def resume_download(controller: LifecycleController = Depends(get_controller)) -> DatabaseStatusResponse:
    try:
        await controller.resume_download()
    except MedicalRAGError as e:
        raise _http_error(e)
    return _status_response(controller)


@router.post("/database/cancel", response_model=DatabaseStatusResponse)
async def cancel_download(controller: LifecycleController = Depends(get_controller)) -> DatabaseStatusResponse:
    await controller.cancel_download()
    return _status_response(controller)


@router.post("/database/reset", response_model=DatabaseStatusResponse)
async def reset_and_download(controller: LifecycleController = Depends(get_controller)) -> DatabaseStatusResponse:
    try:
        await controller.reset_and_download()
    except MedicalRAGError as e:
        raise _http_error(e)
    return _status_response(controller)


@router.post("/database/refresh", response_model=DatabaseStatusResponse)
async def refresh_database(controller: LifecycleController = Depends(get_controller)) -> DatabaseStatusResponse:
    """Clear the last error and re-run the check (re-validates the local file)."""
    controller.clear_error()
    await controller.check()
    return _status_response(controller)


@router.get("/database/stats", response_model=StatsResponse)
async def database_stats(search_engine: VectorSearchEngine = Depends(get_search_engine)) -> StatsResponse:
    try:
        return StatsResponse(**await search_engine.get_stats())
    except Exception as e:
        raise _http_error(e)


# ---------- Search ----------
@router.post("/search", response_model=SearchResponse)
async def search_endpoint(
    search_request: SearchRequest,
    rag_service: RAGService = Depends(get_rag_service),
) -> SearchResponse:
    try:
        rag_service.controller.require_ready()
        results = await rag_service.search_engine.search(
            search_request.query,
            limit=search_request.limit or rag_service.max_results,
            threshold=search_request.threshold if search_request.threshold is not None else rag_service.threshold,
            filters=_to_filters(search_request.filters),
        )
    except (MedicalRAGError, ValueError) as e:
        raise _http_error(e)

    items = [_result_item(result) for result in results]
    return SearchResponse(
        status="success",
        query=search_request.query,
        results=items,
        total_results=len(items),
    )


@router.post("/context", response_model=ContextResponse)
async def context_endpoint(
    context_request: ContextRequest,
    rag_service: RAGService = Depends(get_rag_service),
) -> ContextResponse:
    context = await rag_service.retrieve_context(
        context_request.query,
        limit=context_request.limit,
        threshold=context_request.threshold,
        filters=_to_filters(context_request.filters),
        max_context_length=context_request.max_context_length,
    )
    return ContextResponse(
        success=context.success,
        error=context.error,
        context=context.text,
        truncated=context.truncated,
        sources=[_source_item(source) for source in context.sources],
    )


# ---------- Chat ----------
@router.post("/chat", response_model=ChatResponse)
async def chat_endpoint(
    chat_request: ChatRequest,
    chat_service: ChatService = Depends(get_chat_service),
) -> ChatResponse:
    try:
        answer = await chat_service.answer(
            [message.model_dump() for message in chat_request.messages],
            filters=_to_filters(chat_request.filters),
        )
    except (MedicalRAGError, ValueError) as e:
        raise _http_error(e)

    return ChatResponse(
        answer=answer.text,
        sources=[_source_item(source) for source in answer.sources],
        context_used=answer.context_used,
        context_error=answer.context_error,
    )
