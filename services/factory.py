# services/factory.py
"""Composition root: builds every service once and hands them out to the API"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from config import Settings, settings as default_settings
from core.interfaces import ICompletionBackend, IEmbeddingBackend
from infrastructure.artifact_validator import SQLiteArtifactValidator
from infrastructure.completion_services import OllamaCompletionBackend
from infrastructure.context_assembler import ContextAssembler
from infrastructure.download_manager import DownloadManager
from infrastructure.embedding_gate import EmbeddingGate
from infrastructure.medical_store import MedicalStore
from infrastructure.vector_search import VectorSearchEngine
from services.chat_service import ChatService
from services.lifecycle_controller import LifecycleController
from services.rag_service import RAGService


@dataclass
class ServiceContainer:
    """Process-wide service instances, owned by the FastAPI app state"""
    settings: Settings
    validator: SQLiteArtifactValidator
    downloads: DownloadManager
    store: MedicalStore
    gate: EmbeddingGate
    controller: LifecycleController
    search_engine: VectorSearchEngine
    assembler: ContextAssembler
    rag_service: RAGService
    chat_service: ChatService

    async def aclose(self) -> None:
        await self.controller.pause_download()
        await self.gate.close()
        await self.store.close()


# Provider functions for each component
def get_embedding_backend(config: Settings = default_settings) -> IEmbeddingBackend:
    """Create embedding backend based on configuration (loads the model, blocking)."""
    from infrastructure.embedding_services import SentenceTransformerEmbedding
    return SentenceTransformerEmbedding(config.EMBEDDING_MODEL_NAME, config.EMBEDDING_DIMENSION)


def get_completion_backend(config: Settings = default_settings) -> ICompletionBackend:
    """Create completion backend based on configuration."""
    return OllamaCompletionBackend(
        base_url=config.LLM_BASE_URL,
        model=config.LLM_MODEL_NAME,
        timeout=config.REQUEST_TIMEOUT,
    )


def create_container(
    config: Settings = default_settings,
    embedding_backend: Optional[IEmbeddingBackend] = None,
    completion_backend: Optional[ICompletionBackend] = None,
    downloads: Optional[DownloadManager] = None,
) -> ServiceContainer:
    """
    Wire all services together.

    The embedding backend may be registered later (model loading is slow);
    until then the gate rejects requests with NotReadyError.
    """
    validator = SQLiteArtifactValidator(min_size_bytes=config.ARTIFACT_MIN_SIZE_BYTES)
    downloads = downloads or DownloadManager(
        validator=validator,
        chunk_size=config.DOWNLOAD_CHUNK_SIZE,
        progress_interval=config.DOWNLOAD_PROGRESS_INTERVAL_SEC,
        connect_timeout=config.DOWNLOAD_CONNECT_TIMEOUT_SEC,
        read_timeout=config.DOWNLOAD_READ_TIMEOUT_SEC,
    )
    store = MedicalStore()
    gate = EmbeddingGate(
        backend=embedding_backend,
        dimension=config.EMBEDDING_DIMENSION,
        max_queue_size=config.EMBEDDING_QUEUE_MAX_SIZE,
        timeout=config.EMBEDDING_TIMEOUT_SEC,
    )
    controller = LifecycleController(
        downloads=downloads,
        validator=validator,
        store=store,
        artifact_url=config.ARTIFACT_URL,
        artifact_path=config.ARTIFACT_PATH,
    )
    search_engine = VectorSearchEngine(
        store=store,
        gate=gate,
        dimension=config.EMBEDDING_DIMENSION,
        overfetch_factor=config.INDEX_OVERFETCH_FACTOR,
    )
    assembler = ContextAssembler(
        store=store,
        max_qa_passages=config.MAX_QA_PASSAGES,
        answer_excerpt_length=config.ANSWER_EXCERPT_LENGTH,
        question_excerpt_length=config.QUESTION_EXCERPT_LENGTH,
        document_excerpt_length=config.DOCUMENT_EXCERPT_LENGTH,
        source_excerpt_length=config.SOURCE_EXCERPT_LENGTH,
        quality_min_similarity=config.QUALITY_MIN_SIMILARITY,
    )
    rag_service = RAGService(
        controller=controller,
        search_engine=search_engine,
        assembler=assembler,
        store=store,
        max_results=config.MAX_RESULTS,
        threshold=config.SIMILARITY_THRESHOLD,
        max_context_length=config.MAX_CONTEXT_LENGTH,
        include_related_qa=config.INCLUDE_RELATED_QA,
    )
    chat_service = ChatService(
        rag_service=rag_service,
        completion=completion_backend or get_completion_backend(config),
    )
    return ServiceContainer(
        settings=config,
        validator=validator,
        downloads=downloads,
        store=store,
        gate=gate,
        controller=controller,
        search_engine=search_engine,
        assembler=assembler,
        rag_service=rag_service,
        chat_service=chat_service,
    )


# FastAPI dependency providers
def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_controller(request: Request) -> LifecycleController:
    return get_container(request).controller


def get_rag_service(request: Request) -> RAGService:
    return get_container(request).rag_service


def get_chat_service(request: Request) -> ChatService:
    return get_container(request).chat_service


def get_search_engine(request: Request) -> VectorSearchEngine:
    return get_container(request).search_engine
