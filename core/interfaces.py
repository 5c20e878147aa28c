# core/interfaces.py
"""Core interfaces for the medical knowledge store"""
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional, Sequence, Tuple
from dataclasses import dataclass

from core.domain import MedicalDocument, MedicalQA, RecordKind


@dataclass
class NeighborRow:
    """One candidate returned by the store: record id and cosine distance (may be None)"""
    id: str
    distance: Optional[float]


@dataclass
class VectorRow:
    """Raw stored vector for the full-scan path"""
    id: str
    embedding: Optional[List[float]]


# ============= Embedding Backend Interface =============
class IEmbeddingBackend(ABC):
    """
    Opaque `text -> fixed-length float vector` capability.

    Implementations may not support concurrent calls; the EmbeddingGate
    guarantees at most one call in flight.
    """

    @abstractmethod
    def is_ready(self) -> bool:
        """Whether the backend can serve embed() right now"""
        pass

    @abstractmethod
    def embed(self, text: str) -> List[float]:
        """Blocking single inference. Raise on failure."""
        pass


# ============= Completion Backend Interface =============
class ICompletionBackend(ABC):
    """Opaque text-generation capability"""

    @abstractmethod
    def complete(self, messages: List[Dict[str, str]]) -> str:
        """
        Generate a reply for an ordered list of role/content messages.

        Args:
            messages: [{"role": "system"|"user"|"assistant", "content": str}, ...]

        Returns:
            Generated text

        Raises:
            CompletionError: If the backend fails
        """
        pass


# ============= Store Interface =============
class IMedicalStore(ABC):
    """
    Read-mostly access to the downloaded medical database.

    Holds exactly one connection. Implementations: MedicalStore (SQLite/libSQL).
    """

    @abstractmethod
    def is_open(self) -> bool:
        pass

    @abstractmethod
    async def index_top_k(
        self,
        kind: RecordKind,
        query_vector: Sequence[float],
        k: int,
        filters: Dict[str, Any],
    ) -> List[NeighborRow]:
        """
        Query the prebuilt vector index. Rows come back ordered by distance.

        Raises:
            IndexUnavailableError: If the index (or the vector SQL functions) cannot serve the query
        """
        pass

    @abstractmethod
    async def scan_vectors(self, kind: RecordKind, filters: Dict[str, Any]) -> List[VectorRow]:
        """Return every stored vector of a kind matching the filters (fallback path)"""
        pass

    @abstractmethod
    async def get_documents_by_ids(self, ids: Sequence[str]) -> Dict[str, MedicalDocument]:
        """Batch lookup, one query for all ids"""
        pass

    @abstractmethod
    async def get_qa_by_ids(self, ids: Sequence[str]) -> Dict[str, MedicalQA]:
        pass

    @abstractmethod
    async def get_qa_by_documents(self, document_ids: Sequence[str]) -> Dict[str, List[MedicalQA]]:
        """Q&A pairs grouped by owning document id, one query for all ids"""
        pass

    @abstractmethod
    async def counts(self) -> Tuple[int, int]:
        """(document count, Q&A count)"""
        pass
