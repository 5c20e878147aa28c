# core/domain.py
"""Shared enumerations and domain models used across the application."""
from enum import Enum

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Dict, Any, Optional, Union

# Dimension agreed between the embedding model and the stored vector index
EMBEDDING_DIMENSION = 384

# Appended to context text whenever it had to be cut to fit
TRUNCATION_NOTICE = "\n\n[Context truncated due to length...]"

# ============= Enums =============

class ErrorCode(str, Enum):
    """Error codes for user-facing error messages."""
    TRANSPORT_FAILED = "TRANSPORT_FAILED"
    DOWNLOAD_IN_PROGRESS = "DOWNLOAD_IN_PROGRESS"
    INVALID_ARTIFACT = "INVALID_ARTIFACT"
    NOT_READY = "NOT_READY"
    EMBEDDING_FAILED = "EMBEDDING_FAILED"
    QUEUE_FULL = "QUEUE_FULL"
    INDEX_UNAVAILABLE = "INDEX_UNAVAILABLE"
    SEARCH_FAILED = "SEARCH_FAILED"
    COMPLETION_FAILED = "COMPLETION_FAILED"


class DownloadState(str, Enum):
    """State of the single artifact transfer slot."""
    IDLE = "idle"
    DOWNLOADING = "downloading"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


class LifecycleState(str, Enum):
    """Application-visible database states."""
    CHECKING = "checking"
    READY = "ready"
    MISSING = "missing"
    DOWNLOADING = "downloading"
    PAUSED = "paused"
    ERROR = "error"


class RecordKind(str, Enum):
    """The two kinds of vector records held in the store."""
    DOCUMENT = "document"
    QA = "qa"


# ============= Artifact / Download Models =============

@dataclass
class ArtifactStatus:
    """Snapshot of the local database file. Recomputed on every read."""
    exists: bool
    local_path: str
    file_name: str
    size_bytes: Optional[int] = None
    modified_at: Optional[datetime] = None
    is_valid: Optional[bool] = None


@dataclass
class DownloadProgress:
    """One progress tick of a running transfer"""
    bytes_written: int
    bytes_expected: Optional[int] = None
    speed_bytes_per_sec: Optional[float] = None
    eta_seconds: Optional[float] = None

    @property
    def percentage(self) -> float:
        if not self.bytes_expected:
            return 0.0
        return min(100.0, max(0.0, self.bytes_written / self.bytes_expected * 100))


# ============= Record Models =============

@dataclass
class MedicalDocument:
    """Domain model for medical documents"""
    id: str
    title: str
    content: str
    embedding: Optional[List[float]] = None
    created_at: Optional[str] = None
    url: Optional[str] = None
    year: Optional[int] = None
    specialty: Optional[str] = None


@dataclass
class MedicalQA:
    """Domain model for Q&A pairs; document_id points at the owning document"""
    id: str
    question: str
    answer: str
    document_id: str
    embedding: Optional[List[float]] = None


VectorRecord = Union[MedicalDocument, MedicalQA]


@dataclass
class SearchFilters:
    """Optional equality filters applied on both the index and the scan path."""
    specialty: Optional[str] = None
    year: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in (("specialty", self.specialty), ("year", self.year)) if v is not None}

    def is_empty(self) -> bool:
        return not self.as_dict()


@dataclass
class SearchResult:
    """Domain model for search results. similarity is cosine, in [-1, 1]."""
    record: VectorRecord
    similarity: float

    @property
    def kind(self) -> RecordKind:
        return RecordKind.QA if isinstance(self.record, MedicalQA) else RecordKind.DOCUMENT

    @property
    def id(self) -> str:
        return self.record.id


# ============= RAG Models =============

@dataclass
class Source:
    """Citation-facing projection of a stored record"""
    id: str
    title: str
    excerpt: str
    type: RecordKind
    similarity: Optional[float] = None
    url: Optional[str] = None
    year: Optional[int] = None
    specialty: Optional[str] = None


@dataclass(frozen=True)
class RAGContext:
    """Prompt-ready context for one query. Built once, never mutated."""
    text: str
    sources: List[Source] = field(default_factory=list)
    success: bool = True
    error: Optional[str] = None

    @property
    def truncated(self) -> bool:
        return bool(self.text) and self.text.endswith(TRUNCATION_NOTICE)
