# api/schemas.py
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from core.domain import DownloadState, LifecycleState, RecordKind


# ---------- Database lifecycle ----------

class ArtifactStatusResponse(BaseModel):
    exists: bool
    local_path: str
    file_name: str
    size_bytes: Optional[int] = None
    size_human: Optional[str] = None
    modified_at: Optional[datetime] = None
    is_valid: Optional[bool] = None


class DownloadProgressResponse(BaseModel):
    bytes_written: int
    bytes_expected: Optional[int] = None
    percentage: float = 0.0
    speed_bytes_per_sec: Optional[float] = None
    eta_seconds: Optional[float] = None
    speed_human: Optional[str] = None
    eta_human: Optional[str] = None


class DatabaseStatusResponse(BaseModel):
    state: LifecycleState
    download_state: DownloadState
    is_ready: bool
    error: Optional[str] = None
    artifact: ArtifactStatusResponse
    progress: Optional[DownloadProgressResponse] = None


class StatsResponse(BaseModel):
    document_count: int = 0
    qa_count: int = 0
    is_ready: bool = False


# ---------- Search / context ----------

class SearchFiltersModel(BaseModel):
    specialty: Optional[str] = None
    year: Optional[int] = None


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=2000)
    limit: Optional[int] = Field(default=None, ge=1, le=20)
    threshold: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    filters: Optional[SearchFiltersModel] = None


class ContextRequest(SearchRequest):
    max_context_length: Optional[int] = Field(default=None, ge=0)


class SearchResultItem(BaseModel):
    id: str
    type: RecordKind
    similarity: float
    title: Optional[str] = None
    content: Optional[str] = None
    question: Optional[str] = None
    answer: Optional[str] = None
    document_id: Optional[str] = None
    url: Optional[str] = None
    year: Optional[int] = None
    specialty: Optional[str] = None


class SearchResponse(BaseModel):
    status: str
    query: str
    results: List[SearchResultItem]
    total_results: int


class SourceItem(BaseModel):
    id: str
    title: str
    excerpt: str
    type: RecordKind
    similarity: Optional[float] = None
    url: Optional[str] = None
    year: Optional[int] = None
    specialty: Optional[str] = None


class ContextResponse(BaseModel):
    success: bool
    error: Optional[str] = None
    context: str
    truncated: bool = False
    sources: List[SourceItem]


# ---------- Chat ----------

class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(..., min_length=1)
    filters: Optional[SearchFiltersModel] = None


class ChatResponse(BaseModel):
    answer: str
    sources: List[SourceItem]
    context_used: bool
    context_error: Optional[str] = None
