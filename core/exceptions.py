# core/exceptions.py
"""Error taxonomy. Every failure in the core is one of these typed errors."""
from typing import Optional

from core.domain import ErrorCode


class MedicalRAGError(Exception):
    """Base error carrying a user-facing message and an error code"""

    error_code: ErrorCode = ErrorCode.SEARCH_FAILED

    def __init__(self, message: str, error_code: Optional[ErrorCode] = None):
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        super().__init__(message)

    def __str__(self):
        # Format used for logging and status payloads
        return f"[{self.error_code.value}] {self.message}"


class TransportError(MedicalRAGError):
    """Download I/O or network failure. Retry by starting the download again."""
    error_code = ErrorCode.TRANSPORT_FAILED


class DownloadInProgressError(MedicalRAGError):
    """A transfer is already running for the artifact slot"""
    error_code = ErrorCode.DOWNLOAD_IN_PROGRESS


class ValidationError(MedicalRAGError):
    """The local artifact is corrupt or incomplete and must be re-downloaded"""
    error_code = ErrorCode.INVALID_ARTIFACT


class NotReadyError(MedicalRAGError):
    """Search or embedding requested before the database/backend is ready"""
    error_code = ErrorCode.NOT_READY


class EmbeddingError(MedicalRAGError):
    """Embedding failed for a single request"""
    error_code = ErrorCode.EMBEDDING_FAILED


class EmbeddingQueueFullError(EmbeddingError):
    error_code = ErrorCode.QUEUE_FULL


class IndexUnavailableError(MedicalRAGError):
    """The prebuilt vector index could not serve the query (internal, triggers the scan)"""
    error_code = ErrorCode.INDEX_UNAVAILABLE


class SearchError(MedicalRAGError):
    """Both the index and the full scan failed"""
    error_code = ErrorCode.SEARCH_FAILED


class CompletionError(MedicalRAGError):
    error_code = ErrorCode.COMPLETION_FAILED
