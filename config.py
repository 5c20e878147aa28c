# config.py
"""Application configuration for the offline medical knowledge store"""
from pydantic import Field
from pydantic_settings import BaseSettings
from utils.common import get_log_file_path, get_project_root

class Settings(BaseSettings):
    """Application configuration"""

    # Logger configuration
    LOGGER_NAME: str = "medical_rag"
    LOG_FILE_PATH: str = get_log_file_path()

    # Remote artifact
    ARTIFACT_URL: str = "https://pub-c2fb3b24963f467199aa6f728b231e0f.r2.dev/miriad_medical_minlm.db"
    ARTIFACT_DIR: str = f"{get_project_root()}/data"
    ARTIFACT_FILENAME: str = "miriad_medical.db"

    # Validator size floor. 0 means "non-zero only"; the historical 1MB floor is off.
    ARTIFACT_MIN_SIZE_BYTES: int = 0

    # Download transport
    DOWNLOAD_CHUNK_SIZE: int = 1024 * 1024
    DOWNLOAD_PROGRESS_INTERVAL_SEC: float = 0.5
    DOWNLOAD_CONNECT_TIMEOUT_SEC: float = 15.0
    DOWNLOAD_READ_TIMEOUT_SEC: float = 60.0

    # Embedding model
    EMBEDDING_MODEL_NAME: str = "sentence-transformers/all-MiniLM-L6-v2"
    EMBEDDING_DIMENSION: int = 384
    EMBEDDING_QUEUE_MAX_SIZE: int = 0  # 0 = unbounded
    EMBEDDING_TIMEOUT_SEC: float = 30.0

    # Search quality controls
    SEARCH_LIMIT: int = 5
    SIMILARITY_THRESHOLD: float = 0.3
    INDEX_OVERFETCH_FACTOR: int = 4
    MAX_RESULTS: int = Field(default=5, ge=1, le=20)

    # Context assembly
    MAX_CONTEXT_LENGTH: int = 4000
    MAX_QA_PASSAGES: int = 10
    DOCUMENT_EXCERPT_LENGTH: int = 300
    ANSWER_EXCERPT_LENGTH: int = 200
    QUESTION_EXCERPT_LENGTH: int = 150
    SOURCE_EXCERPT_LENGTH: int = 100
    QUALITY_MIN_SIMILARITY: float = 0.2
    INCLUDE_RELATED_QA: bool = True

    # Completion backend
    LLM_BASE_URL: str = "http://localhost:11434"
    LLM_MODEL_NAME: str = "llama3.1:8b"
    REQUEST_TIMEOUT: int = 60

    # App metadata
    APP_TITLE: str = "Offline Medical Knowledge Store"
    APP_VERSION: str = "1.0.0"
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    @property
    def ARTIFACT_PATH(self) -> str:
        return f"{self.ARTIFACT_DIR}/{self.ARTIFACT_FILENAME}"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

settings = Settings()
