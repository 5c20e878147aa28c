# tests/conftest.py
"""Shared fixtures and fakes: embedding backend, HTTP session, seeded databases"""
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pytest
import requests
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from config import Settings
from core.domain import EMBEDDING_DIMENSION, MedicalDocument, MedicalQA
from core.interfaces import ICompletionBackend, IEmbeddingBackend
from database.models import Base, DocumentEntity, MedicalQAEntity
from infrastructure.artifact_validator import SQLITE_MAGIC_HEADER
from infrastructure.medical_store import MedicalStore, encode_vector


# ── Vectors ───────────────────────────────────────────────────────────────────

def make_vector(*head: float, dimension: int = EMBEDDING_DIMENSION) -> List[float]:
    """A D-length vector whose first components are `head`, the rest zero."""
    vector = np.zeros(dimension, dtype=np.float32)
    vector[:len(head)] = head
    return vector.tolist()


def basis(index: int, dimension: int = EMBEDDING_DIMENSION) -> List[float]:
    vector = np.zeros(dimension, dtype=np.float32)
    vector[index] = 1.0
    return vector.tolist()


# ── Embedding backend ─────────────────────────────────────────────────────────

class FakeEmbeddingBackend(IEmbeddingBackend):
    """
    Deterministic text -> vector lookup.

    - `vectors` maps exact texts to vectors; unknown texts get `default`
    - texts in `fail_on` raise RuntimeError
    - `release` (threading.Event), when given, blocks each call until set
    - records call order and the highest number of concurrent calls
    """

    def __init__(
        self,
        vectors: Optional[Dict[str, List[float]]] = None,
        default: Optional[List[float]] = None,
        fail_on: Iterable[str] = (),
        ready: bool = True,
        release: Optional[threading.Event] = None,
    ):
        self.vectors = dict(vectors or {})
        self.default = default if default is not None else basis(0)
        self.fail_on = set(fail_on)
        self.ready = ready
        self.release = release
        self.calls: List[str] = []
        self.started = threading.Event()
        self.max_concurrency = 0
        self._active = 0
        self._lock = threading.Lock()

    def is_ready(self) -> bool:
        return self.ready

    def embed(self, text: str) -> List[float]:
        with self._lock:
            self._active += 1
            self.max_concurrency = max(self.max_concurrency, self._active)
            self.calls.append(text)
        self.started.set()
        try:
            if self.release is not None:
                self.release.wait(timeout=5)
            if text in self.fail_on:
                raise RuntimeError(f"model failure on {text!r}")
            return list(self.vectors.get(text, self.default))
        finally:
            with self._lock:
                self._active -= 1


class FakeCompletionBackend(ICompletionBackend):
    def __init__(self, reply: str = "Metformin is the usual first-line therapy [1].", error: Exception = None):
        self.reply = reply
        self.error = error
        self.received: List[List[Dict[str, str]]] = []

    def complete(self, messages):
        self.received.append(list(messages))
        if self.error is not None:
            raise self.error
        return self.reply


# ── HTTP transport ────────────────────────────────────────────────────────────

def sqlite_payload(size: int, seed: int = 7) -> bytes:
    """size bytes starting with the SQLite magic header, the rest pseudo-random."""
    rng = np.random.default_rng(seed)
    body = rng.integers(0, 256, size=max(0, size - len(SQLITE_MAGIC_HEADER)), dtype=np.uint8).tobytes()
    return (SQLITE_MAGIC_HEADER + body)[:size]


class FakeResponse:
    def __init__(
        self,
        status_code: int,
        body: bytes = b"",
        headers: Optional[Dict[str, str]] = None,
        fail_after: Optional[int] = None,
        release: Optional[threading.Event] = None,
        hold_at_end: Optional[threading.Event] = None,
    ):
        self.status_code = status_code
        self.body = body
        self.headers = headers or {}
        self.fail_after = fail_after
        self.release = release
        self.hold_at_end = hold_at_end
        self.closed = False

    def iter_content(self, chunk_size: int = 1):
        position = 0
        while position < len(self.body):
            if self.release is not None:
                self.release.wait(timeout=5)
            if self.fail_after is not None and position >= self.fail_after:
                raise requests.exceptions.ConnectionError("connection reset by peer")
            end = min(position + chunk_size, len(self.body))
            if self.fail_after is not None:
                end = min(end, max(self.fail_after, position + 1))
            yield self.body[position:end]
            position = end
        if self.hold_at_end is not None:
            self.hold_at_end.wait(timeout=5)

    def close(self):
        self.closed = True


class FakeSession:
    """
    Range-aware stand-in for requests.Session serving one payload.

    - `fail_after` is a list of body offsets, one per request, at which the
      stream raises ConnectionError (None = no failure)
    - `status` forces every response to that status code
    - `honor_range=False` answers ranged requests with a full 200
    - `short_by` drops that many bytes from the end of each body while still
      announcing the full Content-Length
    - `hold_at_end` blocks the stream after the last chunk until it is set
    """

    def __init__(
        self,
        payload: bytes,
        status: Optional[int] = None,
        honor_range: bool = True,
        fail_after: Optional[List[Optional[int]]] = None,
        short_by: int = 0,
        release: Optional[threading.Event] = None,
        hold_at_end: Optional[threading.Event] = None,
    ):
        self.payload = payload
        self.status = status
        self.honor_range = honor_range
        self.fail_after = list(fail_after or [])
        self.short_by = short_by
        self.release = release
        self.hold_at_end = hold_at_end
        self.requests: List[Dict[str, str]] = []

    def get(self, url, headers=None, stream=False, timeout=None):
        headers = dict(headers or {})
        self.requests.append(headers)
        fail_after = self.fail_after.pop(0) if self.fail_after else None
        total = len(self.payload)

        if self.status is not None:
            return FakeResponse(self.status, b"error page")

        range_header = headers.get("Range")
        if range_header and self.honor_range:
            start = int(range_header.split("=")[1].rstrip("-"))
            if start >= total:
                return FakeResponse(416, b"", {"Content-Range": f"bytes */{total}"})
            body = self.payload[start:]
            response_headers = {
                "Content-Range": f"bytes {start}-{total - 1}/{total}",
                "Content-Length": str(len(body)),
            }
            status = 206
        else:
            body = self.payload
            response_headers = {"Content-Length": str(total)}
            status = 200

        if self.short_by:
            body = body[:max(0, len(body) - self.short_by)]
        return FakeResponse(status, body, response_headers, fail_after=fail_after, release=self.release, hold_at_end=self.hold_at_end)


# ── Databases ─────────────────────────────────────────────────────────────────

def seed_database(path: Path, documents: Sequence[MedicalDocument] = (), qa_pairs: Sequence[MedicalQA] = ()) -> Path:
    """Create a database file with the documents / medical_qa schema (sync SQLAlchemy)."""
    engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        for document in documents:
            session.add(DocumentEntity(
                id=document.id,
                title=document.title,
                content=document.content,
                vector=encode_vector(document.embedding) if document.embedding is not None else None,
                created_at=document.created_at,
                url=document.url,
                year=document.year,
                specialty=document.specialty,
            ))
        for qa in qa_pairs:
            session.add(MedicalQAEntity(
                id=qa.id,
                question=qa.question,
                answer=qa.answer,
                vector=encode_vector(qa.embedding) if qa.embedding is not None else None,
                document_id=qa.document_id,
            ))
        session.commit()
    engine.dispose()
    return path


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "data" / "medical.db"


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        ARTIFACT_URL="https://example.invalid/medical.db",
        ARTIFACT_DIR=str(tmp_path / "data"),
        ARTIFACT_FILENAME="medical.db",
        LOG_FILE_PATH=str(tmp_path / "log" / "test.log"),
        DOWNLOAD_CHUNK_SIZE=64 * 1024,
        DOWNLOAD_PROGRESS_INTERVAL_SEC=0.0,
        EMBEDDING_TIMEOUT_SEC=5.0,
    )


@pytest.fixture
async def open_store():
    """Factory: seed a database at a path and return an opened MedicalStore."""
    stores: List[MedicalStore] = []

    async def _open(path: Path, documents=(), qa_pairs=()) -> MedicalStore:
        path.parent.mkdir(parents=True, exist_ok=True)
        seed_database(path, documents, qa_pairs)
        store = MedicalStore()
        await store.open(path)
        stores.append(store)
        return store

    yield _open
    for store in stores:
        await store.close()
