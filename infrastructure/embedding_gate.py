# infrastructure/embedding_gate.py
"""Serialises embedding requests against a single embedding backend"""
import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from config import settings
from core.exceptions import EmbeddingError, EmbeddingQueueFullError, MedicalRAGError, NotReadyError
from core.interfaces import IEmbeddingBackend

logger = logging.getLogger(settings.LOGGER_NAME)


@dataclass
class _EmbeddingRequest:
    text: str
    future: asyncio.Future


class EmbeddingGate:
    """
    Single-consumer FIFO in front of an IEmbeddingBackend.

    - Exactly one inference runs at a time; requests are served in arrival order
    - Each request resolves or rejects on its own; a failure never stalls the queue
    - max_queue_size=0 means unbounded, otherwise a full queue rejects with
      EmbeddingQueueFullError without enqueuing
    - timeout bounds how long a caller waits (queue + inference); a timed-out
      request is skipped if still queued, and never causes a second concurrent inference
    """

    def __init__(
        self,
        backend: Optional[IEmbeddingBackend] = None,
        dimension: int = settings.EMBEDDING_DIMENSION,
        max_queue_size: int = settings.EMBEDDING_QUEUE_MAX_SIZE,
        timeout: Optional[float] = settings.EMBEDDING_TIMEOUT_SEC,
    ):
        self._backend = backend
        self._dimension = dimension
        self._max_queue_size = max(0, max_queue_size)
        self._timeout = timeout
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

    def register_backend(self, backend: IEmbeddingBackend) -> None:
        self._backend = backend
        logger.info(f"Embedding backend registered: {type(backend).__name__}")

    def is_ready(self) -> bool:
        return self._backend is not None and self._backend.is_ready()

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue else 0

    async def embed(self, text: str) -> List[float]:
        """
        Queue text for embedding and wait for its vector.

        Raises:
            NotReadyError: No backend registered, or backend not ready (not enqueued)
            EmbeddingError: Blank text (not enqueued), or the inference failed
            EmbeddingQueueFullError: The bounded queue is full
        """
        if not self.is_ready():
            raise NotReadyError("Embedding model is not ready")
        if text is None or not text.strip():
            raise EmbeddingError("Text input is required for embedding")

        self._ensure_worker()
        future = asyncio.get_running_loop().create_future()
        try:
            self._queue.put_nowait(_EmbeddingRequest(text=text, future=future))
        except asyncio.QueueFull:
            raise EmbeddingQueueFullError(
                f"Embedding queue full ({self._max_queue_size} pending requests)"
            ) from None

        if self._timeout is None:
            return await future
        try:
            return await asyncio.wait_for(future, self._timeout)
        except asyncio.TimeoutError:
            raise EmbeddingError(f"Embedding timed out after {self._timeout}s") from None

    async def close(self) -> None:
        """Stop the consumer and reject everything still queued."""
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        if self._queue is not None:
            while not self._queue.empty():
                request = self._queue.get_nowait()
                if not request.future.done():
                    request.future.set_exception(NotReadyError("Embedding service shut down"))
            self._queue = None

    # ============= Consumer =============

    def _ensure_worker(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self._max_queue_size)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._consume(), name="embedding-gate")

    async def _consume(self) -> None:
        while True:
            request = await self._queue.get()
            try:
                if request.future.done():
                    # caller gave up while queued
                    continue
                try:
                    vector = await self._infer(request.text)
                except asyncio.CancelledError:
                    self._settle(request.future, error=NotReadyError("Embedding service shut down"))
                    raise
                except MedicalRAGError as e:
                    self._settle(request.future, error=e)
                except Exception as e:
                    logger.error(f"Failed to generate embedding: {e}")
                    self._settle(request.future, error=EmbeddingError(f"Failed to generate embedding: {e}"))
                else:
                    self._settle(request.future, result=vector)
            finally:
                self._queue.task_done()

    async def _infer(self, text: str) -> List[float]:
        backend = self._backend
        if backend is None or not backend.is_ready():
            raise NotReadyError("Embedding model is not ready")

        logger.debug(f"Generating embedding for: \"{text[:50]}{'...' if len(text) > 50 else ''}\"")
        raw = await asyncio.to_thread(backend.embed, text)
        vector = np.asarray(raw, dtype=np.float32).reshape(-1)

        if vector.size != self._dimension:
            raise EmbeddingError(
                f"Generated embedding has {vector.size} dimensions, expected {self._dimension}"
            )
        if not np.all(np.isfinite(vector)):
            raise EmbeddingError("Generated embedding contains non-finite values")
        return vector.tolist()

    @staticmethod
    def _settle(future: asyncio.Future, result=None, error: Optional[BaseException] = None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)
