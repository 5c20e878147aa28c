# infrastructure/embedding_services.py
"""Query embeddings from the same MiniLM model the stored vectors were built with"""
import logging
from typing import List, Optional

import numpy as np
from sentence_transformers import SentenceTransformer

from config import settings
from core.interfaces import IEmbeddingBackend

logger = logging.getLogger(settings.LOGGER_NAME)


class SentenceTransformerEmbedding(IEmbeddingBackend):
    """
    Blocking sentence-transformer backend returning unit-length vectors.

    Not safe for concurrent calls; the EmbeddingGate serializes them and runs
    each one in a worker thread.
    """

    _model: Optional[SentenceTransformer] = None  # shared across instances
    _model_name: Optional[str] = None

    def __init__(
        self,
        model_name: str = settings.EMBEDDING_MODEL_NAME,
        dimension: int = settings.EMBEDDING_DIMENSION,
    ):
        self.model = self._load_model(model_name)
        self.dimension = dimension

        model_dimension = self.model.get_sentence_embedding_dimension()
        if model_dimension is not None and model_dimension != dimension:
            raise ValueError(
                f"Embedding model {model_name} produces {model_dimension}-d vectors, "
                f"but the database index expects {dimension}"
            )

    @classmethod
    def _load_model(cls, model_name: str) -> SentenceTransformer:
        if cls._model is not None and cls._model_name == model_name:
            return cls._model

        try:
            cls._model = SentenceTransformer(model_name, local_files_only=True)
            logger.info(f"Loaded embedding model {model_name} from local cache")
        except Exception as e:
            logger.warning(f"Embedding model {model_name} not cached, downloading it ({e})")
            cls._model = SentenceTransformer(model_name)
            logger.info(f"Downloaded and loaded embedding model {model_name}")
        cls._model_name = model_name
        return cls._model

    def is_ready(self) -> bool:
        return self.model is not None

    def embed(self, text: str) -> List[float]:
        vector = np.asarray(self.model.encode(text, convert_to_tensor=False), dtype="float32").reshape(-1)
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector = vector / norm
        return vector.tolist()
