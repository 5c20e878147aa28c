# infrastructure/vector_search.py
"""Nearest-neighbour search over stored documents and Q&A pairs"""
import logging
import math
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from config import settings
from core.domain import RecordKind, SearchFilters, SearchResult
from core.exceptions import IndexUnavailableError, MedicalRAGError, NotReadyError, SearchError
from core.interfaces import IMedicalStore, NeighborRow, VectorRow
from infrastructure.embedding_gate import EmbeddingGate

logger = logging.getLogger(settings.LOGGER_NAME)

ALL_KINDS: Tuple[RecordKind, ...] = (RecordKind.DOCUMENT, RecordKind.QA)


def distance_to_similarity(distance: Optional[float]) -> float:
    """
    Cosine distance [0, 2] -> similarity [-1, 1].

    Missing or NaN distances count as the worst possible similarity (-1).
    """
    if distance is None:
        return -1.0
    distance = float(distance)
    if math.isnan(distance) or math.isinf(distance):
        return -1.0
    return max(-1.0, min(1.0, 1.0 - distance))


def cosine_distances(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """
    Row-wise cosine distance (1 - cos) between matrix (N, D) and query (D,).

    Zero-length vectors give NaN.
    """
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    with np.errstate(divide="ignore", invalid="ignore"):
        similarity = (matrix @ query) / norms
    similarity = np.where(np.isfinite(similarity), np.clip(similarity, -1.0, 1.0), np.nan)
    return 1.0 - similarity


class VectorSearchEngine:
    """
    Scored, filtered similarity search.

    Primary path is the prebuilt vector index; when it raises or comes back
    empty, a brute-force cosine scan over every stored vector takes over with
    the same filters and limit. Results are sorted by similarity (desc) with the
    record id as tiebreak, and all satisfy similarity >= threshold.
    """

    def __init__(
        self,
        store: IMedicalStore,
        gate: EmbeddingGate,
        dimension: int = settings.EMBEDDING_DIMENSION,
        overfetch_factor: int = settings.INDEX_OVERFETCH_FACTOR,
        force_fallback: bool = False,
    ):
        self._store = store
        self._gate = gate
        self._dimension = dimension
        self._overfetch_factor = max(1, overfetch_factor)
        self.force_fallback = force_fallback

    async def search(
        self,
        query: str,
        limit: int = settings.SEARCH_LIMIT,
        threshold: float = settings.SIMILARITY_THRESHOLD,
        filters: Optional[SearchFilters] = None,
        kinds: Iterable[RecordKind] = ALL_KINDS,
    ) -> List[SearchResult]:
        """
        Embed the query and return the best matching records.

        Raises:
            NotReadyError: Database not open or embedding backend missing
            EmbeddingError: The query could not be embedded
            SearchError: Both the index and the full scan failed
        """
        if not self._store.is_open():
            raise NotReadyError("Database service is not ready")
        if not query or not query.strip():
            raise ValueError("Search query is required")

        query_vector = await self._gate.embed(query)
        return await self.search_by_vector(query_vector, limit, threshold, filters, kinds)

    async def search_by_vector(
        self,
        query_vector: Sequence[float],
        limit: int = settings.SEARCH_LIMIT,
        threshold: float = settings.SIMILARITY_THRESHOLD,
        filters: Optional[SearchFilters] = None,
        kinds: Iterable[RecordKind] = ALL_KINDS,
    ) -> List[SearchResult]:
        if limit <= 0:
            return []
        filter_values = filters.as_dict() if filters else {}

        scored: List[Tuple[str, RecordKind, float]] = []
        for kind in kinds:
            rows = await self.nearest_neighbors(kind, filter_values, query_vector, limit)
            for row in rows:
                similarity = distance_to_similarity(row.distance)
                if similarity >= threshold:
                    scored.append((row.id, kind, similarity))

        scored.sort(key=lambda item: (-item[2], item[0], item[1].value))
        scored = scored[:limit]

        results = await self._hydrate(scored)
        logger.info(
            f"Vector search returned {len(results)} results "
            f"(limit={limit}, threshold={threshold}, filters={filter_values or None})"
        )
        return results

    async def nearest_neighbors(
        self,
        kind: RecordKind,
        filters: Dict[str, Any],
        query_vector: Sequence[float],
        limit: int,
    ) -> List[NeighborRow]:
        """
        Top-`limit` rows of one table by ascending cosine distance (id breaks ties).

        Index first; full scan when the index errors, returns nothing, or (with
        filters) cannot prove it returned the true filtered top-`limit`.
        """
        if not self.force_fallback:
            k = limit * self._overfetch_factor if filters else limit
            try:
                rows = await self._store.index_top_k(kind, query_vector, k, filters)
            except IndexUnavailableError as e:
                logger.warning(f"Vector index failed for {kind.value}, falling back to full scan: {e}")
            else:
                if rows and (not filters or len(rows) >= limit):
                    return self._order(rows)[:limit]
                logger.warning(
                    f"Vector index returned {len(rows)} {kind.value} rows, falling back to full scan"
                )

        try:
            vector_rows = await self._store.scan_vectors(kind, filters)
        except MedicalRAGError:
            raise
        except Exception as e:
            logger.error(f"Full scan failed for {kind.value}: {e}")
            raise SearchError(f"Vector search failed for {kind.value}: {e}") from e

        rows = self._rank(vector_rows, query_vector, limit)
        logger.info(f"Fallback scan found {len(rows)} {kind.value} results")
        return rows

    async def get_stats(self) -> Dict[str, Any]:
        if not self._store.is_open():
            return {"document_count": 0, "qa_count": 0, "is_ready": False}
        documents, qa = await self._store.counts()
        return {"document_count": documents, "qa_count": qa, "is_ready": self._gate.is_ready()}

    # ============= Ranking =============

    def _rank(self, rows: List[VectorRow], query_vector: Sequence[float], limit: int) -> List[NeighborRow]:
        """Brute-force top-k by (distance, id). Rows without a D-length vector are skipped."""
        valid = [
            row for row in rows
            if row.embedding is not None and len(row.embedding) == self._dimension
        ]
        skipped = len(rows) - len(valid)
        if skipped:
            logger.debug(f"Skipped {skipped} rows without a {self._dimension}-d embedding")
        if not valid:
            return []

        matrix = np.vstack([np.asarray(row.embedding, dtype=np.float32) for row in valid])
        query = np.asarray(query_vector, dtype=np.float32).reshape(-1)
        if query.size != self._dimension:
            raise SearchError(f"Query vector has {query.size} dimensions, expected {self._dimension}")

        distances = cosine_distances(matrix, query)
        sort_keys = np.where(np.isnan(distances), np.inf, distances)

        # keep everything tied with the k-th best so the id tiebreak stays deterministic
        if len(valid) > limit:
            kth = np.partition(sort_keys, limit - 1)[limit - 1]
            candidates = np.nonzero(sort_keys <= kth)[0]
        else:
            candidates = np.arange(len(valid))

        ordered = sorted(candidates, key=lambda i: (sort_keys[i], valid[i].id))[:limit]
        return [
            NeighborRow(id=valid[i].id, distance=None if np.isnan(distances[i]) else float(distances[i]))
            for i in ordered
        ]

    @staticmethod
    def _order(rows: List[NeighborRow]) -> List[NeighborRow]:
        def key(row: NeighborRow):
            distance = row.distance
            if distance is None or math.isnan(float(distance)):
                return (math.inf, row.id)
            return (float(distance), row.id)
        return sorted(rows, key=key)

    async def _hydrate(self, scored: List[Tuple[str, RecordKind, float]]) -> List[SearchResult]:
        """Fetch the records for the final ids, one batch query per kind."""
        document_ids = [record_id for record_id, kind, _ in scored if kind == RecordKind.DOCUMENT]
        qa_ids = [record_id for record_id, kind, _ in scored if kind == RecordKind.QA]
        documents = await self._store.get_documents_by_ids(document_ids) if document_ids else {}
        qa_pairs = await self._store.get_qa_by_ids(qa_ids) if qa_ids else {}

        results: List[SearchResult] = []
        for record_id, kind, similarity in scored:
            record = documents.get(record_id) if kind == RecordKind.DOCUMENT else qa_pairs.get(record_id)
            if record is None:
                logger.warning(f"{kind.value} {record_id} vanished between ranking and lookup")
                continue
            results.append(SearchResult(record=record, similarity=similarity))
        return results
