# infrastructure/medical_store.py
"""SQLite/libSQL access to the downloaded medical database"""
import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from sqlalchemy import delete, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config import settings
from core.domain import MedicalDocument, MedicalQA, RecordKind
from core.exceptions import IndexUnavailableError, NotReadyError
from core.interfaces import IMedicalStore, NeighborRow, VectorRow
from database.models import Base, DocumentEntity, MedicalQAEntity

logger = logging.getLogger(settings.LOGGER_NAME)


# ============= Vector encoding =============

def encode_vector(values: Sequence[float]) -> bytes:
    """Serialize to the float32 little-endian blob layout used by libSQL vector columns."""
    return np.asarray(values, dtype="<f4").tobytes()


def decode_vector(raw: Any) -> Optional[np.ndarray]:
    """Decode a stored vector (float32 blob or JSON array text). None when unreadable."""
    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray, memoryview)):
        buf = bytes(raw)
        if not buf or len(buf) % 4:
            return None
        return np.frombuffer(buf, dtype="<f4")
    if isinstance(raw, str):
        try:
            return np.asarray(json.loads(raw), dtype=np.float32)
        except (ValueError, TypeError):
            return None
    return None


# ============= Table descriptions =============

FILTERABLE_COLUMNS = ("specialty", "year")


@dataclass(frozen=True)
class TableSpec:
    """How one record kind is laid out, indexed and filtered"""
    table: str
    index_name: str
    # Q&A rows are filtered through the attributes of their owning document
    via_document: bool = False

    def filter_clause(self, filters: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """Build ' AND ...' SQL plus bind params for equality filters."""
        if not filters:
            return "", {}
        unknown = set(filters) - set(FILTERABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Unsupported filter(s): {sorted(unknown)}")
        params = {f"f_{key}": value for key, value in filters.items()}
        conditions = [f"{key} = :f_{key}" for key in filters]
        if self.via_document:
            clause = " AND t.document_id IN (SELECT id FROM documents WHERE " + " AND ".join(conditions) + ")"
        else:
            clause = "".join(f" AND t.{condition}" for condition in conditions)
        return clause, params


TABLE_SPECS: Dict[RecordKind, TableSpec] = {
    RecordKind.DOCUMENT: TableSpec(
        table="documents", index_name="documents_vector_idx",
    ),
    RecordKind.QA: TableSpec(
        table="medical_qa", index_name="medical_qa_vector_idx",
        via_document=True,
    ),
}


class MedicalStore(IMedicalStore):
    """
    Single-connection async store over the downloaded database file.

    Key points:
    - Exactly one connection (StaticPool) is held for the process
    - One asyncio.Lock serialises every read against open/close/reload, so a
      freshly downloaded artifact is only swapped in between queries
    - Vector columns are read with raw SQL (blob or JSON); ORM lookups defer them
    """

    def __init__(self):
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self._path: Optional[Path] = None
        self._lock = asyncio.Lock()

    # ============= Connection lifecycle =============

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def is_open(self) -> bool:
        return self._engine is not None

    async def open(self, path: Union[str, Path]) -> None:
        """Open (or re-open) the database file at path."""
        async with self._lock:
            await self._close_locked()
            await self._open_locked(Path(path))

    async def reload(self, path: Optional[Union[str, Path]] = None) -> None:
        """Swap to a new file (or re-open the current one) once in-flight reads finish."""
        target = Path(path) if path is not None else self._path
        if target is None:
            raise NotReadyError("Database not initialized")
        async with self._lock:
            await self._close_locked()
            await self._open_locked(target)

    async def close(self) -> None:
        async with self._lock:
            await self._close_locked()

    async def _open_locked(self, path: Path) -> None:
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{path}",
            echo=False,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            await engine.dispose()
            raise
        self._engine = engine
        self._session_factory = async_sessionmaker(engine, expire_on_commit=False)
        self._path = path
        logger.info(f"Opened medical database at {path}")

    async def _close_locked(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            logger.info(f"Closed medical database at {self._path}")
        self._engine = None
        self._session_factory = None

    def _require_open(self) -> None:
        if self._engine is None:
            raise NotReadyError("Database not initialized")

    # ============= Schema / writes =============

    async def create_schema(self) -> None:
        """Create the documents / medical_qa tables (used when seeding a store)."""
        async with self._lock:
            self._require_open()
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

    async def add_document(self, document: MedicalDocument) -> None:
        if not document.id or not document.title or document.content is None:
            raise ValueError("Document ID, title and content are required")
        async with self._lock:
            self._require_open()
            async with self._session_factory() as session:
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
                await session.commit()

    async def add_qa(self, qa: MedicalQA) -> None:
        if not qa.id or not qa.question or not qa.document_id:
            raise ValueError("Q&A ID, question and document_id are required")
        async with self._lock:
            self._require_open()
            async with self._session_factory() as session:
                session.add(MedicalQAEntity(
                    id=qa.id,
                    question=qa.question,
                    answer=qa.answer,
                    vector=encode_vector(qa.embedding) if qa.embedding is not None else None,
                    document_id=qa.document_id,
                ))
                await session.commit()

    async def delete_document(self, document_id: str) -> bool:
        """Delete a document and the Q&A pairs that belong to it."""
        async with self._lock:
            self._require_open()
            async with self._session_factory() as session:
                try:
                    await session.execute(delete(MedicalQAEntity).where(MedicalQAEntity.document_id == document_id))
                    result = await session.execute(delete(DocumentEntity).where(DocumentEntity.id == document_id))
                    await session.commit()
                    return result.rowcount > 0
                except SQLAlchemyError as e:
                    await session.rollback()
                    logger.error(f"Failed to delete document {document_id}: {e}")
                    raise

    async def delete_qa(self, qa_id: str) -> bool:
        async with self._lock:
            self._require_open()
            async with self._session_factory() as session:
                result = await session.execute(delete(MedicalQAEntity).where(MedicalQAEntity.id == qa_id))
                await session.commit()
                return result.rowcount > 0

    # ============= Lookups =============

    async def counts(self) -> Tuple[int, int]:
        async with self._lock:
            self._require_open()
            async with self._session_factory() as session:
                documents = await session.scalar(select(func.count()).select_from(DocumentEntity))
                qa = await session.scalar(select(func.count()).select_from(MedicalQAEntity))
                return int(documents or 0), int(qa or 0)

    async def count_documents(self) -> int:
        return (await self.counts())[0]

    async def count_qa(self) -> int:
        return (await self.counts())[1]

    async def get_documents_by_ids(self, ids: Sequence[str]) -> Dict[str, MedicalDocument]:
        if not ids:
            return {}
        async with self._lock:
            self._require_open()
            async with self._session_factory() as session:
                result = await session.execute(select(DocumentEntity).where(DocumentEntity.id.in_(list(ids))))
                return {row.id: self._document_to_domain(row) for row in result.scalars().all()}

    async def get_qa_by_ids(self, ids: Sequence[str]) -> Dict[str, MedicalQA]:
        if not ids:
            return {}
        async with self._lock:
            self._require_open()
            async with self._session_factory() as session:
                result = await session.execute(select(MedicalQAEntity).where(MedicalQAEntity.id.in_(list(ids))))
                return {row.id: self._qa_to_domain(row) for row in result.scalars().all()}

    async def get_qa_by_documents(self, document_ids: Sequence[str]) -> Dict[str, List[MedicalQA]]:
        if not document_ids:
            return {}
        async with self._lock:
            self._require_open()
            async with self._session_factory() as session:
                result = await session.execute(
                    select(MedicalQAEntity)
                    .where(MedicalQAEntity.document_id.in_(list(document_ids)))
                    .order_by(MedicalQAEntity.id)
                )
                grouped: Dict[str, List[MedicalQA]] = {}
                for row in result.scalars().all():
                    grouped.setdefault(row.document_id, []).append(self._qa_to_domain(row))
                return grouped

    # ============= Vector queries =============

    async def index_top_k(
        self,
        kind: RecordKind,
        query_vector: Sequence[float],
        k: int,
        filters: Dict[str, Any],
    ) -> List[NeighborRow]:
        """Nearest neighbours through the libSQL vector index (vector_top_k)."""
        spec = TABLE_SPECS[kind]
        where, params = spec.filter_clause(filters)
        sql = (
            f"SELECT t.id AS id, vector_distance_cos(t.vector, vector32(:query)) AS distance "
            f"FROM vector_top_k('{spec.index_name}', vector32(:query), {int(k)}) AS vtk "
            f"JOIN {spec.table} t ON t.rowid = vtk.id "
            f"WHERE 1=1{where} "
            f"ORDER BY distance ASC, t.id ASC"
        )
        params["query"] = json.dumps([float(v) for v in query_vector])

        async with self._lock:
            self._require_open()
            try:
                async with self._engine.connect() as conn:
                    result = await conn.execute(text(sql), params)
                    rows = result.fetchall()
            except SQLAlchemyError as e:
                raise IndexUnavailableError(f"vector index {spec.index_name} unavailable: {e}") from e
        return [NeighborRow(id=row.id, distance=row.distance) for row in rows]

    async def scan_vectors(self, kind: RecordKind, filters: Dict[str, Any]) -> List[VectorRow]:
        """Every stored vector of a kind matching the filters, for the brute-force path."""
        spec = TABLE_SPECS[kind]
        where, params = spec.filter_clause(filters)
        sql = f"SELECT t.id AS id, t.vector AS vector FROM {spec.table} t WHERE t.vector IS NOT NULL{where}"

        async with self._lock:
            self._require_open()
            async with self._engine.connect() as conn:
                result = await conn.execute(text(sql), params)
                rows = result.fetchall()
        return [VectorRow(id=row.id, embedding=decode_vector(row.vector)) for row in rows]

    # ============= Mapping =============

    @staticmethod
    def _document_to_domain(row: DocumentEntity) -> MedicalDocument:
        return MedicalDocument(
            id=row.id,
            title=row.title,
            content=row.content,
            created_at=row.created_at,
            url=row.url,
            year=row.year,
            specialty=row.specialty,
        )

    @staticmethod
    def _qa_to_domain(row: MedicalQAEntity) -> MedicalQA:
        return MedicalQA(
            id=row.id,
            question=row.question,
            answer=row.answer,
            document_id=row.document_id,
        )
