# tests/test_medical_store.py

import numpy as np
import pytest

from core.domain import MedicalDocument, MedicalQA, RecordKind
from core.exceptions import IndexUnavailableError, NotReadyError
from infrastructure.medical_store import MedicalStore, decode_vector, encode_vector
from tests.conftest import basis, make_vector, seed_database


def _doc(doc_id, specialty=None, year=None, embedding=None):
    return MedicalDocument(
        id=doc_id,
        title=f"Title {doc_id}",
        content=f"Content of {doc_id}",
        embedding=embedding,
        specialty=specialty,
        year=year,
    )


# ── Encoding ──────────────────────────────────────────────────────────────────

def test_vector_blob_is_float32_little_endian():
    blob = encode_vector([1.0, -2.5])
    assert blob == np.array([1.0, -2.5], dtype="<f4").tobytes()
    assert decode_vector(blob).tolist() == [1.0, -2.5]


def test_decode_accepts_json_text():
    assert decode_vector("[0.5, 0.25]").tolist() == [0.5, 0.25]


@pytest.mark.parametrize("raw", [None, b"", b"\x00\x01\x02", "not json", 42])
def test_decode_unreadable_returns_none(raw):
    assert decode_vector(raw) is None


# ── Lifecycle ─────────────────────────────────────────────────────────────────

async def test_queries_before_open_raise_not_ready():
    store = MedicalStore()
    assert store.is_open() is False
    with pytest.raises(NotReadyError):
        await store.counts()
    with pytest.raises(NotReadyError):
        await store.reload()


async def test_write_and_lookup_roundtrip(tmp_path):
    store = MedicalStore()
    await store.open(tmp_path / "store.db")
    await store.create_schema()

    await store.add_document(_doc("d1", "cardiology", 2020, basis(0)))
    await store.add_document(_doc("d2", "neurology", 2021))
    await store.add_qa(MedicalQA(id="q1", question="Q1?", answer="A1", document_id="d1", embedding=basis(1)))
    await store.add_qa(MedicalQA(id="q2", question="Q2?", answer="A2", document_id="d1"))

    assert await store.counts() == (2, 2)
    assert await store.count_documents() == 2
    assert await store.count_qa() == 2

    documents = await store.get_documents_by_ids(["d1", "d2", "missing"])
    assert set(documents) == {"d1", "d2"}
    assert documents["d1"].specialty == "cardiology"
    assert documents["d1"].embedding is None  # vectors are not loaded by plain lookups

    grouped = await store.get_qa_by_documents(["d1", "d2"])
    assert [qa.id for qa in grouped["d1"]] == ["q1", "q2"]
    assert "d2" not in grouped

    assert await store.delete_document("d1") is True
    assert await store.counts() == (1, 0)
    assert await store.delete_qa("q1") is False
    await store.close()


async def test_add_document_requires_fields(tmp_path):
    store = MedicalStore()
    await store.open(tmp_path / "store.db")
    await store.create_schema()
    with pytest.raises(ValueError):
        await store.add_document(MedicalDocument(id="", title="t", content="c"))
    await store.close()


async def test_reload_switches_files(tmp_path, open_store):
    store = await open_store(tmp_path / "a.db", documents=[_doc("d1")])
    other = tmp_path / "b.db"
    seed_database(other, documents=[_doc("x1"), _doc("x2")])

    await store.reload(other)

    assert store.path == other
    assert await store.counts() == (2, 0)


# ── Vector queries ────────────────────────────────────────────────────────────

async def test_scan_skips_rows_without_vectors(tmp_path, open_store):
    store = await open_store(tmp_path / "s.db", documents=[_doc("d1", embedding=basis(0)), _doc("d2")])

    rows = await store.scan_vectors(RecordKind.DOCUMENT, {})

    assert [row.id for row in rows] == ["d1"]
    assert len(rows[0].embedding) == 384


async def test_scan_filters_documents_and_qa_through_owner(tmp_path, open_store):
    store = await open_store(
        tmp_path / "s.db",
        documents=[
            _doc("d1", "cardiology", 2020, basis(0)),
            _doc("d2", "neurology", 2020, basis(1)),
        ],
        qa_pairs=[
            MedicalQA(id="q1", question="q", answer="a", document_id="d1", embedding=basis(0)),
            MedicalQA(id="q2", question="q", answer="a", document_id="d2", embedding=basis(1)),
        ],
    )

    documents = await store.scan_vectors(RecordKind.DOCUMENT, {"specialty": "cardiology"})
    qa = await store.scan_vectors(RecordKind.QA, {"specialty": "neurology", "year": 2020})

    assert [row.id for row in documents] == ["d1"]
    assert [row.id for row in qa] == ["q2"]


async def test_unknown_filter_is_rejected(tmp_path, open_store):
    store = await open_store(tmp_path / "s.db")
    with pytest.raises(ValueError):
        await store.scan_vectors(RecordKind.DOCUMENT, {"title; DROP TABLE documents": "x"})


async def test_index_query_without_libsql_is_unavailable(tmp_path, open_store):
    store = await open_store(tmp_path / "s.db", documents=[_doc("d1", embedding=make_vector(1.0))])

    with pytest.raises(IndexUnavailableError):
        await store.index_top_k(RecordKind.DOCUMENT, make_vector(1.0), 5, {})
