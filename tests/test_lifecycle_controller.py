# tests/test_lifecycle_controller.py

import asyncio
import threading

import pytest

from core.domain import DownloadState, LifecycleState, MedicalDocument
from core.exceptions import NotReadyError
from infrastructure.artifact_validator import SQLiteArtifactValidator
from infrastructure.download_manager import DownloadManager, partial_path_for
from infrastructure.embedding_gate import EmbeddingGate
from infrastructure.medical_store import MedicalStore
from infrastructure.vector_search import VectorSearchEngine
from services.lifecycle_controller import (
    CORRUPTED_ARTIFACT_MESSAGE,
    INVALID_DOWNLOAD_MESSAGE,
    LifecycleController,
)
from tests.conftest import FakeEmbeddingBackend, FakeSession, basis, make_vector, seed_database

URL = "https://example.invalid/medical.db"


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def artifact_bytes(tmp_path) -> bytes:
    """A real, small SQLite database as served by the remote endpoint."""
    source = seed_database(
        tmp_path / "remote.db",
        documents=[MedicalDocument(id="doc1", title="Diabetes", content="Type 2 diabetes", embedding=make_vector(1.0))],
    )
    return source.read_bytes()


@pytest.fixture
def dest(tmp_path):
    path = tmp_path / "data" / "medical.db"
    path.parent.mkdir(parents=True)
    return path


@pytest.fixture
async def store():
    store = MedicalStore()
    yield store
    await store.close()


def _controller(session, store, dest, validate_downloads=True) -> LifecycleController:
    validator = SQLiteArtifactValidator()
    downloads = DownloadManager(
        session=session,
        validator=validator if validate_downloads else None,
        chunk_size=4096,
        progress_interval=0.0,
    )
    return LifecycleController(downloads, validator, store, artifact_url=URL, artifact_path=dest)


async def _wait_for(predicate, timeout=5.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_poll(), timeout)


# ── check() ───────────────────────────────────────────────────────────────────

async def test_initial_state_is_checking(store, dest):
    controller = _controller(FakeSession(b""), store, dest)
    assert controller.state == LifecycleState.CHECKING


async def test_check_without_file_is_missing(store, dest):
    controller = _controller(FakeSession(b""), store, dest)

    assert await controller.check() == LifecycleState.MISSING
    assert controller.error is None
    assert controller.artifact_status.exists is False
    assert not store.is_open()


async def test_check_with_corrupt_file_is_missing_with_error(store, dest):
    dest.write_bytes(b"definitely not sqlite" * 100)
    controller = _controller(FakeSession(b""), store, dest)

    assert await controller.check() == LifecycleState.MISSING
    assert controller.error == CORRUPTED_ARTIFACT_MESSAGE
    assert controller.artifact_status.is_valid is False
    assert not controller.is_ready()


async def test_check_with_valid_file_opens_store(store, dest, artifact_bytes):
    dest.write_bytes(artifact_bytes)
    controller = _controller(FakeSession(b""), store, dest)

    assert await controller.check() == LifecycleState.READY
    assert store.is_open()
    assert await store.counts() == (1, 0)
    controller.require_ready()


async def test_check_revalidates_every_time(store, dest, artifact_bytes):
    dest.write_bytes(artifact_bytes)
    controller = _controller(FakeSession(b""), store, dest)
    assert await controller.check() == LifecycleState.READY

    dest.write_bytes(b"corrupted later")

    assert await controller.check() == LifecycleState.MISSING
    assert controller.error == CORRUPTED_ARTIFACT_MESSAGE
    assert not store.is_open()


async def test_require_ready_raises_when_missing(store, dest):
    controller = _controller(FakeSession(b""), store, dest)
    await controller.check()

    with pytest.raises(NotReadyError):
        controller.require_ready()


# ── Download flow ─────────────────────────────────────────────────────────────

async def test_download_then_ready(store, dest, artifact_bytes):
    controller = _controller(FakeSession(artifact_bytes), store, dest)
    await controller.check()

    handle = await controller.start_download()
    assert controller.state == LifecycleState.DOWNLOADING

    await handle.wait()

    assert controller.state == LifecycleState.READY
    assert controller.download_state == DownloadState.COMPLETED
    assert controller.error is None
    assert controller.progress is None
    assert controller.artifact_status.is_valid is True
    assert await store.counts() == (1, 0)


async def test_download_transport_failure_is_error(store, dest, artifact_bytes):
    controller = _controller(FakeSession(artifact_bytes, status=503), store, dest)
    await controller.check()

    handle = await controller.start_download()
    await handle.wait()

    assert controller.state == LifecycleState.ERROR
    assert "503" in controller.error
    assert not store.is_open()


async def test_post_download_validation_failure_is_error(store, dest):
    controller = _controller(FakeSession(b"<html>captive portal</html>"), store, dest, validate_downloads=False)
    await controller.check()

    handle = await controller.start_download()
    await handle.wait()

    assert controller.state == LifecycleState.ERROR
    assert controller.error == INVALID_DOWNLOAD_MESSAGE
    assert not store.is_open()


async def test_error_is_recoverable_by_retry(store, dest, artifact_bytes):
    session = FakeSession(artifact_bytes, fail_after=[1000, None])
    controller = _controller(session, store, dest)
    await controller.check()

    await (await controller.start_download()).wait()
    assert controller.state == LifecycleState.ERROR

    await (await controller.start_download()).wait()
    assert controller.state == LifecycleState.READY
    assert session.requests[1]["Range"] == "bytes=1000-"


async def test_cancel_goes_to_missing(store, dest, artifact_bytes):
    controller = _controller(FakeSession(artifact_bytes), store, dest)
    await controller.check()

    await controller.start_download()
    await controller.cancel_download()

    assert controller.state == LifecycleState.MISSING
    assert controller.download_state == DownloadState.CANCELLED
    assert not partial_path_for(dest).exists()


async def test_late_completion_after_cancel_is_ignored(store, dest, artifact_bytes):
    controller = _controller(FakeSession(artifact_bytes), store, dest)
    await controller.check()

    handle = await controller.start_download()
    late_on_complete = handle.on_complete
    await controller.cancel_download()

    # a valid file appears and the old completion callback fires anyway
    dest.write_bytes(artifact_bytes)
    await late_on_complete(dest)

    assert controller.state == LifecycleState.MISSING
    assert not store.is_open()


async def test_late_error_after_restart_is_ignored(store, dest, artifact_bytes):
    controller = _controller(FakeSession(artifact_bytes), store, dest)
    await controller.check()

    first = await controller.start_download()
    stale_on_error = first.on_error
    await controller.cancel_download()
    second = await controller.start_download()
    await second.wait()

    await stale_on_error(RuntimeError("old transfer failed"))

    assert controller.state == LifecycleState.READY
    assert controller.error is None


async def test_pause_and_resume(store, dest, artifact_bytes):
    release = threading.Event()
    session = FakeSession(artifact_bytes, release=release)
    controller = _controller(session, store, dest)
    await controller.check()

    handle = await controller.start_download()
    await _wait_for(lambda: controller.progress is not None)

    pause_task = asyncio.create_task(controller.pause_download())
    await asyncio.sleep(0.05)
    release.set()
    await pause_task

    assert controller.state == LifecycleState.PAUSED
    assert controller.download_state == DownloadState.PAUSED
    assert partial_path_for(dest).exists()

    # a refresh while paused must not orphan the resumed transfer's callbacks
    assert await controller.check() == LifecycleState.PAUSED
    await controller.resume_download()
    assert controller.state == LifecycleState.DOWNLOADING
    await handle.wait()

    assert controller.state == LifecycleState.READY
    assert dest.read_bytes() == artifact_bytes


async def test_searches_old_database_during_download_then_new_one(store, dest, tmp_path):
    seed_database(dest, documents=[MedicalDocument(id="old", title="Old", content="Old edition", embedding=basis(0))])
    new_bytes = seed_database(
        tmp_path / "remote-new.db",
        documents=[MedicalDocument(id="new", title="New", content="New edition", embedding=basis(0))],
    ).read_bytes()
    release = threading.Event()
    controller = _controller(FakeSession(new_bytes, release=release), store, dest)
    assert await controller.check() == LifecycleState.READY
    gate = EmbeddingGate(backend=FakeEmbeddingBackend(default=basis(0)))
    engine = VectorSearchEngine(store, gate)

    try:
        handle = await controller.start_download()
        assert controller.state == LifecycleState.DOWNLOADING
        assert controller.is_ready()
        assert [r.id for r in await engine.search("insulin", threshold=0.5)] == ["old"]

        release.set()
        await handle.wait()

        assert controller.state == LifecycleState.READY
        assert [r.id for r in await engine.search("insulin", threshold=0.5)] == ["new"]
    finally:
        release.set()
        await gate.close()


async def test_reset_and_download_starts_from_scratch(store, dest, artifact_bytes):
    dest.write_bytes(artifact_bytes)
    partial_path_for(dest).write_bytes(artifact_bytes[:500])
    session = FakeSession(artifact_bytes)
    controller = _controller(session, store, dest)
    assert await controller.check() == LifecycleState.READY

    handle = await controller.reset_and_download()
    assert controller.state == LifecycleState.DOWNLOADING
    await handle.wait()

    assert "Range" not in session.requests[0]
    assert controller.state == LifecycleState.READY
    assert await store.counts() == (1, 0)


async def test_snapshot_reflects_state(store, dest):
    dest.write_bytes(b"bad")
    controller = _controller(FakeSession(b""), store, dest)
    await controller.check()

    snapshot = controller.snapshot()

    assert snapshot.state == LifecycleState.MISSING
    assert snapshot.download_state == DownloadState.IDLE
    assert snapshot.error == CORRUPTED_ARTIFACT_MESSAGE
    assert snapshot.artifact.exists is True
    assert snapshot.is_ready is False

    controller.clear_error()
    assert controller.snapshot().error is None
