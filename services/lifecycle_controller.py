# services/lifecycle_controller.py
"""State machine sequencing validation, download and store (re)opening"""
import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Optional, Union

from config import settings
from core.domain import ArtifactStatus, DownloadProgress, DownloadState, LifecycleState
from core.exceptions import DownloadInProgressError, MedicalRAGError, NotReadyError
from infrastructure.artifact_validator import SQLiteArtifactValidator
from infrastructure.download_manager import DownloadHandle, DownloadManager
from infrastructure.medical_store import MedicalStore

logger = logging.getLogger(settings.LOGGER_NAME)

CORRUPTED_ARTIFACT_MESSAGE = "Database file appears to be corrupted. Please download a fresh copy."
INVALID_DOWNLOAD_MESSAGE = "Downloaded database file failed validation. Please download it again."
REOPEN_FAILED_MESSAGE = "Database downloaded but failed to initialize. Please try again."


@dataclass
class LifecycleSnapshot:
    """Everything a status endpoint needs, captured at one instant"""
    state: LifecycleState
    download_state: DownloadState
    artifact: ArtifactStatus
    progress: Optional[DownloadProgress]
    error: Optional[str]
    is_ready: bool


class LifecycleController:
    """
    Drives the database through CHECKING / READY / MISSING / DOWNLOADING / PAUSED / ERROR.

    Key points:
    - check() always re-validates the file on disk before opening the store
    - A finished download is re-validated, then the store is reloaded, then READY
    - Every download callback carries the epoch it was registered under; after
      cancel/reset/restart the epoch moves on and late callbacks are ignored
    - Failures end up in `state` + `error`; only DownloadInProgressError is raised
    """

    def __init__(
        self,
        downloads: DownloadManager,
        validator: SQLiteArtifactValidator,
        store: MedicalStore,
        artifact_url: str = settings.ARTIFACT_URL,
        artifact_path: Union[str, Path] = settings.ARTIFACT_PATH,
    ):
        self._downloads = downloads
        self._validator = validator
        self._store = store
        self.artifact_url = artifact_url
        self.artifact_path = Path(artifact_path)

        self.state = LifecycleState.CHECKING
        self.error: Optional[str] = None
        self.progress: Optional[DownloadProgress] = None
        self.artifact_status = ArtifactStatus(
            exists=False, local_path=str(self.artifact_path), file_name=self.artifact_path.name
        )
        self._handle: Optional[DownloadHandle] = None
        self._epoch = 0

    # ============= Queries =============

    @property
    def download_state(self) -> DownloadState:
        return self._handle.state if self._handle else DownloadState.IDLE

    @property
    def epoch(self) -> int:
        return self._epoch

    def is_ready(self) -> bool:
        """Searchable: a validated database is open (also true while an update downloads)."""
        return self._store.is_open()

    def require_ready(self) -> None:
        if not self.is_ready():
            raise NotReadyError(f"Database service is not ready (state: {self.state.value})")

    def snapshot(self) -> LifecycleSnapshot:
        return LifecycleSnapshot(
            state=self.state,
            download_state=self.download_state,
            artifact=self.artifact_status,
            progress=self.progress,
            error=self.error,
            is_ready=self.is_ready(),
        )

    async def refresh_status(self) -> ArtifactStatus:
        """Recompute the artifact status without changing state."""
        try:
            self.artifact_status = await asyncio.to_thread(self._validator.get_status, self.artifact_path)
        except Exception as e:
            logger.error(f"Error refreshing status: {e}")
            self.error = str(e)
        return self.artifact_status

    def clear_error(self) -> None:
        self.error = None

    # ============= Actions =============

    async def check(self) -> LifecycleState:
        """Validate the local file and open the store if it is usable."""
        if self.download_state == DownloadState.DOWNLOADING:
            logger.info("Download running, skipping database check")
            await self.refresh_status()
            return self.state

        epoch = self._next_epoch()
        self._transition(LifecycleState.CHECKING)
        try:
            status = await asyncio.to_thread(self._validator.get_status, self.artifact_path)
            self.artifact_status = status

            if status.exists and status.is_valid:
                logger.info("Valid database found, initializing service...")
                await self._store.open(self.artifact_path)
                if epoch == self._epoch:
                    self._transition(LifecycleState.READY)
            elif status.exists:
                logger.warning("Database file exists but appears to be corrupted")
                await self._store.close()
                self._transition(LifecycleState.MISSING, CORRUPTED_ARTIFACT_MESSAGE)
            elif self.download_state == DownloadState.PAUSED:
                await self._store.close()
                self._transition(LifecycleState.PAUSED)
            else:
                logger.info("No database found")
                await self._store.close()
                self._transition(LifecycleState.MISSING)
        except Exception as e:
            logger.error(f"Error initializing database: {e}", exc_info=True)
            self._transition(LifecycleState.ERROR, str(e))
        return self.state

    async def start_download(self) -> Optional[DownloadHandle]:
        """
        Start (or continue from a partial file) downloading the artifact.

        Raises:
            DownloadInProgressError: A transfer is already running
        """
        if self.download_state == DownloadState.DOWNLOADING:
            raise DownloadInProgressError("Download already in progress")

        epoch = self._next_epoch()
        self.progress = None
        self._transition(LifecycleState.DOWNLOADING)
        try:
            handle = await self._downloads.start_download(
                self.artifact_url,
                self.artifact_path,
                on_progress=partial(self._on_progress, epoch),
                on_error=partial(self._on_error, epoch),
                on_complete=partial(self._on_complete, epoch),
            )
        except DownloadInProgressError:
            raise
        except Exception as e:
            logger.error(f"Error starting download: {e}")
            self._transition(LifecycleState.ERROR, self._message(e))
            return None

        self._handle = handle
        return handle

    async def pause_download(self) -> None:
        if self._handle is None or self._handle.state != DownloadState.DOWNLOADING:
            return
        await self._downloads.pause(self._handle)
        if self._handle.state == DownloadState.PAUSED:
            self._transition(LifecycleState.PAUSED)

    async def resume_download(self) -> None:
        handle = self._handle
        if handle is None or handle.state != DownloadState.PAUSED:
            return
        # rebind so callbacks survive a check() made while paused
        self._bind(handle, self._next_epoch())
        self._transition(LifecycleState.DOWNLOADING)
        try:
            await self._downloads.resume(handle)
        except DownloadInProgressError:
            self._transition(LifecycleState.PAUSED)
            raise

    async def cancel_download(self) -> None:
        """Cancel the transfer; the database is MISSING unless a valid one is still open."""
        self._next_epoch()
        try:
            await self._downloads.cancel(self._handle)
        except Exception as e:
            logger.error(f"Error cancelling download: {e}")
            self.error = self._message(e)
            return

        self.progress = None
        await self.refresh_status()
        if self._store.is_open() and self.artifact_status.is_valid:
            self._transition(LifecycleState.READY)
        else:
            self._transition(LifecycleState.MISSING)

    async def reset_and_download(self) -> Optional[DownloadHandle]:
        """Remove the local artifact and download from scratch (never resumes stale partials)."""
        self._next_epoch()
        self.error = None

        if self._handle is not None and self._handle.state in (DownloadState.DOWNLOADING, DownloadState.PAUSED):
            await self._downloads.cancel(self._handle)

        await self._store.close()
        try:
            await self._downloads.remove_local_artifact(self.artifact_path)
        except MedicalRAGError as e:
            logger.warning(f"Could not remove local database before re-download: {e}")

        self._downloads.reset_state()
        self._handle = None
        self.progress = None
        await self.refresh_status()
        return await self.start_download()

    # ============= Download callbacks =============

    def _bind(self, handle: DownloadHandle, epoch: int) -> None:
        handle.on_progress = partial(self._on_progress, epoch)
        handle.on_error = partial(self._on_error, epoch)
        handle.on_complete = partial(self._on_complete, epoch)

    def _is_stale(self, epoch: int, event: str) -> bool:
        if epoch != self._epoch:
            logger.debug(f"Ignoring stale download {event} (epoch {epoch}, current {self._epoch})")
            return True
        return False

    async def _on_progress(self, epoch: int, progress: DownloadProgress) -> None:
        if self._is_stale(epoch, "progress"):
            return
        self.progress = progress

    async def _on_error(self, epoch: int, error: Exception) -> None:
        if self._is_stale(epoch, "error"):
            return
        self.progress = None
        self._transition(LifecycleState.ERROR, self._message(error))

    async def _on_complete(self, epoch: int, path: Path) -> None:
        if self._is_stale(epoch, "completion"):
            return
        self.progress = None

        status = await asyncio.to_thread(self._validator.get_status, path)
        self.artifact_status = status
        if self._is_stale(epoch, "completion"):
            return
        if not status.is_valid:
            logger.error(f"Downloaded database at {path} failed validation")
            self._transition(LifecycleState.ERROR, INVALID_DOWNLOAD_MESSAGE)
            return

        try:
            await self._store.reload(path)
        except Exception as e:
            logger.error(f"Error reinitializing database after download: {e}")
            if not self._is_stale(epoch, "completion"):
                self._transition(LifecycleState.ERROR, REOPEN_FAILED_MESSAGE)
            return

        if not self._is_stale(epoch, "completion"):
            self._transition(LifecycleState.READY)

    # ============= Helpers =============

    def _next_epoch(self) -> int:
        self._epoch += 1
        return self._epoch

    def _transition(self, state: LifecycleState, error: Optional[str] = None) -> None:
        if state != self.state:
            logger.info(f"Database state: {self.state.value} -> {state.value}")
        self.state = state
        self.error = error

    @staticmethod
    def _message(error: Exception) -> str:
        return error.message if isinstance(error, MedicalRAGError) else str(error)
