# infrastructure/download_manager.py
"""Resumable, cancellable transfer of the remote database artifact"""
import asyncio
import inspect
import logging
import os
import re
import time
from pathlib import Path
from typing import Any, Callable, Optional, Union
from uuid import uuid4

import requests

from config import settings
from core.domain import DownloadProgress, DownloadState
from core.exceptions import (
    DownloadInProgressError, MedicalRAGError, TransportError, ValidationError
)
from infrastructure.artifact_validator import SQLiteArtifactValidator

logger = logging.getLogger(settings.LOGGER_NAME)

PARTIAL_SUFFIX = ".part"

ProgressCallback = Callable[[DownloadProgress], Any]
ErrorCallback = Callable[[Exception], Any]
CompleteCallback = Callable[[Path], Any]

_CONTENT_RANGE = re.compile(r"bytes\s+(\d+)-(\d+)/(\d+|\*)")
_UNSATISFIED_RANGE = re.compile(r"bytes\s+\*/(\d+)")


def partial_path_for(dest_path: Union[str, Path]) -> Path:
    """Where bytes are written before the atomic swap into dest_path."""
    return Path(str(dest_path) + PARTIAL_SUFFIX)


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


class _ProgressTracker:
    """Two-sample speed/ETA estimate with a bounded emission cadence"""

    def __init__(self, interval: float, clock: Callable[[], float]):
        self._interval = interval
        self._clock = clock
        self._last_time: Optional[float] = None
        self._last_bytes: Optional[int] = None

    def due(self) -> bool:
        return self._last_time is None or self._clock() - self._last_time >= self._interval

    def sample(self, written: int, expected: Optional[int]) -> DownloadProgress:
        now = self._clock()
        progress = DownloadProgress(bytes_written=written, bytes_expected=expected)
        if self._last_time is not None and self._last_bytes is not None:
            elapsed = now - self._last_time
            if elapsed > 0:
                progress.speed_bytes_per_sec = (written - self._last_bytes) / elapsed
                if progress.speed_bytes_per_sec > 0 and expected:
                    progress.eta_seconds = max(0, expected - written) / progress.speed_bytes_per_sec
        self._last_time = now
        self._last_bytes = written
        return progress


class DownloadHandle:
    """
    One transfer of one artifact slot.

    Returned by DownloadManager.start_download(). Pass it back to pause(),
    resume() and cancel(); await wait() for the terminal state.
    """

    def __init__(
        self,
        url: str,
        dest_path: Union[str, Path],
        on_progress: Optional[ProgressCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
    ):
        self.id = uuid4().hex
        self.url = url
        self.dest_path = Path(dest_path)
        self.partial_path = partial_path_for(dest_path)
        self.state = DownloadState.IDLE
        self.progress: Optional[DownloadProgress] = None
        self.error: Optional[Exception] = None
        self.on_progress = on_progress
        self.on_error = on_error
        self.on_complete = on_complete
        self._task: Optional[asyncio.Task] = None
        self._stop_request: Optional[DownloadState] = None

    async def wait(self) -> DownloadState:
        """Wait until the current run (including a resumed one) stops."""
        while self._task is not None:
            task = self._task
            await task
            if self._task is task:
                break
        return self.state

    def __repr__(self):
        return f"DownloadHandle(id={self.id}, state={self.state.value}, dest={self.dest_path})"


class DownloadManager:
    """
    Resumable HTTP(S) download into <dest>.part, swapped into <dest> on success.

    - Range requests resume from the bytes already on disk.
    - Only one transfer may be DOWNLOADING at a time.
    - pause/cancel are cooperative: they take effect at the next chunk boundary.
    - Exactly one of on_complete / on_error fires per run; none on pause or cancel.
    - Blocking requests I/O runs in worker threads, callbacks run on the event loop.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        validator: Optional[SQLiteArtifactValidator] = None,
        chunk_size: int = settings.DOWNLOAD_CHUNK_SIZE,
        progress_interval: float = settings.DOWNLOAD_PROGRESS_INTERVAL_SEC,
        connect_timeout: float = settings.DOWNLOAD_CONNECT_TIMEOUT_SEC,
        read_timeout: float = settings.DOWNLOAD_READ_TIMEOUT_SEC,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session = session or requests.Session()
        self._validator = validator
        self._chunk_size = chunk_size
        self._progress_interval = progress_interval
        self._timeout = (connect_timeout, read_timeout)
        self._clock = clock
        self._current: Optional[DownloadHandle] = None

    @property
    def state(self) -> DownloadState:
        return self._current.state if self._current else DownloadState.IDLE

    @property
    def current(self) -> Optional[DownloadHandle]:
        return self._current

    # ============= Public operations =============

    async def start_download(
        self,
        url: str,
        dest_path: Union[str, Path],
        on_progress: Optional[ProgressCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
    ) -> DownloadHandle:
        """
        Start (or continue from an existing partial file) a transfer.

        Returns immediately with a handle; the transfer runs as a background task.

        Raises:
            DownloadInProgressError: If a transfer is already DOWNLOADING
        """
        if self.state == DownloadState.DOWNLOADING:
            raise DownloadInProgressError("Download already in progress")

        handle = DownloadHandle(url, dest_path, on_progress, on_error, on_complete)
        handle.dest_path.parent.mkdir(parents=True, exist_ok=True)
        self._current = handle

        logger.info(f"Starting database download from {url}")
        logger.info(f"Downloading to: {handle.dest_path}")
        self._launch(handle)
        return handle

    async def pause(self, handle: Optional[DownloadHandle] = None) -> None:
        """Stop at the next chunk boundary, keeping the partial file for resume()."""
        handle = handle or self._current
        if handle is None or handle.state != DownloadState.DOWNLOADING:
            return
        handle._stop_request = DownloadState.PAUSED
        await handle.wait()

    async def resume(self, handle: Optional[DownloadHandle] = None) -> None:
        """Continue a paused transfer from the bytes already written."""
        handle = handle or self._current
        if handle is None or handle.state != DownloadState.PAUSED:
            return
        if self.state == DownloadState.DOWNLOADING and self._current is not handle:
            raise DownloadInProgressError("Download already in progress")
        self._current = handle
        logger.info(f"Resuming database download {handle.id}")
        self._launch(handle)

    async def cancel(self, handle: Optional[DownloadHandle] = None) -> None:
        """
        Cancel a downloading or paused transfer and delete its partial file.

        Idempotent: idle, completed, cancelled or failed transfers are left untouched.
        """
        handle = handle or self._current
        if handle is None:
            return
        if handle.state == DownloadState.DOWNLOADING:
            handle._stop_request = DownloadState.CANCELLED
            await handle.wait()
        elif handle.state == DownloadState.PAUSED:
            await asyncio.to_thread(_unlink_quietly, handle.partial_path)
            handle.state = DownloadState.CANCELLED
            logger.info("Database download cancelled")

    async def remove_local_artifact(self, path: Union[str, Path]) -> None:
        """Delete the artifact and any partial download. Absent files count as success."""
        target = Path(path)
        current = self._current
        if current and current.state == DownloadState.DOWNLOADING and current.dest_path == target:
            raise DownloadInProgressError("Cannot remove the database while it is downloading")

        try:
            await asyncio.to_thread(_unlink_quietly, target)
            await asyncio.to_thread(_unlink_quietly, partial_path_for(target))
        except OSError as e:
            logger.error(f"Error removing local database: {e}")
            raise TransportError(f"Failed to remove local database: {e}") from e
        logger.info(f"Local database file removed: {target}")

    def reset_state(self) -> None:
        """Forget the last transfer (after errors or cancellations)."""
        if self.state != DownloadState.DOWNLOADING:
            self._current = None

    # ============= Transfer =============

    def _launch(self, handle: DownloadHandle) -> None:
        handle.state = DownloadState.DOWNLOADING
        handle.error = None
        handle._stop_request = None
        handle._task = asyncio.create_task(self._run(handle), name=f"download-{handle.id}")

    async def _run(self, handle: DownloadHandle) -> None:
        try:
            completed = await self._transfer(handle)
        except asyncio.CancelledError:
            handle.state = DownloadState.CANCELLED
            raise
        except MedicalRAGError as e:
            await self._fail(handle, e)
            return
        except (requests.RequestException, OSError) as e:
            await self._fail(handle, TransportError(f"Download failed: {e}"))
            return
        except Exception as e:
            logger.exception(f"Unexpected download failure: {e}")
            await self._fail(handle, TransportError(f"Download failed: {e}"))
            return

        if completed:
            handle.state = DownloadState.COMPLETED
            logger.info("Database download completed successfully")
            await self._notify(handle.on_complete, handle.dest_path)

    async def _fail(self, handle: DownloadHandle, error: Exception) -> None:
        handle.state = DownloadState.ERROR
        handle.error = error
        logger.error(f"Database download failed: {error}")
        await self._notify(handle.on_error, error)

    async def _transfer(self, handle: DownloadHandle) -> bool:
        """Run one request. True when the artifact was swapped in, False when paused/cancelled."""
        offset = handle.partial_path.stat().st_size if handle.partial_path.exists() else 0
        headers = {"Range": f"bytes={offset}-"} if offset else {}
        if offset:
            logger.info(f"Resuming from byte {offset}")

        response = await asyncio.to_thread(
            self._session.get, handle.url, headers=headers, stream=True, timeout=self._timeout
        )
        finished = False
        try:
            status = response.status_code
            if status == 416:
                total = self._parse_unsatisfied_range(response.headers.get("Content-Range"))
                if not offset or total != offset:
                    await asyncio.to_thread(_unlink_quietly, handle.partial_path)
                    raise TransportError("Server rejected the resume range; partial download discarded")
                logger.info(f"Partial download already holds all {total} bytes")
                finished = True
                expected = total
            elif status not in (200, 206):
                await asyncio.to_thread(_unlink_quietly, handle.partial_path)
                raise TransportError(f"Download failed with status: {status}")
            elif status == 206:
                start, total = self._parse_content_range(response.headers.get("Content-Range"))
                if start is not None and start != offset:
                    await asyncio.to_thread(_unlink_quietly, handle.partial_path)
                    raise TransportError(f"Server resumed at byte {start}, expected {offset}")
                expected = total if total is not None else self._content_length(response, offset)
                mode = "ab"
            else:
                if offset:
                    logger.warning("Server ignored the range request; restarting from byte 0")
                offset = 0
                expected = self._content_length(response, 0)
                mode = "wb"

            written = offset
            tracker = _ProgressTracker(self._progress_interval, self._clock)
            await self._emit_progress(handle, tracker.sample(written, expected))

            if not finished:
                chunks = response.iter_content(chunk_size=self._chunk_size)
                with open(handle.partial_path, mode) as f:
                    while handle._stop_request is None:
                        chunk = await asyncio.to_thread(next, chunks, None)
                        if chunk is None:
                            finished = True
                            break
                        if not chunk:
                            continue
                        f.write(chunk)
                        written += len(chunk)
                        if tracker.due():
                            await self._emit_progress(handle, tracker.sample(written, expected))
        finally:
            response.close()

        # a stop that lands once every byte is on disk does not undo the download
        if not finished and expected is not None and written == expected:
            finished = True

        if not finished and handle._stop_request == DownloadState.PAUSED:
            handle.state = DownloadState.PAUSED
            logger.info(f"Database download paused at byte {written}")
            return False
        if not finished and handle._stop_request == DownloadState.CANCELLED:
            await asyncio.to_thread(_unlink_quietly, handle.partial_path)
            handle.state = DownloadState.CANCELLED
            logger.info("Database download cancelled")
            return False

        await self._emit_progress(handle, tracker.sample(written, expected))

        if expected is not None and written != expected:
            # partial file is kept so the next start_download() resumes
            raise TransportError(f"Incomplete download: {written} of {expected} bytes")

        if self._validator is not None and not self._validator.validate(handle.partial_path):
            await asyncio.to_thread(_unlink_quietly, handle.partial_path)
            raise ValidationError("Downloaded database file appears to be corrupted or invalid")

        await asyncio.to_thread(os.replace, handle.partial_path, handle.dest_path)
        return True

    # ============= Helpers =============

    @staticmethod
    def _content_length(response: Any, offset: int) -> Optional[int]:
        value = response.headers.get("Content-Length")
        if value is None:
            return None
        try:
            return offset + int(value)
        except ValueError:
            return None

    @staticmethod
    def _parse_content_range(value: Optional[str]):
        """'bytes 400-999/1000' -> (400, 1000). Unknown parts are None."""
        if not value:
            return None, None
        match = _CONTENT_RANGE.match(value.strip())
        if not match:
            return None, None
        total = None if match.group(3) == "*" else int(match.group(3))
        return int(match.group(1)), total

    @staticmethod
    def _parse_unsatisfied_range(value: Optional[str]) -> Optional[int]:
        """'bytes */1000' -> 1000, the full size reported alongside a 416."""
        match = _UNSATISFIED_RANGE.match(value.strip()) if value else None
        return int(match.group(1)) if match else None

    async def _emit_progress(self, handle: DownloadHandle, progress: DownloadProgress) -> None:
        handle.progress = progress
        await self._notify(handle.on_progress, progress)

    @staticmethod
    async def _notify(callback: Optional[Callable[[Any], Any]], arg: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(arg)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.exception(f"Download callback raised: {e}")
