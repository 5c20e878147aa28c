# infrastructure/artifact_validator.py
"""Header/size sanity check for the downloaded SQLite artifact"""
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Union

from config import settings
from core.domain import ArtifactStatus

logger = logging.getLogger(settings.LOGGER_NAME)

SQLITE_MAGIC_HEADER = b"SQLite format 3\x00"


class SQLiteArtifactValidator:
    """
    Decides whether a local file is a complete, well-formed SQLite database.

    Only the first 16 bytes are read, so validating a multi-GB file is cheap.
    min_size_bytes is a policy knob: 0 means any non-empty file passes the size check.
    """

    def __init__(self, min_size_bytes: int = settings.ARTIFACT_MIN_SIZE_BYTES):
        self.min_size_bytes = max(0, min_size_bytes)

    def validate(self, path: Union[str, Path]) -> bool:
        """Magic header + size check. Never raises."""
        try:
            file_path = Path(path)
            if not file_path.is_file():
                return False

            size = file_path.stat().st_size
            if size <= 0 or size < self.min_size_bytes:
                logger.debug(f"Artifact {file_path} rejected by size check ({size} bytes)")
                return False

            with open(file_path, "rb") as f:
                header = f.read(len(SQLITE_MAGIC_HEADER))

            if header != SQLITE_MAGIC_HEADER:
                logger.debug(f"Artifact {file_path} has an unexpected header")
                return False
            return True
        except OSError as e:
            logger.error(f"Error validating database file {path}: {e}")
            return False

    def get_status(self, path: Union[str, Path]) -> ArtifactStatus:
        """Recompute the artifact status from the filesystem."""
        file_path = Path(path)
        status = ArtifactStatus(exists=False, local_path=str(file_path), file_name=file_path.name)
        try:
            if not file_path.is_file():
                return status
            stat = os.stat(file_path)
            status.exists = True
            status.size_bytes = stat.st_size
            status.modified_at = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
            status.is_valid = self.validate(file_path)
        except OSError as e:
            logger.error(f"Error checking database status for {file_path}: {e}")
            return ArtifactStatus(exists=False, local_path=str(file_path), file_name=file_path.name)
        return status
