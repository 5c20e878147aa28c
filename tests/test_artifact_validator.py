# tests/test_artifact_validator.py

import pytest

from infrastructure.artifact_validator import SQLITE_MAGIC_HEADER, SQLiteArtifactValidator
from tests.conftest import seed_database


@pytest.fixture
def validator() -> SQLiteArtifactValidator:
    return SQLiteArtifactValidator()


def test_header_alone_is_valid(tmp_path, validator):
    path = tmp_path / "a.db"
    path.write_bytes(SQLITE_MAGIC_HEADER)
    assert validator.validate(path) is True


def test_real_sqlite_file_is_valid(tmp_path, validator):
    path = seed_database(tmp_path / "real.db")
    assert validator.validate(path) is True


@pytest.mark.parametrize("content", [
    b"",
    b"SQLite format 3",             # short read, missing NUL
    b"SQLite format 4\x00" + b"x" * 100,
    b"sqlite format 3\x00" + b"x" * 100,
    b"\x00" * 4096,
    b"PK\x03\x04 not a database",
    b"x" + SQLITE_MAGIC_HEADER,
])
def test_non_sqlite_content_is_invalid(tmp_path, validator, content):
    path = tmp_path / "bad.db"
    path.write_bytes(content)
    assert validator.validate(path) is False


def test_missing_file_is_invalid(tmp_path, validator):
    assert validator.validate(tmp_path / "nope.db") is False


def test_directory_is_invalid(tmp_path, validator):
    assert validator.validate(tmp_path) is False


def test_size_floor_is_a_knob(tmp_path):
    path = tmp_path / "small.db"
    path.write_bytes(SQLITE_MAGIC_HEADER + b"\x00" * 84)

    assert SQLiteArtifactValidator(min_size_bytes=0).validate(path) is True
    assert SQLiteArtifactValidator(min_size_bytes=100).validate(path) is True
    assert SQLiteArtifactValidator(min_size_bytes=101).validate(path) is False


def test_get_status_for_missing_file(tmp_path, validator):
    status = validator.get_status(tmp_path / "medical.db")

    assert status.exists is False
    assert status.file_name == "medical.db"
    assert status.size_bytes is None
    assert status.is_valid is None


def test_get_status_for_corrupt_file(tmp_path, validator):
    path = tmp_path / "medical.db"
    path.write_bytes(b"garbage" * 10)

    status = validator.get_status(path)

    assert status.exists is True
    assert status.size_bytes == 70
    assert status.modified_at is not None
    assert status.is_valid is False
