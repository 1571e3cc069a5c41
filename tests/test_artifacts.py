"""Tests for artifact selection, extraction and pruning."""

from __future__ import annotations

import gzip
import os
from datetime import datetime
from pathlib import Path

import pytest

from n8nbackup.artifacts import (
    ArtifactError,
    artifact_name,
    compress,
    decompressed,
    find_backup,
    open_artifact,
    parse_artifact,
    prune_artifacts,
    validate_date,
)

PREFIX = "x"


def _write(directory: Path, name: str, mtime: float, content: bytes = b"SELECT 1;\n") -> Path:
    path = directory / name
    if name.endswith(".gz"):
        with gzip.open(path, "wb") as handle:
            handle.write(content)
    else:
        path.write_bytes(content)
    os.utime(path, (mtime, mtime))
    return path


def test_artifact_name_uses_date_and_time_segments() -> None:
    assert artifact_name("n8n_backup", datetime(2025, 1, 2, 3, 4, 5)) == "n8n_backup_2025-01-02_03-04-05.sql"


def test_parse_artifact_recognizes_both_suffixes(tmp_path: Path) -> None:
    plain = _write(tmp_path, "x_2025-01-01_01-00-00.sql", 1_000)
    packed = _write(tmp_path, "x_2025-01-01_02-00-00.sql.gz", 2_000)
    stray = _write(tmp_path, "x_2025-01-01_02-00-00.sql.restore", 3_000)

    assert parse_artifact(plain, PREFIX).compressed is False
    assert parse_artifact(packed, PREFIX).compressed is True
    assert parse_artifact(packed, PREFIX).date == "2025-01-01"
    assert parse_artifact(stray, PREFIX) is None
    assert parse_artifact(plain, "other") is None


def test_find_backup_without_date_picks_latest_mtime_across_suffixes(tmp_path: Path) -> None:
    _write(tmp_path, "x_2025-01-01_01-00-00.sql.gz", 1_000)
    newest = _write(tmp_path, "x_2025-01-02_03-00-00.sql", 3_000)
    _write(tmp_path, "x_2025-01-03_00-00-00.sql.gz", 2_000)

    result = find_backup(tmp_path, PREFIX)

    assert result is not None
    assert result.path == newest


def test_find_backup_follows_mtime_not_filename_timestamp(tmp_path: Path) -> None:
    # An older dump copied in recently wins over a newer-named but untouched one.
    copied_in = _write(tmp_path, "x_2024-06-01_00-00-00.sql.gz", 9_000)
    _write(tmp_path, "x_2025-01-01_00-00-00.sql.gz", 1_000)

    assert find_backup(tmp_path, PREFIX).path == copied_in


def test_find_backup_with_date_matches_exact_segment(tmp_path: Path) -> None:
    early = _write(tmp_path, "x_2025-01-01_01-00-00.sql.gz", 1_000)
    late = _write(tmp_path, "x_2025-01-01_05-00-00.sql", 2_000)
    _write(tmp_path, "x_2025-01-02_03-00-00.sql", 5_000)

    assert find_backup(tmp_path, PREFIX, "2025-01-01").path == late
    os.utime(early, (6_000, 6_000))
    assert find_backup(tmp_path, PREFIX, "2025-01-01").path == early


def test_find_backup_returns_none_when_nothing_matches(tmp_path: Path) -> None:
    _write(tmp_path, "x_2025-01-01_01-00-00.sql.gz", 1_000)

    assert find_backup(tmp_path, PREFIX, "2025-02-01") is None
    assert find_backup(tmp_path / "missing", PREFIX) is None


def test_find_backup_breaks_mtime_ties_by_name(tmp_path: Path) -> None:
    _write(tmp_path, "x_2025-01-01_01-00-00.sql", 1_000)
    second = _write(tmp_path, "x_2025-01-01_02-00-00.sql", 1_000)

    assert find_backup(tmp_path, PREFIX).path == second


@pytest.mark.parametrize("value", ["2025-1-01", "2025-02-30", "yesterday", "2025-01-01T00"])
def test_validate_date_rejects_bad_input(value: str) -> None:
    with pytest.raises(ArtifactError):
        validate_date(value)


def test_validate_date_accepts_calendar_dates() -> None:
    assert validate_date("2024-02-29") == "2024-02-29"


def test_decompressed_removes_extracted_file_after_success(tmp_path: Path) -> None:
    path = _write(tmp_path, "x_2025-01-01_01-00-00.sql.gz", 1_000, b"CREATE TABLE t ();\n")
    artifact = parse_artifact(path, PREFIX)

    with decompressed(artifact) as sql_file:
        assert sql_file == tmp_path / "x_2025-01-01_01-00-00.sql"
        assert sql_file.read_bytes() == b"CREATE TABLE t ();\n"

    assert not sql_file.exists()
    assert path.exists()


def test_decompressed_removes_extracted_file_after_error(tmp_path: Path) -> None:
    path = _write(tmp_path, "x_2025-01-01_01-00-00.sql.gz", 1_000)
    artifact = parse_artifact(path, PREFIX)

    with pytest.raises(RuntimeError):
        with decompressed(artifact) as sql_file:
            raise RuntimeError("load failed")

    assert not sql_file.exists()


def test_decompressed_leaves_plain_artifact_untouched(tmp_path: Path) -> None:
    path = _write(tmp_path, "x_2025-01-01_01-00-00.sql", 1_000)
    artifact = parse_artifact(path, PREFIX)

    with pytest.raises(RuntimeError):
        with decompressed(artifact) as sql_file:
            assert sql_file == path
            raise RuntimeError("load failed")

    assert path.read_bytes() == b"SELECT 1;\n"


def test_decompressed_cleans_up_corrupt_archive(tmp_path: Path) -> None:
    path = tmp_path / "x_2025-01-01_01-00-00.sql.gz"
    path.write_bytes(b"definitely not gzip")
    artifact = parse_artifact(path, PREFIX)

    with pytest.raises(ArtifactError):
        with decompressed(artifact):
            pytest.fail("body must not run")

    assert not (tmp_path / "x_2025-01-01_01-00-00.sql").exists()


def test_decompressed_refuses_to_clobber_existing_sibling(tmp_path: Path) -> None:
    path = _write(tmp_path, "x_2025-01-01_01-00-00.sql.gz", 1_000)
    sibling = _write(tmp_path, "x_2025-01-01_01-00-00.sql", 2_000, b"keep me")
    artifact = parse_artifact(path, PREFIX)

    with pytest.raises(ArtifactError):
        with decompressed(artifact):
            pytest.fail("body must not run")

    assert sibling.read_bytes() == b"keep me"


def test_compress_replaces_plain_dump(tmp_path: Path) -> None:
    source = tmp_path / "x_2025-01-01_01-00-00.sql"
    source.write_bytes(b"SELECT 42;\n")

    target = compress(source)

    assert target.name == "x_2025-01-01_01-00-00.sql.gz"
    assert not source.exists()
    with gzip.open(target, "rb") as handle:
        assert handle.read() == b"SELECT 42;\n"


def test_prune_artifacts_removes_only_old_compressed_files(tmp_path: Path) -> None:
    now = datetime(2025, 3, 1, 12, 0, 0)
    day = 86400
    old = _write(tmp_path, "x_2025-02-01_00-00-00.sql.gz", now.timestamp() - 20 * day)
    recent = _write(tmp_path, "x_2025-02-25_00-00-00.sql.gz", now.timestamp() - 3 * day)
    old_plain = _write(tmp_path, "x_2025-01-01_00-00-00.sql", now.timestamp() - 40 * day)
    unrelated = _write(tmp_path, "notes.sql.gz", now.timestamp() - 40 * day)

    removed = prune_artifacts(tmp_path, PREFIX, 14, now=now)

    assert removed == [old]
    assert not old.exists()
    assert recent.exists() and old_plain.exists() and unrelated.exists()


def test_open_artifact_accepts_arbitrary_dump_names(tmp_path: Path) -> None:
    path = _write(tmp_path, "manual-export.sql.gz", 1_000)

    artifact = open_artifact(path, PREFIX)

    assert artifact.compressed is True
    assert artifact.plain_path == tmp_path / "manual-export.sql"


def test_open_artifact_rejects_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ArtifactError):
        open_artifact(tmp_path / "missing.sql", PREFIX)


def test_decompressed_removes_extracted_file_on_interrupt(tmp_path: Path) -> None:
    path = _write(tmp_path, "x_2025-01-01_01-00-00.sql.gz", 1_000)
    artifact = parse_artifact(path, PREFIX)

    with pytest.raises(KeyboardInterrupt):
        with decompressed(artifact) as sql_file:
            assert sql_file.exists()
            raise KeyboardInterrupt

    assert not (tmp_path / "x_2025-01-01_01-00-00.sql").exists()
    assert path.exists()


def test_unreadable_backup_directory_raises_artifact_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def _deny(self: Path):  # type: ignore[no-untyped-def]
        raise PermissionError(13, "Permission denied", str(self))

    monkeypatch.setattr(Path, "iterdir", _deny)

    with pytest.raises(ArtifactError, match="Cannot read backup directory"):
        find_backup(tmp_path, PREFIX)
