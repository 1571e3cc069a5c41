"""Backup artifact naming, selection and lifecycle helpers."""

from __future__ import annotations

import gzip
import logging
import re
import shutil
import stat
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from .models import BackupArtifact

LOG = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d"
TIME_FORMAT = "%H-%M-%S"

_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
_SECONDS_PER_DAY = 86400


class ArtifactError(RuntimeError):
    """Raised when an artifact cannot be read, extracted or validated."""


def artifact_name(prefix: str, moment: datetime) -> str:
    """Name of the uncompressed dump written at ``moment``."""

    return f"{prefix}_{moment.strftime(DATE_FORMAT)}_{moment.strftime(TIME_FORMAT)}.sql"


def validate_date(value: str) -> str:
    """Check that ``value`` is a real calendar date in ``YYYY-MM-DD`` form."""

    if not _DATE_RE.fullmatch(value):
        raise ArtifactError(f"Invalid date '{value}', expected YYYY-MM-DD")
    try:
        datetime.strptime(value, DATE_FORMAT)
    except ValueError as exc:
        raise ArtifactError(f"Invalid date '{value}': {exc}") from exc
    return value


def parse_artifact(path: Path, prefix: str) -> BackupArtifact | None:
    """Return the artifact described by ``path`` or None if it is not one."""

    match = _artifact_pattern(prefix).fullmatch(path.name)
    if match is None:
        return None
    try:
        info = path.stat()
    except FileNotFoundError:
        return None
    if not stat.S_ISREG(info.st_mode):
        return None
    return BackupArtifact(
        path=path,
        date=match.group(1),
        time=match.group(2),
        compressed=match.group(3) is not None,
        size=info.st_size,
        mtime=info.st_mtime,
    )


def open_artifact(path: Path, prefix: str) -> BackupArtifact:
    """Describe an explicitly named backup file, whatever its name looks like."""

    artifact = parse_artifact(path, prefix)
    if artifact is not None:
        return artifact
    if not path.is_file():
        raise ArtifactError(f"Backup file not found: {path}")
    if not path.name.endswith((".sql", ".sql.gz", ".gz")):
        raise ArtifactError(f"Not a SQL dump: {path.name} (expected .sql or .sql.gz)")
    info = path.stat()
    return BackupArtifact(
        path=path,
        date="",
        time="",
        compressed=path.suffix == ".gz",
        size=info.st_size,
        mtime=info.st_mtime,
    )


def list_artifacts(directory: Path, prefix: str) -> list[BackupArtifact]:
    """All artifacts directly inside ``directory``, ordered by name."""

    if not directory.is_dir():
        return []
    try:
        entries = sorted(directory.iterdir())
    except OSError as exc:
        raise ArtifactError(f"Cannot read backup directory {directory}: {exc}") from exc
    artifacts: list[BackupArtifact] = []
    for entry in entries:
        artifact = parse_artifact(entry, prefix)
        if artifact is not None:
            artifacts.append(artifact)
    return artifacts


def find_backup(directory: Path, prefix: str, date: str | None = None) -> BackupArtifact | None:
    """Pick the most recently modified artifact, optionally for a single date.

    Compressed and plain dumps compete in the same pool. "Most recent" is the
    filesystem mtime, not the timestamp embedded in the file name; equal
    mtimes fall back to the name so the choice is stable.
    """

    candidates = [
        artifact
        for artifact in list_artifacts(directory, prefix)
        if date is None or artifact.date == date
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda artifact: (artifact.mtime, artifact.name))


@contextmanager
def decompressed(artifact: BackupArtifact) -> Iterator[Path]:
    """Yield a plain SQL file for ``artifact``.

    Compressed artifacts are extracted next to the original and the extracted
    copy is removed when the block exits, however it exits. Plain artifacts are
    yielded as-is and never touched.
    """

    if not artifact.compressed:
        LOG.info("Backup file is already uncompressed", extra={"artifact": artifact.name})
        yield artifact.path
        return

    target = artifact.plain_path
    if target.exists():
        raise ArtifactError(f"Refusing to overwrite existing file {target}; move it aside and retry.")
    try:
        LOG.info("Extracting %s", artifact.name)
        try:
            with gzip.open(artifact.path, "rb") as source, target.open("wb") as sink:
                shutil.copyfileobj(source, sink)
        except (OSError, EOFError) as exc:
            raise ArtifactError(f"Failed to extract {artifact.name}: {exc}") from exc
        LOG.info("Backup extracted to %s", target)
        yield target
    finally:
        if target.exists():
            LOG.info("Cleaning up extracted file %s", target.name)
            target.unlink(missing_ok=True)


def compress(source: Path) -> Path:
    """Gzip ``source`` into ``<source>.gz`` and remove the original."""

    target = source.with_name(source.name + ".gz")
    try:
        with source.open("rb") as plain, gzip.open(target, "wb") as packed:
            shutil.copyfileobj(plain, packed)
    except OSError as exc:
        target.unlink(missing_ok=True)
        raise ArtifactError(f"Failed to compress {source.name}: {exc}") from exc
    source.unlink()
    return target


def prune_artifacts(
    directory: Path,
    prefix: str,
    retention_days: int,
    *,
    now: datetime | None = None,
) -> list[Path]:
    """Delete compressed artifacts older than the retention window."""

    moment = now or datetime.now()
    cutoff = moment.timestamp() - retention_days * _SECONDS_PER_DAY
    removed: list[Path] = []
    for artifact in list_artifacts(directory, prefix):
        if not artifact.compressed or artifact.mtime >= cutoff:
            continue
        try:
            artifact.path.unlink()
        except OSError as exc:
            LOG.warning("Could not delete old backup %s: %s", artifact.name, exc)
            continue
        removed.append(artifact.path)
    return removed


def _artifact_pattern(prefix: str) -> re.Pattern[str]:
    return re.compile(
        rf"{re.escape(prefix)}_(\d{{4}}-\d{{2}}-\d{{2}})_(\d{{2}}-\d{{2}}-\d{{2}})\.sql(\.gz)?"
    )


__all__ = [
    "ArtifactError",
    "artifact_name",
    "compress",
    "decompressed",
    "find_backup",
    "list_artifacts",
    "open_artifact",
    "parse_artifact",
    "prune_artifacts",
    "validate_date",
]
