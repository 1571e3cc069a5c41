"""Shared dataclasses used across the backup and restore modules."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class BackupArtifact:
    """A backup file named ``<prefix>_<YYYY-MM-DD>_<HH-MM-SS>.sql[.gz]``."""

    path: Path
    date: str
    time: str
    compressed: bool
    size: int
    mtime: float

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def plain_path(self) -> Path:
        """Path of the uncompressed SQL file (the artifact itself when plain)."""

        if self.compressed:
            return self.path.with_suffix("")
        return self.path


@dataclass(frozen=True, slots=True)
class DatabaseSession:
    """A server backend connected to a database, as seen in pg_stat_activity."""

    pid: int
    database: str
    user: str | None = None
    application: str | None = None
    state: str | None = None

    def describe(self) -> str:
        parts = [f"pid={self.pid}"]
        if self.user:
            parts.append(f"user={self.user}")
        if self.application:
            parts.append(f"app={self.application}")
        if self.state:
            parts.append(f"state={self.state}")
        return " ".join(parts)


__all__ = ["BackupArtifact", "DatabaseSession"]
