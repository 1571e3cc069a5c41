"""Backup producer: dump, compress, upload and prune."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from .artifacts import DATE_FORMAT, ArtifactError, artifact_name, compress, prune_artifacts
from .config import AppConfig
from .containers import ContainerError, DockerClient
from .pgtools import PgToolError, PgTools
from .storage import RcloneUploader, StorageError

LOG = logging.getLogger(__name__)


class BackupError(RuntimeError):
    """Raised when a backup step fails."""


@dataclass(frozen=True, slots=True)
class BackupReport:
    path: Path
    remote_directory: str
    size_bytes: int
    verified: bool
    pruned: tuple[Path, ...] = ()


class BackupProducer:
    """Creates a compressed dump of the database and ships it off-site."""

    def __init__(
        self,
        config: AppConfig,
        *,
        docker: DockerClient,
        tools: PgTools,
        uploader: RcloneUploader,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._config = config
        self._docker = docker
        self._tools = tools
        self._uploader = uploader
        self._clock = clock

    def run(self) -> BackupReport:
        self._preflight()
        moment = self._clock()
        day = moment.strftime(DATE_FORMAT)
        directory = self._config.backup_directory
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupError(f"Cannot create backup directory {directory}: {exc}") from exc

        path = self._dump(directory / artifact_name(self._config.backups.prefix, moment))
        size = path.stat().st_size
        LOG.info("Backup size: %s", format_size(size))

        LOG.info("Uploading backup to %s", self._uploader.remote_directory(day))
        try:
            remote = self._uploader.upload(path, day)
        except StorageError as exc:
            raise BackupError(f"{exc}. Backup file kept locally: {path}") from exc
        LOG.info("Backup uploaded to %s", remote)

        verified = self._uploader.verify(path.name, day)
        if verified:
            LOG.info("Upload verified")
        else:
            LOG.warning("Could not verify upload, but no error was reported")

        pruned = self._prune()
        return BackupReport(
            path=path,
            remote_directory=remote,
            size_bytes=size,
            verified=verified,
            pruned=tuple(pruned),
        )

    def _preflight(self) -> None:
        name = self._config.database.container
        try:
            running = self._docker.is_running(name)
        except ContainerError as exc:
            raise BackupError(str(exc)) from exc
        if not running:
            raise BackupError(f"PostgreSQL container '{name}' is not running")
        LOG.info("PostgreSQL container is running")
        try:
            self._uploader.check()
        except StorageError as exc:
            raise BackupError(str(exc)) from exc

    def _dump(self, dump_path: Path) -> Path:
        LOG.info("Creating database dump %s", dump_path.name)
        try:
            self._tools.dump(dump_path)
        except (PgToolError, ContainerError, OSError) as exc:
            raise BackupError(f"Failed to create database dump: {exc}") from exc
        LOG.info("Compressing backup")
        try:
            compressed = compress(dump_path)
        except ArtifactError as exc:
            dump_path.unlink(missing_ok=True)
            raise BackupError(str(exc)) from exc
        LOG.info("Backup compressed: %s", compressed.name)
        return compressed

    def _prune(self) -> list[Path]:
        retention = self._config.backups.retention_days
        LOG.info("Cleaning local backups older than %d days", retention)
        removed = prune_artifacts(
            self._config.backup_directory,
            self._config.backups.prefix,
            retention,
            now=self._clock(),
        )
        if removed:
            LOG.info("Deleted %d old backup file(s)", len(removed))
        else:
            LOG.info("No old backups to clean")
        return removed


def format_size(size: int) -> str:
    """Human readable size in the style of `du -h`."""

    value = float(size)
    for unit in ("B", "K", "M"):
        if value < 1024:
            return f"{value:.0f}B" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}G"


__all__ = ["BackupError", "BackupProducer", "BackupReport", "format_size"]
