"""Database swap procedure: replace the live database with a backup."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

from .admin import DatabaseAdmin, DatabaseAdminError
from .artifacts import ArtifactError, decompressed
from .config import AppConfig
from .containers import ContainerError, DockerClient
from .drain import ConnectionDrainer, DrainResult
from .models import BackupArtifact
from .pgtools import PgToolError, PgTools

LOG = logging.getLogger(__name__)

Prompt = Callable[[str], str]


class RestoreError(RuntimeError):
    """Raised when a restore step fails and the procedure must stop."""


class RestoreOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class RestoreReport:
    """Summary returned once the procedure finishes or is cancelled."""

    outcome: RestoreOutcome
    artifact: BackupArtifact
    drain: DrainResult | None = None
    app_restarted: bool = False


class RestoreProcedure:
    """Drops and recreates the configured database from a backup artifact.

    Steps run in a fixed order: confirm, check the database container, stop
    the application, extract the dump, drain and drop, create, load, restart
    the application. Drop, create and load failures raise RestoreError; the
    database may then be missing or partially loaded and needs another
    restore. Session termination and the application restart only warn.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        docker: DockerClient,
        tools: PgTools,
        admin: DatabaseAdmin,
        drainer: ConnectionDrainer | None = None,
        prompt: Prompt = input,
    ) -> None:
        self._config = config
        self._docker = docker
        self._tools = tools
        self._admin = admin
        self._drainer = drainer or ConnectionDrainer(
            admin,
            max_attempts=config.drain.max_attempts,
            delay=config.drain.delay,
        )
        self._prompt = prompt

    def run(self, artifact: BackupArtifact, *, assume_yes: bool = False) -> RestoreReport:
        if not assume_yes and not self.confirm(artifact):
            LOG.info("Restore cancelled by user")
            return RestoreReport(outcome=RestoreOutcome.CANCELLED, artifact=artifact)

        self._check_database_container()
        self._stop_application()
        try:
            with decompressed(artifact) as sql_file:
                drain = self._recreate_database()
                self._load(sql_file)
                restarted = self._start_application()
        except ArtifactError as exc:
            raise RestoreError(f"Failed to prepare backup file: {exc}") from exc

        LOG.info(
            "Restore completed: %s restored from %s",
            self._config.database.name,
            artifact.name,
        )
        return RestoreReport(
            outcome=RestoreOutcome.COMPLETED,
            artifact=artifact,
            drain=drain,
            app_restarted=restarted,
        )

    def confirm(self, artifact: BackupArtifact) -> bool:
        """Ask the operator to type the confirmation literal."""

        database = self._config.database.name
        expected = self._config.restore.confirmation
        LOG.warning("DESTRUCTIVE ACTION: this will DROP and RECREATE the database %s", database)
        LOG.warning("All current data in %s will be permanently lost", database)
        LOG.warning("Backup file: %s", artifact.name)
        try:
            reply = self._prompt(f"Type {expected} to continue: ")
        except EOFError:
            return False
        return reply == expected

    def _check_database_container(self) -> None:
        name = self._config.database.container
        try:
            running = self._docker.is_running(name)
        except ContainerError as exc:
            raise RestoreError(str(exc)) from exc
        if not running:
            raise RestoreError(f"PostgreSQL container '{name}' is not running")
        LOG.info("PostgreSQL container is running")

    def _stop_application(self) -> None:
        settings = self._config.application
        name = settings.container
        try:
            if not self._docker.is_running(name):
                LOG.info("Application container '%s' is already stopped", name)
                return
            LOG.info("Stopping application container '%s'", name)
            self._docker.stop(name)
            stopped = self._docker.wait_until_stopped(
                name,
                timeout=settings.stop_timeout,
                interval=settings.poll_interval,
            )
        except ContainerError as exc:
            raise RestoreError(str(exc)) from exc
        if stopped:
            LOG.info("Application container stopped")
        else:
            LOG.warning(
                "Application container '%s' still running after %.0fs; continuing",
                name,
                settings.stop_timeout,
            )

    def _recreate_database(self) -> DrainResult | None:
        database = self._config.database.name
        drain: DrainResult | None = None
        try:
            exists = self._admin.database_exists(database)
        except DatabaseAdminError as exc:
            raise RestoreError(f"Cannot inspect databases: {exc}") from exc

        if exists:
            drain = self._drain(database)
            self._drop(database)
        else:
            LOG.info("Database %s does not exist, nothing to drop", database)

        LOG.info("Creating fresh database %s", database)
        try:
            self._admin.create_database(database, owner=self._config.database.owner)
        except DatabaseAdminError as exc:
            raise RestoreError(f"Failed to create database {database}: {exc}") from exc
        return drain

    def _drain(self, database: str) -> DrainResult | None:
        try:
            return self._drainer.drain(database)
        except DatabaseAdminError as exc:
            LOG.warning("Could not drain connections to %s: %s", database, exc)
            return None

    def _drop(self, database: str) -> None:
        LOG.info("Dropping database %s", database)
        try:
            self._admin.drop_database(database)
            return
        except DatabaseAdminError as exc:
            if not self._config.drain.force_drop:
                raise RestoreError(f"Failed to drop database {database}: {exc}") from exc
            LOG.warning("Drop failed (%s); retrying with FORCE", exc)
        try:
            self._admin.drop_database(database, force=True)
        except DatabaseAdminError as exc:
            raise RestoreError(f"Failed to drop database {database} even with FORCE: {exc}") from exc

    def _load(self, sql_file: Path) -> None:
        database = self._config.database.name
        LOG.info("Restoring %s from backup; this may take several minutes", database)
        try:
            self._tools.load(sql_file, database=database, on_error_stop=self._config.restore.on_error_stop)
        except (PgToolError, ContainerError, OSError) as exc:
            raise RestoreError(
                f"Failed to restore database {database}: {exc}. "
                "The database may be partially loaded; run the restore again."
            ) from exc
        LOG.info("Database restored successfully")

    def _start_application(self) -> bool:
        name = self._config.application.container
        LOG.info("Starting application container '%s'", name)
        try:
            self._docker.start(name)
        except ContainerError as exc:
            LOG.warning("%s", exc)
            LOG.warning("Start it manually: docker start %s", name)
            return False
        LOG.info("Application container started")
        return True


__all__ = ["RestoreError", "RestoreOutcome", "RestoreProcedure", "RestoreReport"]
