"""PostgreSQL client tools executed inside the database container."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from .config import DatabaseConfig
from .containers import ContainerError, DockerClient, stderr_tail

LOG = logging.getLogger(__name__)


class PgToolError(RuntimeError):
    """Raised when pg_dump or psql exits with a failure status."""


class PgTools:
    """Runs `pg_dump` and `psql` through `docker exec`."""

    def __init__(self, docker: DockerClient, database: DatabaseConfig) -> None:
        self._docker = docker
        self._database = database

    def dump(self, destination: Path) -> None:
        """Write a plain SQL dump of the configured database to ``destination``."""

        command = ["pg_dump", "-U", self._database.user, "-d", self._database.name]
        try:
            with destination.open("wb") as handle:
                result = self._docker.exec(
                    self._database.container,
                    command,
                    stdout=handle,
                    env=self._env(),
                )
        except (ContainerError, OSError):
            destination.unlink(missing_ok=True)
            raise
        if result.returncode != 0:
            destination.unlink(missing_ok=True)
            raise PgToolError(f"pg_dump failed: {stderr_tail(result.stderr)}")

    def load(self, sql_file: Path, *, database: str | None = None, on_error_stop: bool = True) -> None:
        """Feed ``sql_file`` to psql connected to ``database``."""

        command = ["psql", "-q", "-U", self._database.user, "-d", database or self._database.name]
        if on_error_stop:
            command.extend(["-v", "ON_ERROR_STOP=1"])
        with sql_file.open("rb") as handle:
            result = self._docker.exec(
                self._database.container,
                command,
                stdin=handle,
                stdout=subprocess.DEVNULL,
                env=self._env(),
            )
        if result.returncode != 0:
            raise PgToolError(f"psql exited with status {result.returncode}: {stderr_tail(result.stderr)}")

    def query(self, sql: str, *, database: str | None = None) -> list[list[str]]:
        """Run a single statement and return unaligned, pipe-separated rows."""

        command = [
            "psql",
            "-U",
            self._database.user,
            "-d",
            database or self._database.maintenance_db,
            "-v",
            "ON_ERROR_STOP=1",
            "-At",
            "-F",
            "|",
            "-c",
            sql,
        ]
        result = self._docker.exec(self._database.container, command, env=self._env())
        if result.returncode != 0:
            raise PgToolError(stderr_tail(result.stderr))
        output = result.stdout.decode(errors="replace") if isinstance(result.stdout, bytes) else result.stdout or ""
        return [line.split("|") for line in output.splitlines() if line]

    def _env(self) -> dict[str, str]:
        if self._database.password:
            return {"PGPASSWORD": self._database.password}
        return {}


__all__ = ["PgToolError", "PgTools"]
