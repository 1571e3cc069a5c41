"""Remote object storage access through rclone."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Callable

from .config import StorageConfig
from .containers import Runner, stderr_tail

LOG = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Raised when rclone is missing, misconfigured or fails to upload."""


class RcloneUploader:
    """Copies artifacts to ``<remote>:<bucket>/<path>/<YYYY-MM-DD>/``."""

    def __init__(
        self,
        config: StorageConfig,
        *,
        executable: str = "rclone",
        runner: Runner = subprocess.run,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self._config = config
        self._executable = executable
        self._runner = runner
        self._which = which

    def check(self) -> None:
        """Fail early when rclone or the configured remote is unavailable."""

        if self._which(self._executable) is None:
            raise StorageError(
                "rclone is not installed. Install it with: curl https://rclone.org/install.sh | sudo bash"
            )
        result = self._run(["listremotes"])
        remotes = {line.strip() for line in (result.stdout or "").splitlines()}
        if result.returncode != 0 or f"{self._config.remote}:" not in remotes:
            raise StorageError(f"rclone remote '{self._config.remote}' is not configured. Run: rclone config")
        LOG.info("rclone is configured correctly")

    def remote_directory(self, day: str) -> str:
        parts = [self._config.bucket.strip("/"), self._config.path.strip("/"), day]
        return f"{self._config.remote}:" + "/".join(part for part in parts if part) + "/"

    def upload(self, path: Path, day: str) -> str:
        """Upload ``path`` into the folder for ``day`` and return that folder."""

        destination = self.remote_directory(day)
        result = self._run(["copy", str(path), destination])
        if result.returncode != 0:
            raise StorageError(f"Failed to upload {path.name} to {destination}: {stderr_tail(result.stderr)}")
        return destination

    def verify(self, name: str, day: str) -> bool:
        """Best-effort check that ``name`` is now listed remotely."""

        target = self.remote_directory(day) + name
        try:
            result = self._run(["ls", target])
        except StorageError as exc:
            LOG.debug("Upload verification could not run: %s", exc)
            return False
        return result.returncode == 0 and name in (result.stdout or "")

    def _run(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        cmd = [self._executable, *args]
        LOG.debug("$ %s", " ".join(cmd))
        try:
            return self._runner(cmd, text=True, capture_output=True)
        except FileNotFoundError as exc:
            raise StorageError(f"'{self._executable}' is not installed or not on PATH") from exc


__all__ = ["RcloneUploader", "StorageError"]
