"""Thin wrapper around the Docker CLI."""

from __future__ import annotations

import logging
import math
import subprocess
import time
from typing import IO, Callable, Sequence

LOG = logging.getLogger(__name__)

Runner = Callable[..., "subprocess.CompletedProcess[str]"]


class ContainerError(RuntimeError):
    """Raised when the container runtime refuses or cannot run a command."""


class DockerClient:
    """Runs `docker` sub-commands and interprets their exit status."""

    def __init__(
        self,
        *,
        executable: str = "docker",
        runner: Runner = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._executable = executable
        self._runner = runner
        self._sleep = sleep

    def running_containers(self) -> set[str]:
        result = self._run(["ps", "--format", "{{.Names}}"], capture=True)
        if result.returncode != 0:
            raise ContainerError(f"docker ps failed: {stderr_tail(result.stderr)}")
        return {line.strip() for line in (result.stdout or "").splitlines() if line.strip()}

    def is_running(self, name: str) -> bool:
        return name in self.running_containers()

    def stop(self, name: str) -> None:
        result = self._run(["stop", name], capture=True)
        if result.returncode != 0:
            raise ContainerError(f"Failed to stop container '{name}': {stderr_tail(result.stderr)}")

    def start(self, name: str) -> None:
        result = self._run(["start", name], capture=True)
        if result.returncode != 0:
            raise ContainerError(f"Failed to start container '{name}': {stderr_tail(result.stderr)}")

    def wait_until_stopped(self, name: str, *, timeout: float, interval: float = 1.0) -> bool:
        """Poll until ``name`` leaves `docker ps`; False if it is still up at the deadline."""

        attempts = max(1, math.ceil(timeout / interval))
        for _ in range(attempts):
            if not self.is_running(name):
                return True
            self._sleep(interval)
        return not self.is_running(name)

    def exec(
        self,
        name: str,
        command: Sequence[str],
        *,
        interactive: bool = False,
        stdin: IO[bytes] | None = None,
        stdout: IO[bytes] | int | None = None,
        env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess[bytes]:
        """Run ``command`` inside the container.

        File handles are streamed straight through so dumps never have to fit
        in memory. When ``stdout`` is None the output is captured.
        """

        args = ["exec"]
        if interactive or stdin is not None:
            args.append("-i")
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        args.append(name)
        args.extend(command)
        cmd = [self._executable, *args]
        LOG.debug("$ %s", " ".join(_redact(cmd)))
        try:
            return self._runner(
                cmd,
                stdin=stdin,
                stdout=stdout if stdout is not None else subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ContainerError(f"'{self._executable}' is not installed or not on PATH") from exc

    def _run(self, args: list[str], *, capture: bool = False) -> subprocess.CompletedProcess[str]:
        cmd = [self._executable, *args]
        LOG.debug("$ %s", " ".join(cmd))
        try:
            return self._runner(cmd, text=True, capture_output=capture)
        except FileNotFoundError as exc:
            raise ContainerError(f"'{self._executable}' is not installed or not on PATH") from exc


def stderr_tail(stderr: str | bytes | None, limit: int = 300) -> str:
    if stderr is None:
        return "no output"
    text = stderr.decode(errors="replace") if isinstance(stderr, bytes) else stderr
    text = text.strip()
    return text[-limit:] if text else "no output"


def _redact(cmd: Sequence[str]) -> list[str]:
    redacted: list[str] = []
    for part in cmd:
        if part.startswith("PGPASSWORD="):
            redacted.append("PGPASSWORD=***")
        else:
            redacted.append(part)
    return redacted


__all__ = ["ContainerError", "DockerClient", "stderr_tail"]
