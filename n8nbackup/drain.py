"""Connection draining ahead of a destructive database operation."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .admin import DatabaseAdmin, DatabaseAdminError
from .models import DatabaseSession

LOG = logging.getLogger(__name__)


class DrainStatus(str, Enum):
    """Outcome of a drain run."""

    DRAINED = "drained"
    DRAINED_WITH_WARNINGS = "drained_with_warnings"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True, slots=True)
class DrainResult:
    """What happened while draining a database."""

    status: DrainStatus
    attempts: int
    terminated: tuple[int, ...] = ()
    failures: tuple[int, ...] = ()
    remaining: tuple[DatabaseSession, ...] = ()

    @property
    def drained(self) -> bool:
        return self.status is not DrainStatus.EXHAUSTED


class ConnectionDrainer:
    """Terminates every session bound to a database, within a retry budget.

    Each round lists the sessions, asks the server to terminate each one,
    pauses for ``delay`` seconds and lists again. Termination is a request,
    not a guarantee, so individual failures are only logged. After
    ``max_attempts`` rounds with sessions still present the drainer gives up
    and reports the survivors instead of raising.
    """

    def __init__(
        self,
        admin: DatabaseAdmin,
        *,
        max_attempts: int = 5,
        delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._admin = admin
        self._max_attempts = max_attempts
        self._delay = delay
        self._sleep = sleep

    def drain(self, database: str) -> DrainResult:
        sessions = self._admin.list_sessions(database)
        if not sessions:
            LOG.info("No active connections to %s", database)
            return DrainResult(status=DrainStatus.DRAINED, attempts=0)

        attempts = 0
        terminated: list[int] = []
        failures: list[int] = []
        while sessions:
            if attempts >= self._max_attempts:
                LOG.warning(
                    "Connections to %s still present after %d attempts: %s",
                    database,
                    attempts,
                    ", ".join(session.describe() for session in sessions),
                    extra={"database": database, "remaining": len(sessions)},
                )
                return DrainResult(
                    status=DrainStatus.EXHAUSTED,
                    attempts=attempts,
                    terminated=tuple(terminated),
                    failures=tuple(failures),
                    remaining=sessions,
                )
            attempts += 1
            LOG.info(
                "Terminating %d connection(s) to %s (attempt %d/%d)",
                len(sessions),
                database,
                attempts,
                self._max_attempts,
            )
            for session in sessions:
                if self._terminate(session):
                    terminated.append(session.pid)
                else:
                    failures.append(session.pid)
            self._sleep(self._delay)
            sessions = self._admin.list_sessions(database)

        status = DrainStatus.DRAINED_WITH_WARNINGS if failures else DrainStatus.DRAINED
        LOG.info("All connections to %s terminated", database)
        return DrainResult(
            status=status,
            attempts=attempts,
            terminated=tuple(terminated),
            failures=tuple(failures),
        )

    def _terminate(self, session: DatabaseSession) -> bool:
        try:
            accepted = self._admin.terminate_session(session.pid)
        except DatabaseAdminError as exc:
            LOG.warning("Failed to terminate %s: %s", session.describe(), exc)
            return False
        if not accepted:
            LOG.warning("Server declined to terminate %s", session.describe())
        return accepted


__all__ = ["ConnectionDrainer", "DrainResult", "DrainStatus"]
