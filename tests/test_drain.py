"""Tests for the connection drainer."""

from __future__ import annotations

import pytest

from n8nbackup.admin import DatabaseAdminError
from n8nbackup.drain import ConnectionDrainer, DrainStatus
from n8nbackup.models import DatabaseSession


def _session(pid: int) -> DatabaseSession:
    return DatabaseSession(pid=pid, database="n8n", user="n8n_user", application="n8n", state="idle")


class _FakeAdmin:
    """Serves a scripted sequence of session listings."""

    def __init__(self, *listings: tuple[int, ...], refuse: set[int] | None = None, error: set[int] | None = None) -> None:
        self._listings = [tuple(_session(pid) for pid in pids) for pids in listings]
        self.refuse = refuse or set()
        self.error = error or set()
        self.listed = 0
        self.terminated: list[int] = []

    def list_sessions(self, database: str) -> tuple[DatabaseSession, ...]:
        index = min(self.listed, len(self._listings) - 1)
        self.listed += 1
        return self._listings[index]

    def terminate_session(self, pid: int) -> bool:
        self.terminated.append(pid)
        if pid in self.error:
            raise DatabaseAdminError("permission denied to terminate process")
        return pid not in self.refuse


def test_no_sessions_means_no_termination() -> None:
    admin = _FakeAdmin(())
    sleeps: list[float] = []

    result = ConnectionDrainer(admin, sleep=sleeps.append).drain("n8n")  # type: ignore[arg-type]

    assert result.status is DrainStatus.DRAINED
    assert result.attempts == 0
    assert admin.terminated == []
    assert sleeps == []


def test_sessions_closed_after_one_round() -> None:
    admin = _FakeAdmin((11, 12, 13), ())
    sleeps: list[float] = []

    result = ConnectionDrainer(admin, delay=0.25, sleep=sleeps.append).drain("n8n")  # type: ignore[arg-type]

    assert result.status is DrainStatus.DRAINED
    assert result.drained is True
    assert result.attempts == 1
    assert admin.terminated == [11, 12, 13]
    assert result.terminated == (11, 12, 13)
    assert sleeps == [0.25]


def test_respawning_sessions_exhaust_after_max_attempts() -> None:
    admin = _FakeAdmin((21,), (22,), (23,), (24,), (25,))

    result = ConnectionDrainer(admin, max_attempts=3, sleep=lambda _: None).drain("n8n")  # type: ignore[arg-type]

    assert result.status is DrainStatus.EXHAUSTED
    assert result.drained is False
    assert result.attempts == 3
    assert admin.terminated == [21, 22, 23]
    assert [session.pid for session in result.remaining] == [24]


def test_failed_terminations_are_reported_as_warnings() -> None:
    admin = _FakeAdmin((31, 32, 33), (), refuse={32}, error={33})

    result = ConnectionDrainer(admin, sleep=lambda _: None).drain("n8n")  # type: ignore[arg-type]

    assert result.status is DrainStatus.DRAINED_WITH_WARNINGS
    assert result.drained is True
    assert result.terminated == (31,)
    assert result.failures == (32, 33)


def test_listing_errors_propagate() -> None:
    class _BrokenAdmin(_FakeAdmin):
        def list_sessions(self, database: str) -> tuple[DatabaseSession, ...]:
            raise DatabaseAdminError("connection refused")

    with pytest.raises(DatabaseAdminError):
        ConnectionDrainer(_BrokenAdmin(())).drain("n8n")  # type: ignore[arg-type]


def test_max_attempts_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ConnectionDrainer(_FakeAdmin(()), max_attempts=0)  # type: ignore[arg-type]


def test_default_budget_is_five_rounds() -> None:
    admin = _FakeAdmin(*[(pid,) for pid in range(41, 48)])

    result = ConnectionDrainer(admin, sleep=lambda _: None).drain("n8n")  # type: ignore[arg-type]

    assert result.status is DrainStatus.EXHAUSTED
    assert result.attempts == 5
    assert admin.terminated == [41, 42, 43, 44, 45]
    assert [session.pid for session in result.remaining] == [46]
