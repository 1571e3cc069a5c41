"""Database administration backends used by the restore procedure."""

from __future__ import annotations

import asyncio
import threading
from typing import Any, Coroutine, Protocol, TypeVar, runtime_checkable

import asyncpg

from .config import DatabaseConfig
from .containers import ContainerError
from .models import DatabaseSession
from .pgtools import PgToolError, PgTools

T = TypeVar("T")


class DatabaseAdminError(RuntimeError):
    """Raised when a control statement cannot be executed."""


@runtime_checkable
class DatabaseAdmin(Protocol):
    """Protocol implemented by administration backends."""

    def list_sessions(self, database: str) -> tuple[DatabaseSession, ...]:
        """Sessions connected to ``database``, excluding the caller's own."""

    def terminate_session(self, pid: int) -> bool:
        """Ask the server to terminate a backend; False if it declined."""

    def database_exists(self, database: str) -> bool:
        """Whether ``database`` is present in pg_database."""

    def drop_database(self, database: str, *, force: bool = False) -> None:
        """Drop ``database``; ``force`` also kills remaining connections."""

    def create_database(self, database: str, *, owner: str | None = None) -> None:
        """Create an empty ``database``."""

    def close(self) -> None:
        """Release resources held by the backend."""


def quote_ident(name: str) -> str:
    """Quote an SQL identifier such as a database or role name."""

    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def drop_statement(database: str, *, force: bool = False) -> str:
    statement = f"DROP DATABASE IF EXISTS {quote_ident(database)}"
    if force:
        # PostgreSQL 13+: terminates remaining backends as part of the drop.
        statement += " WITH (FORCE)"
    return statement


def create_statement(database: str, *, owner: str | None = None) -> str:
    statement = f"CREATE DATABASE {quote_ident(database)}"
    if owner:
        statement += f" OWNER {quote_ident(owner)}"
    return statement


class AsyncpgDatabaseAdmin:
    """Administration backend that talks to PostgreSQL via asyncpg."""

    _SESSIONS_QUERY = """
        SELECT pid, datname, usename, application_name, state
        FROM pg_stat_activity
        WHERE datname = $1 AND pid <> pg_backend_pid()
        ORDER BY pid
    """

    _EXISTS_QUERY = "SELECT 1 FROM pg_database WHERE datname = $1"

    def __init__(self, config: DatabaseConfig) -> None:
        self._config = config
        self._loop = asyncio.new_event_loop()
        self._loop_thread = threading.Thread(
            target=self._loop.run_forever,
            name="n8nbackup-asyncpg-admin",
            daemon=True,
        )
        self._loop_thread.start()

    def list_sessions(self, database: str) -> tuple[DatabaseSession, ...]:
        rows = self._run(self._fetch(self._SESSIONS_QUERY, database))
        return tuple(
            DatabaseSession(
                pid=int(row["pid"]),
                database=str(row["datname"]),
                user=row["usename"] or None,
                application=row["application_name"] or None,
                state=row["state"] or None,
            )
            for row in rows
        )

    def terminate_session(self, pid: int) -> bool:
        return bool(self._run(self._fetchval("SELECT pg_terminate_backend($1)", pid)))

    def database_exists(self, database: str) -> bool:
        return self._run(self._fetchval(self._EXISTS_QUERY, database)) is not None

    def drop_database(self, database: str, *, force: bool = False) -> None:
        self._run(self._execute(drop_statement(database, force=force)))

    def create_database(self, database: str, *, owner: str | None = None) -> None:
        self._run(self._execute(create_statement(database, owner=owner)))

    def close(self) -> None:
        """Stop the background event loop."""

        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._loop_thread.join(timeout=1)
        if not self._loop_thread.is_alive():
            self._loop.close()

    def _run(self, coro: Coroutine[Any, Any, T]) -> T:
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result()

    async def _fetch(self, query: str, *args: object) -> list[Any]:
        conn = await self._connect()
        try:
            return list(await conn.fetch(query, *args))
        except Exception as exc:
            raise DatabaseAdminError(f"Query failed: {exc}") from exc
        finally:
            await self._close(conn)

    async def _fetchval(self, query: str, *args: object) -> Any:
        conn = await self._connect()
        try:
            return await conn.fetchval(query, *args)
        except Exception as exc:
            raise DatabaseAdminError(f"Query failed: {exc}") from exc
        finally:
            await self._close(conn)

    async def _execute(self, statement: str) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(statement)
        except Exception as exc:
            raise DatabaseAdminError(f"{statement} failed: {exc}") from exc
        finally:
            await self._close(conn)

    async def _connect(self):
        config = self._config
        kwargs: dict[str, object] = {}
        if config.dsn:
            kwargs["dsn"] = config.dsn
        else:
            kwargs["host"] = config.host or "localhost"
            if config.port is not None:
                kwargs["port"] = config.port
        kwargs["user"] = config.user
        if config.password:
            kwargs["password"] = config.password
        # Control statements must not run inside the database being replaced.
        kwargs["database"] = config.maintenance_db
        kwargs["timeout"] = config.connect_timeout
        try:
            return await asyncpg.connect(**kwargs)
        except Exception as exc:
            raise DatabaseAdminError(f"Failed to connect to '{config.maintenance_db}': {exc}") from exc

    @staticmethod
    async def _close(conn: Any) -> None:
        try:
            await conn.close()
        except Exception:  # pragma: no cover - best effort cleanup
            pass


class PsqlDatabaseAdmin:
    """Administration backend that shells out to psql inside the database container."""

    def __init__(self, tools: PgTools) -> None:
        self._tools = tools

    def list_sessions(self, database: str) -> tuple[DatabaseSession, ...]:
        rows = self._query(
            "SELECT pid, datname, usename, application_name, state "
            "FROM pg_stat_activity "
            f"WHERE datname = {quote_literal(database)} AND pid <> pg_backend_pid() "
            "ORDER BY pid"
        )
        sessions: list[DatabaseSession] = []
        for row in rows:
            pid, datname, user, application, state = (row + [""] * 5)[:5]
            sessions.append(
                DatabaseSession(
                    pid=int(pid),
                    database=datname,
                    user=user or None,
                    application=application or None,
                    state=state or None,
                )
            )
        return tuple(sessions)

    def terminate_session(self, pid: int) -> bool:
        rows = self._query(f"SELECT pg_terminate_backend({int(pid)})")
        return bool(rows) and rows[0][0] == "t"

    def database_exists(self, database: str) -> bool:
        rows = self._query(f"SELECT 1 FROM pg_database WHERE datname = {quote_literal(database)}")
        return bool(rows)

    def drop_database(self, database: str, *, force: bool = False) -> None:
        self._query(drop_statement(database, force=force))

    def create_database(self, database: str, *, owner: str | None = None) -> None:
        self._query(create_statement(database, owner=owner))

    def close(self) -> None:
        return None

    def _query(self, sql: str) -> list[list[str]]:
        try:
            return self._tools.query(sql)
        except (PgToolError, ContainerError) as exc:
            raise DatabaseAdminError(f"{sql.split(' WHERE ')[0]} failed: {exc}") from exc


def create_admin(config: DatabaseConfig, tools: PgTools) -> DatabaseAdmin:
    """Pick the asyncpg backend when a network endpoint is configured."""

    if config.uses_asyncpg():
        return AsyncpgDatabaseAdmin(config)
    return PsqlDatabaseAdmin(tools)


__all__ = [
    "AsyncpgDatabaseAdmin",
    "DatabaseAdmin",
    "DatabaseAdminError",
    "PsqlDatabaseAdmin",
    "create_admin",
    "create_statement",
    "drop_statement",
    "quote_ident",
    "quote_literal",
]
