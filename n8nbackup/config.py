"""Configuration loading helpers."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Literal, Mapping

from pydantic import BaseModel, Field, ValidationError, field_validator

CONFIG_FILE = Path.home() / ".config" / "n8nbackup" / "config.toml"
CONFIG_ENV_VAR = "N8NBACKUP_CONFIG"

# Environment variables honoured by the compose stack, mapped onto [database].
_ENV_OVERRIDES: Mapping[str, str] = {
    "POSTGRES_DB": "name",
    "POSTGRES_USER": "user",
    "POSTGRES_PASSWORD": "password",
}


class ConfigError(RuntimeError):
    """Raised when the configuration file cannot be read or validated."""


class DatabaseConfig(BaseModel):
    """Where the PostgreSQL server lives and how to reach it."""

    container: str = "n8n-postgres"
    name: str = "n8n"
    user: str = "n8n_user"
    password: str | None = None
    maintenance_db: str = "postgres"
    owner: str | None = None
    admin_backend: Literal["auto", "asyncpg", "psql"] = "auto"
    dsn: str | None = None
    host: str | None = None
    port: int | None = None
    connect_timeout: float = 5.0

    def uses_asyncpg(self) -> bool:
        """Whether control statements go over the network instead of `docker exec`."""

        if self.admin_backend == "auto":
            return bool(self.dsn or self.host)
        return self.admin_backend == "asyncpg"


class ApplicationConfig(BaseModel):
    """The application container that must be stopped during a restore."""

    container: str = "n8n"
    stop_timeout: float = Field(default=30.0, ge=0)
    poll_interval: float = Field(default=1.0, gt=0)


class BackupsConfig(BaseModel):
    """Local artifact directory layout and retention."""

    directory: Path = Path("backups")
    restore_directory: Path | None = None
    prefix: str = "n8n_backup"
    retention_days: int = Field(default=14, ge=0)


class StorageConfig(BaseModel):
    """rclone remote receiving uploaded artifacts."""

    remote: str = "wasabi"
    bucket: str = "n8n-prod"
    path: str = "db-backups"


class DrainConfig(BaseModel):
    max_attempts: int = Field(default=5, ge=1)
    delay: float = Field(default=1.0, ge=0)
    force_drop: bool = True


class RestoreConfig(BaseModel):
    confirmation: str = "YES"
    on_error_stop: bool = True


class PermissionRule(BaseModel):
    """Ownership and mode applied recursively to a project sub-directory."""

    path: Path
    uid: int
    gid: int
    mode: int = 0o755
    create: bool = False

    @field_validator("mode", mode="before")
    @classmethod
    def _parse_octal(cls, value: object) -> object:
        # TOML has no octal strings; accept "755" / "0o755" as well as ints.
        if isinstance(value, str):
            text = value.strip().lower().removeprefix("0o")
            return int(text, 8)
        return value


class AppConfig(BaseModel):
    """Shape of the tool configuration file."""

    project_dir: Path = Path(".")
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    application: ApplicationConfig = Field(default_factory=ApplicationConfig)
    backups: BackupsConfig = Field(default_factory=BackupsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    drain: DrainConfig = Field(default_factory=DrainConfig)
    restore: RestoreConfig = Field(default_factory=RestoreConfig)
    permissions: list[PermissionRule] = Field(default_factory=lambda: list(_default_permission_rules()))

    def resolve(self, path: Path) -> Path:
        """Resolve a configured path against the project directory."""

        path = path.expanduser()
        if path.is_absolute():
            return path
        return (self.project_dir.expanduser() / path).resolve()

    @property
    def backup_directory(self) -> Path:
        return self.resolve(self.backups.directory)

    @property
    def restore_directory(self) -> Path:
        """Directory searched by `restore`; defaults to the backup directory."""

        return self.resolve(self.backups.restore_directory or self.backups.directory)

    def with_project_dir(self, path: Path) -> AppConfig:
        """Return a copy rooted at another project directory."""

        return self.model_copy(update={"project_dir": path})


def load_config(path: Path | None = None, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Load configuration from disk, then apply environment overrides.

    A missing default file yields the built-in defaults. A file that was asked
    for explicitly (argument or ``N8NBACKUP_CONFIG``) must exist.
    """

    env = os.environ if environ is None else environ
    explicit = path is not None
    if path is None and env.get(CONFIG_ENV_VAR):
        path = Path(env[CONFIG_ENV_VAR])
        explicit = True
    target = path if path is not None else CONFIG_FILE

    try:
        data = _read_config_file(target)
    except FileNotFoundError as exc:
        if explicit:
            raise ConfigError(f"Config file not found: {target}") from exc
        data = {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {target}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read {target}: {exc}") from exc

    _apply_environment(data, env)
    try:
        return AppConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {target}:\n{exc}") from exc


def _read_config_file(path: Path) -> dict[str, object]:
    with path.open("rb") as handle:
        raw = tomllib.load(handle)
    return dict(raw)


def _apply_environment(data: dict[str, object], environ: Mapping[str, str]) -> None:
    overrides = {
        field: environ[name]
        for name, field in _ENV_OVERRIDES.items()
        if environ.get(name)
    }
    if not overrides:
        return
    section = data.get("database")
    database = dict(section) if isinstance(section, dict) else {}
    database.update(overrides)
    data["database"] = database


def _default_permission_rules() -> tuple[PermissionRule, ...]:
    """Bind mounts used by the compose stack and the users owning them."""

    return (
        # n8n runs as `node` (UID 1000) inside its container.
        PermissionRule(path=Path("data"), uid=1000, gid=1000, create=True),
        PermissionRule(path=Path("postgres"), uid=999, gid=999),
        PermissionRule(path=Path("diun/data"), uid=1000, gid=1000),
    )


__all__ = [
    "AppConfig",
    "ApplicationConfig",
    "BackupsConfig",
    "CONFIG_FILE",
    "ConfigError",
    "DatabaseConfig",
    "DrainConfig",
    "PermissionRule",
    "RestoreConfig",
    "StorageConfig",
    "load_config",
]
