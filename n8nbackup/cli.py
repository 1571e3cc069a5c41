"""Command line interface for backup, restore and maintenance tasks."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Callable, NamedTuple

from .admin import DatabaseAdminError, create_admin
from .artifacts import ArtifactError, find_backup, open_artifact, validate_date
from .backup import BackupError, BackupProducer, format_size
from .config import AppConfig, ConfigError, load_config
from .containers import ContainerError, DockerClient
from .models import BackupArtifact
from .permissions import PermissionRepairError, fix_permissions
from .pgtools import PgTools
from .restore import RestoreError, RestoreOutcome, RestoreProcedure
from .storage import RcloneUploader

LOG = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

EXIT_OK = 0
EXIT_FAILURE = 1

_FATAL_ERRORS = (
    ArtifactError,
    BackupError,
    ContainerError,
    DatabaseAdminError,
    PermissionRepairError,
    RestoreError,
)


class Runtime(NamedTuple):
    """External collaborators shared by the commands."""

    docker: DockerClient
    tools: PgTools


def build_runtime(config: AppConfig) -> Runtime:
    docker = DockerClient()
    tools = PgTools(docker, config.database)
    return Runtime(docker=docker, tools=tools)


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="n8nbackup",
        description="Back up, restore and maintain the n8n PostgreSQL deployment.",
    )
    parser.add_argument("--config", type=Path, help="Path to config.toml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug output")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("backup", help="Dump, compress, upload and prune backups")

    restore = commands.add_parser("restore", help="Restore the latest backup, optionally for a date")
    restore.add_argument("date", nargs="?", help="Restore the latest backup taken on YYYY-MM-DD")
    restore.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")

    restore_file = commands.add_parser("restore-file", help="Restore an explicit backup file")
    restore_file.add_argument("path", type=Path, help="Backup file (.sql or .sql.gz)")
    restore_file.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")

    permissions = commands.add_parser("fix-permissions", help="Repair data directory ownership")
    permissions.add_argument("--project-dir", type=Path, help="Compose project directory")
    return parser.parse_args(argv)


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )


def run_backup(args: argparse.Namespace, config: AppConfig) -> int:
    LOG.info("Starting backup process")
    runtime = build_runtime(config)
    producer = BackupProducer(
        config,
        docker=runtime.docker,
        tools=runtime.tools,
        uploader=RcloneUploader(config.storage),
    )
    report = producer.run()
    LOG.info("Backup process completed successfully")
    LOG.info("Backup location: %s (%s)", report.path, format_size(report.size_bytes))
    LOG.info("Remote location: %s", report.remote_directory)
    return EXIT_OK


def run_restore(args: argparse.Namespace, config: AppConfig) -> int:
    date: str | None = None
    if args.date:
        try:
            date = validate_date(args.date)
        except ArtifactError as exc:
            LOG.error("%s", exc)
            return EXIT_FAILURE

    directory = config.restore_directory
    prefix = config.backups.prefix
    if date:
        LOG.info("Looking for backups on %s in %s", date, directory)
    else:
        LOG.info("Looking for latest backup in %s", directory)
    artifact = find_backup(directory, prefix, date)
    if artifact is None:
        if date:
            LOG.error("No backup found for date: %s", date)
        else:
            LOG.error("No backup files found in %s", directory)
        LOG.error("Expected format: %s_YYYY-MM-DD_HH-MM-SS.sql[.gz]", prefix)
        return EXIT_FAILURE

    LOG.info("Selected backup file: %s", artifact.name)
    LOG.info("Full path: %s", artifact.path)
    return _restore(config, artifact, assume_yes=args.yes)


def run_restore_file(args: argparse.Namespace, config: AppConfig) -> int:
    path: Path = args.path.expanduser()
    try:
        artifact = open_artifact(path.resolve(), config.backups.prefix)
    except ArtifactError as exc:
        LOG.error("%s", exc)
        return EXIT_FAILURE
    LOG.info("Backup file: %s (%s)", artifact.path, format_size(artifact.size))
    return _restore(config, artifact, assume_yes=args.yes)


def run_fix_permissions(args: argparse.Namespace, config: AppConfig) -> int:
    project_dir = config.resolve(args.project_dir) if args.project_dir else config.resolve(config.project_dir)
    LOG.info("Fixing permissions below %s", project_dir)
    results = fix_permissions(project_dir, config.permissions)
    for result in results:
        action = "Created" if result.created else "Fixed"
        LOG.info("%s %s (%d entries)", action, result.path, result.entries)
    LOG.info("Permissions fixed. Restart the services: docker compose down && docker compose up -d")
    return EXIT_OK


def _restore(config: AppConfig, artifact: BackupArtifact, *, assume_yes: bool) -> int:
    runtime = build_runtime(config)
    admin = create_admin(config.database, runtime.tools)
    try:
        procedure = RestoreProcedure(
            config,
            docker=runtime.docker,
            tools=runtime.tools,
            admin=admin,
        )
        report = procedure.run(artifact, assume_yes=assume_yes)
    finally:
        admin.close()
    if report.outcome is RestoreOutcome.COMPLETED and report.app_restarted:
        LOG.info("Application container '%s' has been started", config.application.container)
    return EXIT_OK


_COMMANDS: dict[str, Callable[[argparse.Namespace, AppConfig], int]] = {
    "backup": run_backup,
    "restore": run_restore,
    "restore-file": run_restore_file,
    "fix-permissions": run_fix_permissions,
}


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    configure_logging(args.verbose)
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        LOG.error("%s", exc)
        return EXIT_FAILURE

    handler = _COMMANDS[args.command]
    try:
        return handler(args, config)
    except _FATAL_ERRORS as exc:
        LOG.error("%s", exc)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        LOG.error("Interrupted")
        return EXIT_FAILURE
    except OSError as exc:
        LOG.error("%s", exc)
        return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
