"""Ownership repair for the compose stack's bind-mounted data directories."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator

from .config import PermissionRule

LOG = logging.getLogger(__name__)


class PermissionRepairError(RuntimeError):
    """Raised when ownership or modes cannot be changed."""


@dataclass(frozen=True, slots=True)
class RepairResult:
    path: Path
    created: bool
    entries: int


def fix_permissions(
    project_dir: Path,
    rules: Iterable[PermissionRule],
    *,
    chown: Callable[[Path, int, int], None] = os.chown,
) -> list[RepairResult]:
    """Apply each rule recursively below ``project_dir``.

    Paths that do not exist are created only when the rule says so and are
    skipped otherwise.
    """

    results: list[RepairResult] = []
    for rule in rules:
        target = rule.path if rule.path.is_absolute() else project_dir / rule.path
        created = False
        if not target.exists():
            if not rule.create:
                LOG.debug("Skipping missing directory %s", target)
                continue
            LOG.info("Creating %s", target)
            try:
                target.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise PermissionRepairError(f"Cannot create {target}: {exc.strerror}; run as root (sudo).") from exc
            created = True
        LOG.info("Setting ownership of %s to %d:%d, mode %o", target, rule.uid, rule.gid, rule.mode)
        count = 0
        try:
            for entry in _walk(target):
                chown(entry, rule.uid, rule.gid)
                entry.chmod(rule.mode)
                count += 1
        except OSError as exc:
            raise PermissionRepairError(f"Cannot change ownership of {exc.filename}; run as root (sudo).") from exc
        results.append(RepairResult(path=target, created=created, entries=count))
    return results


def _walk(root: Path) -> Iterator[Path]:
    yield root
    if root.is_symlink() or not root.is_dir():
        return
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        for name in (*dirnames, *filenames):
            entry = base / name
            # chmod follows symlinks; leave links pointing outside the mount alone.
            if entry.is_symlink():
                continue
            yield entry


__all__ = ["PermissionRepairError", "RepairResult", "fix_permissions"]
