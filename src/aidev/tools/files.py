"""Workspace file access used by the repair engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Protocol

LOGGER = logging.getLogger(__name__)

DEFAULT_BACKUP_DIR = ".ai-backup"


class PathOutsideRoot(ValueError):
    """Raised when a requested path escapes the workspace root."""


class FileAccess(Protocol):
    """Capability for reading and writing project files.

    ``read`` raises :class:`FileNotFoundError` for missing files and
    :class:`OSError` for unreadable or undecodable ones; ``write``
    raises :class:`OSError` when the content could not be persisted.
    """

    def read(self, path: str) -> str: ...

    def write(self, path: str, content: str) -> None: ...

    def exists(self, path: str) -> bool: ...


@dataclass(slots=True)
class WorkspaceFiles:
    """File access confined to ``root`` with optional rolling backups."""

    root: Path
    backup_enabled: bool = True
    backup_dir: str = DEFAULT_BACKUP_DIR
    max_backups: int = 10
    dry_run: bool = False
    pending_writes: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.root = Path(self.root).resolve()
        if not self.root.is_dir():
            raise FileNotFoundError(f"Workspace root does not exist: {self.root}")

    def resolve(self, path: str) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()
        try:
            resolved.relative_to(self.root)
        except ValueError as error:
            raise PathOutsideRoot(f"Path outside workspace root: {path}") from error
        return resolved

    def read(self, path: str) -> str:
        if self.dry_run and path in self.pending_writes:
            return self.pending_writes[path]
        target = self.resolve(path)
        if not target.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        try:
            return target.read_text(encoding="utf-8")
        except UnicodeDecodeError as error:
            raise OSError(f"File is not valid UTF-8: {path}: {error}") from error

    def exists(self, path: str) -> bool:
        try:
            return self.resolve(path).exists()
        except PathOutsideRoot:
            return False

    def write(self, path: str, content: str) -> None:
        target = self.resolve(path)
        if self.dry_run:
            LOGGER.info("Dry run: skipped writing %s (%d chars)", path, len(content))
            self.pending_writes[path] = content
            return
        if target.exists() and self.backup_enabled:
            self._backup(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        if not content.endswith("\n"):
            content = f"{content}\n"
        target.write_text(content, encoding="utf-8")

    def _backup(self, target: Path) -> Path:
        relative = target.relative_to(self.root)
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        backup_root = self.root / self.backup_dir / relative.parent
        backup_root.mkdir(parents=True, exist_ok=True)
        backup_path = backup_root / f"{target.name}.{stamp}.bak"
        backup_path.write_bytes(target.read_bytes())
        LOGGER.debug("Backed up %s to %s", relative.as_posix(), backup_path)
        self._prune_backups(backup_root, target.name)
        return backup_path

    def _prune_backups(self, backup_root: Path, name: str) -> None:
        if self.max_backups <= 0:
            return
        backups = sorted(backup_root.glob(f"{name}.*.bak"))
        for stale in backups[: max(len(backups) - self.max_backups, 0)]:
            stale.unlink(missing_ok=True)


__all__ = ["DEFAULT_BACKUP_DIR", "FileAccess", "PathOutsideRoot", "WorkspaceFiles"]
