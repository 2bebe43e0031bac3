"""Timestamped backups of user configuration files.

Before a managed config file is overwritten, the existing copy is preserved in
``<backup_root>/.devenv-backup-YYYYmmdd-HHMMSS/`` (relative layout under the
home directory is kept so files with identical names do not collide). Each
backup directory carries a ``manifest.json`` describing what was saved.
"""
from __future__ import annotations

import json
import os
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

BACKUP_PREFIX = ".devenv-backup-"
MANIFEST_NAME = "manifest.json"


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def backup_timestamp(moment: datetime | None = None) -> str:
    """Return the second-resolution timestamp used in backup directory names."""
    return (moment or datetime.now()).strftime("%Y%m%d-%H%M%S")


@dataclass(slots=True)
class BackupSession:
    """Lazily created backup directory shared by one provisioning run."""

    root: Path
    home: Path
    prefix: str = BACKUP_PREFIX
    directory: Path | None = None
    entries: list[dict[str, object]] = field(default_factory=list)

    def ensure_directory(self) -> Path:
        """Create the backup directory on first use and return it."""
        if self.directory is not None:
            return self.directory
        base = self.root / f"{self.prefix}{backup_timestamp()}"
        candidate = base
        counter = 1
        while True:
            try:
                candidate.mkdir(parents=True, exist_ok=False)
            except FileExistsError:
                candidate = base.with_name(f"{base.name}-{counter}")
                counter += 1
                continue
            except OSError as exc:
                raise BackupError(f"Failed to create backup directory {candidate}: {exc}") from exc
            break
        os.chmod(candidate, 0o700)
        self.directory = candidate
        return candidate

    def preserve(self, path: Path) -> Path:
        """Copy *path* into the backup directory and return the copy's path."""
        if not path.is_file():
            raise BackupError(f"Cannot back up {path}: not a regular file.")
        directory = self.ensure_directory()
        destination = directory / self._relative_name(path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.copy2(path, destination)
        except OSError as exc:
            raise BackupError(f"Failed to back up {path}: {exc}") from exc
        self.entries.append(
            {
                "source": str(path),
                "backup": str(destination),
                "size_bytes": destination.stat().st_size,
                "saved_at": _now_iso(),
            }
        )
        self._write_manifest()
        return destination

    @property
    def saved(self) -> list[Path]:
        """Return the paths of every file copied during this session."""
        return [Path(str(entry["backup"])) for entry in self.entries]

    def _relative_name(self, path: Path) -> Path:
        try:
            return path.relative_to(self.home)
        except ValueError:
            return Path(path.name)

    def _write_manifest(self) -> None:
        directory = self.ensure_directory()
        payload: Mapping[str, object] = {"created_at": _now_iso(), "files": self.entries}
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(directory), prefix=f".{MANIFEST_NAME}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, directory / MANIFEST_NAME)
        except OSError as exc:
            raise BackupError(f"Failed to write backup manifest: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def list_backups(root: Path, prefix: str = BACKUP_PREFIX) -> list[Path]:
    """Return backup directories under *root*, oldest first."""
    if not root.is_dir():
        return []
    candidates = [
        child for child in root.iterdir() if child.is_dir() and child.name.startswith(prefix)
    ]
    return sorted(candidates, key=lambda child: _sort_key(child.name[len(prefix) :]))


def _sort_key(suffix: str) -> tuple[str, int]:
    parts = suffix.split("-")
    stamp = "-".join(parts[:2])
    counter = int(parts[2]) if len(parts) > 2 and parts[2].isdigit() else 0
    return stamp, counter


def latest_backup(root: Path, prefix: str = BACKUP_PREFIX) -> Path | None:
    """Return the newest backup directory under *root*, if any."""
    backups = list_backups(root, prefix)
    return backups[-1] if backups else None


__all__ = [
    "BACKUP_PREFIX",
    "BackupError",
    "BackupSession",
    "backup_timestamp",
    "latest_backup",
    "list_backups",
]
