"""Tests for timestamped config backups."""
from __future__ import annotations

import json
import stat
from datetime import datetime
from pathlib import Path

import pytest

from devenv import backups
from devenv.backups import (
    BACKUP_PREFIX,
    MANIFEST_NAME,
    BackupError,
    BackupSession,
    backup_timestamp,
    latest_backup,
    list_backups,
)


def _freeze_timestamp(monkeypatch: pytest.MonkeyPatch, value: str = "20260101-120000") -> None:
    monkeypatch.setattr(backups, "backup_timestamp", lambda moment=None: value)


def test_backup_timestamp_format() -> None:
    assert backup_timestamp(datetime(2026, 3, 4, 5, 6, 7)) == "20260304-050607"


def test_preserve_keeps_relative_layout_and_manifest(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _freeze_timestamp(monkeypatch)
    home = tmp_path / "home"
    zshrc = home / ".zshrc"
    ghostty = home / ".config" / "ghostty" / "config"
    ghostty.parent.mkdir(parents=True)
    zshrc.parent.mkdir(parents=True, exist_ok=True)
    zshrc.write_text("# mine\n", encoding="utf-8")
    ghostty.write_text("font-size = 14\n", encoding="utf-8")

    session = BackupSession(root=home, home=home)
    session.preserve(zshrc)
    session.preserve(ghostty)

    directory = home / f"{BACKUP_PREFIX}20260101-120000"
    assert session.directory == directory
    assert stat.S_IMODE(directory.stat().st_mode) == 0o700
    assert (directory / ".zshrc").read_text(encoding="utf-8") == "# mine\n"
    assert (directory / ".config" / "ghostty" / "config").is_file()
    manifest = json.loads((directory / MANIFEST_NAME).read_text(encoding="utf-8"))
    assert [entry["source"] for entry in manifest["files"]] == [str(zshrc), str(ghostty)]
    assert session.saved == [directory / ".zshrc", directory / ".config" / "ghostty" / "config"]


def test_directory_is_created_lazily(tmp_path: Path) -> None:
    session = BackupSession(root=tmp_path, home=tmp_path)

    assert session.directory is None
    assert session.saved == []
    assert list(tmp_path.iterdir()) == []


def test_same_second_sessions_do_not_collide(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _freeze_timestamp(monkeypatch)

    first = BackupSession(root=tmp_path, home=tmp_path).ensure_directory()
    second = BackupSession(root=tmp_path, home=tmp_path).ensure_directory()

    assert first.name == f"{BACKUP_PREFIX}20260101-120000"
    assert second.name == f"{BACKUP_PREFIX}20260101-120000-1"


def test_preserve_rejects_missing_file(tmp_path: Path) -> None:
    session = BackupSession(root=tmp_path, home=tmp_path)

    with pytest.raises(BackupError, match="not a regular file"):
        session.preserve(tmp_path / "absent")


def test_list_and_latest_backup_ordering(tmp_path: Path) -> None:
    for name in ("20260102-000000", "20260101-000000", "20260102-000000-2", "20260102-000000-1"):
        (tmp_path / f"{BACKUP_PREFIX}{name}").mkdir()
    (tmp_path / "unrelated").mkdir()

    names = [path.name[len(BACKUP_PREFIX) :] for path in list_backups(tmp_path)]

    assert names == [
        "20260101-000000",
        "20260102-000000",
        "20260102-000000-1",
        "20260102-000000-2",
    ]
    latest = latest_backup(tmp_path)
    assert latest is not None
    assert latest.name.endswith("-2")
    assert latest_backup(tmp_path / "missing") is None
