"""Tests for acquisition strategies."""
from __future__ import annotations

import io
import shutil
import stat
import tarfile
from collections.abc import Callable
from pathlib import Path

import pytest
from fakes import FakeSystem

from devenv.archive import ArchiveError
from devenv.context import ProvisionContext
from devenv.provision.strategies import (
    AptInstall,
    ArchiveDownload,
    ChangeLoginShell,
    CreateSymlink,
    DebDownload,
    FileCopy,
    GitClone,
    PromptedSecretFile,
    ScriptInstall,
    StrategyError,
    WriteText,
)
from devenv.runner import CommandError

ContextFactory = Callable[..., ProvisionContext]


def _tarball(member: str, payload: bytes) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        info = tarfile.TarInfo(member)
        info.size = len(payload)
        info.mode = 0o755
        archive.addfile(info, io.BytesIO(payload))
    return buffer.getvalue()


def test_apt_install_refreshes_then_installs_elevated(
    fake_system: FakeSystem,
    make_context: ContextFactory,
) -> None:
    AptInstall(("curl", "zsh"), refresh=True).acquire(make_context())

    assert fake_system.calls == [
        (["apt-get", "update", "-y"], True),
        (["apt-get", "install", "-y", "curl", "zsh"], True),
    ]
    assert {"curl", "zsh"} <= fake_system.installed


def test_apt_install_failure_raises(fake_system: FakeSystem, make_context: ContextFactory) -> None:
    fake_system.unavailable.add("lazygit")

    with pytest.raises(CommandError, match="Unable to locate package lazygit"):
        AptInstall(("lazygit",)).acquire(make_context())


def test_deb_download_uses_architecture_and_pin(
    fake_system: FakeSystem,
    make_context: ContextFactory,
) -> None:
    url = "https://example.invalid/lsd_1.1.5_arm64.deb"
    fake_system.blobs[url] = b"!<arch>"
    strategy = DebDownload("lsd", "https://example.invalid/lsd_{version}_{deb_arch}.deb")
    context = make_context(machine="aarch64")

    assert strategy.url(context) == url
    strategy.acquire(context)

    (argv, elevated), = fake_system.calls
    assert argv[:2] == ["dpkg", "-i"]
    assert argv[2].endswith("lsd.deb")
    assert elevated is True
    assert "lsd" in fake_system.installed


def test_deb_download_checksum_mismatch_installs_nothing(
    fake_system: FakeSystem,
    make_context: ContextFactory,
) -> None:
    url = "https://example.invalid/duf_0.8.1_amd64.deb"
    fake_system.blobs[url] = b"payload"
    strategy = DebDownload(
        "duf",
        "https://example.invalid/duf_{version}_{deb_arch}.deb",
        sha256="0" * 64,
    )

    with pytest.raises(ArchiveError, match="Checksum mismatch"):
        strategy.acquire(make_context())

    assert fake_system.calls == []


@pytest.mark.skipif(shutil.which("tar") is None, reason="tar is required")
def test_archive_download_renames_binary_into_place(
    fake_system: FakeSystem,
    make_context: ContextFactory,
    tmp_path: Path,
) -> None:
    url = "https://example.invalid/lazygit_0.44.1_Linux_arm64.tar.gz"
    fake_system.blobs[url] = _tarball("lazygit", b"#!/bin/sh\necho lazygit\n")
    install_dir = tmp_path / "bin"
    install_dir.mkdir()
    strategy = ArchiveDownload(
        "lazygit",
        "https://example.invalid/lazygit_{version}_Linux_{tarball_arch}.tar.gz",
        "lazygit",
        install_dir=install_dir,
    )

    strategy.acquire(make_context(machine="arm64"))

    binary = install_dir / "lazygit"
    assert binary.read_bytes() == b"#!/bin/sh\necho lazygit\n"
    assert stat.S_IMODE(binary.stat().st_mode) == 0o755
    assert not (install_dir / ".lazygit.devenv-new").exists()
    assert [argv[0] for argv in fake_system.mutations] == ["install", "mv"]
    assert all(elevated is False for _, elevated in fake_system.calls)


def test_archive_download_failure_leaves_no_binary(
    fake_system: FakeSystem,
    make_context: ContextFactory,
    tmp_path: Path,
) -> None:
    strategy = ArchiveDownload(
        "lazygit",
        "https://example.invalid/lazygit_{version}.tar.gz",
        "lazygit",
        install_dir=tmp_path,
    )

    with pytest.raises(Exception, match="HTTP 404"):
        strategy.acquire(make_context())

    assert list(tmp_path.glob("*lazygit*")) == []


def test_script_install_runs_downloaded_script_in_home(
    fake_system: FakeSystem,
    make_context: ContextFactory,
) -> None:
    url = "https://example.invalid/install.sh"
    fake_system.scripts[url] = "exe ~/.local/bin/uv\n"

    ScriptInstall(url, interpreter="sh", args=("--quiet",)).acquire(make_context())

    (argv, elevated), = fake_system.calls
    assert argv[0] == "sh"
    assert argv[1].endswith("install.sh")
    assert argv[2:] == ["--quiet"]
    assert elevated is False
    assert (fake_system.home / ".local" / "bin" / "uv").is_file()


def test_git_clone_renames_staging_checkout(
    fake_system: FakeSystem,
    make_context: ContextFactory,
) -> None:
    destination = fake_system.home / ".oh-my-zsh" / "custom" / "plugins" / "demo"

    GitClone("https://example.invalid/demo.git", destination).acquire(make_context())

    assert (destination / ".git").is_dir()
    assert not (destination.parent / ".demo.devenv-clone").exists()
    (argv, _), = fake_system.calls
    assert argv[:3] == ["git", "clone", "--depth=1"]


def test_git_clone_failure_leaves_destination_absent(
    fake_system: FakeSystem,
    make_context: ContextFactory,
) -> None:
    url = "https://example.invalid/broken.git"
    fake_system.broken_urls.add(url)
    destination = fake_system.home / "plugins" / "broken"

    with pytest.raises(CommandError):
        GitClone(url, destination).acquire(make_context())

    assert not destination.exists()
    assert list(destination.parent.iterdir()) == []


def test_git_clone_refuses_foreign_directory(
    fake_system: FakeSystem,
    make_context: ContextFactory,
) -> None:
    destination = fake_system.home / "checkout"
    destination.mkdir()
    (destination / "notes.txt").write_text("mine\n", encoding="utf-8")

    with pytest.raises(StrategyError, match="not a git checkout"):
        GitClone("https://example.invalid/repo.git", destination).acquire(make_context())

    assert fake_system.calls == []


def test_file_copy_backs_up_differing_file(
    fake_system: FakeSystem,
    make_context: ContextFactory,
) -> None:
    template = fake_system.home / "template.zshrc"
    template.write_text("# managed\n", encoding="utf-8")
    destination = fake_system.home / ".zshrc"
    destination.write_text("# hand edited\n", encoding="utf-8")
    context = make_context()

    FileCopy(template, destination).acquire(context)

    assert destination.read_text(encoding="utf-8") == "# managed\n"
    assert context.backups is not None
    (saved,) = context.backups.saved
    assert saved.read_text(encoding="utf-8") == "# hand edited\n"


def test_file_copy_identical_file_creates_no_backup(
    fake_system: FakeSystem,
    make_context: ContextFactory,
) -> None:
    template = fake_system.home / "template"
    template.write_text("same\n", encoding="utf-8")
    destination = fake_system.home / "copy"
    destination.write_text("same\n", encoding="utf-8")
    context = make_context()

    FileCopy(template, destination).acquire(context)

    assert context.backups is None


def test_file_copy_missing_template(make_context: ContextFactory, tmp_path: Path) -> None:
    with pytest.raises(StrategyError, match="is missing"):
        FileCopy(tmp_path / "absent", tmp_path / "dest").acquire(make_context())


def test_write_text_normalises_trailing_newline(make_context: ContextFactory, tmp_path: Path) -> None:
    marker = tmp_path / ".devenv" / "VERSION"

    WriteText(marker, "3.0.0").acquire(make_context())

    assert marker.read_text(encoding="utf-8") == "3.0.0\n"


def test_create_symlink_replaces_empty_directory(
    make_context: ContextFactory,
    tmp_path: Path,
) -> None:
    target = tmp_path / "config" / "lib"
    target.mkdir(parents=True)
    link = tmp_path / "lib"
    link.mkdir()

    CreateSymlink(link, target).acquire(make_context())

    assert link.is_symlink()
    assert link.resolve() == target.resolve()


def test_create_symlink_refuses_populated_directory(
    make_context: ContextFactory,
    tmp_path: Path,
) -> None:
    target = tmp_path / "target"
    target.mkdir()
    link = tmp_path / "lib"
    link.mkdir()
    (link / "keep.sh").write_text("", encoding="utf-8")

    with pytest.raises(StrategyError, match="not a symlink"):
        CreateSymlink(link, target).acquire(make_context())


def test_change_login_shell(fake_system: FakeSystem, make_context: ContextFactory) -> None:
    context = make_context()
    with pytest.raises(StrategyError, match="zsh is not installed"):
        ChangeLoginShell("zsh").acquire(context)

    fake_system.install_package("zsh")
    ChangeLoginShell("zsh").acquire(context)

    zsh = str(fake_system.bin_dir / "zsh")
    assert fake_system.calls[-1] == (["chsh", "-s", zsh, "tester"], True)
    assert fake_system.shells["tester"] == zsh


def test_prompted_secret_file(fake_system: FakeSystem, make_context: ContextFactory) -> None:
    key = fake_system.home / ".config" / "chezmoi" / "key.txt"
    strategy = PromptedSecretFile(key, "Paste key")
    context = make_context()

    with pytest.raises(StrategyError, match="No value provided"):
        strategy.acquire(context)
    assert not key.exists()

    fake_system.prompt_answer = "  AGE-SECRET-KEY-1TEST  "
    strategy.acquire(context)

    assert key.read_text(encoding="utf-8") == "AGE-SECRET-KEY-1TEST\n"
    assert stat.S_IMODE(key.stat().st_mode) == 0o600
