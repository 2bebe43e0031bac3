"""Acquisition strategies used by installer steps.

Each strategy exposes ``describe(context)`` for dry runs and
``acquire(context)`` to mutate the machine. Strategies never leave a partially
applied result in place: downloads are staged in a private temporary
directory, binaries and checkouts are moved into their final location by
rename, and file writes go through a temporary sibling plus ``os.replace``.
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from ..archive import ArchiveError, extract_member, verify_checksum
from ..backups import BackupError
from ..downloads import DownloadError, download
from ..runner import CommandError
from .probes import CommandProbe

if TYPE_CHECKING:
    from ..context import ProvisionContext

LOGGER = logging.getLogger(__name__)


class StrategyError(RuntimeError):
    """Raised when an acquisition strategy cannot complete."""


# Failures a single strategy may raise; the step moves on to the next strategy.
ACQUISITION_ERRORS: tuple[type[Exception], ...] = (
    StrategyError,
    CommandError,
    DownloadError,
    ArchiveError,
    BackupError,
    OSError,
)


class Strategy(Protocol):
    """Interface shared by every acquisition strategy."""

    def describe(self, context: ProvisionContext) -> str:
        """Return the dry-run description of the action."""
        ...

    def acquire(self, context: ProvisionContext) -> None:
        """Perform the action, raising on failure."""
        ...


def _run(
    context: ProvisionContext,
    argv: list[str],
    *,
    elevate: bool = False,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> None:
    merged = context.command_env()
    if env:
        merged.update(env)
    context.runner.run(argv, elevate=elevate, env=merged, cwd=cwd)


def _atomic_write(destination: Path, payload: bytes, *, mode: int | None = None) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "wb") as handle:
            handle.write(payload)
        os.chmod(tmp_path, 0o644 if mode is None else mode)
        os.replace(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)


def _release_url(template: str, context: ProvisionContext, tool: str) -> str:
    return template.format(
        version=context.config.pin(tool),
        deb_arch=context.arch.deb_arch,
        tarball_arch=context.arch.tarball_arch,
    )


@dataclass(slots=True, frozen=True)
class AptInstall:
    """Install packages through ``apt-get``, optionally refreshing lists first."""

    packages: tuple[str, ...]
    refresh: bool = False

    def describe(self, context: ProvisionContext) -> str:
        """Return the dry-run description of the action."""
        action = f"apt-get install -y {' '.join(self.packages)}"
        return f"apt-get update && {action}" if self.refresh else action

    def acquire(self, context: ProvisionContext) -> None:
        """Perform the action, raising on failure."""
        apt_get = context.config.commands.apt_get
        if self.refresh:
            _run(context, [apt_get, "update", "-y"], elevate=True)
        _run(context, [apt_get, "install", "-y", *self.packages], elevate=True)


@dataclass(slots=True, frozen=True)
class DebDownload:
    """Download a pinned ``.deb`` release matching the architecture and install it."""

    tool: str
    url_template: str
    sha256: str | None = None

    def url(self, context: ProvisionContext) -> str:
        """Return the release URL for the configured pin."""
        return _release_url(self.url_template, context, self.tool)

    def describe(self, context: ProvisionContext) -> str:
        """Return the dry-run description of the action."""
        return f"download {self.url(context)} and dpkg -i"

    def acquire(self, context: ProvisionContext) -> None:
        """Perform the action, raising on failure."""
        url = self.url(context)
        with tempfile.TemporaryDirectory(prefix="devenv-") as staging:
            package = download(
                url,
                Path(staging) / f"{self.tool}.deb",
                fetch=context.fetch,
                timeout=context.config.downloads.timeout,
            )
            if self.sha256:
                verify_checksum(package, self.sha256)
            _run(context, [context.config.commands.dpkg, "-i", str(package)], elevate=True)


@dataclass(slots=True, frozen=True)
class ArchiveDownload:
    """Download a pinned tarball, extract one binary and rename it into place."""

    tool: str
    url_template: str
    member: str
    install_dir: Path = Path("/usr/local/bin")
    sha256: str | None = None

    def url(self, context: ProvisionContext) -> str:
        """Return the release URL for the configured pin."""
        return _release_url(self.url_template, context, self.tool)

    def describe(self, context: ProvisionContext) -> str:
        """Return the dry-run description of the action."""
        return f"download {self.url(context)} and install {self.member} into {self.install_dir}"

    def acquire(self, context: ProvisionContext) -> None:
        """Perform the action, raising on failure."""
        url = self.url(context)
        final = self.install_dir / self.member
        staged = self.install_dir / f".{self.member}.devenv-new"
        with tempfile.TemporaryDirectory(prefix="devenv-") as staging:
            staging_dir = Path(staging)
            archive = download(
                url,
                staging_dir / f"{self.tool}.tar.gz",
                fetch=context.fetch,
                timeout=context.config.downloads.timeout,
            )
            if self.sha256:
                verify_checksum(archive, self.sha256)
            extracted = extract_member(
                archive,
                self.member,
                staging_dir / "extract",
                tar_bin=context.config.commands.tar,
            )
            elevate = not os.access(self.install_dir, os.W_OK)
            try:
                _run(context, ["install", "-m", "0755", str(extracted), str(staged)], elevate=elevate)
                _run(context, ["mv", "-f", str(staged), str(final)], elevate=elevate)
            except CommandError:
                context.runner.run(["rm", "-f", str(staged)], elevate=elevate, check=False)
                raise


@dataclass(slots=True, frozen=True)
class ScriptInstall:
    """Download an upstream installer script and run it with *interpreter*."""

    url: str
    interpreter: str = "sh"
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)

    def describe(self, context: ProvisionContext) -> str:
        """Return the dry-run description of the action."""
        suffix = f" {' '.join(self.args)}" if self.args else ""
        return f"run {self.url} with {self.interpreter}{suffix}"

    def acquire(self, context: ProvisionContext) -> None:
        """Perform the action, raising on failure."""
        with tempfile.TemporaryDirectory(prefix="devenv-") as staging:
            script = download(
                self.url,
                Path(staging) / "install.sh",
                fetch=context.fetch,
                timeout=context.config.downloads.timeout,
            )
            _run(context, [self.interpreter, str(script), *self.args], env=self.env, cwd=context.home)


@dataclass(slots=True, frozen=True)
class GitClone:
    """Shallow clone into a temporary sibling, then rename into *destination*."""

    url: str
    destination: Path
    depth: int = 1

    def describe(self, context: ProvisionContext) -> str:
        """Return the dry-run description of the action."""
        return f"git clone --depth={self.depth} {self.url} {self.destination}"

    def acquire(self, context: ProvisionContext) -> None:
        """Perform the action, raising on failure."""
        if (self.destination / ".git").exists():
            LOGGER.debug("%s already cloned", self.destination)
            return
        if self.destination.exists() and any(self.destination.iterdir()):
            raise StrategyError(f"{self.destination} exists and is not a git checkout.")
        self.destination.parent.mkdir(parents=True, exist_ok=True)
        staging = self.destination.with_name(f".{self.destination.name}.devenv-clone")
        if staging.exists():
            shutil.rmtree(staging)
        git = context.config.commands.git
        try:
            _run(context, [git, "clone", f"--depth={self.depth}", self.url, str(staging)])
            if self.destination.exists():
                self.destination.rmdir()
            staging.rename(self.destination)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)


@dataclass(slots=True, frozen=True)
class FileCopy:
    """Copy a template over *destination*, backing up a differing original."""

    source: Path
    destination: Path

    def describe(self, context: ProvisionContext) -> str:
        """Return the dry-run description of the action."""
        return f"copy {self.source} -> {self.destination}"

    def acquire(self, context: ProvisionContext) -> None:
        """Perform the action, raising on failure."""
        if not self.source.is_file():
            raise StrategyError(f"Template {self.source} is missing.")
        payload = self.source.read_bytes()
        if self.destination.is_file():
            if self.destination.read_bytes() == payload:
                return
            context.backup_session().preserve(self.destination)
        _atomic_write(self.destination, payload, mode=self.source.stat().st_mode & 0o777)


@dataclass(slots=True, frozen=True)
class WriteText:
    """Write fixed text to *destination* (used for the version marker)."""

    destination: Path
    content: str

    def describe(self, context: ProvisionContext) -> str:
        """Return the dry-run description of the action."""
        return f"write {self.content.strip()!r} to {self.destination}"

    def acquire(self, context: ProvisionContext) -> None:
        """Perform the action, raising on failure."""
        _atomic_write(self.destination, f"{self.content.strip()}\n".encode())


@dataclass(slots=True, frozen=True)
class MakeDirectory:
    """Create a directory (and parents)."""

    path: Path

    def describe(self, context: ProvisionContext) -> str:
        """Return the dry-run description of the action."""
        return f"mkdir -p {self.path}"

    def acquire(self, context: ProvisionContext) -> None:
        """Perform the action, raising on failure."""
        self.path.mkdir(parents=True, exist_ok=True)


@dataclass(slots=True, frozen=True)
class CreateSymlink:
    """Point *path* at *target*, replacing an existing link atomically."""

    path: Path
    target: Path

    def describe(self, context: ProvisionContext) -> str:
        """Return the dry-run description of the action."""
        return f"ln -sfn {self.target} {self.path}"

    def acquire(self, context: ProvisionContext) -> None:
        """Perform the action, raising on failure."""
        if not self.target.exists():
            raise StrategyError(f"Symlink target {self.target} does not exist.")
        if self.path.exists() and not self.path.is_symlink():
            if not self.path.is_dir() or any(self.path.iterdir()):
                raise StrategyError(f"{self.path} exists and is not a symlink.")
            self.path.rmdir()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        staged = self.path.with_name(f".{self.path.name}.devenv-link")
        staged.unlink(missing_ok=True)
        staged.symlink_to(self.target)
        os.replace(staged, self.path)


@dataclass(slots=True, frozen=True)
class ChangeLoginShell:
    """Set the target user's login shell with ``chsh``."""

    shell: str

    def describe(self, context: ProvisionContext) -> str:
        """Return the dry-run description of the action."""
        return f"chsh -s $(which {self.shell}) {context.user}"

    def acquire(self, context: ProvisionContext) -> None:
        """Perform the action, raising on failure."""
        location = context.which(self.shell)
        if location is None:
            raise StrategyError(f"{self.shell} is not installed.")
        _run(context, [context.config.commands.chsh, "-s", location, context.user], elevate=True)


@dataclass(slots=True, frozen=True)
class PromptedSecretFile:
    """Ask the operator for a secret and store it with restrictive permissions."""

    path: Path
    message: str
    mode: int = 0o600

    def describe(self, context: ProvisionContext) -> str:
        """Return the dry-run description of the action."""
        return f"prompt for {self.path.name} and write {self.path} (mode {self.mode:o})"

    def acquire(self, context: ProvisionContext) -> None:
        """Perform the action, raising on failure."""
        value = context.prompt(self.message).strip()
        if not value:
            raise StrategyError("No value provided; encrypted files will not be decrypted.")
        self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        _atomic_write(self.path, f"{value}\n".encode(), mode=self.mode)


@dataclass(slots=True, frozen=True)
class ToolCommand:
    """Run an installed tool with fixed arguments."""

    command: CommandProbe
    args: tuple[str, ...]

    def describe(self, context: ProvisionContext) -> str:
        """Return the dry-run description of the action."""
        return " ".join([self.command.names[0], *self.args])

    def acquire(self, context: ProvisionContext) -> None:
        """Perform the action, raising on failure."""
        location = self.command.locate(context)
        if location is None:
            raise StrategyError(f"{self.command.names[0]} is not installed.")
        _run(context, [location, *self.args], cwd=context.home)


__all__ = [
    "ACQUISITION_ERRORS",
    "AptInstall",
    "ArchiveDownload",
    "ChangeLoginShell",
    "CreateSymlink",
    "DebDownload",
    "FileCopy",
    "GitClone",
    "MakeDirectory",
    "PromptedSecretFile",
    "ScriptInstall",
    "Strategy",
    "StrategyError",
    "ToolCommand",
]
