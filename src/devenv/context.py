"""Explicit provisioning context shared by probes, strategies and commands.

Nothing below ``devenv.provision`` reads ambient process state directly; the
target user, home directory, architecture, executable search path and I/O
hooks all travel through :class:`ProvisionContext`. Tests fabricate one with
a private ``search_path``, a fake runner and a fake fetcher.
"""
from __future__ import annotations

import os
import platform
import pwd
import shutil
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

import typer

from .backups import BackupSession
from .config import AppConfig
from .downloads import Fetcher, fetch_url
from .runner import CommandRunner


class ContextError(RuntimeError):
    """Raised when the provisioning context cannot be resolved."""


class UnsupportedArchitectureError(ContextError):
    """Raised for machine types without prebuilt artifacts."""


@dataclass(slots=True, frozen=True)
class Architecture:
    """Machine architecture and the names release artifacts use for it."""

    machine: str
    deb_arch: str
    tarball_arch: str


_ARCHITECTURES: dict[str, tuple[str, str]] = {
    "x86_64": ("amd64", "x86_64"),
    "amd64": ("amd64", "x86_64"),
    "aarch64": ("arm64", "arm64"),
    "arm64": ("arm64", "arm64"),
}


def detect_architecture(machine: str | None = None) -> Architecture:
    """Map ``uname -m`` output onto artifact naming conventions."""
    raw = (machine or platform.machine()).strip()
    try:
        deb_arch, tarball_arch = _ARCHITECTURES[raw.lower()]
    except KeyError as exc:
        raise UnsupportedArchitectureError(f"Unsupported architecture: {raw}") from exc
    return Architecture(machine=raw, deb_arch=deb_arch, tarball_arch=tarball_arch)


def resolve_target_user(user: str | None = None) -> tuple[str, Path]:
    """Return ``(name, home)`` for *user*, defaulting to the effective user."""
    try:
        entry = pwd.getpwnam(user) if user else pwd.getpwuid(os.geteuid())
    except KeyError as exc:
        raise ContextError(f"Unknown user: {user}") from exc
    return entry.pw_name, Path(entry.pw_dir)


@dataclass(slots=True, frozen=True)
class RunConfiguration:
    """Resolved command-line flags for one orchestrator invocation."""

    dry_run: bool = False
    skip_phases: frozenset[int] = frozenset()
    user: str | None = None

    @classmethod
    def from_flags(
        cls,
        *,
        dry_run: bool = False,
        skip_phases: Iterable[int] = (),
        user: str | None = None,
    ) -> RunConfiguration:
        """Build a configuration from raw flag values."""
        return cls(dry_run=dry_run, skip_phases=frozenset(skip_phases), user=user or None)


@dataclass(slots=True, frozen=True)
class DevenvLayout:
    """Fixed paths under the provisioning root (``~/.devenv``)."""

    root: Path

    @property
    def templates(self) -> Path:
        """Directory of config templates inside the checkout."""
        return self.root / "config"

    @property
    def zsh_dir(self) -> Path:
        """Directory holding shell fragments sourced by ``.zshrc``."""
        return self.root / "zsh"

    @property
    def lib_dir(self) -> Path:
        """Directory for auxiliary scripts consumed by the shell integration."""
        return self.root / "lib"

    @property
    def version_file(self) -> Path:
        """Single-line semantic version marker."""
        return self.root / "VERSION"

    def template(self, *parts: str) -> Path:
        """Return the path of a template file inside the checkout."""
        return self.templates.joinpath(*parts)


def _default_confirm(message: str) -> bool:
    return typer.confirm(message, default=False)


def _default_prompt(message: str) -> str:
    return str(typer.prompt(message, default="", show_default=False, hide_input=True))


def _passwd_shell(user: str) -> str | None:
    try:
        return pwd.getpwnam(user).pw_shell
    except KeyError:
        return None


@dataclass(slots=True)
class ProvisionContext:
    """Everything a probe or strategy may consult about the target machine."""

    user: str
    home: Path
    arch: Architecture
    config: AppConfig
    runner: CommandRunner
    search_path: str | None = None
    fetch: Fetcher = fetch_url
    confirm: Callable[[str], bool] = _default_confirm
    prompt: Callable[[str], str] = _default_prompt
    shell_lookup: Callable[[str], str | None] = _passwd_shell
    backups: BackupSession | None = field(default=None)

    @property
    def layout(self) -> DevenvLayout:
        """Return the provisioning root layout."""
        return DevenvLayout(self.config.devenv_home)

    @property
    def user_bin_dirs(self) -> tuple[Path, ...]:
        """User-level bin directories installers drop binaries into."""
        return (self.home / ".local" / "bin", self.home / ".bun" / "bin", self.home / ".cargo" / "bin")

    def effective_path(self) -> str:
        """Return the executable search path including user bin directories."""
        base = self.search_path if self.search_path is not None else os.environ.get("PATH", "")
        extra = [str(path) for path in self.user_bin_dirs]
        parts = [part for part in base.split(os.pathsep) if part]
        return os.pathsep.join([*extra, *[part for part in parts if part not in extra]])

    def which(self, name: str) -> str | None:
        """Resolve *name* on the context's search path."""
        return shutil.which(name, path=self.effective_path())

    def command_env(self) -> dict[str, str]:
        """Environment overrides applied to every external command."""
        return {"HOME": str(self.home), "PATH": self.effective_path()}

    def login_shell(self) -> str | None:
        """Return the login shell recorded for the target user."""
        return self.shell_lookup(self.user)

    def backup_session(self) -> BackupSession:
        """Return (creating lazily) the run's backup session."""
        if self.backups is None:
            self.backups = BackupSession(root=self.config.backup_root, home=self.home)
        return self.backups


def create_context(
    config: AppConfig,
    *,
    user: str,
    home: Path,
    machine: str | None = None,
) -> ProvisionContext:
    """Build the production context for *user*."""
    return ProvisionContext(
        user=user,
        home=home,
        arch=detect_architecture(machine),
        config=config,
        runner=CommandRunner(elevate=config.commands.elevate),
    )


__all__ = [
    "Architecture",
    "ContextError",
    "DevenvLayout",
    "ProvisionContext",
    "RunConfiguration",
    "UnsupportedArchitectureError",
    "create_context",
    "detect_architecture",
    "resolve_target_user",
]
