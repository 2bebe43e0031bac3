"""Side-effect free capability probes.

A probe answers one question about the target machine ("is ``lsd`` on the
search path?", "does ``~/.zshrc`` match the template?") and reports one of
three states. Probes may run external commands only for read-only queries and
always resolve executables through the :class:`~devenv.context.ProvisionContext`
search path.
"""
from __future__ import annotations

import os
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from ..context import ProvisionContext

UNKNOWN_VERSION = "unknown"

_VERSION_PATTERN = re.compile(r"(\d+\.\d+(?:\.\d+)?)")


class ProbeState(str, Enum):
    """Observed state of a resource."""

    PRESENT_CORRECT = "present-correct"
    PRESENT_INCORRECT = "present-incorrect"
    ABSENT = "absent"


@dataclass(slots=True, frozen=True)
class ProbeOutcome:
    """Result of evaluating a probe."""

    state: ProbeState
    detail: str = ""
    version: str | None = None
    location: str | None = None

    @property
    def is_correct(self) -> bool:
        """Return ``True`` when the resource is present and correct."""
        return self.state is ProbeState.PRESENT_CORRECT

    @property
    def is_absent(self) -> bool:
        """Return ``True`` when the resource is missing."""
        return self.state is ProbeState.ABSENT


class Probe(Protocol):
    """Interface shared by every capability probe."""

    def describe(self) -> str:
        """Return a short human readable description."""
        ...

    def check(self, context: ProvisionContext) -> ProbeOutcome:
        """Evaluate the probe against *context*."""
        ...


def parse_version(text: str | None) -> str | None:
    """Extract the first ``N.N[.N]`` token from *text*."""
    if not text:
        return None
    match = _VERSION_PATTERN.search(text)
    return match.group(1) if match else None


def _expand(path: str, home: Path) -> Path:
    if path == "~":
        return home
    if path.startswith("~/"):
        return home / path[2:]
    return Path(path)


@dataclass(slots=True, frozen=True)
class CommandProbe:
    """Executable presence under one of several acceptable names."""

    names: tuple[str, ...]
    paths: tuple[str, ...] = ()
    version_args: tuple[str, ...] | None = ("--version",)

    def describe(self) -> str:
        """Return a short human readable description."""
        return f"command {' | '.join(self.names)}"

    def locate(self, context: ProvisionContext) -> str | None:
        """Return the first matching executable, or ``None``."""
        for name in self.names:
            resolved = context.which(name)
            if resolved:
                return resolved
        for raw in self.paths:
            candidate = _expand(raw, context.home)
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return str(candidate)
        return None

    def installed_version(self, context: ProvisionContext, location: str) -> str:
        """Return the version reported by *location*, or ``unknown``."""
        if self.version_args is None:
            return UNKNOWN_VERSION
        result = context.runner.query([location, *self.version_args])
        if result is None or result.returncode != 0:
            return UNKNOWN_VERSION
        return parse_version(f"{result.stdout}\n{result.stderr}") or UNKNOWN_VERSION

    def check(self, context: ProvisionContext) -> ProbeOutcome:
        """Evaluate the probe against *context*."""
        location = self.locate(context)
        if location is None:
            return ProbeOutcome(ProbeState.ABSENT, f"{self.names[0]} not found")
        version = self.installed_version(context, location)
        return ProbeOutcome(
            ProbeState.PRESENT_CORRECT,
            f"{Path(location).name} {version}",
            version=version,
            location=location,
        )


@dataclass(slots=True, frozen=True)
class FileProbe:
    """Regular file existence, optionally compared against a template or text."""

    path: Path
    source: Path | None = None
    content: str | None = None

    def describe(self) -> str:
        """Return a short human readable description."""
        return f"file {self.path}"

    def check(self, context: ProvisionContext) -> ProbeOutcome:
        """Evaluate the probe against *context*."""
        if not self.path.is_file():
            return ProbeOutcome(ProbeState.ABSENT, f"{self.path} missing")
        location = str(self.path)
        if self.content is not None:
            # Undecodable bytes count as drift so the step rewrites the file.
            current = self.path.read_bytes().decode("utf-8", errors="replace").strip()
            if current != self.content.strip():
                return ProbeOutcome(
                    ProbeState.PRESENT_INCORRECT,
                    f"{self.path} contains {current!r}",
                    version=current or None,
                    location=location,
                )
            return ProbeOutcome(
                ProbeState.PRESENT_CORRECT, f"{self.path} ok", version=current, location=location
            )
        if self.source is not None:
            if not self.source.is_file():
                return ProbeOutcome(
                    ProbeState.PRESENT_CORRECT,
                    f"{self.path} present (template {self.source} unavailable)",
                    location=location,
                )
            if self.path.read_bytes() != self.source.read_bytes():
                return ProbeOutcome(
                    ProbeState.PRESENT_INCORRECT,
                    f"{self.path} differs from {self.source.name}",
                    location=location,
                )
        return ProbeOutcome(ProbeState.PRESENT_CORRECT, f"{self.path} ok", location=location)


@dataclass(slots=True, frozen=True)
class DirectoryProbe:
    """Directory existence, optionally requiring a marker entry such as ``.git``."""

    path: Path
    marker: str | None = None

    def describe(self) -> str:
        """Return a short human readable description."""
        return f"directory {self.path}"

    def check(self, context: ProvisionContext) -> ProbeOutcome:
        """Evaluate the probe against *context*."""
        if not self.path.is_dir():
            return ProbeOutcome(ProbeState.ABSENT, f"{self.path} missing")
        if self.marker and not (self.path / self.marker).exists():
            return ProbeOutcome(
                ProbeState.PRESENT_INCORRECT,
                f"{self.path} exists without {self.marker}",
                location=str(self.path),
            )
        return ProbeOutcome(ProbeState.PRESENT_CORRECT, f"{self.path} ok", location=str(self.path))


@dataclass(slots=True, frozen=True)
class SymlinkProbe:
    """Symbolic link that must resolve to *target*."""

    path: Path
    target: Path

    def describe(self) -> str:
        """Return a short human readable description."""
        return f"symlink {self.path} -> {self.target}"

    def check(self, context: ProvisionContext) -> ProbeOutcome:
        """Evaluate the probe against *context*."""
        if not self.path.is_symlink():
            if self.path.exists():
                return ProbeOutcome(
                    ProbeState.PRESENT_INCORRECT, f"{self.path} is not a symlink", location=str(self.path)
                )
            return ProbeOutcome(ProbeState.ABSENT, f"{self.path} missing")
        if self.path.resolve() != self.target.resolve():
            return ProbeOutcome(
                ProbeState.PRESENT_INCORRECT,
                f"{self.path} points to {os.readlink(self.path)}",
                location=str(self.path),
            )
        return ProbeOutcome(ProbeState.PRESENT_CORRECT, f"{self.path} ok", location=str(self.path))


@dataclass(slots=True, frozen=True)
class PackageProbe:
    """Every listed Debian package installed according to ``dpkg-query``."""

    packages: tuple[str, ...]

    def describe(self) -> str:
        """Return a short human readable description."""
        return f"packages {' '.join(self.packages)}"

    def missing(self, context: ProvisionContext) -> list[str]:
        """Return the packages ``dpkg-query`` does not report as installed."""
        dpkg_query = context.config.commands.dpkg_query
        absent: list[str] = []
        for package in self.packages:
            result = context.runner.query([dpkg_query, "-W", "-f=${Status}", package])
            if result is None or result.returncode != 0 or "install ok installed" not in result.stdout:
                absent.append(package)
        return absent

    def check(self, context: ProvisionContext) -> ProbeOutcome:
        """Evaluate the probe against *context*."""
        absent = self.missing(context)
        if absent:
            return ProbeOutcome(ProbeState.ABSENT, f"missing packages: {' '.join(absent)}")
        return ProbeOutcome(
            ProbeState.PRESENT_CORRECT, f"{len(self.packages)} packages installed"
        )


@dataclass(slots=True, frozen=True)
class LoginShellProbe:
    """Login shell of the target user compared against the expected shell."""

    shell: str

    def describe(self) -> str:
        """Return a short human readable description."""
        return f"login shell {self.shell}"

    def check(self, context: ProvisionContext) -> ProbeOutcome:
        """Evaluate the probe against *context*."""
        current = context.login_shell()
        if not current:
            return ProbeOutcome(ProbeState.ABSENT, f"no passwd entry for {context.user}")
        if Path(current).name != Path(self.shell).name:
            return ProbeOutcome(
                ProbeState.PRESENT_INCORRECT,
                f"default shell is {current}, expected {self.shell}",
                location=current,
            )
        return ProbeOutcome(ProbeState.PRESENT_CORRECT, f"default shell is {current}", location=current)


@dataclass(slots=True, frozen=True)
class CommandStatusProbe:
    """Read-only status command that must exit 0 for the resource to be healthy."""

    command: CommandProbe
    args: Sequence[str] = field(default_factory=tuple)
    failure_detail: str = "status check failed"

    def describe(self) -> str:
        """Return a short human readable description."""
        return f"{self.command.names[0]} {' '.join(self.args)}".strip()

    def check(self, context: ProvisionContext) -> ProbeOutcome:
        """Evaluate the probe against *context*."""
        location = self.command.locate(context)
        if location is None:
            return ProbeOutcome(ProbeState.ABSENT, f"{self.command.names[0]} not installed")
        result = context.runner.query([location, *self.args])
        if result is None or result.returncode != 0:
            return ProbeOutcome(ProbeState.PRESENT_INCORRECT, self.failure_detail, location=location)
        return ProbeOutcome(ProbeState.PRESENT_CORRECT, f"{self.describe()} ok", location=location)


__all__ = [
    "UNKNOWN_VERSION",
    "CommandProbe",
    "CommandStatusProbe",
    "DirectoryProbe",
    "FileProbe",
    "LoginShellProbe",
    "PackageProbe",
    "Probe",
    "ProbeOutcome",
    "ProbeState",
    "SymlinkProbe",
    "parse_version",
]
