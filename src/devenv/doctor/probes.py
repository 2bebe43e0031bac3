"""Probe registration entry point for the doctor command."""

from __future__ import annotations

import platform
import sys
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from .. import __version__
from ..catalog import build_phases, doctor_checks, iter_resources
from ..provision.phases import Phase
from ..provision.probes import ProbeOutcome, ProbeState
from ..provision.steps import Resource
from .models import ProbeCategory, ProbeDefinition, ProbeResult, ProbeStatus

if TYPE_CHECKING:
    from ..context import ProvisionContext

OS_RELEASE_PATH = Path("/etc/os-release")
SUPPORTED_DISTRIBUTIONS = frozenset({"debian", "ubuntu"})

_REMEDIATION_BY_CATEGORY: dict[str, str] = {
    "base": "devenv install",
    "tools": "devenv install",
    "configs": "devenv update --configs",
    "plugins": "devenv install",
    "agents": "devenv install",
}


def collect_probes(
    context: ProvisionContext,
    phases: Sequence[Phase] | None = None,
) -> Sequence[ProbeDefinition]:
    """Return the set of probes that should run for the current context."""
    resolved = tuple(phases) if phases is not None else build_phases(context)
    probes: list[ProbeDefinition] = []
    probes.extend(_env_probes())
    for resource in [*iter_resources(resolved), *doctor_checks()]:
        if resource.doctor:
            probes.append(resource_probe(resource))
    return tuple(probes)


def classify(resource: Resource, outcome: ProbeOutcome) -> ProbeStatus:
    """Map a probe outcome onto OK/WARN/FAIL for *resource*."""
    if outcome.state is ProbeState.ABSENT:
        return ProbeStatus.FAIL if resource.mandatory else ProbeStatus.WARN
    if outcome.state is ProbeState.PRESENT_INCORRECT:
        return ProbeStatus.WARN
    return ProbeStatus.OK


def resource_probe(resource: Resource) -> ProbeDefinition:
    """Wrap a target-state resource as a doctor probe."""
    category = _category(resource.category)

    def _runner(context: ProvisionContext) -> ProbeResult:
        outcome = resource.probe.check(context)
        status = classify(resource, outcome)
        data: dict[str, object] = {
            "state": outcome.state.value,
            "mandatory": resource.mandatory,
        }
        if outcome.version:
            data["version"] = outcome.version
        if outcome.location:
            data["location"] = outcome.location
        warnings: tuple[str, ...] = ()
        if resource.pin and outcome.version:
            pinned = context.config.pin(resource.pin)
            data["pin"] = pinned
            if outcome.version != pinned:
                warnings = (f"installed {outcome.version}, pinned {pinned}",)
        return ProbeResult(
            id=resource.id,
            category=category,
            status=status,
            message=f"{resource.description}: {outcome.detail}",
            remediation=_remediation(resource, status),
            data=data,
            warnings=warnings,
        )

    return ProbeDefinition(id=resource.id, category=category, run=_runner)


def _category(value: str) -> ProbeCategory:
    categories: dict[str, ProbeCategory] = {
        "base": "base",
        "tools": "tools",
        "configs": "configs",
        "plugins": "plugins",
        "shell": "shell",
        "agents": "agents",
        "dotfiles": "dotfiles",
    }
    return categories.get(value, "tools")


def _remediation(resource: Resource, status: ProbeStatus) -> str | None:
    if status is ProbeStatus.OK:
        return None
    if resource.id == "login-shell":
        return "chsh -s $(which zsh)"
    if resource.id == "tailscale-connected":
        return "sudo tailscale up"
    hint = _REMEDIATION_BY_CATEGORY.get(resource.category)
    return f"run: {hint}" if hint else None


# ---------------------------------------------------------------------------
# Environment probes
# ---------------------------------------------------------------------------


def _make_probe(
    probe_id: str,
    category: ProbeCategory,
    handler: Callable[[ProvisionContext], ProbeResult],
) -> ProbeDefinition:
    def _runner(context: ProvisionContext) -> ProbeResult:
        return handler(context)

    return ProbeDefinition(id=probe_id, category=category, run=_runner)


def _env_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("env-devenv", "env", _probe_env_devenv),
        _make_probe("env-python", "env", _probe_env_python),
        _make_probe("env-platform", "env", _probe_env_platform),
        _make_probe("env-arch", "env", _probe_env_arch),
    )


def _probe_env_devenv(context: ProvisionContext) -> ProbeResult:
    return ProbeResult(
        id="env-devenv",
        category="env",
        status=ProbeStatus.OK,
        message=f"devenv {__version__} (target user {context.user}).",
        data={"version": __version__, "user": context.user, "home": str(context.home)},
    )


def _probe_env_python(context: ProvisionContext) -> ProbeResult:
    version = platform.python_version()
    return ProbeResult(
        id="env-python",
        category="env",
        status=ProbeStatus.OK,
        message=f"Python {version} detected.",
        data={"executable": sys.executable, "version": version},
    )


def read_os_release(path: Path = OS_RELEASE_PATH) -> dict[str, str]:
    """Parse an ``os-release`` file into a mapping."""
    values: dict[str, str] = {}
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return values
    for line in lines:
        key, sep, raw = line.partition("=")
        if not sep or not key.strip() or key.startswith("#"):
            continue
        values[key.strip()] = raw.strip().strip('"').strip("'")
    return values


def _probe_env_platform(context: ProvisionContext) -> ProbeResult:
    release = read_os_release()
    if not release:
        return ProbeResult(
            id="env-platform",
            category="env",
            status=ProbeStatus.WARN,
            message=f"Cannot read {OS_RELEASE_PATH}; distribution unknown.",
        )
    name = release.get("PRETTY_NAME", release.get("ID", "unknown"))
    family = {release.get("ID", "").lower(), *release.get("ID_LIKE", "").lower().split()}
    supported = bool(family & SUPPORTED_DISTRIBUTIONS)
    return ProbeResult(
        id="env-platform",
        category="env",
        status=ProbeStatus.OK if supported else ProbeStatus.WARN,
        message=(
            f"{name} detected."
            if supported
            else f"{name} is not Debian/Ubuntu based; apt steps will fail."
        ),
        data={"id": release.get("ID"), "id_like": release.get("ID_LIKE"), "name": name},
    )


def _probe_env_arch(context: ProvisionContext) -> ProbeResult:
    arch = context.arch
    return ProbeResult(
        id="env-arch",
        category="env",
        status=ProbeStatus.OK,
        message=f"{arch.machine} (deb {arch.deb_arch}, tarball {arch.tarball_arch}).",
        data={
            "machine": arch.machine,
            "deb_arch": arch.deb_arch,
            "tarball_arch": arch.tarball_arch,
        },
    )
