"""``devenv update``: refresh the checkout, configs, plugins, tools and agents.

Every item failure is reported as a warning; nothing here aborts the run.
Config files that differ from their template are preserved in the run's
timestamped backup directory before being overwritten.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .catalog import iter_resources
from .context import ProvisionContext
from .provision.phases import Phase
from .provision.probes import UNKNOWN_VERSION, DirectoryProbe, PackageProbe
from .provision.steps import Resource
from .provision.strategies import (
    ACQUISITION_ERRORS,
    AptInstall,
    ArchiveDownload,
    DebDownload,
    FileCopy,
    Strategy,
    WriteText,
)
from .runner import CommandError

LOGGER = logging.getLogger(__name__)


class UpdateScope(str, Enum):
    """Which parts of the environment ``devenv update`` touches."""

    ALL = "all"
    CONFIGS = "configs"
    PLUGINS = "plugins"
    TOOLS = "tools"
    AGENTS = "agents"

    def includes(self, section: UpdateScope) -> bool:
        """Return ``True`` when *section* runs under this scope."""
        return self is UpdateScope.ALL or self is section


class ItemStatus(str, Enum):
    """Outcome of a single update item."""

    OK = "ok"
    WARN = "warn"
    SKIP = "skip"


@dataclass(slots=True, frozen=True)
class UpdateItem:
    """One line of update output."""

    section: str
    id: str
    status: ItemStatus
    message: str


@dataclass(slots=True)
class UpdateReport:
    """Collected results of an update run."""

    scope: UpdateScope
    items: list[UpdateItem] = field(default_factory=list)
    backup_dir: Path | None = None

    @property
    def warnings(self) -> list[UpdateItem]:
        """Return the items that ended with a warning."""
        return [item for item in self.items if item.status is ItemStatus.WARN]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable summary."""
        return {
            "scope": self.scope.value,
            "backup_dir": str(self.backup_dir) if self.backup_dir else None,
            "items": [
                {
                    "section": item.section,
                    "id": item.id,
                    "status": item.status.value,
                    "message": item.message,
                }
                for item in self.items
            ],
        }


ItemCallback = Callable[[UpdateItem], None]


class Updater:
    """Apply an :class:`UpdateScope` against the target state."""

    def __init__(
        self,
        context: ProvisionContext,
        phases: Sequence[Phase],
        *,
        on_item: ItemCallback | None = None,
    ) -> None:
        """Store the context, the target state and an optional progress callback."""
        self._context = context
        self._resources = iter_resources(tuple(phases))
        self._on_item = on_item
        self._report = UpdateReport(scope=UpdateScope.ALL)

    def run(self, scope: UpdateScope = UpdateScope.ALL) -> UpdateReport:
        """Run the update for *scope* and return its report."""
        self._report = UpdateReport(scope=scope)
        self._refresh_checkout()
        if scope.includes(UpdateScope.CONFIGS):
            self._update_configs()
        if scope.includes(UpdateScope.PLUGINS):
            self._update_plugins()
        if scope.includes(UpdateScope.TOOLS):
            self._update_tools()
        if scope.includes(UpdateScope.AGENTS):
            self._update_agents()
        backups = self._context.backups
        self._report.backup_dir = backups.directory if backups is not None else None
        return self._report

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def _refresh_checkout(self) -> None:
        root = self._context.layout.root
        if not (root / ".git").exists():
            self._record("repo", "devenv-checkout", ItemStatus.WARN, f"Not a git repository: {root}")
            return
        try:
            self._git_pull(root)
        except CommandError as exc:
            self._record("repo", "devenv-checkout", ItemStatus.WARN, f"git pull failed: {exc}")
            return
        self._record("repo", "devenv-checkout", ItemStatus.OK, f"{root} updated")

    def _update_configs(self) -> None:
        for resource in self._in_category("configs"):
            for strategy in resource.strategies:
                if isinstance(strategy, FileCopy):
                    self._copy_config(resource, strategy)
                elif isinstance(strategy, WriteText):
                    self._apply(resource, "configs", strategy, f"{strategy.destination} set to {strategy.content}")

    def _copy_config(self, resource: Resource, strategy: FileCopy) -> None:
        if not strategy.source.is_file():
            self._record("configs", resource.id, ItemStatus.WARN, f"template {strategy.source} missing")
            return
        destination = strategy.destination
        if destination.is_file() and destination.read_bytes() == strategy.source.read_bytes():
            self._record("configs", resource.id, ItemStatus.OK, f"{destination} already up to date")
            return
        self._apply(resource, "configs", strategy, f"{destination} updated")

    def _update_plugins(self) -> None:
        for resource in self._in_category("plugins"):
            probe = resource.probe
            if not isinstance(probe, DirectoryProbe):
                continue
            path = probe.path
            if not path.exists():
                self._record("plugins", resource.id, ItemStatus.SKIP, "not installed")
                continue
            if not (path / ".git").exists():
                self._record("plugins", resource.id, ItemStatus.WARN, f"{path} is not a git checkout")
                continue
            try:
                self._git_pull(path)
            except CommandError as exc:
                self._record("plugins", resource.id, ItemStatus.WARN, f"update failed: {exc}")
                continue
            self._record("plugins", resource.id, ItemStatus.OK, "updated")

    def _update_tools(self) -> None:
        packages = self._installed_apt_packages()
        if packages:
            self._upgrade_packages(packages)
        else:
            self._record("tools", "apt", ItemStatus.SKIP, "no apt-managed tools installed")
        for resource in self._resources:
            if resource.pin:
                self._enforce_pin(resource, resource.pin)

    def _update_agents(self) -> None:
        for resource in self._in_category("agents"):
            if not resource.upgrade:
                continue
            if resource.probe.check(self._context).is_absent:
                self._record("agents", resource.id, ItemStatus.SKIP, "not installed")
                continue
            for strategy in resource.upgrade:
                self._apply(resource, "agents", strategy, "updated")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _installed_apt_packages(self) -> list[str]:
        packages: list[str] = []
        for resource in self._in_category("tools"):
            apt = [strategy for strategy in resource.strategies if isinstance(strategy, AptInstall)]
            if not apt or not resource.probe.check(self._context).is_correct:
                continue
            for package in apt[0].packages:
                if not PackageProbe((package,)).missing(self._context):
                    packages.append(package)
        return packages

    def _upgrade_packages(self, packages: list[str]) -> None:
        apt_get = self._context.config.commands.apt_get
        env = self._context.command_env()
        runner = self._context.runner
        try:
            runner.run([apt_get, "update", "-y"], elevate=True, env=env)
            runner.run([apt_get, "install", "--only-upgrade", "-y", *packages], elevate=True, env=env)
        except CommandError as exc:
            self._record("tools", "apt", ItemStatus.WARN, f"apt upgrade failed: {exc}")
            return
        self._record("tools", "apt", ItemStatus.OK, f"upgraded {' '.join(packages)}")

    def _enforce_pin(self, resource: Resource, pin: str) -> None:
        pinned = self._context.config.pin(pin)
        outcome = resource.probe.check(self._context)
        if outcome.is_absent:
            self._record("tools", resource.id, ItemStatus.SKIP, "not installed")
            return
        if outcome.version in (None, UNKNOWN_VERSION):
            self._record(
                "tools", resource.id, ItemStatus.WARN, "cannot determine installed version"
            )
            return
        if outcome.version == pinned:
            self._record("tools", resource.id, ItemStatus.OK, f"already at {pinned}")
            return
        versioned = [
            strategy
            for strategy in resource.strategies
            if isinstance(strategy, (DebDownload, ArchiveDownload))
        ]
        errors: list[str] = []
        for strategy in versioned:
            try:
                strategy.acquire(self._context)
            except ACQUISITION_ERRORS as exc:
                errors.append(str(exc))
                continue
            after = resource.probe.check(self._context)
            if after.version == pinned:
                self._record(
                    "tools", resource.id, ItemStatus.OK, f"updated {outcome.version} -> {pinned}"
                )
                return
            errors.append(f"reports {after.version} after reinstall")
        detail = "; ".join(errors) or "no versioned download strategy"
        self._record("tools", resource.id, ItemStatus.WARN, f"update to {pinned} failed: {detail}")

    def _apply(self, resource: Resource, section: str, strategy: Strategy, message: str) -> None:
        try:
            strategy.acquire(self._context)
        except ACQUISITION_ERRORS as exc:
            self._record(section, resource.id, ItemStatus.WARN, f"{exc}")
            return
        self._record(section, resource.id, ItemStatus.OK, message)

    def _git_pull(self, path: Path) -> None:
        git = self._context.config.commands.git
        self._context.runner.run(
            [git, "-C", str(path), "pull", "--ff-only"],
            env=self._context.command_env(),
        )

    def _in_category(self, category: str) -> list[Resource]:
        return [resource for resource in self._resources if resource.category == category]

    def _record(self, section: str, item_id: str, status: ItemStatus, message: str) -> None:
        item = UpdateItem(section=section, id=item_id, status=status, message=message)
        self._report.items.append(item)
        LOGGER.debug("update %s/%s: %s %s", section, item_id, status.value, message)
        if self._on_item is not None:
            self._on_item(item)


__all__ = ["ItemStatus", "UpdateItem", "UpdateReport", "UpdateScope", "Updater"]
