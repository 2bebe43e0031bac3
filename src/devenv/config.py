"""Configuration loader for devenv.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``~/.config/devenv/config.yml`` (or an override path).
3. Environment variables prefixed with ``DEVENV_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export DEVENV_DOWNLOADS__TIMEOUT=120
    export DEVENV_PINS__LAZYGIT=0.44.1

``DEVENV_HOME`` is honoured as an alias for ``devenv_home`` so existing shell
integrations that export it keep working.

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. Paths beginning with ``~`` are resolved against the *target*
user's home directory rather than the ambient ``HOME`` so that provisioning on
behalf of ``--user`` stays deterministic. The resulting configuration is
exposed as immutable ``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load devenv configuration. Install with "
        "`pip install devenv` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "DEVENV_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
HOME_ENV_VAR = f"{ENV_PREFIX}HOME"
RESERVED_ENV_KEYS = {
    CONFIG_ENV_VAR,
    HOME_ENV_VAR,
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class CommandsConfig:
    """External binaries used by acquisition strategies."""

    apt_get: str = "apt-get"
    dpkg: str = "dpkg"
    dpkg_query: str = "dpkg-query"
    git: str = "git"
    tar: str = "tar"
    elevate: str = "sudo"
    chsh: str = "chsh"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "apt_get": self.apt_get,
            "dpkg": self.dpkg,
            "dpkg_query": self.dpkg_query,
            "git": self.git,
            "tar": self.tar,
            "elevate": self.elevate,
            "chsh": self.chsh,
        }


@dataclass(frozen=True)
class DownloadsConfig:
    """Network settings for archive and installer downloads."""

    timeout: float = 60.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"timeout": self.timeout}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for devenv."""

    config_file: Path
    devenv_home: Path
    repo_url: str
    dotfiles_repo: str
    dotfiles_source: Path
    logs_dir: Path
    backup_root: Path
    shell: str
    commands: CommandsConfig
    downloads: DownloadsConfig
    pins: Mapping[str, str]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "devenv_home": str(self.devenv_home),
            "repo_url": self.repo_url,
            "dotfiles_repo": self.dotfiles_repo,
            "dotfiles_source": str(self.dotfiles_source),
            "logs_dir": str(self.logs_dir),
            "backup_root": str(self.backup_root),
            "shell": self.shell,
            "commands": self.commands.to_dict(),
            "downloads": self.downloads.to_dict(),
            "pins": dict(self.pins),
        }

    def pin(self, tool: str) -> str:
        """Return the pinned version for *tool*."""
        try:
            return self.pins[tool]
        except KeyError as exc:
            raise ConfigError(f"No version pin configured for '{tool}'.") from exc


DEFAULT_PINS: dict[str, str] = {
    "lsd": "1.1.5",
    "duf": "0.8.1",
    "lazygit": "0.44.1",
}

DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/devenv/config.yml",
    "devenv_home": "~/.devenv",
    "repo_url": "https://github.com/seanGSISG/linux-dev-autoconfig",
    "dotfiles_repo": "seanGSISG/dotfiles",
    "dotfiles_source": "~/dev/github/dotfiles",
    "logs_dir": "~/.local/state/devenv",
    "backup_root": "~",
    "shell": "zsh",
    "commands": {
        "apt_get": "apt-get",
        "dpkg": "dpkg",
        "dpkg_query": "dpkg-query",
        "git": "git",
        "tar": "tar",
        "elevate": "sudo",
        "chsh": "chsh",
    },
    "downloads": {
        "timeout": 60.0,
    },
    "pins": dict(DEFAULT_PINS),
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_COMMAND_KEYS = set(CommandsConfig().to_dict().keys())
ALLOWED_PIN_KEYS = set(DEFAULT_PINS.keys())


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    home: Path,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env, home)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged, home)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
    home: Path,
) -> Path:
    if cli_override:
        return _to_path(os.fspath(cli_override), home, "config_file")
    if CONFIG_ENV_VAR in env:
        return _to_path(env[CONFIG_ENV_VAR], home, "config_file")
    return _to_path(default_path, home, "config_file")


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for key in ("repo_url", "dotfiles_repo", "shell"):
        value = raw.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"{key} must be a non-empty string.")

    commands = _as_dict(raw.get("commands"), "commands")
    unknown = set(commands.keys()) - ALLOWED_COMMAND_KEYS
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown commands configuration keys: {joined}.")
    for key, value in commands.items():
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"commands.{key} must be a non-empty string.")

    downloads = _as_dict(raw.get("downloads"), "downloads")
    unknown = set(downloads.keys()) - {"timeout"}
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown downloads configuration keys: {joined}.")
    timeout = downloads.get("timeout")
    if timeout is not None:
        _expect_positive_float(timeout, "downloads.timeout", default=60.0)

    pins = _as_dict(raw.get("pins"), "pins")
    unknown = set(pins.keys()) - ALLOWED_PIN_KEYS
    if unknown:
        joined = ", ".join(sorted(unknown))
        allowed = ", ".join(sorted(ALLOWED_PIN_KEYS))
        raise ConfigError(f"Unknown version pins: {joined}. Allowed: {allowed}.")


def _build_app_config(raw: Mapping[str, object], home: Path) -> AppConfig:
    commands_mapping = _as_dict(raw.get("commands"), "commands")
    defaults = CommandsConfig()
    commands = CommandsConfig(
        apt_get=str(commands_mapping.get("apt_get", defaults.apt_get)),
        dpkg=str(commands_mapping.get("dpkg", defaults.dpkg)),
        dpkg_query=str(commands_mapping.get("dpkg_query", defaults.dpkg_query)),
        git=str(commands_mapping.get("git", defaults.git)),
        tar=str(commands_mapping.get("tar", defaults.tar)),
        elevate=str(commands_mapping.get("elevate", defaults.elevate)),
        chsh=str(commands_mapping.get("chsh", defaults.chsh)),
    )

    downloads_mapping = _as_dict(raw.get("downloads"), "downloads")
    downloads = DownloadsConfig(
        timeout=_expect_positive_float(
            downloads_mapping.get("timeout"), "downloads.timeout", default=60.0
        ),
    )

    pins_mapping = _as_dict(raw.get("pins"), "pins")
    pins: dict[str, str] = {}
    for tool, default_version in DEFAULT_PINS.items():
        value = pins_mapping.get(tool, default_version)
        pins[tool] = _normalise_version(value, f"pins.{tool}")

    return AppConfig(
        config_file=_to_path(raw.get("config_file"), home, "config_file"),
        devenv_home=_to_path(raw.get("devenv_home"), home, "devenv_home"),
        repo_url=str(raw.get("repo_url")).strip(),
        dotfiles_repo=str(raw.get("dotfiles_repo")).strip(),
        dotfiles_source=_to_path(raw.get("dotfiles_source"), home, "dotfiles_source"),
        logs_dir=_to_path(raw.get("logs_dir"), home, "logs_dir"),
        backup_root=_to_path(raw.get("backup_root"), home, "backup_root"),
        shell=str(raw.get("shell")).strip(),
        commands=commands,
        downloads=downloads,
        pins=pins,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    if env.get(HOME_ENV_VAR):
        overrides["devenv_home"] = env[HOME_ENV_VAR]
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _normalise_version(value: object, label: str) -> str:
    # YAML turns ``0.44`` into a float; keep the textual form.
    if isinstance(value, bool) or value is None:
        raise ConfigError(f"{label} must be a version string.")
    text = str(value).strip().lstrip("v")
    if not text:
        raise ConfigError(f"{label} must be a non-empty version string.")
    return text


def _to_path(value: object, home: Path, label: str) -> Path:
    if value is None:
        raise ConfigError(f"Expected {label} to be a filesystem path, received None.")
    if isinstance(value, Path):
        value = str(value)
    if not isinstance(value, str):
        raise ConfigError(f"Cannot convert value {value!r} to Path.")
    text = value.strip()
    if text == "~":
        return home
    if text.startswith("~/"):
        return home / text[2:]
    return Path(text)


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "CommandsConfig",
    "ConfigError",
    "DownloadsConfig",
    "DEFAULT_PINS",
    "load_config",
]
