"""In-memory stand-ins for the machine a provisioning run talks to."""
from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from devenv import catalog
from devenv.config import DEFAULTS, AppConfig
from devenv.context import ProvisionContext, detect_architecture
from devenv.downloads import DownloadError
from devenv.runner import CommandError

# Executables an apt package drops on the search path (default: the package name).
PACKAGE_BINARIES: dict[str, tuple[str, ...]] = {
    "ripgrep": ("rg",),
    "bat": ("batcat",),
    "fd-find": ("fdfind",),
    "neovim": ("nvim",),
    "build-essential": ("gcc", "make"),
    "ca-certificates": (),
    "software-properties-common": (),
    "xz-utils": ("xz",),
    "lsb-release": ("lsb_release",),
    "gnupg": ("gpg",),
}

TEMPLATES: dict[str, str] = {
    "zsh/devenv.zshrc": "# devenv zshrc\nsource ~/.devenv/zsh/aliases.zsh\n",
    "zsh/p10k.zsh": "# p10k\n",
    "zsh/aliases.zsh": "alias ll='lsd -l'\n",
    "tmux/tmux.conf": "set -g mouse on\n",
    "ghostty/config": "font-size = 12\n",
    "lib/prompt.sh": "# helpers\n",
}

# Installer scripts: one "exe <path>" or "file <path>" per line.
SCRIPTS: dict[str, str] = {
    catalog.TAILSCALE_INSTALLER: "exe $BIN/tailscale\n",
    catalog.OH_MY_ZSH_INSTALLER: "file ~/.oh-my-zsh/oh-my-zsh.sh\nfile ~/.oh-my-zsh/.git/HEAD\n",
    catalog.UV_INSTALLER: "exe ~/.local/bin/uv\n",
    catalog.BUN_INSTALLER: "exe ~/.bun/bin/bun\n",
    catalog.CLAUDE_INSTALLER: "exe ~/.local/bin/claude\n",
    catalog.CHEZMOI_INSTALLER: "exe ~/.local/bin/chezmoi\n",
}


def make_executable(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n", encoding="utf-8")
    path.chmod(0o755)
    return path


def snapshot(root: Path) -> dict[str, bytes | str]:
    """Return a comparable view of every entry below *root*."""
    entries: dict[str, bytes | str] = {}
    for path in sorted(root.rglob("*")):
        key = str(path.relative_to(root))
        if path.is_symlink():
            entries[key] = f"-> {os.readlink(path)}"
        elif path.is_file():
            entries[key] = path.read_bytes()
        else:
            entries[key] = "<dir>"
    return entries


@dataclass
class FakeSystem:
    """Simulated apt, git, installers and login shells behind a command runner."""

    home: Path
    bin_dir: Path
    user: str = "tester"
    repo_url: str = str(DEFAULTS["repo_url"])
    installed: set[str] = field(default_factory=set)
    unavailable: set[str] = field(default_factory=set)
    broken_urls: set[str] = field(default_factory=set)
    blobs: dict[str, bytes] = field(default_factory=dict)
    scripts: dict[str, str] = field(default_factory=lambda: dict(SCRIPTS))
    versions: dict[str, str] = field(default_factory=dict)
    shells: dict[str, str] = field(default_factory=dict)
    tailscale_connected: bool = True
    confirm_answer: bool = False
    prompt_answer: str = ""
    calls: list[tuple[list[str], bool]] = field(default_factory=list)
    queries: list[list[str]] = field(default_factory=list)
    downloads: list[str] = field(default_factory=list)
    confirmations: list[str] = field(default_factory=list)
    pulls: list[str] = field(default_factory=list)
    upgraded: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.shells.setdefault(self.user, "/bin/bash")

    # -- context wiring -------------------------------------------------

    def context(self, config: AppConfig, *, machine: str = "x86_64") -> ProvisionContext:
        return ProvisionContext(
            user=self.user,
            home=self.home,
            arch=detect_architecture(machine),
            config=config,
            runner=self,  # type: ignore[arg-type]
            search_path=str(self.bin_dir),
            fetch=self.fetch,
            confirm=self.confirm,
            prompt=self.prompt,
            shell_lookup=self.shells.get,
        )

    def context_factory(
        self,
        config: AppConfig,
        *,
        user: str,
        home: Path,
        machine: str | None = None,
    ) -> ProvisionContext:
        return self.context(config, machine=machine or "x86_64")

    def confirm(self, message: str) -> bool:
        self.confirmations.append(message)
        return self.confirm_answer

    def prompt(self, message: str) -> str:
        return self.prompt_answer

    def fetch(self, url: str, timeout: float) -> bytes:
        self.downloads.append(url)
        if url in self.scripts:
            return self.scripts[url].encode()
        if url in self.blobs:
            return self.blobs[url]
        raise DownloadError(f"{url} returned HTTP 404")

    # -- runner protocol ------------------------------------------------

    @property
    def mutations(self) -> list[list[str]]:
        return [argv for argv, _ in self.calls]

    def run(
        self,
        argv: Sequence[str],
        *,
        elevate: bool = False,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        check: bool = True,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [str(part) for part in argv]
        self.calls.append((command, elevate))
        returncode, stdout, stderr = self._dispatch(command)
        if check and returncode != 0:
            raise CommandError(command, returncode, stderr)
        return subprocess.CompletedProcess(command, returncode, stdout, stderr)

    def query(
        self,
        argv: Sequence[str],
        *,
        timeout: float = 5.0,
    ) -> subprocess.CompletedProcess[str] | None:
        command = [str(part) for part in argv]
        self.queries.append(command)
        returncode, stdout, stderr = self._answer(command)
        return subprocess.CompletedProcess(command, returncode, stdout, stderr)

    # -- simulated commands ---------------------------------------------

    def install_package(self, package: str) -> None:
        self.installed.add(package)
        for name in PACKAGE_BINARIES.get(package, (package,)):
            make_executable(self.bin_dir / name)

    def _resolve(self, raw: str) -> Path:
        if raw.startswith("~/"):
            return self.home / raw[2:]
        if raw.startswith("$BIN/"):
            return self.bin_dir / raw[5:]
        return Path(raw)

    def _answer(self, argv: list[str]) -> tuple[int, str, str]:
        program = Path(argv[0]).name
        if program == "dpkg-query":
            if argv[-1] in self.installed:
                return 0, "install ok installed", ""
            return 1, "", f"dpkg-query: no packages found matching {argv[-1]}"
        if program == "tailscale" and argv[1:] == ["status"]:
            return (0, "100.64.0.1 tester linux -", "") if self.tailscale_connected else (1, "", "Logged out.")
        if argv[1:] == ["--version"]:
            return 0, f"{program} version {self.versions.get(program, '1.0.0')}\n", ""
        return 0, "", ""

    def _dispatch(self, argv: list[str]) -> tuple[int, str, str]:
        program = Path(argv[0]).name
        handler = getattr(self, f"_cmd_{program.replace('-', '_')}", None)
        if handler is None:
            return 0, "", ""
        return handler(argv)

    def _cmd_apt_get(self, argv: list[str]) -> tuple[int, str, str]:
        if argv[1] == "update":
            return 0, "", ""
        packages = [arg for arg in argv[2:] if not arg.startswith("-")]
        if "--only-upgrade" in argv:
            self.upgraded.extend(packages)
            return 0, "", ""
        missing = [package for package in packages if package in self.unavailable]
        if missing:
            return 100, "", f"E: Unable to locate package {missing[0]}"
        for package in packages:
            self.install_package(package)
        return 0, "", ""

    def _cmd_dpkg(self, argv: list[str]) -> tuple[int, str, str]:
        tool = Path(argv[-1]).stem
        self.install_package(tool)
        return 0, "", ""

    def _cmd_git(self, argv: list[str]) -> tuple[int, str, str]:
        if argv[1] == "clone":
            url, destination = argv[-2], Path(argv[-1])
            if url in self.broken_urls:
                return 128, "", f"fatal: unable to access '{url}'"
            (destination / ".git").mkdir(parents=True)
            if url == self.repo_url:
                for relative, content in TEMPLATES.items():
                    path = destination / "config" / relative
                    path.parent.mkdir(parents=True, exist_ok=True)
                    path.write_text(content, encoding="utf-8")
            return 0, "", ""
        if "pull" in argv:
            self.pulls.append(argv[2])
        return 0, "", ""

    def _cmd_sh(self, argv: list[str]) -> tuple[int, str, str]:
        for line in Path(argv[1]).read_text(encoding="utf-8").splitlines():
            kind, raw = line.split(maxsplit=1)
            path = self._resolve(raw)
            if kind == "exe":
                make_executable(path)
            else:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text("# installed\n", encoding="utf-8")
        return 0, "", ""

    _cmd_bash = _cmd_sh

    def _cmd_chsh(self, argv: list[str]) -> tuple[int, str, str]:
        self.shells[argv[-1]] = argv[2]
        return 0, "", ""

    def _cmd_install(self, argv: list[str]) -> tuple[int, str, str]:
        source, destination = Path(argv[-2]), Path(argv[-1])
        shutil.copyfile(source, destination)
        destination.chmod(0o755)
        return 0, "", ""

    def _cmd_mv(self, argv: list[str]) -> tuple[int, str, str]:
        os.replace(argv[-2], argv[-1])
        return 0, "", ""

    def _cmd_rm(self, argv: list[str]) -> tuple[int, str, str]:
        Path(argv[-1]).unlink(missing_ok=True)
        return 0, "", ""

    def _cmd_bun(self, argv: list[str]) -> tuple[int, str, str]:
        if argv[1] == "install":
            make_executable(self.home / ".bun" / "bin" / "codex")
        return 0, "", ""

    def _cmd_chezmoi(self, argv: list[str]) -> tuple[int, str, str]:
        source = Path(argv[argv.index("--source") + 1])
        (source / ".git").mkdir(parents=True, exist_ok=True)
        return 0, "", ""
