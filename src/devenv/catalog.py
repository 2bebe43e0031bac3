"""Target-state catalog: the canonical six provisioning phases.

Phase numbers are stable identifiers for ``--skip-phase``. The same resources
feed the installer, ``devenv doctor`` and ``devenv update``.
"""
from __future__ import annotations

from pathlib import Path

from . import __version__
from .context import ProvisionContext
from .provision.phases import Phase
from .provision.probes import (
    CommandProbe,
    CommandStatusProbe,
    DirectoryProbe,
    FileProbe,
    LoginShellProbe,
    PackageProbe,
    SymlinkProbe,
)
from .provision.steps import Resource
from .provision.strategies import (
    AptInstall,
    ArchiveDownload,
    ChangeLoginShell,
    CreateSymlink,
    DebDownload,
    FileCopy,
    GitClone,
    MakeDirectory,
    PromptedSecretFile,
    ScriptInstall,
    ToolCommand,
    WriteText,
)

BASE_PACKAGES: tuple[str, ...] = (
    "curl",
    "git",
    "wget",
    "ca-certificates",
    "unzip",
    "tar",
    "xz-utils",
    "jq",
    "build-essential",
    "gnupg",
    "lsb-release",
    "zsh",
    "software-properties-common",
)

# (resource id, apt package, acceptable executable names)
APT_TOOLS: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("ripgrep", "ripgrep", ("rg",)),
    ("tmux", "tmux", ("tmux",)),
    ("fzf", "fzf", ("fzf",)),
    ("direnv", "direnv", ("direnv",)),
    ("git-lfs", "git-lfs", ("git-lfs",)),
    ("mosh", "mosh", ("mosh",)),
    ("ncdu", "ncdu", ("ncdu",)),
    ("tldr", "tldr", ("tldr",)),
    ("bat", "bat", ("batcat", "bat")),
    ("fd", "fd-find", ("fdfind", "fd")),
    ("btop", "btop", ("btop",)),
    ("neovim", "neovim", ("nvim",)),
    ("gh", "gh", ("gh",)),
)

LSD_DEB_URL = "https://github.com/lsd-rs/lsd/releases/download/v{version}/lsd_{version}_{deb_arch}.deb"
DUF_DEB_URL = (
    "https://github.com/muesli/duf/releases/download/v{version}/duf_{version}_linux_{deb_arch}.deb"
)
LAZYGIT_ARCHIVE_URL = (
    "https://github.com/jesseduffield/lazygit/releases/download/"
    "v{version}/lazygit_{version}_Linux_{tarball_arch}.tar.gz"
)
TAILSCALE_INSTALLER = "https://tailscale.com/install.sh"
OH_MY_ZSH_INSTALLER = "https://raw.githubusercontent.com/ohmyzsh/ohmyzsh/master/tools/install.sh"
UV_INSTALLER = "https://astral.sh/uv/install.sh"
BUN_INSTALLER = "https://bun.sh/install"
CLAUDE_INSTALLER = "https://claude.ai/install.sh"
CHEZMOI_INSTALLER = "https://get.chezmoi.io"
CODEX_PACKAGE = "@openai/codex@latest"

SHELL_PLUGINS: tuple[tuple[str, str, str], ...] = (
    ("powerlevel10k", "themes/powerlevel10k", "https://github.com/romkatv/powerlevel10k.git"),
    (
        "zsh-autosuggestions",
        "plugins/zsh-autosuggestions",
        "https://github.com/zsh-users/zsh-autosuggestions",
    ),
    (
        "zsh-syntax-highlighting",
        "plugins/zsh-syntax-highlighting",
        "https://github.com/zsh-users/zsh-syntax-highlighting.git",
    ),
)

PRIVATE_DOTFILES_PROMPT = (
    "Set up private dotfiles (SSH, Claude knowledge base)? "
    "You will need your age decryption key"
)
AGE_KEY_PROMPT = "Paste your age key (AGE-SECRET-KEY-1...) or press Enter to skip"


def _apt_tool(resource_id: str, package: str, names: tuple[str, ...]) -> Resource:
    return Resource(
        id=resource_id,
        description=f"{resource_id} ({package})",
        probe=CommandProbe(names),
        strategies=(AptInstall((package,)),),
        category="tools",
    )


def _base_phase() -> Phase:
    return Phase(
        number=1,
        name="Base dependencies",
        resources=(
            Resource(
                id="base-packages",
                description="Base system packages",
                probe=PackageProbe(BASE_PACKAGES),
                strategies=(AptInstall(BASE_PACKAGES, refresh=True),),
                mandatory=True,
                category="base",
            ),
        ),
    )


def _tools_phase() -> Phase:
    resources = [_apt_tool(*entry) for entry in APT_TOOLS]
    resources.extend(
        (
            Resource(
                id="duf",
                description="duf disk usage viewer",
                probe=CommandProbe(("duf",)),
                strategies=(AptInstall(("duf",)), DebDownload("duf", DUF_DEB_URL)),
            ),
            Resource(
                id="lsd",
                description="lsd directory listing",
                probe=CommandProbe(("lsd",)),
                strategies=(AptInstall(("lsd",)), DebDownload("lsd", LSD_DEB_URL)),
                mandatory=True,
            ),
            Resource(
                id="lazygit",
                description="lazygit terminal UI",
                probe=CommandProbe(("lazygit",)),
                strategies=(
                    AptInstall(("lazygit",)),
                    ArchiveDownload("lazygit", LAZYGIT_ARCHIVE_URL, "lazygit"),
                ),
                pin="lazygit",
            ),
            Resource(
                id="tailscale",
                description="Tailscale VPN client",
                probe=CommandProbe(("tailscale",)),
                strategies=(ScriptInstall(TAILSCALE_INSTALLER, interpreter="bash"),),
            ),
        )
    )
    return Phase(number=2, name="CLI tools", resources=tuple(resources))


def _config_phase(context: ProvisionContext) -> Phase:
    home = context.home
    layout = context.layout
    config = context.config
    resources: list[Resource] = [
        Resource(
            id="devenv-checkout",
            description=f"Provisioning checkout ({layout.root})",
            probe=DirectoryProbe(layout.root, marker=".git"),
            strategies=(GitClone(config.repo_url, layout.root),),
            mandatory=True,
            category="configs",
        )
    ]
    for directory in (
        home / ".config" / "ghostty",
        layout.zsh_dir,
        home / "dev" / "github",
        home / ".local" / "bin",
    ):
        resources.append(
            Resource(
                id=f"dir:{_display(directory, home)}",
                description=f"Directory {_display(directory, home)}",
                probe=DirectoryProbe(directory),
                strategies=(MakeDirectory(directory),),
                category="configs",
            )
        )
    copies: tuple[tuple[str, Path, Path, bool], ...] = (
        ("zshrc", layout.template("zsh", "devenv.zshrc"), home / ".zshrc", True),
        ("p10k", layout.template("zsh", "p10k.zsh"), home / ".p10k.zsh", True),
        ("aliases", layout.template("zsh", "aliases.zsh"), layout.zsh_dir / "aliases.zsh", True),
        ("tmux-conf", layout.template("tmux", "tmux.conf"), home / ".tmux.conf", False),
        (
            "ghostty-config",
            layout.template("ghostty", "config"),
            home / ".config" / "ghostty" / "config",
            False,
        ),
    )
    for resource_id, source, destination, mandatory in copies:
        resources.append(
            Resource(
                id=resource_id,
                description=f"Config {_display(destination, home)}",
                probe=FileProbe(destination, source=source),
                strategies=(FileCopy(source, destination),),
                mandatory=mandatory,
                category="configs",
            )
        )
    resources.extend(
        (
            Resource(
                id="shell-lib",
                description=f"Shell library {_display(layout.lib_dir, home)}",
                probe=SymlinkProbe(layout.lib_dir, layout.template("lib")),
                strategies=(CreateSymlink(layout.lib_dir, layout.template("lib")),),
                category="configs",
            ),
            Resource(
                id="version-marker",
                description=f"Version marker {_display(layout.version_file, home)}",
                probe=FileProbe(layout.version_file, content=__version__),
                strategies=(WriteText(layout.version_file, __version__),),
                mandatory=True,
                category="configs",
            ),
        )
    )
    return Phase(number=3, name="Configuration", resources=tuple(resources))


def _shell_phase(context: ProvisionContext) -> Phase:
    oh_my_zsh = context.home / ".oh-my-zsh"
    custom = oh_my_zsh / "custom"
    resources: list[Resource] = [
        Resource(
            id="oh-my-zsh",
            description="Oh My Zsh",
            probe=DirectoryProbe(oh_my_zsh, marker="oh-my-zsh.sh"),
            strategies=(
                ScriptInstall(
                    OH_MY_ZSH_INSTALLER,
                    interpreter="sh",
                    args=("--unattended",),
                    env={"RUNZSH": "no", "CHSH": "no", "KEEP_ZSHRC": "yes"},
                ),
            ),
            mandatory=True,
            category="plugins",
        )
    ]
    for resource_id, relative, url in SHELL_PLUGINS:
        destination = custom / relative
        resources.append(
            Resource(
                id=resource_id,
                description=f"Shell plugin {resource_id}",
                probe=DirectoryProbe(destination),
                strategies=(GitClone(url, destination),),
                mandatory=True,
                category="plugins",
            )
        )
    shell = context.config.shell
    resources.append(
        Resource(
            id="login-shell",
            description=f"Default login shell ({shell})",
            probe=LoginShellProbe(shell),
            strategies=(ChangeLoginShell(shell),),
            category="shell",
        )
    )
    return Phase(number=4, name="Shell setup", resources=tuple(resources))


def _agents_phase() -> Phase:
    uv = CommandProbe(("uv",))
    bun = CommandProbe(("bun",), paths=("~/.bun/bin/bun",))
    claude = CommandProbe(("claude",), paths=("~/.local/bin/claude",))
    codex = CommandProbe(("codex",), paths=("~/.bun/bin/codex",))
    install_codex = ToolCommand(bun, ("install", "-g", "--trust", CODEX_PACKAGE))
    return Phase(
        number=5,
        name="AI agents",
        resources=(
            Resource(
                id="uv",
                description="uv Python package manager",
                probe=uv,
                strategies=(ScriptInstall(UV_INSTALLER, interpreter="sh"),),
                category="agents",
                upgrade=(ToolCommand(uv, ("self", "update")),),
            ),
            Resource(
                id="bun",
                description="Bun JavaScript runtime",
                probe=bun,
                strategies=(ScriptInstall(BUN_INSTALLER, interpreter="bash"),),
                category="agents",
            ),
            Resource(
                id="claude",
                description="Claude Code",
                probe=claude,
                strategies=(ScriptInstall(CLAUDE_INSTALLER, interpreter="bash"),),
                category="agents",
                upgrade=(ToolCommand(claude, ("update",)),),
            ),
            Resource(
                id="codex",
                description="Codex CLI",
                probe=codex,
                strategies=(install_codex,),
                category="agents",
                upgrade=(install_codex,),
            ),
        ),
    )


def _dotfiles_phase(context: ProvisionContext) -> Phase:
    home = context.home
    config = context.config
    chezmoi = CommandProbe(("chezmoi",), paths=("~/.local/bin/chezmoi",))
    key_path = home / ".config" / "chezmoi" / "key.txt"
    return Phase(
        number=6,
        name="Private dotfiles",
        confirm=PRIVATE_DOTFILES_PROMPT,
        resources=(
            Resource(
                id="age",
                description="age encryption tool",
                probe=CommandProbe(("age",)),
                strategies=(AptInstall(("age",)),),
                category="dotfiles",
                doctor=False,
            ),
            Resource(
                id="chezmoi",
                description="chezmoi dotfiles manager",
                probe=chezmoi,
                strategies=(
                    ScriptInstall(
                        CHEZMOI_INSTALLER,
                        interpreter="sh",
                        args=("-b", str(home / ".local" / "bin")),
                    ),
                ),
                category="dotfiles",
                doctor=False,
            ),
            Resource(
                id="age-key",
                description=f"age key {_display(key_path, home)}",
                probe=FileProbe(key_path),
                strategies=(PromptedSecretFile(key_path, AGE_KEY_PROMPT),),
                category="dotfiles",
                doctor=False,
            ),
            Resource(
                id="private-dotfiles",
                description=f"Private dotfiles ({config.dotfiles_repo})",
                probe=DirectoryProbe(config.dotfiles_source, marker=".git"),
                strategies=(
                    ToolCommand(
                        chezmoi,
                        (
                            "init",
                            "--apply",
                            "--source",
                            str(config.dotfiles_source),
                            config.dotfiles_repo,
                        ),
                    ),
                ),
                category="dotfiles",
                doctor=False,
            ),
        ),
    )


def build_phases(context: ProvisionContext) -> tuple[Phase, ...]:
    """Return the ordered phase list for *context*."""
    return (
        _base_phase(),
        _tools_phase(),
        _config_phase(context),
        _shell_phase(context),
        _agents_phase(),
        _dotfiles_phase(context),
    )


def doctor_checks() -> tuple[Resource, ...]:
    """Return resources that are verified by doctor but never installed."""
    return (
        Resource(
            id="tailscale-connected",
            description="Tailscale connectivity",
            probe=CommandStatusProbe(
                CommandProbe(("tailscale",), version_args=None),
                args=("status",),
                failure_detail="tailscale is not connected (run: sudo tailscale up)",
            ),
            category="tools",
        ),
    )


def iter_resources(phases: tuple[Phase, ...]) -> list[Resource]:
    """Flatten *phases* into their resources in declaration order."""
    return [resource for phase in phases for resource in phase.resources]


def _display(path: Path, home: Path) -> str:
    try:
        return f"~/{path.relative_to(home)}"
    except ValueError:
        return str(path)


__all__ = ["BASE_PACKAGES", "build_phases", "doctor_checks", "iter_resources"]
