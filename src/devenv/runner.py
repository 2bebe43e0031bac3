"""Subprocess execution with per-command privilege elevation."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """Raised when an external command exits with a non-zero status."""

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = "") -> None:
        """Capture the failing command, exit status and stderr tail."""
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = f" ({self.stderr.splitlines()[-1]})" if self.stderr else ""
        super().__init__(f"`{' '.join(self.argv)}` exited with {returncode}{detail}")


def running_as_superuser() -> bool:
    """Return ``True`` when the effective user is root."""
    return os.geteuid() == 0


@dataclass(slots=True)
class CommandRunner:
    """Run external commands, elevating through *elevate* when requested."""

    elevate: str = "sudo"
    env: Mapping[str, str] | None = None

    def build(self, argv: Sequence[str], *, elevate: bool = False) -> list[str]:
        """Return the final argv, prefixed with the elevation wrapper if needed."""
        command = [str(part) for part in argv]
        if elevate and not running_as_superuser():
            return [self.elevate, *command]
        return command

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
        """Execute *argv*; raise :class:`CommandError` on failure when *check*."""
        command = self.build(argv, elevate=elevate)
        merged_env = dict(os.environ if self.env is None else self.env)
        if env:
            merged_env.update(env)
        LOGGER.debug("run: %s", " ".join(command))
        try:
            result = subprocess.run(  # noqa: S603 - controlled command execution
                command,
                capture_output=True,
                text=True,
                env=merged_env,
                cwd=str(cwd) if cwd is not None else None,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise CommandError(command, 127, str(exc)) from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandError(command, 124, f"timed out after {timeout}s") from exc
        if check and result.returncode != 0:
            raise CommandError(command, result.returncode, result.stderr or result.stdout or "")
        return result

    def query(
        self,
        argv: Sequence[str],
        *,
        timeout: float = 5.0,
    ) -> subprocess.CompletedProcess[str] | None:
        """Run a read-only query, returning ``None`` if it cannot execute."""
        try:
            return self.run(argv, check=False, timeout=timeout)
        except CommandError:
            return None


__all__ = ["CommandError", "CommandRunner", "running_as_superuser"]
