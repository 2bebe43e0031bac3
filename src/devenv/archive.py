"""Archive helpers shared by the prebuilt-binary download strategies."""
from __future__ import annotations

import hashlib
import shutil
import subprocess
from pathlib import Path


class ArchiveError(RuntimeError):
    """Raised when an archive cannot be unpacked or verified."""


def extract_member(
    archive_path: Path,
    member: str,
    destination: Path,
    *,
    tar_bin: str = "tar",
) -> Path:
    """Extract *member* from the gzip tarball at *archive_path* into *destination*."""
    resolved = shutil.which(tar_bin) if not Path(tar_bin).is_absolute() else tar_bin
    if resolved is None:
        raise ArchiveError(f"The '{tar_bin}' command is required to unpack archives.")

    destination.mkdir(parents=True, exist_ok=True)
    cmd = [resolved, "-xzf", str(archive_path), "-C", str(destination), member]
    result = subprocess.run(  # noqa: S603 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise ArchiveError(message.strip())

    extracted = destination / member
    if not extracted.is_file():
        raise ArchiveError(f"Archive {archive_path.name} did not contain '{member}'.")
    return extracted


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def verify_checksum(path: Path, expected: str) -> None:
    """Raise :class:`ArchiveError` when *path* does not hash to *expected*."""
    actual = compute_checksum(path)
    if actual.lower() != expected.strip().lower():
        raise ArchiveError(
            f"Checksum mismatch for {path.name}: expected {expected}, got {actual}."
        )
