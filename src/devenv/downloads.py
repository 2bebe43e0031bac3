"""HTTP download helpers for installer scripts and release artifacts."""
from __future__ import annotations

import urllib.error
import urllib.request
from collections.abc import Callable
from pathlib import Path

from . import __version__

Fetcher = Callable[[str, float], bytes]

USER_AGENT = f"devenv/{__version__}"


class DownloadError(RuntimeError):
    """Raised when a remote artifact cannot be retrieved."""


def fetch_url(url: str, timeout: float) -> bytes:
    """Return the body of *url*, following redirects."""
    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:  # noqa: S310 - https URLs from config
            return resp.read()
    except urllib.error.HTTPError as exc:
        raise DownloadError(f"{url} returned HTTP {exc.code}") from exc
    except urllib.error.URLError as exc:
        raise DownloadError(f"{url} unreachable: {exc.reason}") from exc
    except TimeoutError as exc:
        raise DownloadError(f"{url} timed out after {timeout}s") from exc


def download(url: str, destination: Path, *, fetch: Fetcher, timeout: float) -> Path:
    """Write the body of *url* to *destination* and return the path."""
    payload = fetch(url, timeout)
    if not payload:
        raise DownloadError(f"{url} returned an empty body")
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(payload)
    return destination


__all__ = ["DownloadError", "Fetcher", "download", "fetch_url"]
