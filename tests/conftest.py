"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
from fakes import FakeSystem

from devenv.config import load_config
from devenv.context import ProvisionContext


@pytest.fixture
def fake_system(tmp_path: Path) -> FakeSystem:
    """Return a fresh simulated machine with an empty home directory."""
    home = tmp_path / "home" / "tester"
    home.mkdir(parents=True)
    bin_dir = tmp_path / "sysbin"
    bin_dir.mkdir()
    return FakeSystem(home=home, bin_dir=bin_dir)


@pytest.fixture
def make_context(fake_system: FakeSystem) -> Callable[..., ProvisionContext]:
    """Return a factory building contexts wired to :func:`fake_system`."""

    def _factory(*, machine: str = "x86_64", env: dict[str, str] | None = None) -> ProvisionContext:
        config = load_config(home=fake_system.home, env=env or {})
        return fake_system.context(config, machine=machine)

    return _factory
