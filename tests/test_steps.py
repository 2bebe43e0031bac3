"""Tests for probe-then-acquire installer steps."""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from fakes import FakeSystem, make_executable

from devenv.context import ProvisionContext
from devenv.provision import Resource, StepStatus, apply_resource, plan_resource
from devenv.provision.probes import CommandProbe, FileProbe
from devenv.provision.strategies import AptInstall, StrategyError

ContextFactory = Callable[..., ProvisionContext]


@dataclass
class RecordingStrategy:
    """Strategy double that optionally creates a file when acquired."""

    label: str
    creates: Path | None = None
    error: Exception | None = None
    calls: list[str] = field(default_factory=list)

    def describe(self, context: ProvisionContext) -> str:
        return self.label

    def acquire(self, context: ProvisionContext) -> None:
        self.calls.append(self.label)
        if self.error is not None:
            raise self.error
        if self.creates is not None:
            self.creates.write_text("ok\n", encoding="utf-8")


def test_present_resource_is_skipped_without_side_effects(
    fake_system: FakeSystem,
    make_context: ContextFactory,
) -> None:
    make_executable(fake_system.bin_dir / "rg")
    resource = Resource("ripgrep", "ripgrep", CommandProbe(("rg",)), (AptInstall(("ripgrep",)),))

    result = apply_resource(resource, make_context())

    assert result.status is StepStatus.SKIPPED
    assert fake_system.calls == []


def test_fallback_strategy_runs_after_failure(
    make_context: ContextFactory,
    tmp_path: Path,
) -> None:
    target = tmp_path / "thing"
    first = RecordingStrategy("primary", error=StrategyError("mirror down"))
    second = RecordingStrategy("fallback", creates=target)
    resource = Resource("thing", "Thing", FileProbe(target), (first, second))

    result = apply_resource(resource, make_context())

    assert result.status is StepStatus.INSTALLED
    assert result.strategy == "fallback"
    assert result.attempts == ("primary: mirror down",)
    assert first.calls == ["primary"] and second.calls == ["fallback"]


def test_success_requires_probe_confirmation(
    make_context: ContextFactory,
    tmp_path: Path,
) -> None:
    """A strategy that exits cleanly without producing the resource does not count."""
    target = tmp_path / "thing"
    silent = RecordingStrategy("silent")
    real = RecordingStrategy("real", creates=target)
    resource = Resource("thing", "Thing", FileProbe(target), (silent, real))

    result = apply_resource(resource, make_context())

    assert result.status is StepStatus.INSTALLED
    assert result.strategy == "real"
    assert result.attempts[0].startswith("silent: still absent")


def test_all_strategies_failing_reports_last_reason(
    make_context: ContextFactory,
    tmp_path: Path,
) -> None:
    resource = Resource(
        "thing",
        "Thing",
        FileProbe(tmp_path / "thing"),
        (
            RecordingStrategy("one", error=StrategyError("first")),
            RecordingStrategy("two", error=OSError("second")),
        ),
        mandatory=True,
    )

    result = apply_resource(resource, make_context())

    assert result.status is StepStatus.FAILED
    assert result.reason == "two: second"
    assert result.blocking is True


def test_optional_failure_is_not_blocking(make_context: ContextFactory, tmp_path: Path) -> None:
    resource = Resource("thing", "Thing", FileProbe(tmp_path / "thing"))

    result = apply_resource(resource, make_context())

    assert result.failed
    assert result.blocking is False
    assert "no acquisition strategy" in (result.reason or "")


def test_plan_resource_only_probes(
    fake_system: FakeSystem,
    make_context: ContextFactory,
    tmp_path: Path,
) -> None:
    strategy = RecordingStrategy("write thing", creates=tmp_path / "thing")
    resource = Resource("thing", "Thing", FileProbe(tmp_path / "thing"), (strategy,))

    result = plan_resource(resource, make_context())

    assert result.status is StepStatus.PLANNED
    assert result.attempts == ("write thing",)
    assert strategy.calls == []
    assert not (tmp_path / "thing").exists()
