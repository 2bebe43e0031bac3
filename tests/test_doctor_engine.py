"""Tests for the doctor engine, classification and serialisation."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
from fakes import FakeSystem

from devenv.context import ProvisionContext
from devenv.doctor import (
    DoctorEngine,
    ProbeDefinition,
    ProbeResult,
    ProbeStatus,
    aggregate_results,
    classify,
    collect_probes,
    collect_status_identifiers,
    resource_probe,
    serialize_report,
)
from devenv.provision import ProbeOutcome, ProbeState, Resource
from devenv.provision.probes import CommandProbe, FileProbe

ContextFactory = Callable[..., ProvisionContext]


def _ok(probe_id: str) -> ProbeDefinition:
    return ProbeDefinition(
        id=probe_id,
        category="env",
        run=lambda ctx: ProbeResult(id=probe_id, category="env", status=ProbeStatus.OK, message="ok"),
    )


def test_engine_preserves_order_and_captures_crashes(make_context: ContextFactory) -> None:
    def crash(ctx: ProvisionContext) -> ProbeResult:
        raise RuntimeError("kaboom")

    probes = [_ok("first"), ProbeDefinition(id="boom", category="tools", run=crash), _ok("last")]

    report = DoctorEngine(make_context()).run(probes, metadata={"verbose": True})

    assert [result.id for result in report.results] == ["first", "boom", "last"]
    boom = report.results[1]
    assert boom.status is ProbeStatus.FAIL
    assert "kaboom" in boom.message
    assert all(result.duration_ms is not None for result in report.results)
    assert report.metadata is not None
    assert report.metadata["user"] == "tester"
    assert report.metadata["verbose"] is True


def test_engine_coerces_mismatched_identifiers(make_context: ContextFactory) -> None:
    probe = ProbeDefinition(
        id="expected",
        category="configs",
        run=lambda ctx: ProbeResult(id="other", category="env", status=ProbeStatus.OK, message="ok"),
    )

    (result,) = DoctorEngine(make_context()).run([probe]).results

    assert result.id == "expected"
    assert result.category == "configs"


@pytest.mark.parametrize(
    ("statuses", "expected_status", "exit_code"),
    [
        ([ProbeStatus.OK, ProbeStatus.OK], ProbeStatus.OK, 0),
        ([ProbeStatus.OK, ProbeStatus.WARN], ProbeStatus.WARN, 0),
        ([ProbeStatus.WARN, ProbeStatus.FAIL, ProbeStatus.OK], ProbeStatus.FAIL, 1),
    ],
)
def test_aggregate_results(
    statuses: list[ProbeStatus],
    expected_status: ProbeStatus,
    exit_code: int,
) -> None:
    results = [
        ProbeResult(id=f"p{index}", category="tools", status=status, message="")
        for index, status in enumerate(statuses)
    ]

    summary = aggregate_results(results)

    assert summary.status is expected_status
    assert summary.exit_code == exit_code
    assert sum(summary.totals.values()) == len(statuses)


@pytest.mark.parametrize(
    ("state", "mandatory", "expected"),
    [
        (ProbeState.PRESENT_CORRECT, True, ProbeStatus.OK),
        (ProbeState.PRESENT_INCORRECT, True, ProbeStatus.WARN),
        (ProbeState.ABSENT, True, ProbeStatus.FAIL),
        (ProbeState.ABSENT, False, ProbeStatus.WARN),
    ],
)
def test_classify(state: ProbeState, mandatory: bool, expected: ProbeStatus) -> None:
    resource = Resource("x", "X", CommandProbe(("x",)), mandatory=mandatory)

    assert classify(resource, ProbeOutcome(state)) is expected


def test_resource_probe_reports_pin_drift(
    fake_system: FakeSystem,
    make_context: ContextFactory,
) -> None:
    fake_system.install_package("lazygit")
    fake_system.versions["lazygit"] = "0.40.2"
    resource = Resource("lazygit", "lazygit", CommandProbe(("lazygit",)), pin="lazygit")

    result = resource_probe(resource).run(make_context())

    assert result.status is ProbeStatus.OK
    assert result.data is not None
    assert result.data["version"] == "0.40.2"
    assert result.data["pin"] == "0.44.1"
    assert result.warnings == ("installed 0.40.2, pinned 0.44.1",)


def test_modified_config_is_a_warning_with_remediation(
    make_context: ContextFactory,
    tmp_path: Path,
) -> None:
    template = tmp_path / "template"
    template.write_text("managed\n", encoding="utf-8")
    target = tmp_path / "zshrc"
    target.write_text("edited\n", encoding="utf-8")
    resource = Resource("zshrc", "Config ~/.zshrc", FileProbe(target, source=template), mandatory=True, category="configs")

    result = resource_probe(resource).run(make_context())

    assert result.status is ProbeStatus.WARN
    assert result.remediation == "run: devenv update --configs"


def test_collect_probes_excludes_private_dotfiles(make_context: ContextFactory) -> None:
    ids = [probe.id for probe in collect_probes(make_context())]

    assert ids[:4] == ["env-devenv", "env-python", "env-platform", "env-arch"]
    assert "lsd" in ids and "login-shell" in ids and "tailscale-connected" in ids
    assert "chezmoi" not in ids and "age-key" not in ids
    assert len(ids) == len(set(ids))


def test_serialize_report_round_trips_identifiers(make_context: ContextFactory) -> None:
    context = make_context()
    report = DoctorEngine(context).run(collect_probes(context))

    payload = serialize_report(report)

    summary = payload["summary"]
    assert isinstance(summary, dict)
    assert summary["status"] == "fail"
    assert summary["exit_code"] == 1
    assert set(summary["totals"]) == {"ok", "warn", "fail"}
    results = payload["results"]
    assert isinstance(results, list)
    assert len(results) == len(report.results)
    failing = collect_status_identifiers(report.results, ProbeStatus.FAIL)
    assert "base:base-packages" in failing
    assert "tools:lsd" in failing
