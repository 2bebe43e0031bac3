"""Data models and helpers for doctor probes."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

from ..exit_codes import ExitCode

if TYPE_CHECKING:
    from ..context import ProvisionContext


class ProbeStatus(str, Enum):
    """High-level outcome for a doctor probe."""

    OK = "ok"
    WARN = "warn"
    FAIL = "fail"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the status represents a failure."""
        return self is ProbeStatus.FAIL

    @property
    def is_warning(self) -> bool:
        """Return ``True`` when the status represents a warning."""
        return self is ProbeStatus.WARN


ProbeCategory = Literal[
    "env",
    "base",
    "tools",
    "configs",
    "plugins",
    "shell",
    "agents",
    "dotfiles",
]

# Display order of categories. Keep this in sync with ``ProbeCategory``.
PROBE_CATEGORY_VALUES: tuple[ProbeCategory, ...] = (
    "env",
    "base",
    "tools",
    "configs",
    "plugins",
    "shell",
    "agents",
    "dotfiles",
)


@dataclass(slots=True, frozen=True)
class ProbeResult:
    """Outcome of running a probe."""

    id: str
    category: ProbeCategory
    status: ProbeStatus
    message: str
    remediation: str | None = None
    duration_ms: int | None = None
    data: Mapping[str, Any] | None = None
    warnings: Sequence[str] = field(default_factory=tuple)

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the probe result represents a failure."""
        return self.status.is_failure

    @property
    def is_warning(self) -> bool:
        """Return ``True`` when the probe result represents a warning."""
        return self.status.is_warning


@dataclass(slots=True, frozen=True)
class ProbeDefinition:
    """Metadata + callable for a probe."""

    id: str
    category: ProbeCategory
    run: Callable[[ProvisionContext], ProbeResult]


@dataclass(slots=True, frozen=True)
class DoctorSummary:
    """Aggregated summary derived from probe results."""

    status: ProbeStatus
    exit_code: int
    totals: Mapping[ProbeStatus, int]


@dataclass(slots=True, frozen=True)
class DoctorReport:
    """Complete report for a doctor run."""

    results: Sequence[ProbeResult]
    summary: DoctorSummary
    metadata: Mapping[str, Any] | None = None


STATUS_ORDER: Mapping[ProbeStatus, int] = {
    ProbeStatus.OK: 0,
    ProbeStatus.WARN: 1,
    ProbeStatus.FAIL: 2,
}


def aggregate_results(results: Iterable[ProbeResult]) -> DoctorSummary:
    """Compute the tri-count summary; the exit code is non-zero iff any FAIL."""
    totals: dict[ProbeStatus, int] = {
        ProbeStatus.OK: 0,
        ProbeStatus.WARN: 0,
        ProbeStatus.FAIL: 0,
    }
    worst_status = ProbeStatus.OK
    for result in results:
        totals[result.status] += 1
        if STATUS_ORDER[result.status] > STATUS_ORDER[worst_status]:
            worst_status = result.status

    exit_code = ExitCode.FAILURE if worst_status.is_failure else ExitCode.OK
    return DoctorSummary(status=worst_status, exit_code=int(exit_code), totals=totals)


def build_report(
    results: Sequence[ProbeResult],
    metadata: Mapping[str, Any] | None = None,
) -> DoctorReport:
    """Create a full DoctorReport from probe results."""
    summary = aggregate_results(results)
    return DoctorReport(results=tuple(results), summary=summary, metadata=metadata)
