"""Phase descriptors and the sequential orchestrator."""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from ..exit_codes import ExitCode
from .steps import Resource, StepResult, StepStatus, apply_resource, plan_resource

if TYPE_CHECKING:
    from ..context import ProvisionContext, RunConfiguration

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Phase:
    """Ordered, numbered group of resources.

    Phase numbers are stable identifiers used by ``--skip-phase``. When
    ``confirm`` is set the operator is asked before the phase mutates anything.
    """

    number: int
    name: str
    resources: tuple[Resource, ...]
    confirm: str | None = None


class PhaseStatus(str, Enum):
    """Lifecycle of a phase during one run."""

    NOT_STARTED = "not-started"
    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(slots=True)
class PhaseOutcome:
    """Mutable record of a phase's progress."""

    phase: Phase
    status: PhaseStatus = PhaseStatus.NOT_STARTED
    steps: list[StepResult] = field(default_factory=list)
    reason: str | None = None

    @property
    def warnings(self) -> list[StepResult]:
        """Optional steps that failed."""
        return [step for step in self.steps if step.failed and not step.resource.mandatory]


@dataclass(slots=True)
class RunReport:
    """Aggregated outcome of an orchestrator run."""

    phases: list[PhaseOutcome]
    dry_run: bool = False

    @property
    def failed_phase(self) -> PhaseOutcome | None:
        """Return the phase that aborted the run, if any."""
        for outcome in self.phases:
            if outcome.status is PhaseStatus.FAILED:
                return outcome
        return None

    @property
    def exit_code(self) -> int:
        """Return the process exit code for this run."""
        return int(ExitCode.FAILURE if self.failed_phase else ExitCode.OK)

    def steps(self) -> list[StepResult]:
        """Return every step result in execution order."""
        return [step for outcome in self.phases for step in outcome.steps]

    def count(self, status: StepStatus) -> int:
        """Return the number of steps that ended with *status*."""
        return sum(1 for step in self.steps() if step.status is status)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable summary."""
        return {
            "dry_run": self.dry_run,
            "exit_code": self.exit_code,
            "phases": [
                {
                    "number": outcome.phase.number,
                    "name": outcome.phase.name,
                    "status": outcome.status.value,
                    "reason": outcome.reason,
                    "steps": {step.resource.id: step.status.value for step in outcome.steps},
                }
                for outcome in self.phases
            ],
            "totals": {status.value: self.count(status) for status in StepStatus},
        }


StepCallback = Callable[[Phase, StepResult], None]
PhaseCallback = Callable[[PhaseOutcome], None]


def _noop_step(phase: Phase, result: StepResult) -> None:
    return None


def _noop_phase(outcome: PhaseOutcome) -> None:
    return None


class Orchestrator:
    """Visit phases in declaration order and apply (or plan) their steps."""

    def __init__(
        self,
        context: ProvisionContext,
        phases: Sequence[Phase],
        run_config: RunConfiguration,
        *,
        on_phase_start: PhaseCallback | None = None,
        on_step: StepCallback | None = None,
        on_phase_end: PhaseCallback | None = None,
    ) -> None:
        """Store the context, phase list and callbacks used for progress output."""
        self._context = context
        self._phases = tuple(sorted(phases, key=lambda phase: phase.number))
        self._run_config = run_config
        self._on_phase_start = on_phase_start or _noop_phase
        self._on_step = on_step or _noop_step
        self._on_phase_end = on_phase_end or _noop_phase

    @property
    def phases(self) -> tuple[Phase, ...]:
        """Return the ordered phase list."""
        return self._phases

    def run(self) -> RunReport:
        """Execute the run and return its report."""
        report = RunReport(
            phases=[PhaseOutcome(phase) for phase in self._phases],
            dry_run=self._run_config.dry_run,
        )
        for outcome in report.phases:
            self._run_phase(outcome)
            self._on_phase_end(outcome)
            if outcome.status is PhaseStatus.FAILED:
                LOGGER.info("Aborting after phase %s failed.", outcome.phase.number)
                break
        return report

    def _run_phase(self, outcome: PhaseOutcome) -> None:
        phase = outcome.phase
        if phase.number in self._run_config.skip_phases:
            outcome.status = PhaseStatus.SKIPPED
            outcome.reason = "skipped by --skip-phase"
            return

        outcome.status = PhaseStatus.RUNNING
        self._on_phase_start(outcome)
        dry_run = self._run_config.dry_run
        if phase.confirm and not dry_run and self._has_pending(phase):
            if not self._context.confirm(phase.confirm):
                outcome.status = PhaseStatus.SKIPPED
                outcome.reason = "declined by operator"
                return

        for resource in phase.resources:
            result = self._run_step(resource, dry_run=dry_run)
            outcome.steps.append(result)
            self._on_step(phase, result)
            if result.blocking:
                outcome.status = PhaseStatus.FAILED
                outcome.reason = f"mandatory step '{resource.id}' failed: {result.reason}"
                return
        outcome.status = PhaseStatus.COMPLETED

    def _run_step(self, resource: Resource, *, dry_run: bool) -> StepResult:
        try:
            if dry_run:
                return plan_resource(resource, self._context)
            return apply_resource(resource, self._context)
        except Exception as exc:  # failures never cross the phase boundary
            LOGGER.exception("Unexpected error while processing %s", resource.id)
            return StepResult(resource, StepStatus.FAILED, reason=f"unexpected error: {exc}")

    def _has_pending(self, phase: Phase) -> bool:
        return any(not resource.probe.check(self._context).is_correct for resource in phase.resources)


__all__ = [
    "Orchestrator",
    "Phase",
    "PhaseOutcome",
    "PhaseStatus",
    "RunReport",
]
