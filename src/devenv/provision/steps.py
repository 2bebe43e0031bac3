"""Installer steps: probe first, then walk the strategy chain."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from .probes import Probe, ProbeOutcome
from .strategies import ACQUISITION_ERRORS, Strategy

if TYPE_CHECKING:
    from ..context import ProvisionContext

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Resource:
    """One entry of the target state.

    ``category`` groups resources in doctor output and selects the updater
    scope that maintains them (``configs``, ``plugins``, ``tools``, ``agents``).
    ``pin`` names the :attr:`~devenv.config.AppConfig.pins` entry the updater
    enforces, and ``upgrade`` holds the strategies run by ``update --agents``.
    """

    id: str
    description: str
    probe: Probe
    strategies: tuple[Strategy, ...] = ()
    mandatory: bool = False
    category: str = "tools"
    doctor: bool = True
    pin: str | None = None
    upgrade: tuple[Strategy, ...] = ()


class StepStatus(str, Enum):
    """Outcome of applying (or planning) a resource."""

    SKIPPED = "skipped"
    INSTALLED = "installed"
    FAILED = "failed"
    PLANNED = "planned"


@dataclass(slots=True, frozen=True)
class StepResult:
    """Result of one installer step."""

    resource: Resource
    status: StepStatus
    reason: str | None = None
    strategy: str | None = None
    attempts: tuple[str, ...] = field(default_factory=tuple)
    outcome: ProbeOutcome | None = None

    @property
    def failed(self) -> bool:
        """Return ``True`` when every strategy failed."""
        return self.status is StepStatus.FAILED

    @property
    def blocking(self) -> bool:
        """Return ``True`` when the failure must abort the run."""
        return self.failed and self.resource.mandatory


def apply_resource(resource: Resource, context: ProvisionContext) -> StepResult:
    """Bring *resource* to its target state.

    The probe runs first; a present-correct resource is skipped without
    touching anything. Otherwise each strategy is tried in order and counts as
    successful only when the probe afterwards reports present-correct.
    """
    outcome = resource.probe.check(context)
    if outcome.is_correct:
        return StepResult(resource, StepStatus.SKIPPED, outcome=outcome)
    if not resource.strategies:
        return StepResult(
            resource,
            StepStatus.FAILED,
            reason=f"no acquisition strategy ({outcome.detail})",
            outcome=outcome,
        )

    attempts: list[str] = []
    for strategy in resource.strategies:
        label = strategy.describe(context)
        try:
            strategy.acquire(context)
        except ACQUISITION_ERRORS as exc:
            LOGGER.debug("%s: strategy failed: %s (%s)", resource.id, label, exc)
            attempts.append(f"{label}: {exc}")
            continue
        after = resource.probe.check(context)
        if after.is_correct:
            return StepResult(
                resource,
                StepStatus.INSTALLED,
                strategy=label,
                attempts=tuple(attempts),
                outcome=after,
            )
        attempts.append(f"{label}: still {after.state.value} ({after.detail})")

    return StepResult(
        resource,
        StepStatus.FAILED,
        reason=attempts[-1],
        attempts=tuple(attempts),
        outcome=outcome,
    )


def plan_resource(resource: Resource, context: ProvisionContext) -> StepResult:
    """Dry-run counterpart of :func:`apply_resource`; only probes."""
    outcome = resource.probe.check(context)
    if outcome.is_correct:
        return StepResult(resource, StepStatus.SKIPPED, outcome=outcome)
    plans = tuple(strategy.describe(context) for strategy in resource.strategies)
    return StepResult(
        resource,
        StepStatus.PLANNED,
        strategy=plans[0] if plans else None,
        attempts=plans,
        outcome=outcome,
    )


__all__ = ["Resource", "StepResult", "StepStatus", "apply_resource", "plan_resource"]
