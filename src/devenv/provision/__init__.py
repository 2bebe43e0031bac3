"""Idempotent provisioning engine: probes, strategies, steps and phases."""

from __future__ import annotations

from .phases import Orchestrator, Phase, PhaseOutcome, PhaseStatus, RunReport
from .probes import UNKNOWN_VERSION, ProbeOutcome, ProbeState
from .steps import Resource, StepResult, StepStatus, apply_resource, plan_resource
from .strategies import StrategyError

__all__ = [
    "Orchestrator",
    "Phase",
    "PhaseOutcome",
    "PhaseStatus",
    "ProbeOutcome",
    "ProbeState",
    "Resource",
    "RunReport",
    "StepResult",
    "StepStatus",
    "StrategyError",
    "UNKNOWN_VERSION",
    "apply_resource",
    "plan_resource",
]
