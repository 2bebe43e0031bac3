"""Doctor command infrastructure."""

from __future__ import annotations

from .engine import DoctorEngine, run_probes
from .models import (
    PROBE_CATEGORY_VALUES,
    DoctorReport,
    DoctorSummary,
    ProbeCategory,
    ProbeDefinition,
    ProbeResult,
    ProbeStatus,
    aggregate_results,
    build_report,
)
from .probes import classify, collect_probes, resource_probe
from .utils import collect_status_identifiers, serialize_report

__all__ = [
    "DoctorEngine",
    "DoctorReport",
    "DoctorSummary",
    "ProbeCategory",
    "PROBE_CATEGORY_VALUES",
    "ProbeDefinition",
    "ProbeResult",
    "ProbeStatus",
    "aggregate_results",
    "build_report",
    "classify",
    "collect_probes",
    "collect_status_identifiers",
    "resource_probe",
    "run_probes",
    "serialize_report",
]
