"""Sequential probe runner behind ``devenv doctor``."""

from __future__ import annotations

import logging
import time
import traceback
from collections.abc import Mapping, Sequence
from dataclasses import replace
from typing import TYPE_CHECKING

from .models import DoctorReport, ProbeDefinition, ProbeResult, ProbeStatus, build_report

if TYPE_CHECKING:
    from ..context import ProvisionContext

logger = logging.getLogger(__name__)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _crash_result(probe: ProbeDefinition, exc: Exception, elapsed: int) -> ProbeResult:
    """Describe a probe that raised instead of returning a result."""
    return ProbeResult(
        id=probe.id,
        category=probe.category,
        status=ProbeStatus.FAIL,
        message=f"Check '{probe.id}' crashed: {exc}",
        duration_ms=elapsed,
        data={"exception": repr(exc), "traceback": traceback.format_exc()},
        warnings=("unhandled-exception",),
    )


def run_probes(
    context: ProvisionContext,
    probes: Sequence[ProbeDefinition],
) -> list[ProbeResult]:
    """Evaluate *probes* in order; one result per probe, crashes included."""
    results: list[ProbeResult] = []
    for probe in probes:
        started = time.perf_counter()
        try:
            outcome = probe.run(context)
        except Exception as exc:
            logger.debug("doctor probe %s raised", probe.id, exc_info=True)
            results.append(_crash_result(probe, exc, _elapsed_ms(started)))
            continue
        # The definition owns identity; probes only report status.
        results.append(
            replace(
                outcome,
                id=probe.id,
                category=probe.category,
                duration_ms=(
                    outcome.duration_ms
                    if outcome.duration_ms is not None
                    else _elapsed_ms(started)
                ),
            )
        )
    return results


class DoctorEngine:
    """Run doctor probes against one provisioning context."""

    def __init__(self, context: ProvisionContext) -> None:
        self._context = context

    @property
    def context(self) -> ProvisionContext:
        """Return the context probes are evaluated against."""
        return self._context

    def run(
        self,
        probes: Sequence[ProbeDefinition],
        *,
        metadata: Mapping[str, object] | None = None,
    ) -> DoctorReport:
        """Evaluate *probes* and wrap the results in a report."""
        started = time.perf_counter()
        results = run_probes(self._context, probes)
        details: dict[str, object] = {
            "user": self._context.user,
            "home": str(self._context.home),
            "architecture": self._context.arch.machine,
            "probe_count": len(results),
            "duration_ms": _elapsed_ms(started),
        }
        details.update(metadata or {})
        return build_report(results, metadata=details)
