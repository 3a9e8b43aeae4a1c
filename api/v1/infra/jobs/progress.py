"""
Phase-weighted progress calculation.

Every job type declares an ordered list of phases whose integer weights sum to
100. A job's overall progress is the weight of all finished phases plus the
weighted share of the current one, so callers see a single percentage even
though phases have very different costs.
"""

from collections.abc import Sequence
from dataclasses import dataclass


@dataclass(frozen=True)
class PhaseSpec:
    """A named, weighted stage of a job type."""

    name: str
    weight: int


def validate_phases(phases: Sequence[PhaseSpec]) -> tuple[PhaseSpec, ...]:
    """Check phase names are unique and weights are positive and sum to 100."""
    names = [phase.name for phase in phases]
    if not phases:
        raise ValueError("A job type needs at least one phase")
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate phase names: {names}")
    if any(phase.weight <= 0 for phase in phases):
        raise ValueError(f"Phase weights must be positive: {list(phases)}")
    total = sum(phase.weight for phase in phases)
    if total != 100:
        raise ValueError(f"Phase weights must sum to 100, got {total}")
    return tuple(phases)


def clamp_percent(value: float) -> int:
    """Round and clamp a percentage into 0..100."""
    return max(0, min(100, int(round(value))))


def percent_of(done: int, total: int) -> int:
    """Completion of ``done`` out of ``total`` units as a 0..100 integer."""
    if total <= 0:
        return 100
    return clamp_percent(done / total * 100)


def overall_progress(
    phases: Sequence[PhaseSpec], phase: str, phase_progress: float
) -> int:
    """
    Map completion inside ``phase`` to overall job progress.

    ``sum(weights before phase) + round(phase_progress / 100 * weight)``,
    clamped to 100. Raises ``KeyError`` for a phase the type does not declare.

    >>> phases = [PhaseSpec("a", 10), PhaseSpec("b", 70), PhaseSpec("c", 20)]
    >>> overall_progress(phases, "b", 50)
    45
    """
    accumulated = 0
    for spec in phases:
        if spec.name == phase:
            within = max(0.0, min(100.0, float(phase_progress)))
            return min(100, accumulated + int(round(within / 100 * spec.weight)))
        accumulated += spec.weight
    raise KeyError(f"Unknown phase '{phase}'")
