from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

DEFAULT_BASE_PRIORITY_FEE = 100_000
DEFAULT_FEE_STEPS: tuple[int, ...] = (
    250_000,
    500_000,
    1_000_000,
    1_500_000,
    2_000_000,
    4_000_000,
    8_000_000,
    16_000_000,
    32_000_000,
)


@dataclass(frozen=True, slots=True)
class PriorityFeeSchedule:
    """Escalation table for priority fees, in micro-lamports per compute unit.

    Escalation ``k`` (zero based) uses ``steps[k]``; past the end of the table
    the previous fee doubles. The returned fee is never below the previous
    one, so a high initial estimate is not undercut by an early step.
    """

    steps: tuple[int, ...] = DEFAULT_FEE_STEPS

    def __post_init__(self) -> None:
        if not self.steps:
            raise ValueError("fee schedule must have at least one step")
        previous = 0
        for step in self.steps:
            if step <= 0:
                raise ValueError("fee schedule steps must be positive")
            if step < previous:
                raise ValueError("fee schedule steps must be non-decreasing")
            previous = step

    def next_fee(self, escalation_index: int, previous_fee: int) -> int:
        if escalation_index < 0:
            raise ValueError("escalation_index must be >= 0")
        if escalation_index < len(self.steps):
            candidate = self.steps[escalation_index]
        else:
            candidate = max(1, previous_fee) * 2
        return max(candidate, previous_fee)


def estimate_priority_fee(samples: Iterable[int], base_fee: int) -> int:
    non_zero = [int(sample) for sample in samples if int(sample) > 0]
    if not non_zero:
        return base_fee
    mean_fee = sum(non_zero) // len(non_zero)
    return max(mean_fee, base_fee)
