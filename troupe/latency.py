"""Cooperative latency budget for a single turn.

The deadline is computed once at turn start as 80% of the budget's p95 latency
target. It is never used to cancel an in-flight generation call; it is only
consulted before starting *extra* work (a repair call). A stuck backend call can
therefore still overrun the budget.
"""

from __future__ import annotations

import time
from typing import Callable, Optional

from tenacity import RetryCallState
from tenacity.stop import stop_base

from .schemas import Budget

DEADLINE_FRACTION = 0.8
LATENCY_SKIP_REASON = "latency-budget"


class LatencyGuard:
    """Answers "is there still time for another generation call?"."""

    def __init__(
        self,
        target_p95_ms: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self.started_at = clock()
        target = max(0, int(target_p95_ms or 0))
        self.deadline: Optional[float] = (
            self.started_at + (target * DEADLINE_FRACTION) / 1000.0 if target else None
        )

    @classmethod
    def for_budget(cls, budget: Budget, *, clock: Callable[[], float] = time.monotonic) -> "LatencyGuard":
        return cls(budget.target_p95_turn_latency_ms, clock=clock)

    def allows_retry(self) -> bool:
        if self.deadline is None:
            return True
        return self._clock() < self.deadline

    def elapsed_ms(self) -> int:
        return int((self._clock() - self.started_at) * 1000)


class stop_when_deadline_passed(stop_base):
    """Tenacity stop condition: stop retrying once the turn deadline has passed."""

    def __init__(self, guard: LatencyGuard) -> None:
        self.guard = guard

    def __call__(self, retry_state: RetryCallState) -> bool:
        return not self.guard.allows_retry()
