"""Wall-clock budget for one sync invocation.

Each invocation gets a hard budget (SYNC_TIME_BUDGET_MS). Work units check
`exhausted()` before starting; network calls take `op_timeout()` so a single
slow call can never eat the whole remaining budget.
"""

from __future__ import annotations

import time
from typing import Callable

# keep a slice of the budget for the final meta write + response
RESERVE_S = 0.75
MIN_OP_TIMEOUT_S = 0.5


class TimeBudget:
    def __init__(
        self,
        total_ms: int,
        *,
        op_timeout_ms: int = 4000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._start = clock()
        self.total_s = max(0.0, total_ms / 1000.0)
        self.op_cap_s = max(MIN_OP_TIMEOUT_S, op_timeout_ms / 1000.0)

    @property
    def elapsed_s(self) -> float:
        return self._clock() - self._start

    @property
    def elapsed_ms(self) -> int:
        return int(self.elapsed_s * 1000)

    def remaining_s(self) -> float:
        return max(0.0, self.total_s - self.elapsed_s)

    def exhausted(self) -> bool:
        return self.remaining_s() <= RESERVE_S

    def op_timeout(self) -> float:
        """Per-operation timeout: the configured cap, clamped under what is left."""
        left = self.remaining_s() - RESERVE_S
        return max(MIN_OP_TIMEOUT_S, min(self.op_cap_s, left))

    def portion(self, fraction: float) -> "TimeBudget":
        """Child budget over `fraction` of the usable time left, on the same clock."""
        usable = max(0.0, self.remaining_s() - RESERVE_S)
        total_ms = (usable * fraction + RESERVE_S) * 1000
        return TimeBudget(
            int(total_ms), op_timeout_ms=int(self.op_cap_s * 1000), clock=self._clock
        )


def unbounded() -> TimeBudget:
    """Budget for CLI/maintenance runs that are not bound to a function timeout."""
    return TimeBudget(24 * 3600 * 1000)
