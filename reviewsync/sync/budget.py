from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class RunBudget:
    """Wall-clock and item limits for one orchestrator invocation.

    Running out is an expected outcome, not an error: callers check
    `exhausted()` between pages and between locations and stop cleanly.
    """

    max_seconds: float
    max_items: int
    clock: Callable[[], float] = time.monotonic
    items: int = 0
    started_at: float = field(init=False)

    def __post_init__(self) -> None:
        self.started_at = self.clock()

    def elapsed(self) -> float:
        return self.clock() - self.started_at

    def time_up(self) -> bool:
        return self.elapsed() > self.max_seconds

    def items_exhausted(self) -> bool:
        return self.items >= self.max_items

    def exhausted(self) -> bool:
        return self.time_up() or self.items_exhausted()

    def consume(self, count: int) -> None:
        self.items += max(0, int(count))
