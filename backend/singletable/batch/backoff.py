from __future__ import annotations

import random
from enum import Enum
from typing import Any


class BackoffState(str, Enum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    COMPLETE = "complete"
    EXHAUSTED = "exhausted"


def normalize_autoretry(value: Any) -> int:
    """
    Coerce the caller's `autoretry` option into a retry budget.

    Only non-negative integers are honoured (an integral float such as 3.0
    counts). Anything else, including None, strings and negatives, means no
    retries. Never raises.
    """
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value if value >= 0 else 0
    if isinstance(value, float) and value.is_integer() and value >= 0:
        return int(value)
    return 0


class BackoffPolicy:
    """
    Retry-budget state machine for one bulk invocation.

    IDLE -> ATTEMPTING on `begin()`; each `observe()` after an attempt moves
    to COMPLETE (nothing left), EXHAUSTED (budget spent, items left) or stays
    ATTEMPTING and books one more retry.
    """

    def __init__(self, autoretry: Any = None, *, base_delay_s: float = 0.05, max_delay_s: float = 1.5):
        self.budget = normalize_autoretry(autoretry)
        self.base_delay_s = max(0.0, float(base_delay_s or 0.0))
        self.max_delay_s = max(0.0, float(max_delay_s or 0.0))
        self.retries = 0
        self.state = BackoffState.IDLE

    def begin(self) -> BackoffState:
        if self.state is not BackoffState.IDLE:
            raise RuntimeError(f"BackoffPolicy already started (state={self.state.value})")
        self.state = BackoffState.ATTEMPTING
        return self.state

    def observe(self, unprocessed_count: int) -> BackoffState:
        if self.state is not BackoffState.ATTEMPTING:
            raise RuntimeError(f"BackoffPolicy is not attempting (state={self.state.value})")

        if unprocessed_count <= 0:
            self.state = BackoffState.COMPLETE
        elif self.retries >= self.budget:
            self.state = BackoffState.EXHAUSTED
        else:
            self.retries += 1
        return self.state

    @property
    def done(self) -> bool:
        return self.state in (BackoffState.COMPLETE, BackoffState.EXHAUSTED)

    def delay_for(self, retry: int) -> float:
        # Full jitter exponential backoff.
        if self.base_delay_s <= 0 or retry <= 0:
            return 0.0
        exp = min(self.max_delay_s, self.base_delay_s * (2 ** max(0, retry - 1)))
        return random.random() * exp
