from __future__ import annotations

import random
from typing import Optional


def compute_backoff(
    attempt: int,
    base: float = 1.5,
    jitter: float = 0.5,
    initial: float = 1.0,
    cap: Optional[float] = None,
) -> float:
    """Compute exponential backoff with jitter."""
    delay = initial * base ** attempt
    if cap is not None:
        delay = min(delay, cap)
    return delay + random.uniform(0, jitter)
