"""Exponential backoff with jitter for delivery retries."""

from __future__ import annotations

import random


def compute_delay(
    attempt: int,
    base_delay: float = 2.0,
    max_delay: float = 300.0,
    jitter: float = 0.0,
) -> float:
    """Delay before retry number `attempt` (1-based): base * 2^(attempt-1), capped.

    Jitter (0.0-1.0) spreads retries by +/- that fraction of the delay.
    """
    exponent = max(attempt - 1, 0)
    # Cap the exponent so huge attempt counts cannot overflow
    delay = min(base_delay * (2 ** min(exponent, 32)), max_delay)

    if jitter:
        jitter_amount = delay * jitter
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)
