from __future__ import annotations

import random


def compute_backoff(
    attempt: int,
    backoff_ms: int,
    multiplier: float = 1.0,
    jitter_ms: int = 0,
) -> float:
    """Return the delay in seconds before retry ``attempt`` (0-based).

    A multiplier of 1.0 gives a constant delay per attempt; larger values
    grow the delay exponentially.
    """
    delay_ms = backoff_ms * (multiplier ** attempt)
    if jitter_ms:
        delay_ms += random.uniform(0, jitter_ms)
    return max(delay_ms, 0) / 1000.0
