"""Latency and throughput metrics derived from a growing text buffer.

All functions are pure. Times are epoch milliseconds.
"""

import math
import time

from rally.models import ResponseMetrics

CHARS_PER_TOKEN = 4


def now_ms() -> float:
    return time.time() * 1000.0


def estimate_tokens(text: str) -> float:
    """Fixed 4-characters-per-token heuristic."""
    return len(text) / CHARS_PER_TOKEN


def tokens_per_second(token_estimate: float, start_ms: float, now: float, first_token_ms: float | None) -> float:
    """Throughput over the whole elapsed window.

    Returns 0.0 when no token has arrived, when no time has elapsed, or when
    the result would not be a finite number.
    """
    if first_token_ms is None:
        return 0.0
    elapsed_sec = (now - start_ms) / 1000.0
    if elapsed_sec <= 0:
        return 0.0
    rate = token_estimate / elapsed_sec
    if math.isnan(rate) or math.isinf(rate):
        return 0.0
    return rate


def compute_metrics(
    start_ms: float,
    now: float,
    text: str,
    first_token_ms: float | None,
    final: bool = False,
) -> ResponseMetrics:
    """Snapshot metrics for a response at time ``now``.

    ``token_count_estimate`` stays a float while streaming and is rounded
    down once ``final`` is set. First-token latency and throughput are None
    until a first token has arrived.
    """
    tokens = estimate_tokens(text)
    first_token_latency = None if first_token_ms is None else max(0, int(first_token_ms - start_ms))
    rate = tokens_per_second(tokens, start_ms, now, first_token_ms)
    return ResponseMetrics(
        latency_ms=max(0, int(now - start_ms)),
        token_count_estimate=math.floor(tokens) if final else tokens,
        response_length=len(text),
        first_token_latency_ms=first_token_latency,
        tokens_per_second=rate if first_token_ms is not None or final else None,
    )
