# =============================================================================
# burst_detector.py — Inter-arrival burst tracking per (source, protocol) key
#
# A "burst step" is an interval below BURST_THRESHOLD_MS between two events
# of the same key. Consecutive steps form a streak; when a streak longer than
# BURST_STREAK_MIN ends, it is kept as a BurstPeriod on the window state.
#
# The update function is stateless: all counters live on the WindowState it
# is handed, and it is always called under that key's lock.
# =============================================================================

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import math
import logging
from models import BurstPeriod, BurstStats
import config

logger = logging.getLogger(__name__)


def update_burst_state(
    state,
    previous_ms: int,
    current_ms: int,
    threshold_ms: int = config.BURST_THRESHOLD_MS,
    streak_min: int = config.BURST_STREAK_MIN,
    max_periods: int = config.MAX_BURST_PERIODS,
) -> int:
    """
    Fold one inter-arrival interval into the key's burst counters.

    Args:
        state:       The live WindowState for the key (mutated in place).
        previous_ms: Arrival time of the previous event for this key.
        current_ms:  Arrival time of the current event.

    Returns:
        The interval in milliseconds.
    """
    interval = current_ms - previous_ms

    if interval < threshold_ms:
        if state.consecutive_burst_count == 0:
            state.streak_start_ms = previous_ms
        state.consecutive_burst_count += 1
        state.burst_count += 1
        state.max_consecutive_burst_count = max(
            state.max_consecutive_burst_count, state.consecutive_burst_count
        )
        return interval

    if state.consecutive_burst_count > streak_min:
        start = state.streak_start_ms if state.streak_start_ms is not None else previous_ms
        state.burst_periods.append(BurstPeriod(
            start_ms=start,
            end_ms=previous_ms,
            count=state.consecutive_burst_count,
            duration_ms=previous_ms - start,
        ))
        if len(state.burst_periods) > max_periods:
            del state.burst_periods[0]
        logger.debug(
            f"Burst period closed: {state.consecutive_burst_count} steps "
            f"over {previous_ms - start}ms"
        )

    state.consecutive_burst_count = 0
    state.streak_start_ms = None
    return interval


def burst_stats(state) -> BurstStats:
    """Frozen view of a key's burst counters."""
    return BurstStats(
        burst_count=state.burst_count,
        consecutive_burst_count=state.consecutive_burst_count,
        max_consecutive_burst_count=state.max_consecutive_burst_count,
        burst_periods=tuple(state.burst_periods),
    )


def interval_stats(timestamps_ms: list[int]) -> tuple[float, float]:
    """Mean and population std-dev of the gaps between sorted timestamps."""
    if len(timestamps_ms) < 2:
        return 0.0, 0.0
    ordered = sorted(timestamps_ms)
    deltas = [ordered[i + 1] - ordered[i] for i in range(len(ordered) - 1)]
    mean = sum(deltas) / len(deltas)
    variance = sum((d - mean) ** 2 for d in deltas) / len(deltas)
    return mean, math.sqrt(variance)
