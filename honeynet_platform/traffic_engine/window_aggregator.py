# =============================================================================
# window_aggregator.py — Per-(source IP, protocol) rolling window state
#
# record(event) updates the key's counters under a short-held shard lock and
# returns a frozen WindowSnapshot. The live WindowState never leaves this
# module. Keys are spread across LOCK_SHARDS locks so unrelated sources do not
# contend; the map lock is only held to look up, insert or delete a key.
#
# Alongside the whole-window counters each key keeps a bounded run of
# WINDOW_BUCKET_MS buckets, so trailing queries (get_snapshot /
# snapshot_for_protocol with window_ms) only count traffic inside the window.
# =============================================================================

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import logging
import threading
from collections import deque
from typing import Callable, Optional
from models import BurstStats, Protocol, TrafficEvent, WindowSnapshot
import config

from traffic_engine.burst_detector import update_burst_state, burst_stats

logger = logging.getLogger(__name__)

UNKNOWN_ATTRIBUTE = "unknown"

WindowKey = tuple[str, Protocol]
SnapshotHandoff = Callable[[WindowSnapshot], None]


class _Bucket:
    """Counters for one WINDOW_BUCKET_MS slice of a key's window."""

    __slots__ = ("index", "requests", "events", "recipients", "burst_steps",
                 "first_ms", "last_ms")

    def __init__(self, index: int, arrival_ms: int):
        self.index       = index
        self.requests    = 0
        self.events      = 0
        self.recipients  = 0
        self.burst_steps = 0
        self.first_ms    = arrival_ms
        self.last_ms     = arrival_ms


class WindowState:
    """Mutable counters for one key. Only touched under the key's shard lock."""

    __slots__ = (
        "window_start_ms", "request_count", "event_count", "unique_ips",
        "distinct_attribute_values", "recipient_total", "last_event_ms",
        "consecutive_burst_count", "max_consecutive_burst_count",
        "burst_count", "streak_start_ms", "burst_periods", "buckets",
    )

    def __init__(self, start_ms: int):
        self.reset(start_ms)

    def reset(self, start_ms: int) -> None:
        self.window_start_ms             = start_ms
        self.request_count               = 0
        self.event_count                 = 0
        self.unique_ips: set[str]        = set()
        # attribute -> last time it was seen
        self.distinct_attribute_values: dict[str, int] = {}
        self.recipient_total             = 0
        self.last_event_ms               = start_ms
        self.consecutive_burst_count     = 0
        self.max_consecutive_burst_count = 0
        self.burst_count                 = 0
        self.streak_start_ms: Optional[int] = None
        self.burst_periods: list         = []
        self.buckets: deque[_Bucket]     = deque()


def _attribute_for(event: TrafficEvent) -> Optional[str]:
    if event.protocol == Protocol.HTTP:
        return event.path
    if event.protocol == Protocol.DNS:
        return event.query_type.upper() if event.query_type else None
    return event.sender_address


class WindowAggregator:
    """
    Thread-safe store of per-(source, protocol) windows.

    Args:
        window_ms:      Trailing window length; a key whose window is older
                        than this is restarted on its next event.
        max_attributes: Cap on distinct attribute values kept per key.
        lock_shards:    Number of locks keys are hashed onto.
        bucket_ms:      Granularity of trailing-window queries.
    """

    def __init__(
        self,
        window_ms: int = config.WINDOW_MS,
        max_attributes: int = config.MAX_DISTINCT_ATTRIBUTES,
        lock_shards: int = config.LOCK_SHARDS,
        bucket_ms: int = config.WINDOW_BUCKET_MS,
    ):
        self.window_ms      = window_ms
        self.max_attributes = max_attributes
        self.bucket_ms      = max(1, bucket_ms)
        self._windows: dict[WindowKey, WindowState] = {}
        self._map_lock = threading.Lock()
        self._shards   = [threading.Lock() for _ in range(max(1, lock_shards))]
        self.malformed_events = 0

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _lock_for(self, key: WindowKey) -> threading.Lock:
        return self._shards[hash(key) % len(self._shards)]

    def _sanitise(self, event: TrafficEvent) -> tuple[str, str, int]:
        """Return (source_ip, attribute, weight), substituting safe defaults."""
        problems = []
        source_ip = event.source_ip
        if not source_ip:
            source_ip = "0.0.0.0"
            problems.append("missing source_ip")
        attribute = _attribute_for(event)
        if not attribute:
            attribute = UNKNOWN_ATTRIBUTE
            problems.append(f"missing {event.protocol.value} attribute")
        weight = event.weight
        if weight < 1:
            problems.append(f"weight={weight}")
            weight = 1
        if problems:
            with self._map_lock:
                self.malformed_events += 1
            logger.warning(
                f"Malformed {event.protocol.value} event from {source_ip!r}: "
                f"{', '.join(problems)} — defaults substituted"
            )
        return source_ip, attribute, weight

    def _bucket_for(self, state: WindowState, arrival: int) -> _Bucket:
        index = arrival // self.bucket_ms
        if not state.buckets or state.buckets[-1].index != index:
            state.buckets.append(_Bucket(index, arrival))
        oldest = (arrival - self.window_ms) // self.bucket_ms
        while state.buckets[0].index < oldest:
            state.buckets.popleft()
        return state.buckets[-1]

    @staticmethod
    def _snapshot(key: WindowKey, state: WindowState) -> WindowSnapshot:
        return WindowSnapshot(
            protocol=key[1],
            source_ip=key[0],
            window_start_ms=state.window_start_ms,
            last_event_ms=state.last_event_ms,
            request_count=state.request_count,
            event_count=state.event_count,
            unique_ips=frozenset(state.unique_ips),
            distinct_attribute_values=frozenset(state.distinct_attribute_values),
            recipient_total=state.recipient_total,
            burst=burst_stats(state),
        )

    @staticmethod
    def _trailing_snapshot(key: WindowKey, state: WindowState, cutoff: int) -> Optional[WindowSnapshot]:
        """Counters of the buckets whose latest event is at or after `cutoff`."""
        buckets = [b for b in state.buckets if b.last_ms >= cutoff]
        if not buckets:
            return None
        periods = tuple(p for p in state.burst_periods if p.end_ms >= cutoff)
        consecutive = state.consecutive_burst_count if state.last_event_ms >= cutoff else 0
        return WindowSnapshot(
            protocol=key[1],
            source_ip=key[0],
            window_start_ms=buckets[0].first_ms,
            last_event_ms=buckets[-1].last_ms,
            request_count=sum(b.requests for b in buckets),
            event_count=sum(b.events for b in buckets),
            unique_ips=frozenset(state.unique_ips),
            distinct_attribute_values=frozenset(
                a for a, seen in state.distinct_attribute_values.items() if seen >= cutoff
            ),
            recipient_total=sum(b.recipients for b in buckets),
            burst=BurstStats(
                burst_count=sum(b.burst_steps for b in buckets),
                consecutive_burst_count=consecutive,
                max_consecutive_burst_count=max([consecutive] + [p.count for p in periods]),
                burst_periods=periods,
            ),
        )

    def _check_window(self, window_ms: int) -> None:
        if window_ms <= 0 or window_ms > self.window_ms:
            raise ValueError(
                f"window_ms must be in (0, {self.window_ms}], got {window_ms}"
            )

    # ── Public API ────────────────────────────────────────────────────────────

    def record(
        self,
        event: TrafficEvent,
        handoff: Optional[SnapshotHandoff] = None,
    ) -> WindowSnapshot:
        """
        Apply one event to its window and return a snapshot of the result.

        `handoff` is called with the snapshot while the key's lock is still
        held, so snapshots of one key are handed off in the order they were
        taken. It must not block.
        """
        source_ip, attribute, weight = self._sanitise(event)
        key: WindowKey = (source_ip, event.protocol)
        arrival = event.arrival_time_ms

        with self._lock_for(key):
            with self._map_lock:
                state = self._windows.get(key)
                if state is None:
                    state = WindowState(arrival)
                    self._windows[key] = state

            if state.event_count and arrival - state.window_start_ms > self.window_ms:
                logger.debug(f"Window rolled over for {source_ip}/{event.protocol.value}")
                state.reset(arrival)

            bursts_before = state.burst_count
            if state.event_count:
                # Never let a late arrival produce a negative interval
                arrival = max(arrival, state.last_event_ms)
                update_burst_state(state, state.last_event_ms, arrival)

            state.request_count += weight
            state.event_count   += 1
            state.unique_ips.add(source_ip)
            if (attribute in state.distinct_attribute_values
                    or len(state.distinct_attribute_values) < self.max_attributes):
                state.distinct_attribute_values[attribute] = arrival
            recipients = max(0, event.recipient_count) if event.protocol == Protocol.SMTP else 0
            state.recipient_total += recipients
            state.last_event_ms = arrival

            bucket = self._bucket_for(state, arrival)
            bucket.requests    += weight
            bucket.events      += 1
            bucket.recipients  += recipients
            bucket.burst_steps += state.burst_count - bursts_before
            bucket.last_ms      = arrival

            snapshot = self._snapshot(key, state)
            if handoff is not None:
                handoff(snapshot)
            return snapshot

    def get_snapshot(
        self,
        source_ip: str,
        protocol: Protocol,
        window_ms: Optional[int] = None,
        now_ms: Optional[int] = None,
    ) -> Optional[WindowSnapshot]:
        """
        Snapshot of one key, or None if it is not tracked. With `window_ms`
        and `now_ms`, only traffic inside the trailing window is counted and
        None is returned when there is none.
        """
        key: WindowKey = (source_ip, Protocol(protocol))
        if window_ms is not None:
            self._check_window(window_ms)
        with self._lock_for(key):
            state = self._windows.get(key)
            if state is None:
                return None
            if window_ms is None or now_ms is None:
                return self._snapshot(key, state)
            return self._trailing_snapshot(key, state, now_ms - window_ms)

    def snapshot_for_protocol(
        self,
        protocol: Protocol,
        window_ms: int,
        now_ms: int,
    ) -> WindowSnapshot:
        """
        Merge the traffic every key of `protocol` saw within the trailing
        `window_ms` into one protocol-wide snapshot (source_ip=None).

        Raises ValueError for a window longer than the aggregator keeps.
        """
        protocol = Protocol(protocol)
        self._check_window(window_ms)
        with self._map_lock:
            keys = [k for k in self._windows if k[1] == protocol]

        parts: list[WindowSnapshot] = []
        for key in keys:
            snap = self.get_snapshot(key[0], key[1], window_ms, now_ms)
            if snap is not None and snap.event_count:
                parts.append(snap)

        if not parts:
            return WindowSnapshot(
                protocol=protocol, source_ip=None,
                window_start_ms=now_ms, last_event_ms=now_ms,
                request_count=0, event_count=0,
                unique_ips=frozenset(), distinct_attribute_values=frozenset(),
            )

        attributes = sorted(set().union(*(p.distinct_attribute_values for p in parts)))
        periods = sorted(
            (bp for p in parts for bp in p.burst.burst_periods),
            key=lambda bp: bp.start_ms,
        )
        return WindowSnapshot(
            protocol=protocol,
            source_ip=None,
            window_start_ms=min(p.window_start_ms for p in parts),
            last_event_ms=max(p.last_event_ms for p in parts),
            request_count=sum(p.request_count for p in parts),
            event_count=sum(p.event_count for p in parts),
            unique_ips=frozenset().union(*(p.unique_ips for p in parts)),
            distinct_attribute_values=frozenset(attributes[: self.max_attributes]),
            recipient_total=sum(p.recipient_total for p in parts),
            burst=BurstStats(
                burst_count=sum(p.burst.burst_count for p in parts),
                consecutive_burst_count=max(p.burst.consecutive_burst_count for p in parts),
                max_consecutive_burst_count=max(p.burst.max_consecutive_burst_count for p in parts),
                burst_periods=tuple(periods[-config.MAX_BURST_PERIODS:]),
            ),
        )

    def evict_idle(self, now_ms: int, ttl_ms: int) -> int:
        """Remove keys whose last event is older than ttl_ms. Returns count removed."""
        with self._map_lock:
            keys = list(self._windows)

        removed = 0
        for key in keys:
            with self._lock_for(key):
                state = self._windows.get(key)
                if state is not None and now_ms - state.last_event_ms > ttl_ms:
                    with self._map_lock:
                        del self._windows[key]
                    removed += 1
        if removed:
            logger.info(f"Evicted {removed} idle window(s)")
        return removed

    def count_overdue(self, now_ms: int, ttl_ms: int) -> int:
        """Number of keys currently idle beyond ttl_ms (should be 0 after a sweep)."""
        with self._map_lock:
            return sum(
                1 for s in self._windows.values()
                if now_ms - s.last_event_ms > ttl_ms
            )

    def __len__(self) -> int:
        with self._map_lock:
            return len(self._windows)
