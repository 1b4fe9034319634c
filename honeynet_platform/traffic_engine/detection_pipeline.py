# =============================================================================
# detection_pipeline.py — Composes the traffic engine
#
# Flow:
#   listener → record(event)
#       → WindowAggregator.record()          (synchronous, short key lock)
#       → snapshot returned to the listener  (decoy answers immediately)
#       → snapshot put on a bounded shard queue (never blocks; drops if full)
#   worker thread (one per shard, so per-key order is preserved)
#       → rule_classifier.classify()
#       → AlertManager.raise_alert()         (if confidence passes threshold)
#       → subscribers / sinks
#   SweepScheduler evicts idle state in the background.
# =============================================================================

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import logging
import queue
import threading
import time
from typing import Callable, Optional
from models import (
    AttackAlert, AttackClassification, AttackType, Protocol,
    TrafficEvent, TrafficMetrics, WindowSnapshot, now_ms,
)
import config

from traffic_engine.window_aggregator import WindowAggregator
from traffic_engine.rule_classifier   import classify
from traffic_engine.alert_manager     import AlertManager, AlertCallback
from traffic_engine.sweep_scheduler   import SweepScheduler

logger = logging.getLogger(__name__)

_STOP = object()


class DetectionPipeline:
    """
    Entry point for decoy listeners: owns the aggregator, alert manager and
    sweep scheduler, and the worker threads between them.
    """

    def __init__(
        self,
        aggregator:    Optional[WindowAggregator] = None,
        alert_manager: Optional[AlertManager]     = None,
        workers:       int   = config.PIPELINE_WORKERS,
        queue_maxsize: int   = config.QUEUE_MAXSIZE,
        confidence_threshold: float = config.ALERT_CONFIDENCE_THRESHOLD,
        sweep_interval_secs:  float = config.SWEEP_INTERVAL_SECS,
        clock: Callable[[], int] = now_ms,
    ):
        self.clock         = clock
        self.aggregator    = aggregator or WindowAggregator()
        self.alert_manager = alert_manager or AlertManager(clock=clock)
        self.sweeper       = SweepScheduler(
            self.aggregator, self.alert_manager,
            interval_secs=sweep_interval_secs, clock=clock,
        )
        self.confidence_threshold = confidence_threshold
        self._queues: list[queue.Queue] = [
            queue.Queue(maxsize=queue_maxsize) for _ in range(max(1, workers))
        ]
        self._threads: list[threading.Thread] = []
        self._counter_lock = threading.Lock()
        self.dropped_snapshots   = 0
        self.processed_snapshots = 0
        self.alerts_raised       = 0

    # ── Internal steps ────────────────────────────────────────────────────────

    def _queue_for(self, snapshot: WindowSnapshot) -> queue.Queue:
        return self._queues[hash((snapshot.source_ip, snapshot.protocol)) % len(self._queues)]

    def evaluate(self, snapshot: WindowSnapshot) -> tuple[AttackClassification, Optional[AttackAlert]]:
        """Classify one snapshot and raise an alert if it warrants one."""
        classification = classify(snapshot)
        alert = None
        if (classification.attack_type not in (AttackType.NORMAL, AttackType.UNKNOWN)
                and classification.confidence >= self.confidence_threshold):
            alert = self.alert_manager.raise_alert(classification, snapshot)
        with self._counter_lock:
            self.processed_snapshots += 1
            if alert is not None:
                self.alerts_raised += 1
        return classification, alert

    def _worker(self, q: queue.Queue) -> None:
        while True:
            item = q.get()
            try:
                if item is _STOP:
                    return
                self.evaluate(item)
            except Exception:
                logger.exception("Snapshot evaluation failed")
            finally:
                q.task_done()

    def _enqueue(self, snapshot: WindowSnapshot) -> None:
        try:
            self._queue_for(snapshot).put_nowait(snapshot)
        except queue.Full:
            with self._counter_lock:
                self.dropped_snapshots += 1
            logger.warning(
                f"Evaluation queue full — dropped snapshot for "
                f"{snapshot.source_ip}/{snapshot.protocol.value}"
            )

    # ── Public API ────────────────────────────────────────────────────────────

    def record(self, event: TrafficEvent) -> WindowSnapshot:
        """
        Update the event's window and schedule its evaluation.
        Returns the snapshot at once; evaluation happens on a worker.
        The snapshot is queued under the key's lock, so concurrent listeners
        cannot reorder one key's evaluations.
        """
        return self.aggregator.record(event, handoff=self._enqueue)

    def get_metrics(
        self,
        protocol: Protocol,
        window_ms: int = config.WINDOW_MS,
        now: Optional[int] = None,
        source_ip: Optional[str] = None,
    ) -> TrafficMetrics:
        """
        Metrics and classification over the trailing window, protocol-wide
        or for one source when `source_ip` is given.

        Raises ValueError if `window_ms` exceeds the aggregator's window.
        """
        protocol = Protocol(protocol)
        now = self.clock() if now is None else now
        if source_ip is None:
            snapshot = self.aggregator.snapshot_for_protocol(protocol, window_ms, now)
        else:
            snapshot = self.aggregator.get_snapshot(source_ip, protocol, window_ms, now)
            if snapshot is None:
                snapshot = WindowSnapshot(
                    protocol=protocol, source_ip=source_ip,
                    window_start_ms=now, last_event_ms=now,
                    request_count=0, event_count=0,
                    unique_ips=frozenset(), distinct_attribute_values=frozenset(),
                )
        classification = classify(snapshot)
        return TrafficMetrics(
            protocol=protocol,
            source_ip=source_ip,
            window_ms=window_ms,
            request_count=snapshot.request_count,
            average_interval_ms=round(snapshot.average_interval_ms, 2),
            burst_count=snapshot.burst.burst_count,
            distinct_attribute_values=sorted(snapshot.distinct_attribute_values),
            suspicious_score=round(classification.confidence * 100),
            attack_type=classification.attack_type,
            confidence=classification.confidence,
            indicators=list(classification.indicators),
            burst_periods=list(snapshot.burst.burst_periods),
        )

    def subscribe(self, callback: AlertCallback) -> None:
        self.alert_manager.subscribe(callback)

    def unsubscribe(self, callback: AlertCallback) -> None:
        self.alert_manager.unsubscribe(callback)

    def resolve(self, alert_id: str) -> AttackAlert:
        return self.alert_manager.resolve(alert_id)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self, with_sweeper: bool = True) -> None:
        if self.running:
            return
        self._threads = [
            threading.Thread(target=self._worker, args=(q,), name=f"detector-{i}", daemon=True)
            for i, q in enumerate(self._queues)
        ]
        for t in self._threads:
            t.start()
        if with_sweeper:
            self.sweeper.start()
        logger.info(f"Detection pipeline started with {len(self._threads)} worker(s)")

    def drain(self, timeout: float = 10.0) -> bool:
        """
        Wait until every queued snapshot has been evaluated. When no workers
        are running the queues are processed inline on the calling thread.
        Returns False if the timeout expired first.
        """
        if not self.running:
            for q in self._queues:
                while True:
                    try:
                        item = q.get_nowait()
                    except queue.Empty:
                        break
                    try:
                        if item is not _STOP:
                            self.evaluate(item)
                    except Exception:
                        logger.exception("Snapshot evaluation failed")
                    finally:
                        q.task_done()
            return True

        deadline = time.monotonic() + timeout
        while any(q.unfinished_tasks for q in self._queues):
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def stop(self, timeout: float = 5.0) -> None:
        self.sweeper.stop(timeout)
        for q in self._queues:
            q.put(_STOP)
        for t in self._threads:
            t.join(timeout)
        self._threads = []
        logger.info("Detection pipeline stopped")

    def stats(self) -> dict:
        return {
            "tracked_windows":     len(self.aggregator),
            "active_alerts":       len(self.alert_manager.get_active_alerts()),
            "dropped_snapshots":   self.dropped_snapshots,
            "processed_snapshots": self.processed_snapshots,
            "alerts_raised":       self.alerts_raised,
            "suppressed_alerts":   self.alert_manager.suppressed_count,
            "malformed_events":    self.aggregator.malformed_events,
            "failed_sweeps":       self.sweeper.failed_sweeps,
            "overdue_keys":        self.sweeper.overdue_keys,
        }
