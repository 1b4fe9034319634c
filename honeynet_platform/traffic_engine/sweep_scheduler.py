# =============================================================================
# sweep_scheduler.py — Background eviction of idle window and alert state
#
# Runs on its own daemon thread, independent of ingestion. Each tick evicts
# windows idle beyond the TTL and alerts older than the cooldown. A failed
# tick is logged, counted and retried on the next one; keys left beyond the
# TTL are exposed as `overdue_keys` so a stuck sweep is visible.
# =============================================================================

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import logging
import threading
from typing import Callable, Optional
from models import now_ms
import config

from traffic_engine.window_aggregator import WindowAggregator
from traffic_engine.alert_manager     import AlertManager

logger = logging.getLogger(__name__)


class SweepScheduler:
    """Periodically bounds the memory held by the aggregator and alert manager."""

    def __init__(
        self,
        aggregator: WindowAggregator,
        alert_manager: AlertManager,
        interval_secs: float = config.SWEEP_INTERVAL_SECS,
        ttl_ms: int = config.WINDOW_TTL_MS,
        clock: Callable[[], int] = now_ms,
    ):
        self.aggregator    = aggregator
        self.alert_manager = alert_manager
        self.interval_secs = interval_secs
        self.ttl_ms        = ttl_ms
        self.clock         = clock
        self._stop         = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.completed_sweeps = 0
        self.failed_sweeps    = 0
        self.overdue_keys     = 0

    def sweep_once(self) -> dict:
        """Run one eviction pass. Returns {"windows": n, "alerts": n}."""
        now = self.clock()
        try:
            windows = self.aggregator.evict_idle(now, self.ttl_ms)
            alerts  = self.alert_manager.evict_expired(now)
        except Exception:
            self.failed_sweeps += 1
            logger.exception("Sweep failed — will retry on next tick")
            self._update_overdue(now)
            return {"windows": 0, "alerts": 0}

        self.completed_sweeps += 1
        self._update_overdue(now)
        return {"windows": windows, "alerts": alerts}

    def _update_overdue(self, now: int) -> None:
        try:
            self.overdue_keys = self.aggregator.count_overdue(now, self.ttl_ms)
        except Exception:
            logger.exception("Could not count overdue windows")
            return
        if self.overdue_keys:
            logger.warning(f"{self.overdue_keys} window(s) idle beyond TTL after sweep")

    def _run(self) -> None:
        logger.info(f"Sweep scheduler started (every {self.interval_secs}s)")
        while not self._stop.wait(self.interval_secs):
            self.sweep_once()
        logger.info("Sweep scheduler stopped")

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="sweep-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
