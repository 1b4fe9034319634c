# =============================================================================
# alert_sinks.py — Downstream consumers of AttackAlerts
#
#   LoggingAlertSink        — writes each alert to the log
#   LedgerAttestationSink   — hands alert + traffic summary to a ledger
#                             submitter on a thread pool (fire-and-forget)
#   MitigationSink          — temporary in-memory block-list of source IPs
#   ElasticsearchAlertSink  — persists alert history
#
# Every sink is a plain callable taking one AttackAlert, so it can be passed
# straight to AlertManager.subscribe().
# =============================================================================

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import hashlib
import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional
from models import AttackAlert, now_ms
import config

from traffic_engine.elasticsearch_client import HoneynetElasticClient

logger = logging.getLogger(__name__)


class LoggingAlertSink:
    """Logs alerts; ERROR level at or above `error_confidence`, WARNING below."""

    def __init__(self, error_confidence: float = config.MITIGATION_CONFIDENCE,
                 log: Optional[logging.Logger] = None):
        self.error_confidence = error_confidence
        self.log = log or logger

    def __call__(self, alert: AttackAlert) -> None:
        level = logging.ERROR if alert.confidence >= self.error_confidence else logging.WARNING
        self.log.log(
            level,
            f"ATTACK [{alert.attack_type.value}] {alert.source_ip} via {alert.protocol.value} "
            f"confidence={alert.confidence:.2f} requests={alert.metrics.request_count} "
            f"bursts={alert.metrics.burst_count} "
            f"indicators={[i.value for i in alert.indicators]}",
        )


# ── Ledger attestation ────────────────────────────────────────────────────────

def traffic_summary(alert: AttackAlert) -> dict:
    """The traffic facts an attestation commits to."""
    return {
        "source_ip":           alert.source_ip,
        "protocol":            alert.protocol.value,
        "request_count":       alert.metrics.request_count,
        "burst_count":         alert.metrics.burst_count,
        "average_interval_ms": alert.metrics.average_interval_ms,
        "indicators":          [i.value for i in alert.indicators],
    }


def attestation_digest(alert: AttackAlert, summary: dict) -> str:
    """Stable sha256 over the alert identity, classification and summary."""
    payload = {
        "alert_id":    alert.alert_id,
        "attack_type": alert.attack_type.value,
        "confidence":  round(alert.confidence * 100),
        "raised_at":   alert.raised_at_ms,
        "summary":     summary,
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


LedgerSubmitter = Callable[[AttackAlert, dict, str], str]


class LedgerAttestationSink:
    """
    Submits each alert to a ledger on a background pool.

    Args:
        submit:      Called as submit(alert, summary, digest); returns an
                     attestation reference (e.g. a transaction hash).
        max_workers: Size of the submission pool.

    Submission errors are logged and not retried.
    """

    def __init__(self, submit: LedgerSubmitter, max_workers: int = 2):
        self.submit    = submit
        self._pool     = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="ledger")
        self._lock     = threading.Lock()
        self.references: dict[str, str] = {}
        self.failures:   dict[str, str] = {}

    def __call__(self, alert: AttackAlert) -> Future:
        summary = traffic_summary(alert)
        digest  = attestation_digest(alert, summary)
        future  = self._pool.submit(self.submit, alert, summary, digest)
        future.add_done_callback(lambda f, a=alert: self._on_done(a, f))
        return future

    def _on_done(self, alert: AttackAlert, future: Future) -> None:
        error = future.exception()
        with self._lock:
            if error is not None:
                self.failures[alert.alert_id] = str(error)
            else:
                self.references[alert.alert_id] = future.result()
        if error is not None:
            logger.error(f"Ledger attestation failed for alert {alert.alert_id}: {error}")
        else:
            logger.info(f"Alert {alert.alert_id} attested: {future.result()}")

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


# ── Mitigation ────────────────────────────────────────────────────────────────

class MitigationSink:
    """Temporarily blocks the source IP of high-confidence alerts."""

    def __init__(
        self,
        min_confidence: float = config.MITIGATION_CONFIDENCE,
        block_ms: int = config.BLOCK_DURATION_MS,
        clock: Callable[[], int] = now_ms,
    ):
        self.min_confidence = min_confidence
        self.block_ms       = block_ms
        self.clock          = clock
        self._lock          = threading.Lock()
        self._blocked: dict[str, int] = {}   # ip -> blocked-until ms

    def __call__(self, alert: AttackAlert) -> None:
        if alert.confidence < self.min_confidence or alert.source_ip == "*":
            return
        until = self.clock() + self.block_ms
        with self._lock:
            self._blocked[alert.source_ip] = max(until, self._blocked.get(alert.source_ip, 0))
        logger.warning(
            f"Blocking {alert.source_ip} for {self.block_ms // 1000}s "
            f"({alert.attack_type.value}, confidence={alert.confidence:.2f})"
        )

    def is_blocked(self, ip: str) -> bool:
        now = self.clock()
        with self._lock:
            until = self._blocked.get(ip)
            if until is None:
                return False
            if until <= now:
                del self._blocked[ip]
                return False
            return True

    def blocked_ips(self) -> dict[str, int]:
        now = self.clock()
        with self._lock:
            for ip in [ip for ip, until in self._blocked.items() if until <= now]:
                del self._blocked[ip]
            return dict(self._blocked)

    def unblock(self, ip: str) -> bool:
        with self._lock:
            return self._blocked.pop(ip, None) is not None


# ── Elasticsearch history ─────────────────────────────────────────────────────

class ElasticsearchAlertSink:
    """Persists every alert to the alert-history index; failures are logged."""

    def __init__(self, es_client: Optional[HoneynetElasticClient] = None):
        self.es = es_client or HoneynetElasticClient()
        self._index_ready = False

    def __call__(self, alert: AttackAlert) -> None:
        try:
            if not self._index_ready:
                self.es.ensure_index()
                self._index_ready = True
            self.es.index_alert(alert)
        except Exception as e:
            logger.warning(f"Could not index alert {alert.alert_id}: {e}")
