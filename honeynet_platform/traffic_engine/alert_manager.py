# =============================================================================
# alert_manager.py — Deduplicated, cooldown-gated attack alerting
#
# One active alert per (source IP, protocol, attack type). A new alert for a
# key is suppressed while the previous active one is younger than the
# cooldown. Resolution is an explicit external call and is independent of
# the cooldown: a resolved alert stops suppressing its key.
#
# Subscribers are called synchronously, outside the manager lock, one at a
# time; a failing subscriber is logged and does not affect the others.
# =============================================================================

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import logging
import threading
from typing import Callable, Optional
from models import (
    AlertMetrics, AlertStatus, AttackAlert, AttackClassification,
    WindowSnapshot, now_ms,
)
import config

logger = logging.getLogger(__name__)

AlertCallback = Callable[[AttackAlert], None]


def alert_key(source_ip: str, protocol: str, attack_type: str) -> str:
    return f"{source_ip}|{protocol}|{attack_type}"


class AlertManager:
    """
    Raises, stores and publishes AttackAlerts.

    Args:
        cooldown_ms: Minimum age of an active alert before its key may alert again.
        clock:       Returns the current time in ms (injectable for tests).
    """

    def __init__(
        self,
        cooldown_ms: int = config.ALERT_COOLDOWN_MS,
        clock: Callable[[], int] = now_ms,
    ):
        self.cooldown_ms = cooldown_ms
        self.clock       = clock
        self._lock       = threading.Lock()
        self._by_key: dict[str, AttackAlert] = {}
        self._by_id:  dict[str, str]         = {}    # alert_id -> key
        self._subscribers: list[AlertCallback] = []
        self.suppressed_count       = 0
        self.subscriber_error_count = 0

    # ── Subscribers ───────────────────────────────────────────────────────────

    def subscribe(self, callback: AlertCallback) -> None:
        with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def unsubscribe(self, callback: AlertCallback) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def _publish(self, alert: AttackAlert) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(alert)
            except Exception:
                with self._lock:
                    self.subscriber_error_count += 1
                logger.exception(
                    f"Alert subscriber {getattr(callback, '__qualname__', callback)!r} "
                    f"failed for alert {alert.alert_id}"
                )

    # ── Raising / resolving ───────────────────────────────────────────────────

    def raise_alert(
        self,
        classification: AttackClassification,
        snapshot: WindowSnapshot,
    ) -> Optional[AttackAlert]:
        """
        Create and publish an alert unless an active one for the same key is
        still inside its cooldown. Returns the new alert, or None if suppressed.
        """
        source_ip = snapshot.source_ip or "*"
        key = alert_key(source_ip, snapshot.protocol.value, classification.attack_type.value)
        now = self.clock()

        with self._lock:
            existing = self._by_key.get(key)
            if (existing is not None
                    and existing.status == AlertStatus.ACTIVE
                    and now - existing.raised_at_ms < self.cooldown_ms):
                self.suppressed_count += 1
                logger.debug(f"Alert suppressed (cooldown): {key}")
                return None

            alert = AttackAlert(
                source_ip=source_ip,
                protocol=snapshot.protocol,
                attack_type=classification.attack_type,
                confidence=classification.confidence,
                indicators=list(classification.indicators),
                metrics=AlertMetrics(
                    request_count=snapshot.request_count,
                    burst_count=snapshot.burst.burst_count,
                    average_interval_ms=round(snapshot.average_interval_ms, 2),
                ),
                raised_at_ms=now,
            )
            if existing is not None:
                self._by_id.pop(existing.alert_id, None)
            self._by_key[key] = alert
            self._by_id[alert.alert_id] = key

        logger.info(
            f"Alert raised: {alert.attack_type.value} from {source_ip} "
            f"over {alert.protocol.value} (confidence={alert.confidence:.2f})"
        )
        self._publish(alert)
        return alert

    def resolve(self, alert_id: str) -> AttackAlert:
        """Mark an alert resolved. Raises KeyError for unknown ids."""
        with self._lock:
            key = self._by_id.get(alert_id)
            if key is None:
                raise KeyError(alert_id)
            alert = self._by_key[key]
            if alert.status == AlertStatus.ACTIVE:
                alert = alert.model_copy(update={
                    "status": AlertStatus.RESOLVED,
                    "resolved_at_ms": self.clock(),
                })
                self._by_key[key] = alert
        logger.info(f"Alert {alert_id} resolved")
        return alert

    # ── Queries / maintenance ─────────────────────────────────────────────────

    def get_alert(self, alert_id: str) -> Optional[AttackAlert]:
        with self._lock:
            key = self._by_id.get(alert_id)
            return self._by_key.get(key) if key is not None else None

    def get_active_alerts(self) -> list[AttackAlert]:
        with self._lock:
            alerts = [a for a in self._by_key.values() if a.status == AlertStatus.ACTIVE]
        return sorted(alerts, key=lambda a: a.raised_at_ms, reverse=True)

    def evict_expired(self, now: Optional[int] = None) -> int:
        """Drop stored alerts older than the cooldown. Returns count removed."""
        now = self.clock() if now is None else now
        with self._lock:
            expired = [
                k for k, a in self._by_key.items()
                if now - a.raised_at_ms > self.cooldown_ms
            ]
            for key in expired:
                alert = self._by_key.pop(key)
                self._by_id.pop(alert.alert_id, None)
        if expired:
            logger.info(f"Evicted {len(expired)} expired alert(s)")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_key)
