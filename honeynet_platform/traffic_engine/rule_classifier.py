# =============================================================================
# rule_classifier.py — Rule-based multi-protocol attack classification
#
# classify(snapshot, burst) is a pure function: identical inputs always give
# an identical AttackClassification, including derived_at_ms (taken from the
# snapshot, never from the clock). Steps, in order:
#   1. requests per second over the observed window
#   2. source-IP diversity ratio
#   3. pattern score against the protocol's suspicious/attack rates
#   4. protocol-specific indicator scan (may force the attack type)
#   5. baseline rate classification
#   6. low-diversity boost
#   7. burst indicator, clamp to [0, 1]
# =============================================================================

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import logging
from typing import Optional
from models import (
    AttackClassification, AttackType, BurstStats, ClassificationMetrics,
    Indicator, Protocol, WindowSnapshot,
)
import config

logger = logging.getLogger(__name__)


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


def _is_sensitive(path: str) -> bool:
    lowered = path.lower()
    return any(marker in lowered for marker in config.SENSITIVE_PATH_MARKERS)


# ── Rate features ─────────────────────────────────────────────────────────────

def requests_per_second(snapshot: WindowSnapshot) -> float:
    """
    Request rate over the window. Spans shorter than MIN_RATE_WINDOW_MS are
    measured as MIN_RATE_WINDOW_MS, so a handful of back-to-back requests is
    not mistaken for a flood. A zero-length window has no rate.
    """
    duration_ms = snapshot.window_duration_ms
    if duration_ms <= 0:
        return 0.0
    return snapshot.request_count / (max(duration_ms, config.MIN_RATE_WINDOW_MS) / 1000.0)


def ip_diversity_ratio(snapshot: WindowSnapshot) -> float:
    if snapshot.request_count == 0:
        return 1.0
    return len(snapshot.unique_ips) / snapshot.request_count


def pattern_score(rps: float, suspicious: float, attack: float) -> float:
    """How far the rate sits above the sustained (suspicious) and burst (attack) rates."""
    burst_score = max(0.0, (rps - attack) / attack)
    sustained_score = max(0.0, (rps - suspicious) / (attack - suspicious))
    return max(burst_score, sustained_score)


# ── Protocol indicator scan ───────────────────────────────────────────────────

class _Scan:
    """Accumulated effects of the protocol-specific indicator scan."""

    def __init__(self):
        self.indicators: list[Indicator] = []
        self.forced_type: Optional[AttackType] = None
        self.confidence_floor = 0.0
        self.bonus = 0.0

    def force(self, attack_type: AttackType, floor: float) -> None:
        if self.forced_type is None:
            self.forced_type = attack_type
            self.confidence_floor = floor


def _scan_http(snapshot: WindowSnapshot, rps: float, suspicious: float, scan: _Scan) -> None:
    paths = snapshot.distinct_attribute_values
    sensitive = [p for p in paths if _is_sensitive(p)]
    if sensitive:
        scan.bonus += config.SENSITIVE_PATH_BONUS
        scan.indicators.append(Indicator.SENSITIVE_PATH)
    if len(paths) == 1:
        scan.indicators.append(Indicator.SINGLE_ENDPOINT)
        if sensitive and rps > suspicious:
            scan.force(AttackType.TARGETED, 0.0)


def _scan_dns(snapshot: WindowSnapshot, scan: _Scan) -> None:
    query_types = snapshot.distinct_attribute_values
    if "ANY" in query_types:
        scan.indicators.append(Indicator.DNS_ANY_QUERY)
        scan.force(AttackType.DNS_AMPLIFICATION, config.DNS_AMPLIFICATION_FLOOR)
    if len(query_types) == 1:
        scan.indicators.append(Indicator.SINGLE_QUERY_TYPE)


def _scan_smtp(
    snapshot: WindowSnapshot, rps: float, ip_ratio: float, suspicious: float, scan: _Scan,
) -> None:
    if rps > suspicious and ip_ratio < config.SMTP_SPAM_IP_RATIO:
        scan.indicators.append(Indicator.SMTP_SPAM)
        scan.force(AttackType.SPAM, config.SMTP_SPAM_FLOOR)
    if (snapshot.recipient_total > config.HARVESTING_RECIPIENTS
            and snapshot.window_duration_ms <= config.HARVESTING_WINDOW_MS):
        scan.indicators.append(Indicator.RECIPIENT_HARVESTING)
        scan.force(AttackType.HARVESTING, config.HARVESTING_FLOOR)


# ── Classification ────────────────────────────────────────────────────────────

def _classify(snapshot: WindowSnapshot, burst: BurstStats) -> AttackClassification:
    thresholds = config.RPS_THRESHOLDS[snapshot.protocol.value]
    suspicious = thresholds["suspicious"]
    attack     = thresholds["attack"]

    # ── 1-3. Rate features ────────────────────────────────────────────────────
    rps      = requests_per_second(snapshot)
    ip_ratio = ip_diversity_ratio(snapshot)
    score    = pattern_score(rps, suspicious, attack)

    # ── 4. Protocol indicators ────────────────────────────────────────────────
    scan = _Scan()
    if snapshot.protocol == Protocol.HTTP:
        _scan_http(snapshot, rps, suspicious, scan)
    elif snapshot.protocol == Protocol.DNS:
        _scan_dns(snapshot, scan)
    elif snapshot.protocol == Protocol.SMTP:
        _scan_smtp(snapshot, rps, ip_ratio, suspicious, scan)

    indicators = list(scan.indicators)
    if score >= 1.0:
        indicators.append(Indicator.HIGH_REQUEST_RATE)
    elif score > 0.0:
        indicators.append(Indicator.ELEVATED_REQUEST_RATE)

    # ── 5. Baseline from the rate table ───────────────────────────────────────
    if rps > attack:
        attack_type = AttackType.DDOS
        confidence  = min((rps - attack) / attack, 1.0)
    elif rps > suspicious:
        attack_type = AttackType.SUSPICIOUS
        confidence  = (rps - suspicious) / (attack - suspicious)
    else:
        attack_type = AttackType.NORMAL
        confidence  = 0.0

    if scan.forced_type is not None:
        attack_type = scan.forced_type
        confidence  = max(confidence, scan.confidence_floor)
    if attack_type != AttackType.NORMAL:
        confidence += scan.bonus

    # ── 6. Low source diversity ───────────────────────────────────────────────
    if (ip_ratio < config.LOW_DIVERSITY_RATIO
            and snapshot.request_count > config.LOW_DIVERSITY_MIN_REQS):
        if attack_type == AttackType.NORMAL:
            attack_type = AttackType.SUSPICIOUS
            confidence  = config.LOW_DIVERSITY_BASELINE
        else:
            confidence  = min(confidence + config.LOW_DIVERSITY_BOOST, 1.0)
        indicators.append(Indicator.LOW_IP_DIVERSITY)

    # ── 7. Bursts ─────────────────────────────────────────────────────────────
    if (burst.max_consecutive_burst_count > config.BURST_STREAK_MIN
            or burst.burst_periods):
        indicators.append(Indicator.BURST_ACTIVITY)

    return AttackClassification(
        attack_type=attack_type,
        confidence=_clamp(confidence),
        indicators=tuple(indicators),
        metrics=ClassificationMetrics(
            rps=rps,
            ip_ratio=ip_ratio,
            unique_ip_count=len(snapshot.unique_ips),
            pattern_score=score,
        ),
        derived_at_ms=snapshot.last_event_ms,
    )


def classify(
    snapshot: WindowSnapshot,
    burst: Optional[BurstStats] = None,
) -> AttackClassification:
    """
    Classify one window snapshot. Never raises: any internal failure yields
    an UNKNOWN classification tagged 'classification_error'.

    Args:
        snapshot: Frozen window counters.
        burst:    Burst statistics; defaults to the ones carried by the snapshot.
    """
    try:
        return _classify(snapshot, burst if burst is not None else snapshot.burst)
    except Exception:
        logger.exception(
            f"Classification failed for {getattr(snapshot, 'source_ip', None)}"
        )
        return AttackClassification(
            attack_type=AttackType.UNKNOWN,
            confidence=0.0,
            indicators=(Indicator.CLASSIFICATION_ERROR,),
            derived_at_ms=getattr(snapshot, "last_event_ms", 0) or 0,
        )
