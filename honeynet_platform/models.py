# honeynet_platform/models.py
# Shared Pydantic models used across the traffic engine

import time
import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def now_ms() -> int:
    """Current wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


class Protocol(str, Enum):
    HTTP = "http"
    DNS  = "dns"
    SMTP = "smtp"


class AttackType(str, Enum):
    NORMAL            = "normal"
    SUSPICIOUS        = "suspicious"
    TARGETED          = "targeted"
    DDOS              = "ddos"
    DNS_AMPLIFICATION = "dns_amplification"
    SPAM              = "spam"
    HARVESTING        = "harvesting"
    UNKNOWN           = "unknown"


class Indicator(str, Enum):
    """Closed set of tags a classification may carry."""
    SENSITIVE_PATH        = "sensitive path access"
    SINGLE_ENDPOINT       = "single endpoint targeting"
    DNS_ANY_QUERY         = "dns ANY query"
    SINGLE_QUERY_TYPE     = "single query type pattern"
    SMTP_SPAM             = "smtp spam pattern"
    RECIPIENT_HARVESTING  = "recipient harvesting"
    HIGH_REQUEST_RATE     = "high request rate"
    ELEVATED_REQUEST_RATE = "elevated request rate"
    BURST_ACTIVITY        = "burst activity"
    LOW_IP_DIVERSITY      = "low IP diversity"
    CLASSIFICATION_ERROR  = "classification_error"


class AlertStatus(str, Enum):
    ACTIVE   = "active"
    RESOLVED = "resolved"


class TrafficEvent(BaseModel):
    """One inbound request/packet, stamped by the decoy listener on arrival."""
    model_config = ConfigDict(frozen=True)

    protocol:        Protocol
    source_ip:       str
    arrival_time_ms: int           = Field(default_factory=now_ms)
    weight:          int           = 1
    path:            Optional[str] = None    # HTTP
    query_type:      Optional[str] = None    # DNS, e.g. "A", "ANY"
    sender_address:  Optional[str] = None    # SMTP MAIL FROM
    recipient_count: int           = 0       # SMTP RCPT TO count


class BurstPeriod(BaseModel):
    model_config = ConfigDict(frozen=True)

    start_ms:    int
    end_ms:      int
    count:       int
    duration_ms: int


class BurstStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    burst_count:                 int = 0
    consecutive_burst_count:     int = 0
    max_consecutive_burst_count: int = 0
    burst_periods:               tuple[BurstPeriod, ...] = ()


class WindowSnapshot(BaseModel):
    """Immutable copy of one window's counters (source_ip None = protocol-wide)."""
    model_config = ConfigDict(frozen=True)

    protocol:                  Protocol
    source_ip:                 Optional[str]
    window_start_ms:           int
    last_event_ms:             int
    request_count:             int
    event_count:               int
    unique_ips:                frozenset[str]
    distinct_attribute_values: frozenset[str]
    recipient_total:           int = 0
    burst:                     BurstStats = BurstStats()

    @property
    def window_duration_ms(self) -> int:
        return max(0, self.last_event_ms - self.window_start_ms)

    @property
    def average_interval_ms(self) -> float:
        if self.event_count < 2:
            return 0.0
        return self.window_duration_ms / (self.event_count - 1)


class ClassificationMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    rps:             float = 0.0
    ip_ratio:        float = 1.0
    unique_ip_count: int   = 0
    pattern_score:   float = 0.0


class AttackClassification(BaseModel):
    model_config = ConfigDict(frozen=True)

    attack_type:   AttackType
    confidence:    float = Field(ge=0.0, le=1.0)
    indicators:    tuple[Indicator, ...] = ()
    metrics:       ClassificationMetrics = ClassificationMetrics()
    derived_at_ms: int = 0


class AlertMetrics(BaseModel):
    request_count:       int
    burst_count:         int
    average_interval_ms: float


class AttackAlert(BaseModel):
    """An alert raised by the AlertManager and delivered to every sink."""
    alert_id:       str       = Field(default_factory=lambda: str(uuid.uuid4()))
    source_ip:      str
    protocol:       Protocol
    attack_type:    AttackType
    confidence:     float
    indicators:     list[Indicator] = []
    metrics:        AlertMetrics
    status:         AlertStatus = AlertStatus.ACTIVE
    raised_at_ms:   int
    resolved_at_ms: Optional[int] = None


class TrafficMetrics(BaseModel):
    """View over a trailing window (source_ip None = protocol-wide), served to operators."""
    protocol:                  Protocol
    source_ip:                 Optional[str] = None
    window_ms:                 int
    request_count:             int
    average_interval_ms:       float
    burst_count:               int
    distinct_attribute_values: list[str]
    suspicious_score:          int          # 0–100
    attack_type:               AttackType
    confidence:                float
    indicators:                list[Indicator]
    burst_periods:             list[BurstPeriod]


class SimulateRequest(BaseModel):
    """API request body for /simulate."""
    pattern:     str = Field(default="http_flood")
    duration_ms: int = Field(default=10_000, ge=1_000, le=300_000)


class SimulateResponse(BaseModel):
    """API response from /simulate."""
    pattern:          str
    events_generated: int
    events_recorded:  int
    alerts_raised:    int
    alerts:           list[AttackAlert]


class StatusResponse(BaseModel):
    api_version:          str
    timestamp:            str
    es_reachable:         bool
    tracked_windows:      int
    active_alerts:        int
    dropped_snapshots:    int
    processed_snapshots:  int
    failed_sweeps:        int
    overdue_keys:         int
    blocked_ips:          int
    confidence_threshold: float
    cooldown_ms:          int
