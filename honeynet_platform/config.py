# honeynet_platform/config.py
# Global configuration for the honeynet traffic-analysis platform

# ── Elasticsearch ──────────────────────────────────────────────────────────────
ES_HOST        = "http://localhost:9200"
ES_ALERT_INDEX = "honeynet-alerts"

# ── Window aggregation ────────────────────────────────────────────────────────
WINDOW_MS               = 5 * 60 * 1000   # trailing window per (source, protocol)
WINDOW_TTL_MS           = WINDOW_MS       # idle keys older than this are swept
MAX_DISTINCT_ATTRIBUTES = 64              # paths / query types / senders per key
LOCK_SHARDS             = 64
WINDOW_BUCKET_MS        = 1000            # granularity of trailing-window queries

# ── Burst detection ───────────────────────────────────────────────────────────
BURST_THRESHOLD_MS = 100   # inter-arrival below this counts as a burst step
BURST_STREAK_MIN   = 5     # streak must exceed this to be kept as a BurstPeriod
MAX_BURST_PERIODS  = 32

# ── Classification ────────────────────────────────────────────────────────────
MIN_RATE_WINDOW_MS = 1000   # rps is never computed over a shorter span

# Requests-per-second thresholds: protocol -> (normal, suspicious, attack)
RPS_THRESHOLDS = {
    "http": {"normal": 5, "suspicious": 10, "attack": 20},
    "dns":  {"normal": 3, "suspicious": 8,  "attack": 15},
    "smtp": {"normal": 2, "suspicious": 5,  "attack": 10},
}
SENSITIVE_PATH_MARKERS  = ("admin", "login", "wp-", "config")
SENSITIVE_PATH_BONUS    = 0.1
DNS_AMPLIFICATION_FLOOR = 0.8
SMTP_SPAM_FLOOR         = 0.7
SMTP_SPAM_IP_RATIO      = 0.2
HARVESTING_RECIPIENTS   = 10       # recipients per window before harvesting
HARVESTING_WINDOW_MS    = 60 * 1000
HARVESTING_FLOOR        = 0.9
LOW_DIVERSITY_RATIO     = 0.1
LOW_DIVERSITY_MIN_REQS  = 10
LOW_DIVERSITY_BOOST     = 0.2
LOW_DIVERSITY_BASELINE  = 0.6

# ── Alerting ──────────────────────────────────────────────────────────────────
ALERT_COOLDOWN_MS          = 60 * 1000
ALERT_CONFIDENCE_THRESHOLD = 0.5    # classifications below this never alert

# ── Pipeline ──────────────────────────────────────────────────────────────────
PIPELINE_WORKERS    = 4
QUEUE_MAXSIZE       = 10_000   # per worker
SWEEP_INTERVAL_SECS = 60

# ── Mitigation ────────────────────────────────────────────────────────────────
MITIGATION_CONFIDENCE = 0.8
BLOCK_DURATION_MS     = 5 * 60 * 1000

# ── API ────────────────────────────────────────────────────────────────────────
API_HOST = "0.0.0.0"
API_PORT = 8001
