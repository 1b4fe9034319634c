# =============================================================================
# traffic_simulator.py — Generates synthetic decoy traffic
# Produces background noise and injected attack patterns:
#   - HTTP flood against login/admin endpoints
#   - DNS amplification (ANY/TXT/MX queries)
#   - SMTP spam runs
#   - SMTP recipient harvesting
#   - Slow-loris style low-rate HTTP
# All timestamps are milliseconds relative to `base_ms`, sorted ascending.
# =============================================================================

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import random
from typing import Optional
from faker import Faker
from models import Protocol, TrafficEvent, now_ms

from traffic_engine.burst_detector import interval_stats

fake = Faker("en_GB")
Faker.seed(42)
random.seed(42)

# ── Pools ─────────────────────────────────────────────────────────────────────
ATTACKER_IPS   = [fake.ipv4_public() for _ in range(10)]
BACKGROUND_IPS = [f"192.168.1.{random.randint(1, 254)}" for _ in range(40)]

NORMAL_PATHS   = ["/", "/api", "/data", "/public", "/index.html", "/about"]
ATTACK_PATHS   = ["/login", "/admin", "/wp-login.php", "/administrator"]
NORMAL_QTYPES  = ["A", "AAAA", "MX", "CNAME"]
AMPLIFY_QTYPES = ["ANY", "TXT", "MX"]

# Burst sizes / gaps between bursts (ms), per attack pattern
ATTACK_PATTERNS = {
    "http_flood":        {"burst": (50, 200), "gap": (100, 500),   "attackers": (1, 3)},
    "dns_amplification": {"burst": (30, 100), "gap": (200, 1000),  "attackers": (1, 3)},
    "smtp_spam":         {"burst": (10, 50),  "gap": (500, 2000),  "attackers": (1, 2)},
    "smtp_harvesting":   {"burst": (5, 15),   "gap": (1000, 3000), "attackers": (1, 1)},
    "slow_loris":        {"burst": (5, 20),   "gap": (2000, 5000), "attackers": (5, 10)},
}
PATTERNS = sorted(ATTACK_PATTERNS) + ["mixed"]


def _attack_event(pattern: str, ip: str, t: int) -> TrafficEvent:
    if pattern == "http_flood":
        return TrafficEvent(protocol=Protocol.HTTP, source_ip=ip, arrival_time_ms=t,
                            path=random.choice(ATTACK_PATHS))
    if pattern == "slow_loris":
        return TrafficEvent(protocol=Protocol.HTTP, source_ip=ip, arrival_time_ms=t, path="/")
    if pattern == "dns_amplification":
        return TrafficEvent(protocol=Protocol.DNS, source_ip=ip, arrival_time_ms=t,
                            query_type=random.choice(AMPLIFY_QTYPES))
    if pattern == "smtp_harvesting":
        return TrafficEvent(protocol=Protocol.SMTP, source_ip=ip, arrival_time_ms=t,
                            sender_address=f"bulk@{fake.domain_name()}",
                            recipient_count=random.randint(3, 8))
    # smtp_spam
    return TrafficEvent(protocol=Protocol.SMTP, source_ip=ip, arrival_time_ms=t,
                        sender_address=f"{fake.bothify('????######')}@{fake.domain_name()}",
                        recipient_count=1)


def _normal_event(t: int) -> TrafficEvent:
    protocol = random.choice(list(Protocol))
    ip = random.choice(BACKGROUND_IPS)
    if protocol == Protocol.HTTP:
        return TrafficEvent(protocol=protocol, source_ip=ip, arrival_time_ms=t,
                            path=random.choice(NORMAL_PATHS))
    if protocol == Protocol.DNS:
        return TrafficEvent(protocol=protocol, source_ip=ip, arrival_time_ms=t,
                            query_type=random.choice(NORMAL_QTYPES))
    return TrafficEvent(protocol=protocol, source_ip=ip, arrival_time_ms=t,
                        sender_address=fake.email(), recipient_count=1)


# ── Generators ────────────────────────────────────────────────────────────────

def generate_attack_traffic(
    pattern: str,
    duration_ms: int = 60_000,
    base_ms: Optional[int] = None,
) -> list[TrafficEvent]:
    """Bursts of one attack pattern from a small attacker pool."""
    if pattern not in ATTACK_PATTERNS:
        raise ValueError(f"Unknown attack pattern {pattern!r}; choose from {PATTERNS}")
    base_ms = now_ms() if base_ms is None else base_ms
    profile = ATTACK_PATTERNS[pattern]
    attackers = random.sample(ATTACKER_IPS, k=random.randint(*profile["attackers"]))

    events = []
    t = base_ms
    while t < base_ms + duration_ms:
        for _ in range(random.randint(*profile["burst"])):
            step = random.randint(1, 20) if pattern != "slow_loris" else random.randint(150, 600)
            t += step
            events.append(_attack_event(pattern, random.choice(attackers), t))
        t += random.randint(*profile["gap"])
    return events


def generate_background_traffic(
    duration_ms: int = 60_000,
    base_ms: Optional[int] = None,
    per_second: tuple[int, int] = (1, 5),
) -> list[TrafficEvent]:
    """Low-rate mixed-protocol traffic from many benign-looking sources."""
    base_ms = now_ms() if base_ms is None else base_ms
    events = []
    for second in range(0, duration_ms, 1000):
        for _ in range(random.randint(*per_second)):
            events.append(_normal_event(base_ms + second + random.randint(0, 999)))
    events.sort(key=lambda e: e.arrival_time_ms)
    return events


def simulate_traffic(
    pattern: str = "mixed",
    duration_ms: int = 60_000,
    base_ms: Optional[int] = None,
) -> list[TrafficEvent]:
    """
    Generate a time-ordered stream for one pattern.

    Args:
        pattern:     One of PATTERNS; "mixed" is background traffic only,
                     any attack pattern is overlaid on background traffic.
        duration_ms: Length of the simulated interval.
        base_ms:     Start time (default: now).

    Returns:
        TrafficEvents sorted by arrival_time_ms.
    """
    base_ms = now_ms() if base_ms is None else base_ms
    events = generate_background_traffic(duration_ms, base_ms)
    if pattern != "mixed":
        events.extend(generate_attack_traffic(pattern, duration_ms, base_ms))
    events.sort(key=lambda e: e.arrival_time_ms)
    return events


if __name__ == "__main__":
    for name in PATTERNS:
        stream = simulate_traffic(name, duration_ms=5_000, base_ms=0)
        mean, std = interval_stats([e.arrival_time_ms for e in stream])
        print(f"{name:<18} {len(stream):>5} events  gap {mean:6.1f}ms ± {std:6.1f}")
    print("\nSample event:")
    print(simulate_traffic("dns_amplification", 2_000, base_ms=0)[-1].model_dump_json(indent=2))
