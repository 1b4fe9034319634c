# =============================================================================
# api.py — FastAPI surface of the honeynet traffic engine
#
# Endpoints:
#   GET  /health                     — API + Elasticsearch health
#   GET  /status                     — Engine counters and thresholds
#   POST /events                     — Record one decoy TrafficEvent
#   GET  /metrics/{protocol}         — Protocol-wide or per-source metrics
#   GET  /alerts                     — Active alerts
#   POST /alerts/{alert_id}/resolve  — Resolve an alert
#   GET  /alerts/history             — Alert history from Elasticsearch
#   GET  /blocklist                  — IPs currently blocked by mitigation
#   POST /simulate                   — Run a simulated pattern on a sandbox engine
# =============================================================================

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from models import (
    AttackAlert, Protocol, SimulateRequest, SimulateResponse,
    StatusResponse, TrafficEvent, TrafficMetrics, WindowSnapshot,
)
import config

from traffic_engine.elasticsearch_client import HoneynetElasticClient
from traffic_engine.detection_pipeline   import DetectionPipeline
from traffic_engine.alert_sinks          import (
    ElasticsearchAlertSink, LoggingAlertSink, MitigationSink,
)
from traffic_engine.traffic_simulator    import PATTERNS, simulate_traffic

# ── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  [%(levelname)s]  %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

# ── Shared instances (composed once, passed by reference) ─────────────────────
es_client  = HoneynetElasticClient()
pipeline   = DetectionPipeline()
mitigation = MitigationSink()
pipeline.subscribe(LoggingAlertSink())
pipeline.subscribe(mitigation)
pipeline.subscribe(ElasticsearchAlertSink(es_client))


@asynccontextmanager
async def lifespan(app: FastAPI):
    pipeline.start()
    yield
    pipeline.stop()


# ── App ───────────────────────────────────────────────────────────────────────
app = FastAPI(
    title="Honeynet Traffic Engine API",
    description=(
        "Real-time DoS classification for HTTP/DNS/SMTP decoy traffic. "
        "Aggregates per-source windows, detects bursts, classifies attacks "
        "and raises deduplicated alerts."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routes ────────────────────────────────────────────────────────────────────

@app.get("/health", summary="API & Elasticsearch health check")
def health():
    """Returns OK if the API is running. Checks Elasticsearch connectivity."""
    es_up = es_client.ping()
    return {
        "status":        "ok",
        "timestamp":     datetime.utcnow().isoformat(),
        "api":           "running",
        "pipeline":      "running" if pipeline.running else "stopped",
        "elasticsearch": "reachable" if es_up else "unreachable",
    }


@app.get("/status", response_model=StatusResponse, summary="Engine status")
def status():
    stats = pipeline.stats()
    return StatusResponse(
        api_version=API_VERSION,
        timestamp=datetime.utcnow().isoformat(),
        es_reachable=es_client.ping(),
        tracked_windows=stats["tracked_windows"],
        active_alerts=stats["active_alerts"],
        dropped_snapshots=stats["dropped_snapshots"],
        processed_snapshots=stats["processed_snapshots"],
        failed_sweeps=stats["failed_sweeps"],
        overdue_keys=stats["overdue_keys"],
        blocked_ips=len(mitigation.blocked_ips()),
        confidence_threshold=pipeline.confidence_threshold,
        cooldown_ms=pipeline.alert_manager.cooldown_ms,
    )


@app.post("/events", response_model=WindowSnapshot, summary="Record one decoy event")
def record_event(event: TrafficEvent):
    """Update the event's window and queue it for classification."""
    return pipeline.record(event)


@app.get("/metrics/{protocol}", response_model=TrafficMetrics,
         summary="Protocol-wide or per-source metrics over a trailing window")
def metrics(
    protocol: Protocol,
    window_ms: int = Query(default=config.WINDOW_MS, ge=1_000, le=config.WINDOW_MS,
                           description="Trailing window in milliseconds"),
    source_ip: Optional[str] = Query(default=None, description="Restrict to one source"),
):
    try:
        return pipeline.get_metrics(protocol, window_ms, source_ip=source_ip)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@app.get("/alerts", response_model=list[AttackAlert], summary="Active alerts")
def active_alerts():
    return pipeline.alert_manager.get_active_alerts()


@app.post("/alerts/{alert_id}/resolve", response_model=AttackAlert, summary="Resolve an alert")
def resolve_alert(alert_id: str):
    try:
        alert = pipeline.resolve(alert_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown alert {alert_id}")
    if es_client.ping():
        try:
            es_client.index_alert(alert)
        except Exception as e:
            logger.warning(f"Could not update alert {alert_id} in history: {e}")
    return alert


@app.get("/alerts/history", summary="Alert history from Elasticsearch")
def alert_history(
    min_confidence: float = Query(default=0.0, ge=0.0, le=1.0),
    limit: int = Query(default=50, ge=1, le=500),
):
    if not es_client.ping():
        raise HTTPException(status_code=503, detail="Elasticsearch unreachable")
    try:
        return es_client.get_alerts(min_confidence=min_confidence, size=limit)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/blocklist", summary="Source IPs currently blocked")
def blocklist():
    return {"blocked": mitigation.blocked_ips()}


@app.post("/simulate", response_model=SimulateResponse, summary="Run a simulated pattern")
def simulate(req: SimulateRequest):
    """
    Run a simulated traffic stream through a throwaway engine and collect
    the alerts it raised. The live pipeline, its block-list and alert
    history are not touched.
    """
    if req.pattern not in PATTERNS:
        raise HTTPException(status_code=422,
                            detail=f"Unknown pattern {req.pattern!r}; choose from {PATTERNS}")
    sandbox = DetectionPipeline(workers=1, queue_maxsize=0)   # unbounded, drained inline
    raised: list[AttackAlert] = []
    sandbox.subscribe(raised.append)
    try:
        events = simulate_traffic(req.pattern, duration_ms=req.duration_ms)
        for event in events:
            sandbox.record(event)
        sandbox.drain()
    except Exception as e:
        logger.exception("Simulation error")
        raise HTTPException(status_code=500, detail=str(e))
    logger.info(f"Simulated {req.pattern}: {len(events)} events, {len(raised)} alert(s)")
    return SimulateResponse(
        pattern=req.pattern,
        events_generated=len(events),
        events_recorded=len(events),
        alerts_raised=len(raised),
        alerts=raised,
    )


# ── Entry point ───────────────────────────────────────────────────────────────
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("traffic_engine.api:app", host=config.API_HOST,
                port=config.API_PORT, reload=True)
