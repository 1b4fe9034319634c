# =============================================================================
# elasticsearch_client.py — Elasticsearch connection, alert-history index
#                            management, alert indexing and querying helpers
# =============================================================================

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from elasticsearch import Elasticsearch
from elasticsearch.exceptions import NotFoundError, ConnectionError as ESConnectionError
from models import AttackAlert
import config
import logging

logger = logging.getLogger(__name__)

# ── Index mapping ─────────────────────────────────────────────────────────────

ALERT_MAPPING = {
    "mappings": {
        "properties": {
            "alert_id":       {"type": "keyword"},
            "source_ip":      {"type": "keyword"},
            "protocol":       {"type": "keyword"},
            "attack_type":    {"type": "keyword"},
            "confidence":     {"type": "float"},
            "indicators":     {"type": "keyword"},
            "status":         {"type": "keyword"},
            "raised_at_ms":   {"type": "date", "format": "epoch_millis"},
            "resolved_at_ms": {"type": "date", "format": "epoch_millis"},
            "metrics": {
                "properties": {
                    "request_count":       {"type": "long"},
                    "burst_count":         {"type": "long"},
                    "average_interval_ms": {"type": "float"},
                }
            },
        }
    },
    "settings": {"number_of_shards": 1, "number_of_replicas": 0},
}


class HoneynetElasticClient:
    """Thin wrapper around the Elasticsearch Python client for alert history."""

    def __init__(self, host: str = config.ES_HOST, index: str = config.ES_ALERT_INDEX):
        self.host   = host
        self.index  = index
        self.client = Elasticsearch(host, request_timeout=10)

    # ── Connection ────────────────────────────────────────────────────────────

    def ping(self) -> bool:
        """Returns True if Elasticsearch is reachable."""
        try:
            return self.client.ping()
        except ESConnectionError:
            return False

    def health(self) -> dict:
        """Cluster health summary."""
        if not self.ping():
            return {"status": "unreachable"}
        info = self.client.info()
        cluster = self.client.cluster.health()
        return {
            "status":        cluster["status"],
            "cluster_name":  info["cluster_name"],
            "es_version":    info["version"]["number"],
            "active_shards": cluster["active_shards"],
        }

    # ── Index management ──────────────────────────────────────────────────────

    def ensure_index(self):
        """Create the alert index if it doesn't already exist."""
        if not self.client.indices.exists(index=self.index):
            self.client.indices.create(index=self.index, body=ALERT_MAPPING)
            logger.info(f"Created index: {self.index}")
        else:
            logger.debug(f"Index already exists: {self.index}")

    def delete_index(self):
        try:
            self.client.indices.delete(index=self.index)
            logger.info(f"Deleted index: {self.index}")
        except NotFoundError:
            pass

    def reset(self):
        """Delete and recreate the alert index."""
        self.delete_index()
        self.ensure_index()

    # ── Indexing ──────────────────────────────────────────────────────────────

    def index_alert(self, alert: AttackAlert) -> str:
        """
        Index (or overwrite) one alert under its alert_id, so a redelivered
        alert or a later resolution updates the same document.
        """
        resp = self.client.index(
            index=self.index,
            id=alert.alert_id,
            document=alert.model_dump(mode="json"),
        )
        return resp["_id"]

    # ── Querying ──────────────────────────────────────────────────────────────

    def get_alerts(self, min_confidence: float = 0.0, size: int = 100) -> list[dict]:
        """Return alerts above a minimum confidence, newest first."""
        resp = self.client.search(
            index=self.index,
            body={
                "query": {"range": {"confidence": {"gte": min_confidence}}},
                "sort":  [{"raised_at_ms": {"order": "desc"}}],
                "size":  size,
            },
        )
        return [hit["_source"] for hit in resp["hits"]["hits"]]

    def search_by_ip(self, ip: str) -> list[dict]:
        """All alerts raised against one source IP, oldest first."""
        resp = self.client.search(
            index=self.index,
            body={
                "query": {"term": {"source_ip": ip}},
                "sort":  [{"raised_at_ms": {"order": "asc"}}],
                "size":  500,
            },
        )
        return [hit["_source"] for hit in resp["hits"]["hits"]]

    def count_alerts(self) -> int:
        return self.client.count(index=self.index)["count"]


if __name__ == "__main__":
    c = HoneynetElasticClient()
    if c.ping():
        print("✓ Elasticsearch reachable")
        c.ensure_index()
        print("Health:", c.health())
    else:
        print("✗ Cannot reach Elasticsearch at", config.ES_HOST)
