"""
Exporter self-metrics: Prometheus-compatible observability of the
exporter's own query executions.

Tracks:
- mongodb_query_exporter_query_total{aggregation,server,result}:
  executed aggregations (cache hits are not counted)

The counter is not registered on any registry: the QueryCollector
describes and collects it together with the aggregation metrics, once
per scrape after all executions finished.
"""

import logging
from typing import Dict, Iterable

from prometheus_client import Counter
from prometheus_client.metrics_core import Metric

logger = logging.getLogger(__name__)

QUERY_TOTAL_NAME = "mongodb_query_exporter_query"
QUERY_TOTAL_HELP = (
    "How many MongoDB queries have been processed, partitioned by metric, server and status"
)

_VALID_RESULTS = frozenset({"SUCCESS", "ERROR"})


class ExporterMetrics:
    """
    Result counter for query executions.

    Thread-safe via prometheus_client built-in thread safety.
    snapshot() and reset() are intended for test/debug only.
    """

    def __init__(self) -> None:
        self._init_metrics()

    def _init_metrics(self) -> None:
        self._query_total = Counter(
            QUERY_TOTAL_NAME,
            QUERY_TOTAL_HELP,
            labelnames=["aggregation", "server", "result"],
            registry=None,
        )

    def inc_query(self, aggregation: str, server: str, result: str) -> None:
        """Increment query_total. result: 'SUCCESS' | 'ERROR'."""
        if result not in _VALID_RESULTS:
            logger.warning(f"[METRICS] Invalid query result: {result}")
            return
        self._query_total.labels(
            aggregation=aggregation, server=server, result=result
        ).inc()

    # ── Collector protocol ───────────────────────────────────────────────

    def describe(self) -> Iterable[Metric]:
        return self._query_total.describe()

    def collect(self) -> Iterable[Metric]:
        return self._query_total.collect()

    # ── Snapshot / reset (test only) ─────────────────────────────────────

    def snapshot(self) -> Dict[str, int]:
        """Counter values keyed "aggregation/server/result"."""
        values: Dict[str, int] = {}
        for family in self._query_total.collect():
            for sample in family.samples:
                if not sample.name.endswith("_total"):
                    continue
                key = "{aggregation}/{server}/{result}".format(**sample.labels)
                values[key] = int(sample.value)
        return values

    def get(self, aggregation: str, server: str, result: str) -> int:
        return self.snapshot().get(f"{aggregation}/{server}/{result}", 0)

    def reset(self) -> None:
        self._init_metrics()
