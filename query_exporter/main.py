"""
HTTP surface: FastAPI app serving the collector registry.

Endpoints:
- GET <metrics_path>: Prometheus text exposition of the registry
- GET /healthz: liveness, plain "OK"
- GET /: hint pointing to the metrics path
"""
import logging

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

from . import __version__
from .core.config import DEFAULT_METRICS_PATH, HEALTHZ_PATH

logger = logging.getLogger(__name__)


def create_app(registry: CollectorRegistry, metrics_path: str = DEFAULT_METRICS_PATH) -> FastAPI:
    app = FastAPI(
        title="MongoDB Query Exporter",
        description="Prometheus metrics from MongoDB aggregations",
        version=__version__,
    )

    # ── Prometheus Metrics Endpoint ───────────────────────────────────────
    # Sync: collect() blocks until every aggregation finished.
    def prometheus_metrics():
        """
        GET <metrics_path>: Prometheus text exposition format.
        Instance-level registry only, no global/default registry.
        """
        return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)

    app.add_api_route(metrics_path, prometheus_metrics, methods=["GET"], include_in_schema=False)

    @app.get(HEALTHZ_PATH, response_class=PlainTextResponse)
    async def healthz():
        return "OK"

    if metrics_path != "/":
        @app.get("/", response_class=PlainTextResponse)
        async def index():
            return f"Use the {metrics_path} endpoint"

    logger.debug(f"[HTTP] serving metrics on {metrics_path}")
    return app
