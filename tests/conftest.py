"""
Shared test configuration.

Hypothesis settings:
- CI profile disables example database to prevent "Flaky" errors from stale examples
- Default profile keeps database for local development
"""

import pytest
from hypothesis import HealthCheck, settings
from prometheus_client import CollectorRegistry

from query_exporter.collector import CollectorConfig, QueryCollector
from query_exporter.exporter_metrics import ExporterMetrics

from tests.utils.fake_driver import FakeDriver

settings.register_profile(
    "ci",
    database=None,
    suppress_health_check=[HealthCheck.too_slow],
)

settings.register_profile(
    "default",
    suppress_health_check=[HealthCheck.too_slow],
)

settings.load_profile("default")


# ── Test tier markers ─────────────────────────────────────────────────────────
# Usage: pytest -m smoke, pytest -m core, pytest -m concurrency

def pytest_configure(config):
    config.addinivalue_line("markers", "smoke: Tier-0 pure functions + config tests (<10s)")
    config.addinivalue_line("markers", "core: Tier-1 collector logic + cache (<15s)")
    config.addinivalue_line("markers", "concurrency: Tier-2 thread fan-out + watchers (<30s)")


@pytest.fixture
def metrics():
    return ExporterMetrics()


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def collector(metrics, driver):
    """Collector with one server "main" backed by a FakeDriver."""
    c = QueryCollector(CollectorConfig(query_timeout=5.0), metrics)
    c.register_server("main", driver)
    yield c
    c.invalidator.stop(timeout=1.0)


@pytest.fixture
def registry(collector):
    reg = CollectorRegistry()
    reg.register(collector)
    return reg

