"""
Config file tests: YAML versions 2.0/3.0, durations, defaults, server URI
resolution and collector build.
"""
import logging
import textwrap

import pytest

from query_exporter.collector import (
    CachePolicy,
    Mode,
    ServerConnectError,
    UnknownServerError,
)
from query_exporter.exporter_config import (
    ConfigError,
    ConfigV1,
    ConfigV2,
    ConfigV3,
    ExporterConfig,
    apply_overrides,
    build_collector,
    find_config_file,
    load_config,
    parse_cache,
    parse_config,
    parse_duration,
)

from tests.utils.fake_driver import FakeDriver


V3_CONFIG = """
version: 3.0
bind: 0.0.0.0:9412
metricsPath: /custom
log:
  encoding: console
  level: debug
global:
  queryTimeout: 3s
  maxConnections: 3
  defaultCache: 0
  defaultMode: pull
  defaultDatabase: mydb
servers:
- name: main
  uri: mongodb://localhost:27017
aggregations:
- database: mydb
  collection: objects
  cache: 1m
  pipeline: |
    [
      {"$group": {"_id": "$status", "total": {"$sum": 1}}},
      {"$project": {"_id": 0, "status": "$_id", "total": 1}}
    ]
  metrics:
  - name: myapp_objects_total
    type: gauge
    help: 'Objects per status'
    value: total
    labels: [status]
    constLabels:
      region: eu-central-1
- mode: push
  collection: events
  pipeline: '[{"$count": "total"}]'
  metrics:
  - name: myapp_events_total
    type: gauge
    value: total
    overrideEmpty: true
    emptyValue: 0
"""

V2_CONFIG = """
version: 2.0
global:
  queryTimeout: 10
  defaultCache: 5
servers:
- name: main
metrics:
- name: myapp_example_simplevalue_total
  type: gauge
  help: 'Simple gauge metric'
  value: total
  mode: pull
  cache: sticky
  database: mydb
  collection: objects
  pipeline: '[{"$count": "total"}]'
- name: myapp_example_other_total
  type: gauge
  value: total
  collection: other
  pipeline: '[]'
"""

V1_CONFIG = """
bind: ":9413"
logLevel: info
mongodb:
  uri: mongodb://legacy:27017
  maxConnections: 4
  connectionTimeout: 3
  defaultInterval: 5
  defaultDatabase: mydb
  defaultCollection: objects
metrics:
- name: myapp_example_simplevalue_total
  type: gauge
  help: "Simple gauge metric"
  value: total
  cache: 0
  pipeline: '[{"$count": "total"}]'
- name: myapp_example_push_total
  type: gauge
  value: total
  mode: push
  collection: events
  pipeline: '[]'
"""


def _v3(data=None):
    return parse_config({"version": "3.0", **(data or {})})


def _write(tmp_path, text, name="config.yaml"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return path


class _Factory:
    """driver_factory recording every created FakeDriver."""

    def __init__(self, docs=None, connect_error=None):
        self.created = []
        self._docs = docs
        self._connect_error = connect_error

    def __call__(self, uri, name="", **options):
        driver = FakeDriver(self._docs, uri=uri, name=name, **options)
        driver.connect_error = self._connect_error
        self.created.append(driver)
        return driver


# ═══════════════════════════════════════════════════════════════════════════════
# Durations
# ═══════════════════════════════════════════════════════════════════════════════


class TestParseDuration:
    @pytest.mark.parametrize("raw,expected", [
        (None, None),
        (10, 10.0),
        (1.5, 1.5),
        ("10", 10.0),
        ("10s", 10.0),
        ("500ms", 0.5),
        ("2m", 120.0),
        ("1h", 3600.0),
        ("1m30s", 90.0),
        ("-1s", -1.0),
    ])
    def test_valid(self, raw, expected):
        assert parse_duration(raw) == expected

    @pytest.mark.parametrize("raw", ["", "abc", "10x", "s10", "1m x", True, [1]])
    def test_invalid(self, raw):
        with pytest.raises(ValueError):
            parse_duration(raw)

    @pytest.mark.parametrize("raw,expected", [
        ("sticky", -1.0),
        (-1, -1.0),
        ("-1s", -1.0),
        (0, 0.0),
        ("30s", 30.0),
        (None, None),
    ])
    def test_cache(self, raw, expected):
        assert parse_cache(raw) == expected


# ═══════════════════════════════════════════════════════════════════════════════
# Loading
# ═══════════════════════════════════════════════════════════════════════════════


class TestLoadConfig:
    def test_v3(self, tmp_path):
        config = load_config(_write(tmp_path, V3_CONFIG))
        assert isinstance(config, ConfigV3)
        assert config.version == "3.0"
        assert config.bind == "0.0.0.0:9412"
        assert config.metrics_path == "/custom"
        assert config.log.level == "debug"
        assert config.log.encoding == "console"
        assert config.global_.query_timeout == 3.0
        assert config.global_.max_connections == 3
        assert config.global_.default_database == "mydb"

        aggregations = config.aggregations()
        assert len(aggregations) == 2
        first = aggregations[0]
        assert first.cache == 60.0
        assert first.collection == "objects"
        assert first.metrics[0].labels == ["status"]
        assert first.metrics[0].const_labels == {"region": "eu-central-1"}
        assert aggregations[1].mode == "push"
        assert aggregations[1].metrics[0].override_empty is True

    def test_v2_metric_per_aggregation(self, tmp_path):
        config = load_config(_write(tmp_path, V2_CONFIG))
        assert isinstance(config, ConfigV2)
        aggregations = config.aggregations()
        assert len(aggregations) == 2
        assert aggregations[0].cache == -1.0
        assert aggregations[0].database == "mydb"
        assert [m.name for m in aggregations[0].metrics] == ["myapp_example_simplevalue_total"]
        assert aggregations[1].cache is None
        assert aggregations[1].collection == "other"

    def test_missing_version_is_legacy(self):
        assert isinstance(parse_config({"metrics": []}), ConfigV1)

    def test_empty_file(self, tmp_path):
        config = load_config(_write(tmp_path, ""))
        assert isinstance(config, ConfigV1)
        assert config.version == "1.0"

    @pytest.mark.parametrize("version", ["4.0", "0.5", "x"])
    def test_unsupported_version(self, version):
        with pytest.raises(ConfigError):
            parse_config({"version": version})

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, "servers: [\n"))

    def test_not_a_mapping(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, "- a\n- b\n"))

    def test_invalid_duration(self):
        with pytest.raises(ConfigError):
            _v3({"global": {"queryTimeout": "soon"}})

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "nope.yaml")


class TestFindConfigFile:
    def test_explicit_path(self, tmp_path):
        assert find_config_file(str(tmp_path / "x.yaml")) == tmp_path / "x.yaml"

    def test_default_location(self, tmp_path, monkeypatch):
        found = tmp_path / "config.yaml"
        found.write_text("version: 3.0\n")
        monkeypatch.setattr(
            "query_exporter.exporter_config.DEFAULT_CONFIG_LOCATIONS",
            (tmp_path / "missing.yaml", found),
        )
        assert find_config_file() == found

    def test_nothing_found(self, tmp_path, monkeypatch):
        monkeypatch.setattr(
            "query_exporter.exporter_config.DEFAULT_CONFIG_LOCATIONS", (tmp_path / "missing.yaml",)
        )
        with pytest.raises(ConfigError):
            find_config_file()


# ═══════════════════════════════════════════════════════════════════════════════
# Defaults and overrides
# ═══════════════════════════════════════════════════════════════════════════════


class TestDefaults:
    def test_resolve_defaults(self):
        config = _v3()
        config.resolve_defaults()
        assert config.bind == ":9412"
        assert config.metrics_path == "/metrics"
        assert config.log.level == "warn"
        assert config.log.encoding == "json"
        assert config.global_.query_timeout == 10.0
        assert [s.name for s in config.servers] == ["main"]

    def test_healthz_rejected_as_metrics_path(self):
        config = _v3({"metricsPath": "/healthz"})
        with pytest.raises(ConfigError):
            config.resolve_defaults()

    def test_apply_overrides_skips_none(self):
        config = _v3({"bind": ":1"})
        apply_overrides(config, [("bind", None), ("log.level", "info"),
                                 ("global_.query_timeout", 2.0)])
        assert config.bind == ":1"
        assert config.log.level == "info"
        assert config.global_.query_timeout == 2.0


# ═══════════════════════════════════════════════════════════════════════════════
# Build
# ═══════════════════════════════════════════════════════════════════════════════


class TestBuildCollector:
    def test_v3_build(self, tmp_path):
        factory = _Factory()
        collector = build_collector(
            load_config(_write(tmp_path, V3_CONFIG)), driver_factory=factory, environ={}
        )
        assert [s.name for s in collector.get_servers()] == ["main"]
        assert factory.created[0].connected is True
        assert factory.created[0].options == {"maxPoolSize": 3}
        assert collector.config.query_timeout == 3.0

        first, second = collector.aggregations
        assert first.policy == CachePolicy(ttl=60.0)
        assert first.database == "mydb"
        assert second.mode == Mode.PUSH
        assert second.policy.sticky is True
        assert second.database == "mydb"
        assert second.collection == "events"

    def test_default_server(self):
        factory = _Factory()
        collector = build_collector(_v3(), driver_factory=factory, environ={})
        assert [s.name for s in collector.get_servers()] == ["main"]
        assert factory.created[0].uri == "mongodb://localhost:27017"

    def test_server_name_from_uri(self):
        factory = _Factory()
        config = _v3({"servers": [{"uri": "mongodb://a:1,b/db"}]})
        collector = build_collector(config, driver_factory=factory, environ={})
        assert [s.name for s in collector.get_servers()] == ["a:1,b:27017"]

    def test_env_uri_per_server(self):
        factory = _Factory()
        config = _v3({"servers": [{"name": "a"}, {"name": "b", "uri": "mongodb://b"}]})
        build_collector(
            config,
            driver_factory=factory,
            environ={"MDBEXPORTER_SERVER_1_MONGODB_URI": "mongodb://override:27018"},
        )
        assert [d.uri for d in factory.created] == [
            "mongodb://localhost:27017",
            "mongodb://override:27018",
        ]

    def test_primary_uri_targets_first_server(self):
        factory = _Factory()
        config = _v3({"servers": [{"name": "a"}, {"name": "b"}]})
        build_collector(config, primary_uri="mongodb://primary", driver_factory=factory, environ={})
        assert factory.created[0].uri == "mongodb://primary"
        assert factory.created[1].uri == "mongodb://localhost:27017"

    def test_uri_env_expansion(self, monkeypatch):
        monkeypatch.setenv("MDB_TEST_HOST", "db.internal")
        factory = _Factory()
        config = _v3({"servers": [{"name": "a", "uri": "mongodb://$MDB_TEST_HOST:27017"}]})
        build_collector(config, driver_factory=factory, environ={})
        assert factory.created[0].uri == "mongodb://db.internal:27017"

    def test_connect_failure_is_fatal(self):
        factory = _Factory(connect_error=ServerConnectError("main", RuntimeError("refused")))
        with pytest.raises(ServerConnectError):
            build_collector(_v3(), driver_factory=factory, environ={})

    def test_unknown_server_binding(self):
        config = _v3({
            "aggregations": [{"servers": ["nope"], "pipeline": "[]"}],
        })
        with pytest.raises(UnknownServerError):
            build_collector(config, driver_factory=_Factory(), environ={})

    def test_no_aggregations_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="query_exporter"):
            build_collector(_v3(), driver_factory=_Factory(), environ={})
        assert "no aggregations have been configured" in caplog.text

    def test_built_collector_scrapes(self, tmp_path):
        factory = _Factory(docs=[{"status": "open", "total": 4}])
        collector = build_collector(
            load_config(_write(tmp_path, V3_CONFIG)), driver_factory=factory, environ={}
        )
        families = {f.name: f for f in collector.collect()}
        sample = families["myapp_objects_total"].samples[0]
        assert sample.labels == {"region": "eu-central-1", "server": "main", "status": "open"}
        assert sample.value == 4.0
        assert families["myapp_events_total"].samples[0].value == 4.0


# ═══════════════════════════════════════════════════════════════════════════════
# Legacy 1.0 format
# ═══════════════════════════════════════════════════════════════════════════════


class TestLegacyConfig:
    def test_mongodb_block_mapped(self, tmp_path):
        config = load_config(_write(tmp_path, V1_CONFIG))
        assert isinstance(config, ConfigV1)
        assert config.bind == ":9413"
        assert config.log.level == "info"
        assert config.log.encoding == "console"
        assert config.global_.query_timeout == 3.0
        assert config.global_.max_connections == 4
        assert config.global_.default_cache == 5.0
        assert config.global_.default_database == "mydb"
        assert config.global_.default_collection == "objects"
        assert [(s.name, s.uri) for s in config.servers] == [("main", "mongodb://legacy:27017")]

    def test_build(self, tmp_path):
        factory = _Factory()
        collector = build_collector(
            load_config(_write(tmp_path, V1_CONFIG)), driver_factory=factory, environ={}
        )
        assert [s.name for s in collector.get_servers()] == ["main"]
        assert factory.created[0].uri == "mongodb://legacy:27017"
        assert factory.created[0].options == {"maxPoolSize": 4}
        assert collector.config.query_timeout == 3.0

        first, second = collector.aggregations
        assert first.policy == CachePolicy()
        assert first.database == "mydb"
        assert first.collection == "objects"
        assert second.mode == Mode.PUSH
        assert second.policy == CachePolicy(ttl=5.0)
        assert second.collection == "events"

    def test_env_uri_overrides_mongodb_block(self, tmp_path):
        factory = _Factory()
        build_collector(
            load_config(_write(tmp_path, V1_CONFIG)),
            driver_factory=factory,
            environ={"MDBEXPORTER_SERVER_0_MONGODB_URI": "mongodb://override:27017"},
        )
        assert factory.created[0].uri == "mongodb://override:27017"

    def test_explicit_version(self):
        config = parse_config({"version": 1, "mongodb": {"uri": "mongodb://x"}})
        assert isinstance(config, ConfigV1)
        assert config.servers[0].uri == "mongodb://x"

    def test_defaults(self):
        config = parse_config({})
        config.resolve_defaults()
        assert config.log.level == "warn"
        assert config.global_.query_timeout == 10.0
        assert [(s.name, s.uri) for s in config.servers] == [("main", "")]


def test_base_config_is_abstract():
    with pytest.raises(TypeError):
        ExporterConfig()
