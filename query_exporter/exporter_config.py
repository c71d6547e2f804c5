"""
Exporter configuration file: YAML, versioned.

Formats:
- 3.0: global defaults, servers and aggregations, each aggregation with
  one or more metrics
- 2.0: global defaults, servers and metrics; every metric carries its own
  pipeline and becomes an aggregation with one metric
- 1.0: legacy format, one "mongodb" block for the single server "main",
  logLevel and a metrics list as in 2.0. A file without a version key is
  read as 1.0.

Durations accept seconds as numbers or strings with ms/s/m/h units
("500ms", "10s", "1m30s"). cache: -1 or "sticky" keeps results until a
change stream event invalidates them.

build_collector() turns a loaded config into a registered QueryCollector.
A server that cannot be connected is fatal (ServerConnectError).
"""

import logging
import os
from abc import abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .collector import (
    CACHE_STICKY,
    Aggregation,
    CollectorConfig,
    Driver,
    MetricTemplate,
    MongoDBDriver,
    QueryCollector,
    server_name_from_uri,
)
from .core.config import (
    DEFAULT_BIND,
    DEFAULT_LOG_ENCODING,
    DEFAULT_LOG_LEVEL,
    DEFAULT_METRICS_PATH,
    DEFAULT_MONGODB_URI,
    DEFAULT_QUERY_TIMEOUT,
    DEFAULT_SERVER_NAME,
    HEALTHZ_PATH,
    parse_duration,
)
from .exporter_metrics import ExporterMetrics

logger = logging.getLogger(__name__)

SERVER_URI_ENV = "MDBEXPORTER_SERVER_{index}_MONGODB_URI"

DEFAULT_CONFIG_LOCATIONS = (
    Path("~/.mongodb_query_exporter/config.yaml"),
    Path("/etc/mongodb-query-exporter/config.yaml"),
    Path("/etc/mongodb_query_exporter/config.yaml"),
)


class ConfigError(Exception):
    """Config file missing, unreadable or invalid."""


def parse_cache(value: Union[int, float, str, None]) -> Optional[float]:
    if isinstance(value, str) and value.strip().lower() == "sticky":
        return float(CACHE_STICKY)
    seconds = parse_duration(value)
    if seconds is not None and seconds < 0:
        return float(CACHE_STICKY)
    return seconds


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class LogConfig(_Model):
    level: str = ""
    encoding: str = ""


class GlobalConfig(_Model):
    query_timeout: Optional[float] = None
    max_connections: Optional[int] = None
    default_cache: Optional[float] = None
    default_mode: Optional[str] = None
    default_database: str = ""
    default_collection: str = ""

    @field_validator("query_timeout", mode="before")
    @classmethod
    def _duration(cls, v: Any) -> Optional[float]:
        return parse_duration(v)

    @field_validator("default_cache", mode="before")
    @classmethod
    def _cache(cls, v: Any) -> Optional[float]:
        return parse_cache(v)


class ServerConfig(_Model):
    name: str = ""
    uri: str = ""


class MetricConfig(_Model):
    name: str
    type: str = ""
    help: str = ""
    value: str = ""
    override_empty: bool = False
    empty_value: float = 0
    const_labels: Dict[str, str] = Field(default_factory=dict)
    labels: List[str] = Field(default_factory=list)

    def template(self) -> MetricTemplate:
        return MetricTemplate(
            name=self.name,
            type=self.type,
            help=self.help,
            value=self.value,
            labels=list(self.labels),
            const_labels=dict(self.const_labels),
            override_empty=self.override_empty,
            empty_value=self.empty_value,
        )


class _QuerySource(_Model):
    servers: List[str] = Field(default_factory=list)
    cache: Optional[float] = None
    mode: Optional[str] = None
    database: str = ""
    collection: str = ""
    pipeline: str = ""

    @field_validator("cache", mode="before")
    @classmethod
    def _cache(cls, v: Any) -> Optional[float]:
        return parse_cache(v)


class AggregationConfig(_QuerySource):
    metrics: List[MetricConfig] = Field(default_factory=list)

    def aggregation(self) -> Aggregation:
        return Aggregation(
            pipeline=self.pipeline,
            metrics=[m.template() for m in self.metrics],
            servers=list(self.servers),
            cache=self.cache,
            mode=self.mode,
            database=self.database,
            collection=self.collection,
        )


class MetricV2Config(MetricConfig, _QuerySource):
    def aggregation(self) -> Aggregation:
        return Aggregation(
            pipeline=self.pipeline,
            metrics=[self.template()],
            servers=list(self.servers),
            cache=self.cache,
            mode=self.mode,
            database=self.database,
            collection=self.collection,
        )


class ExporterConfig(_Model):
    """Settings shared by every file format version."""

    version: str = ""
    bind: str = ""
    metrics_path: str = ""
    log: LogConfig = Field(default_factory=LogConfig)
    global_: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    servers: List[ServerConfig] = Field(default_factory=list)

    @abstractmethod
    def aggregations(self) -> List[Aggregation]:
        """Aggregations in registration order."""

    def resolve_defaults(self) -> None:
        """Fill in unset values. Rejects a metrics path clashing with /healthz."""
        if not self.metrics_path:
            self.metrics_path = DEFAULT_METRICS_PATH
        elif self.metrics_path == HEALTHZ_PATH:
            raise ConfigError(f"{HEALTHZ_PATH} not allowed as metrics path")
        if not self.bind:
            self.bind = DEFAULT_BIND
        if not self.log.level:
            self.log.level = DEFAULT_LOG_LEVEL
        if not self.log.encoding:
            self.log.encoding = DEFAULT_LOG_ENCODING
        if not self.global_.query_timeout:
            self.global_.query_timeout = DEFAULT_QUERY_TIMEOUT
        if not self.servers:
            self.servers = [ServerConfig(name=DEFAULT_SERVER_NAME)]


class ConfigV3(ExporterConfig):
    aggregations_: List[AggregationConfig] = Field(default_factory=list, alias="aggregations")

    def aggregations(self) -> List[Aggregation]:
        return [a.aggregation() for a in self.aggregations_]


class ConfigV2(ExporterConfig):
    metrics: List[MetricV2Config] = Field(default_factory=list)

    def aggregations(self) -> List[Aggregation]:
        return [m.aggregation() for m in self.metrics]


class MongoDBV1Config(_Model):
    uri: str = ""
    max_connections: Optional[int] = None
    connection_timeout: Optional[float] = None
    default_interval: Optional[float] = None
    default_database: str = ""
    default_collection: str = ""

    @field_validator("connection_timeout", mode="before")
    @classmethod
    def _duration(cls, v: Any) -> Optional[float]:
        return parse_duration(v)

    @field_validator("default_interval", mode="before")
    @classmethod
    def _cache(cls, v: Any) -> Optional[float]:
        return parse_cache(v)


class ConfigV1(ConfigV2):
    """
    Legacy format: one server named "main", configured by the mongodb block.

    connectionTimeout doubles as query timeout, defaultInterval is the
    default cache. Log output is console encoded.
    """

    mongodb: MongoDBV1Config = Field(default_factory=MongoDBV1Config)
    log_level: str = ""

    @model_validator(mode="after")
    def _map_legacy_fields(self) -> "ConfigV1":
        mongodb = self.mongodb
        if self.log_level and not self.log.level:
            self.log.level = self.log_level
        if not self.log.encoding:
            self.log.encoding = "console"

        glob = self.global_
        if mongodb.connection_timeout and not glob.query_timeout:
            glob.query_timeout = mongodb.connection_timeout
        if mongodb.max_connections and not glob.max_connections:
            glob.max_connections = mongodb.max_connections
        if mongodb.default_interval is not None and glob.default_cache is None:
            glob.default_cache = mongodb.default_interval
        glob.default_database = glob.default_database or mongodb.default_database
        glob.default_collection = glob.default_collection or mongodb.default_collection

        if not self.servers:
            self.servers = [ServerConfig(name=DEFAULT_SERVER_NAME, uri=mongodb.uri)]
        return self


_VERSIONS: Dict[str, type] = {"3.0": ConfigV3, "2.0": ConfigV2, "1.0": ConfigV1}
LEGACY_VERSION = "1.0"


def parse_config(data: Optional[Dict[str, Any]]) -> ExporterConfig:
    data = dict(data or {})
    raw_version = data.get("version", LEGACY_VERSION)
    try:
        version = f"{float(raw_version):.1f}"
    except (TypeError, ValueError):
        raise ConfigError(f"invalid config version {raw_version!r}") from None
    model = _VERSIONS.get(version)
    if model is None:
        raise ConfigError(
            f"unsupported config version {version}, expected one of {sorted(_VERSIONS)}"
        )
    data["version"] = version
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"invalid config: {exc}") from exc


def find_config_file(path: Optional[str] = None) -> Path:
    """Explicit path, else the first existing default location."""
    if path:
        return Path(path).expanduser()
    for candidate in DEFAULT_CONFIG_LOCATIONS:
        candidate = candidate.expanduser()
        if candidate.is_file():
            return candidate
    raise ConfigError(
        "no config file found, looked in "
        + ", ".join(str(p) for p in DEFAULT_CONFIG_LOCATIONS)
    )


def load_config(path: Union[str, Path]) -> ExporterConfig:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigError(f"failed to read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse config file {path}: {exc}") from exc
    if data is not None and not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    return parse_config(data)


DriverFactory = Callable[..., Driver]


def build_collector(
    config: ExporterConfig,
    primary_uri: Optional[str] = None,
    driver_factory: DriverFactory = MongoDBDriver,
    environ: Optional[Dict[str, str]] = None,
) -> QueryCollector:
    """
    Connect every configured server and register every aggregation.

    Server URI precedence: primary_uri (server 0 only) >
    MDBEXPORTER_SERVER_<i>_MONGODB_URI > file > mongodb://localhost:27017.

    Raises:
        ConfigError: invalid settings
        ServerConnectError: a server is unreachable (fatal at startup)
        QueryExporterError: an aggregation failed registration
    """
    env = os.environ if environ is None else environ
    config.resolve_defaults()
    logger.info(f"[CONFIG] will listen on {config.bind}")

    glob = config.global_
    collector = QueryCollector(
        CollectorConfig(
            query_timeout=glob.query_timeout or DEFAULT_QUERY_TIMEOUT,
            default_cache=glob.default_cache,
            default_mode=glob.default_mode,
            default_database=glob.default_database,
            default_collection=glob.default_collection,
        ),
        ExporterMetrics(),
    )

    client_options: Dict[str, Any] = {}
    if glob.max_connections:
        client_options["maxPoolSize"] = glob.max_connections

    for index, server in enumerate(config.servers):
        uri = env.get(SERVER_URI_ENV.format(index=index)) or server.uri
        if index == 0 and primary_uri:
            uri = primary_uri
        uri = os.path.expandvars(uri or DEFAULT_MONGODB_URI)

        name = server.name or server_name_from_uri(uri)
        logger.info(f"[CONFIG] use mongodb hosts {server_name_from_uri(uri)} as {name}")
        driver = driver_factory(uri, name=name, **client_options)
        driver.connect()
        collector.register_server(name, driver)

    aggregations = config.aggregations()
    if not aggregations:
        logger.warning("[CONFIG] no aggregations have been configured")

    for index, aggregation in enumerate(aggregations):
        if not aggregation.metrics:
            logger.warning(f"[CONFIG] no metrics have been configured for aggregation_{index}")
        collector.register_aggregation(aggregation)

    return collector


def apply_overrides(config: ExporterConfig, overrides: Sequence[tuple]) -> ExporterConfig:
    """Apply (dotted path, value) pairs; None values are skipped."""
    for path, value in overrides:
        if value is None:
            continue
        target: Any = config
        *parents, attr = path.split(".")
        for parent in parents:
            target = getattr(target, parent)
        setattr(target, attr, value)
    return config
