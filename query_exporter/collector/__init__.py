"""
Collection engine: server/aggregation registries, result cache, scrape-time
fan-out, metric synthesis and change stream cache invalidation.
"""

from .cache import CachePolicy, ResultCache
from .collector import CollectorConfig, QueryCollector, parse_pipeline
from .driver import ChangeStreamEvent, Cursor, Driver, MongoDBDriver, server_name_from_uri
from .errors import (
    DuplicateServerError,
    ExecutionError,
    LabelNotFoundError,
    LabelNotStringError,
    MetricConflictError,
    PipelineParseError,
    QueryExporterError,
    QueryTimeoutError,
    ServerConnectError,
    SynthesisError,
    UnknownServerError,
    UnsupportedMetricTypeError,
    UnsupportedModeError,
    ValueNotFoundError,
    ValueNotNumericError,
)
from .models import (
    CACHE_STICKY,
    Aggregation,
    MetricDescriptor,
    MetricTemplate,
    MetricType,
    Mode,
    QueryResult,
    RegisteredAggregation,
    Sample,
    Server,
)

__all__ = [
    "CACHE_STICKY",
    "Aggregation",
    "CachePolicy",
    "ChangeStreamEvent",
    "CollectorConfig",
    "Cursor",
    "Driver",
    "DuplicateServerError",
    "ExecutionError",
    "LabelNotFoundError",
    "LabelNotStringError",
    "MetricConflictError",
    "MetricDescriptor",
    "MetricTemplate",
    "MetricType",
    "Mode",
    "MongoDBDriver",
    "PipelineParseError",
    "QueryCollector",
    "QueryExporterError",
    "QueryResult",
    "QueryTimeoutError",
    "RegisteredAggregation",
    "ResultCache",
    "Sample",
    "Server",
    "ServerConnectError",
    "SynthesisError",
    "UnknownServerError",
    "UnsupportedMetricTypeError",
    "UnsupportedModeError",
    "ValueNotFoundError",
    "ValueNotNumericError",
    "parse_pipeline",
    "server_name_from_uri",
]
