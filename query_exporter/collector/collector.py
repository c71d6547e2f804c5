"""
QueryCollector: turns MongoDB aggregations into Prometheus samples on
demand.

prometheus_client custom collector (describe/collect). Per scrape:
  1. every (aggregation, server) pair is looked up in the result cache
  2. hits are emitted as is: no query, no counter increment
  3. misses run concurrently on a thread pool; collect() returns only after
     every execution finished
  4. samples are grouped into one family per descriptor, then the result
     counter (if any) is emitted

Scrape-time failures never escape collect(): a failed execution is logged
and counted as result=ERROR. Per-document synthesis errors are combined;
samples synthesized before and after them are still emitted and cached.

Registration (servers, aggregations) happens once at startup. The
registries are read-only afterwards and need no lock; the cache is the
only shared mutable state.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from bson import json_util
from bson.errors import BSONError
from prometheus_client.metrics_core import Metric
from prometheus_client.registry import Collector

from .cache import CacheKey, CachePolicy, ResultCache
from .driver import Driver
from .errors import (
    DuplicateServerError,
    ExecutionError,
    MetricConflictError,
    PipelineParseError,
    QueryTimeoutError,
    SynthesisError,
    UnknownServerError,
    UnsupportedMetricTypeError,
    UnsupportedModeError,
)
from .models import (
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
from .synthesis import build_family, create_empty_sample, create_sample, supported_types
from .watcher import CacheInvalidator

if TYPE_CHECKING:
    from ..exporter_metrics import ExporterMetrics

logger = logging.getLogger(__name__)

DEFAULT_QUERY_TIMEOUT = 10.0


@dataclass(frozen=True)
class CollectorConfig:
    """Global defaults applied to aggregations at registration."""

    query_timeout: float = DEFAULT_QUERY_TIMEOUT
    default_cache: Optional[float] = None
    default_mode: Optional[str] = None
    default_database: str = ""
    default_collection: str = ""
    max_workers: Optional[int] = None


def parse_pipeline(text: str) -> Tuple[Mapping[str, Any], ...]:
    """Parse an Extended JSON pipeline (array of stages)."""
    try:
        stages = json_util.loads(text)
    except (ValueError, TypeError, BSONError) as exc:
        raise PipelineParseError(text, exc) from exc
    if not isinstance(stages, list):
        raise PipelineParseError(
            text, TypeError(f"pipeline must be an array of stages, {type(stages).__name__} given")
        )
    for stage in stages:
        if not isinstance(stage, Mapping):
            raise PipelineParseError(
                text, TypeError(f"pipeline stage must be a document, {type(stage).__name__} given")
            )
    return tuple(stages)


class QueryCollector(Collector):
    """
    Collector for aggregations over one or more MongoDB servers.

    Usage:
        collector = QueryCollector(CollectorConfig(query_timeout=5), ExporterMetrics())
        collector.register_server("main", driver)
        collector.register_aggregation(Aggregation(pipeline="[]", metrics=[...]))
        registry.register(collector)
        collector.start_cache_invalidator()
    """

    def __init__(
        self,
        config: Optional[CollectorConfig] = None,
        metrics: Optional[ExporterMetrics] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or CollectorConfig()
        self._metrics = metrics
        self._servers: List[Server] = []
        self._aggregations: List[RegisteredAggregation] = []
        self._descriptors: Dict[str, MetricDescriptor] = {}
        self._cache = ResultCache(clock=clock)
        self._invalidator = CacheInvalidator(self._cache)

    @property
    def config(self) -> CollectorConfig:
        return self._config

    @property
    def cache(self) -> ResultCache:
        return self._cache

    @property
    def aggregations(self) -> Sequence[RegisteredAggregation]:
        return tuple(self._aggregations)

    # ── Registration ──────────────────────────────────────────────────────

    def register_server(self, name: str, driver: Driver) -> Server:
        if any(srv.name == name for srv in self._servers):
            raise DuplicateServerError(name)
        server = Server(name=name, driver=driver)
        self._servers.append(server)
        return server

    def get_servers(self, names: Sequence[str] = ()) -> List[Server]:
        """Registered servers; a non-empty names list filters by exact name."""
        if not names:
            return list(self._servers)
        return [srv for srv in self._servers if srv.name in names]

    def register_aggregation(self, aggregation: Aggregation) -> RegisteredAggregation:
        """Validate and compile an aggregation. Nothing is stored on failure."""
        if aggregation.servers:
            found = self.get_servers(aggregation.servers)
            if len(found) != len(aggregation.servers):
                raise UnknownServerError(aggregation.servers, [s.name for s in found])

        pipeline = parse_pipeline(aggregation.pipeline)

        mode_name = aggregation.mode or self._config.default_mode or Mode.PULL.value
        try:
            mode = Mode(mode_name)
        except ValueError:
            raise UnsupportedModeError(mode_name, [m.value for m in Mode]) from None

        cache = aggregation.cache
        if cache is None:
            cache = self._config.default_cache

        templates = []
        pending: Dict[str, MetricDescriptor] = {}
        for template in aggregation.metrics:
            descriptor = self._describe_template(template, pending)
            pending.setdefault(descriptor.name, descriptor)
            templates.append((template, descriptor))

        registered = RegisteredAggregation(
            index=len(self._aggregations),
            source=aggregation,
            pipeline=pipeline,
            mode=mode,
            database=aggregation.database or self._config.default_database,
            collection=aggregation.collection or self._config.default_collection,
            policy=CachePolicy.resolve(cache, mode),
            templates=tuple(templates),
        )
        for _, descriptor in registered.templates:
            logger.debug(f"[COLLECTOR] register metric {descriptor.name}")
            self._descriptors.setdefault(descriptor.name, descriptor)
        self._aggregations.append(registered)
        return registered

    def _describe_template(
        self, template: MetricTemplate, pending: Mapping[str, MetricDescriptor]
    ) -> MetricDescriptor:
        try:
            kind = MetricType(template.type)
        except ValueError:
            raise UnsupportedMetricTypeError(
                template.name, template.type, supported_types()
            ) from None

        descriptor = MetricDescriptor.for_template(template, kind)
        existing = self._descriptors.get(descriptor.name) or pending.get(descriptor.name)
        if existing is not None and existing != descriptor:
            raise MetricConflictError(descriptor.name)
        return descriptor

    # ── Collector protocol ────────────────────────────────────────────────

    def describe(self) -> Iterator[Metric]:
        if self._metrics is not None:
            yield from self._metrics.describe()
        for descriptor in self._descriptors.values():
            yield build_family(descriptor)

    def collect(self) -> Iterator[Metric]:
        logger.debug("[COLLECTOR] start collecting metrics")
        samples: List[Sample] = []
        pending: List[Tuple[RegisteredAggregation, Server]] = []

        for aggregation in self._aggregations:
            for server in self.get_servers(aggregation.source.servers):
                cached = self._cache.get((aggregation.identity, server.name))
                if cached is not None:
                    logger.debug(
                        f"[COLLECTOR] use value from cache for {aggregation.identity} "
                        f"on {server.name}"
                    )
                    samples.extend(cached)
                    continue
                pending.append((aggregation, server))

        if pending:
            workers = self._config.max_workers or len(pending)
            with ThreadPoolExecutor(
                max_workers=min(workers, len(pending)), thread_name_prefix="query"
            ) as pool:
                futures = [pool.submit(self._run, agg, srv) for agg, srv in pending]
                for future in futures:
                    samples.extend(future.result())

        yield from self._families(samples)

        if self._metrics is not None:
            yield from self._metrics.collect()

    def _families(self, samples: Sequence[Sample]) -> Iterator[Metric]:
        grouped: Dict[MetricDescriptor, List[Sample]] = {}
        seen = set()
        for sample in samples:
            series = (sample.descriptor, sample.label_values)
            if series in seen:
                logger.warning(
                    f"[COLLECTOR] duplicate series {sample.descriptor.name}"
                    f"{sample.label_values} dropped"
                )
                continue
            seen.add(series)
            grouped.setdefault(sample.descriptor, []).append(sample)

        for descriptor, group in grouped.items():
            yield build_family(descriptor, group)

    # ── Execution ─────────────────────────────────────────────────────────

    def _run(self, aggregation: RegisteredAggregation, server: Server) -> List[Sample]:
        """Execute one pair, log and count the outcome. Never raises."""
        samples: List[Sample] = []
        errors: List[BaseException] = []
        try:
            samples, errors = self._execute(aggregation, server)
        except Exception as exc:
            errors.append(exc)

        if errors:
            logger.error(
                f"[COLLECTOR] failed to generate metric for {aggregation.identity} "
                f"on server {server.name}: {ExecutionError(errors)}"
            )
            result = QueryResult.ERROR
        else:
            result = QueryResult.SUCCESS

        if self._metrics is not None:
            self._metrics.inc_query(aggregation.identity, server.name, result.value)
        return samples

    def _execute(
        self, aggregation: RegisteredAggregation, server: Server
    ) -> Tuple[List[Sample], List[BaseException]]:
        """
        Run one aggregation on one server and synthesize its samples.

        Raises:
            QueryTimeoutError: the execution exceeded the query timeout
            Exception: driver / network failure (execution aborted)
        """
        timeout = self._config.query_timeout
        deadline = time.monotonic() + timeout
        key: CacheKey = (aggregation.identity, server.name)
        generation = self._cache.generation(key)
        logger.debug(f"[COLLECTOR] run {aggregation.identity} on server {server.name}")

        samples: List[Sample] = []
        errors: List[BaseException] = []
        count = 0

        try:
            with server.driver.timeout(timeout):
                cursor = server.driver.aggregate(
                    aggregation.database, aggregation.collection, aggregation.pipeline
                )
                try:
                    for result in cursor:
                        count += 1
                        self._check_deadline(deadline, aggregation, server)
                        logger.debug(
                            f"[COLLECTOR] found record {result} from {aggregation.identity}"
                        )
                        for template, descriptor in aggregation.templates:
                            try:
                                samples.append(
                                    create_sample(server.name, template, descriptor, result)
                                )
                            except SynthesisError as exc:
                                errors.append(exc)
                finally:
                    cursor.close()
        except QueryTimeoutError:
            raise
        except TimeoutError as exc:
            raise QueryTimeoutError(aggregation.identity, server.name, timeout) from exc

        if count == 0:
            for template, descriptor in aggregation.templates:
                if not template.override_empty:
                    logger.debug(
                        f"[COLLECTOR] skip metric {template.name} with an empty result "
                        f"from {aggregation.identity}"
                    )
                    continue
                samples.append(create_empty_sample(server.name, template, descriptor))

        self._check_deadline(deadline, aggregation, server)
        if not aggregation.policy.enabled:
            logger.debug(f"[COLLECTOR] skip caching metrics from {aggregation.identity}")
        elif not self._cache.put(key, samples, aggregation.policy, generation):
            logger.debug(
                f"[COLLECTOR] {aggregation.identity} on {server.name} invalidated "
                f"during execution, result not cached"
            )
        return samples, errors

    def _check_deadline(
        self, deadline: float, aggregation: RegisteredAggregation, server: Server
    ) -> None:
        if time.monotonic() > deadline:
            raise QueryTimeoutError(
                aggregation.identity, server.name, self._config.query_timeout
            )

    # ── Push invalidation ─────────────────────────────────────────────────

    def start_cache_invalidator(self) -> int:
        """Start change stream watchers for push-mode aggregations. Non-blocking.

        Returns the number of watchers started by this call; pairs already
        watched are skipped.
        """
        started = 0
        for aggregation in self._aggregations:
            if aggregation.mode != Mode.PUSH:
                continue
            for server in self.get_servers(aggregation.source.servers):
                if self._invalidator.start(aggregation, server):
                    started += 1
        return started

    @property
    def invalidator(self) -> CacheInvalidator:
        return self._invalidator

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the watchers, then close every server driver."""
        self._invalidator.stop(timeout)
        for server in self._servers:
            server.driver.close()
