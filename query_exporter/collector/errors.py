"""
Collector error taxonomy.

Registration-time (raised synchronously, abort the registration):
- DuplicateServerError, UnknownServerError, PipelineParseError,
  UnsupportedMetricTypeError, UnsupportedModeError, MetricConflictError

Scrape-time, per document / per metric (accumulated, never fatal):
- ValueNotFoundError, ValueNotNumericError, LabelNotFoundError,
  LabelNotStringError

Scrape-time, per execution:
- QueryTimeoutError, ExecutionError (combined causes)

Startup:
- ServerConnectError (fatal, the process exits)
"""

from __future__ import annotations

from typing import Iterable, Optional


class QueryExporterError(Exception):
    """Base class for every error raised by the collector."""


# ── Registration ─────────────────────────────────────────────────────────────


class DuplicateServerError(QueryExporterError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"server {name} is already registered")


class UnknownServerError(QueryExporterError):
    """Aggregation bound to servers which are not registered."""

    def __init__(self, requested: Iterable[str], found: Iterable[str]):
        self.requested = list(requested)
        self.missing = sorted(set(self.requested) - set(found))
        super().__init__(
            f"aggregation bound to servers which have not been found: {self.missing}"
        )


class PipelineParseError(QueryExporterError):
    def __init__(self, pipeline: str, cause: Optional[BaseException] = None):
        self.pipeline = pipeline
        reason = f": {cause}" if cause is not None else ""
        super().__init__(f"failed to decode json aggregation pipeline{reason}")


class UnsupportedMetricTypeError(QueryExporterError):
    def __init__(self, metric_name: str, metric_type: str, supported: Iterable[str]):
        self.metric_name = metric_name
        self.metric_type = metric_type
        super().__init__(
            f"failed to initialize metric {metric_name} with error unknown metric "
            f"type {metric_type!r} provided. Only {sorted(supported)} are valid options"
        )


class UnsupportedModeError(QueryExporterError):
    def __init__(self, mode: str, supported: Iterable[str]):
        self.mode = mode
        super().__init__(
            f"unknown aggregation mode {mode!r} provided. Only {sorted(supported)} are valid options"
        )


class MetricConflictError(QueryExporterError):
    """Same metric name registered again with a different help or label set."""

    def __init__(self, metric_name: str):
        self.metric_name = metric_name
        super().__init__(
            f"metric {metric_name} is already registered with a different help or label set"
        )


# ── Metric synthesis ─────────────────────────────────────────────────────────


class SynthesisError(QueryExporterError):
    """A single document could not be turned into a sample for one metric."""

    def __init__(self, metric_name: str, field: str, message: str):
        self.metric_name = metric_name
        self.field = field
        super().__init__(f"metric {metric_name}: {message}")


class ValueNotFoundError(SynthesisError):
    def __init__(self, metric_name: str, field: str):
        super().__init__(metric_name, field, f"value {field!r} not found in result set")


class ValueNotNumericError(SynthesisError):
    def __init__(self, metric_name: str, field: str, value: object):
        super().__init__(
            metric_name,
            field,
            "provided value taken from the aggregation result has to be a number, "
            f"type {type(value).__name__} given",
        )


class LabelNotFoundError(SynthesisError):
    def __init__(self, metric_name: str, field: str):
        super().__init__(
            metric_name, field, f"required label {field} not found in result set"
        )


class LabelNotStringError(SynthesisError):
    def __init__(self, metric_name: str, field: str, value: object):
        super().__init__(
            metric_name,
            field,
            "provided label value taken from the aggregation result has to be a "
            f"string, type {type(value).__name__} given",
        )


# ── Execution ────────────────────────────────────────────────────────────────


class QueryTimeoutError(QueryExporterError, TimeoutError):
    def __init__(self, identity: str, server: str, timeout: float):
        self.identity = identity
        self.server = server
        self.timeout = timeout
        super().__init__(f"{identity} on server {server} timed out after {timeout}s")


class ExecutionError(QueryExporterError):
    """Combined error of one execution; samples may still have been produced."""

    def __init__(self, errors: Iterable[BaseException]):
        self.errors = list(errors)
        details = "; ".join(str(e) for e in self.errors)
        super().__init__(f"{len(self.errors)} error(s) occurred: {details}")


# ── Startup ──────────────────────────────────────────────────────────────────


class ServerConnectError(QueryExporterError):
    def __init__(self, name: str, cause: BaseException):
        self.name = name
        super().__init__(f"failed to connect to server {name}: {cause}")
