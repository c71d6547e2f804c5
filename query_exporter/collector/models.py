"""
Collector data model.

Registration-time inputs (Server, Aggregation, MetricTemplate) are plain
data produced by the config layer. Registration compiles each Aggregation
into an immutable RegisteredAggregation; scrapes only ever read those.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from .cache import CachePolicy
    from .driver import Driver

# Cache sentinel: valid until a change stream event evicts the entry.
CACHE_STICKY = -1

SERVER_LABEL = "server"

# One decoded aggregation document.
AggregationResult = Dict[str, Any]


class MetricType(str, Enum):
    GAUGE = "gauge"


class Mode(str, Enum):
    PULL = "pull"
    PUSH = "push"


class QueryResult(str, Enum):
    """Outcome label of the result counter."""
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


@dataclass(frozen=True)
class Server:
    name: str
    driver: "Driver"


@dataclass
class MetricTemplate:
    """How one metric is derived from the documents of an aggregation."""

    name: str
    type: str = ""
    help: str = ""
    value: str = ""
    labels: List[str] = field(default_factory=list)
    const_labels: Dict[str, str] = field(default_factory=dict)
    override_empty: bool = False
    empty_value: float = 0


@dataclass
class Aggregation:
    """A pipeline, the servers it runs on, its cache policy and its metrics.

    cache: None = not set (global default applies), 0 = no caching,
    > 0 = seconds, CACHE_STICKY = until invalidated by a change event.
    """

    pipeline: str
    metrics: List[MetricTemplate] = field(default_factory=list)
    servers: List[str] = field(default_factory=list)
    cache: Optional[float] = None
    mode: Optional[str] = None
    database: str = ""
    collection: str = ""


@dataclass(frozen=True)
class MetricDescriptor:
    """Immutable description of an exported metric.

    label_names: const label names (sorted), then "server", then the
    declared labels in declaration order.
    """

    name: str
    help: str
    kind: MetricType
    variable_labels: Tuple[str, ...]
    const_labels: Tuple[Tuple[str, str], ...] = ()

    @property
    def label_names(self) -> Tuple[str, ...]:
        return tuple(k for k, _ in self.const_labels) + self.variable_labels

    @classmethod
    def for_template(cls, template: MetricTemplate, kind: MetricType) -> "MetricDescriptor":
        return cls(
            name=template.name,
            help=template.help,
            kind=kind,
            variable_labels=(SERVER_LABEL, *template.labels),
            const_labels=tuple(sorted(template.const_labels.items())),
        )


@dataclass(frozen=True)
class Sample:
    """One emitted value; label_values match descriptor.variable_labels."""

    descriptor: MetricDescriptor
    value: float
    label_values: Tuple[str, ...]

    @property
    def labels(self) -> Dict[str, str]:
        values = dict(self.descriptor.const_labels)
        values.update(zip(self.descriptor.variable_labels, self.label_values))
        return values


@dataclass(frozen=True)
class RegisteredAggregation:
    """An aggregation after registration: parsed, resolved and described."""

    index: int
    source: Aggregation
    pipeline: Tuple[Mapping[str, Any], ...]
    mode: Mode
    database: str
    collection: str
    policy: "CachePolicy"
    templates: Tuple[Tuple[MetricTemplate, MetricDescriptor], ...]

    @property
    def identity(self) -> str:
        return f"aggregation_{self.index}"

    @property
    def descriptors(self) -> Tuple[MetricDescriptor, ...]:
        return tuple(d for _, d in self.templates)
