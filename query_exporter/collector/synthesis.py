"""
Metric synthesis: one result document + one metric template → one sample.

Value: int / float (incl. bson.Int64) coerced to float. bool is rejected
even though it subclasses int. Labels: declared fields must be strings.
The server label always comes first, declared labels follow in order.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Mapping, Tuple

from prometheus_client.core import GaugeMetricFamily
from prometheus_client.metrics_core import Metric

from .errors import (
    LabelNotFoundError,
    LabelNotStringError,
    ValueNotFoundError,
    ValueNotNumericError,
)
from .models import MetricDescriptor, MetricTemplate, MetricType, Sample


def get_value(template: MetricTemplate, result: Mapping[str, Any]) -> float:
    if template.value not in result:
        raise ValueNotFoundError(template.name, template.value)
    value = result[template.value]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueNotNumericError(template.name, template.value, value)
    return float(value)


def get_labels(template: MetricTemplate, result: Mapping[str, Any]) -> Tuple[str, ...]:
    labels: List[str] = []
    for label in template.labels:
        if label not in result:
            raise LabelNotFoundError(template.name, label)
        value = result[label]
        if not isinstance(value, str):
            raise LabelNotStringError(template.name, label, value)
        labels.append(value)
    return tuple(labels)


def create_sample(
    server_name: str,
    template: MetricTemplate,
    descriptor: MetricDescriptor,
    result: Mapping[str, Any],
) -> Sample:
    """Build one sample. Raises a SynthesisError subclass on bad input."""
    if not template.value and template.override_empty:
        value = float(template.empty_value)
    else:
        value = get_value(template, result)

    labels = get_labels(template, result)
    return Sample(
        descriptor=descriptor,
        value=value,
        label_values=(server_name, *labels),
    )


def create_empty_sample(
    server_name: str, template: MetricTemplate, descriptor: MetricDescriptor
) -> Sample:
    """Sample for an empty result set: empty_value, every declared label ""."""
    return Sample(
        descriptor=descriptor,
        value=float(template.empty_value),
        label_values=(server_name, *("" for _ in template.labels)),
    )


# ── Exposition ───────────────────────────────────────────────────────────────


def _gauge_family(descriptor: MetricDescriptor) -> Metric:
    return GaugeMetricFamily(
        descriptor.name, descriptor.help, labels=list(descriptor.label_names)
    )


_FAMILY_BUILDERS: Dict[MetricType, Callable[[MetricDescriptor], Metric]] = {
    MetricType.GAUGE: _gauge_family,
}


def supported_types() -> Iterable[str]:
    return [t.value for t in _FAMILY_BUILDERS]


def build_family(descriptor: MetricDescriptor, samples: Iterable[Sample] = ()) -> Metric:
    """Metric family for a descriptor, filled with the given samples."""
    family = _FAMILY_BUILDERS[descriptor.kind](descriptor)
    const_values = [v for _, v in descriptor.const_labels]
    for sample in samples:
        family.add_metric(const_values + list(sample.label_values), sample.value)
    return family
