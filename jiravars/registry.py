"""Prometheus gauge families for the polled searches.

Each metric definition is published by an ``IssueGaugeFamily``, a custom
prometheus_client collector.  A family keeps its samples in an immutable
tuple that is swapped in one assignment on every successful poll, so a
scrape always renders the complete result of some poll and label values
that disappeared from the latest poll are dropped.

Only the polling task that owns a family writes to it; any number of
scrapes may read concurrently.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Sequence

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import GaugeMetricFamily, Metric
from prometheus_client.registry import Collector

from jiravars.config import MetricDefinition
from jiravars.errors import ConfigurationError
from jiravars.query import ObservationSet

_METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

LabelValues = tuple[str, ...]
Sample = tuple[LabelValues, float]


class IssueGaugeFamily(Collector):
    """Gauge family publishing the latest observation set of one metric.

    Parameters:
        definition: The metric definition this family publishes.

    Raises:
        ConfigurationError: If the metric or a label name is invalid.
    """

    def __init__(self, definition: MetricDefinition) -> None:
        self.definition = definition
        self.name = definition.metric_name
        self.documentation = definition.help or self.name

        if not _METRIC_NAME_RE.match(self.name):
            raise ConfigurationError(f"invalid metric name {self.name!r}")

        static = sorted(definition.labels.items())
        self._static_values: LabelValues = tuple(v for _, v in static)
        self.label_names: list[str] = [k for k, _ in static]
        if definition.label_name is not None:
            if definition.label_name in definition.labels:
                raise ConfigurationError(
                    f"{self.name}: label {definition.label_name!r} is both "
                    "static and grouped"
                )
            self.label_names.append(definition.label_name)

        for label in self.label_names:
            if not _LABEL_NAME_RE.match(label) or label.startswith("__"):
                raise ConfigurationError(
                    f"{self.name}: invalid label name {label!r}"
                )

        self._samples: tuple[Sample, ...] = ()
        self._written = False

    # ------------------------------------------------------------------
    # Writer side (owning poll task only)
    # ------------------------------------------------------------------

    def replace(self, observations: ObservationSet) -> None:
        """Replace the published samples with *observations*.

        The new sample tuple is fully built before it is published, so
        readers never observe a partially applied update.
        """
        samples = []
        for value, count in sorted(
            observations.items(), key=lambda item: "" if item[0] is None else item[0]
        ):
            if value is None:
                labels = self._static_values
                if self.definition.label_name is not None:
                    labels += ("",)
            else:
                labels = self._static_values + (value,)
            samples.append((labels, float(count)))
        self._samples = tuple(samples)
        self._written = True

    # ------------------------------------------------------------------
    # Reader side
    # ------------------------------------------------------------------

    @property
    def written(self) -> bool:
        """Whether at least one poll has been published."""
        return self._written

    def samples(self) -> dict[LabelValues, float]:
        """Return the current samples keyed by label values."""
        return dict(self._samples)

    def _family(self, samples: Iterable[Sample]) -> GaugeMetricFamily:
        family = GaugeMetricFamily(
            self.name, self.documentation, labels=self.label_names
        )
        for labels, value in samples:
            family.add_metric(list(labels), value)
        return family

    def describe(self) -> Iterable[Metric]:
        return [self._family(())]

    def collect(self) -> Iterable[Metric]:
        yield self._family(self._samples)


class MetricRegistry:
    """Holds one ``IssueGaugeFamily`` per metric definition.

    Parameters:
        registry: prometheus_client registry to publish into.  A private
                  registry is created when omitted so that the exporter's
                  output is not mixed with the process collectors of the
                  global default registry.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self._families: dict[str, IssueGaugeFamily] = {}

    def setup(self, definitions: Sequence[MetricDefinition]) -> None:
        """Create and register a gauge family for every definition.

        Either every family is registered or none is.

        Raises:
            ConfigurationError: On duplicate or invalid metric names, or a
                name that is already present in the underlying registry.
        """
        pending: dict[str, IssueGaugeFamily] = {}
        for definition in definitions:
            family = IssueGaugeFamily(definition)
            if family.name in pending or family.name in self._families:
                raise ConfigurationError(
                    f"duplicate metric name {family.name!r}"
                )
            pending[family.name] = family

        registered: list[IssueGaugeFamily] = []
        for family in pending.values():
            try:
                self.registry.register(family)
            except ValueError as exc:
                for done in registered:
                    self.registry.unregister(done)
                raise ConfigurationError(
                    f"cannot register {family.name!r}: {exc}"
                ) from exc
            registered.append(family)

        self._families.update(pending)

    def __len__(self) -> int:
        return len(self._families)

    def __iter__(self) -> Iterator[IssueGaugeFamily]:
        return iter(self._families.values())

    def family(self, definition: MetricDefinition) -> IssueGaugeFamily:
        """Return the family registered for *definition*.

        Raises:
            KeyError: If *definition* was never set up.
        """
        return self._families[definition.metric_name]

    def write(self, definition: MetricDefinition, observations: ObservationSet) -> None:
        """Publish *observations* as the new state of *definition*'s family."""
        self.family(definition).replace(observations)

    def snapshot(self) -> dict[str, dict[LabelValues, float]]:
        """Return the current samples of every family, keyed by metric name."""
        return {name: family.samples() for name, family in self._families.items()}

    def render(self) -> tuple[bytes, str]:
        """Render the registry in the Prometheus text exposition format.

        Returns:
            The body and its content type.
        """
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
