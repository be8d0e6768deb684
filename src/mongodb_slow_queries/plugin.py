"""
Mackerel agent plugin output for slow query metrics.

The Mackerel agent runs the plugin on its own schedule and reads stdout:

- Normally, one line per metric: ``<key>\\t<value>\\t<epoch seconds>``.
- When MACKEREL_AGENT_PLUGIN_META is set to any non-empty value, a
  ``# mackerel-agent-plugin`` header followed by a JSON document describing
  the graphs.
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, TextIO

from mongodb_slow_queries.sampler import SlowQueryMetrics, SlowQuerySampler

if TYPE_CHECKING:
    from mongodb_slow_queries.config import AppConfig

META_ENV_VAR = "MACKEREL_AGENT_PLUGIN_META"
META_HEADER = "# mackerel-agent-plugin"

GRAPH_NAME = "slow_queries"


# =============================================================================
# Graph Definitions
# =============================================================================


@dataclass(frozen=True)
class MetricDefinition:
    """One metric line of a Mackerel graph."""

    name: str
    label: str
    stacked: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to the graph definition JSON shape."""
        return {"name": self.name, "label": self.label, "stacked": self.stacked}


@dataclass(frozen=True)
class GraphDefinition:
    """A Mackerel custom graph."""

    label: str
    unit: str
    metrics: tuple[MetricDefinition, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the graph definition JSON shape."""
        return {
            "label": self.label,
            "unit": self.unit,
            "metrics": [metric.to_dict() for metric in self.metrics],
        }


GRAPH_DEFINITIONS: dict[str, GraphDefinition] = {
    GRAPH_NAME: GraphDefinition(
        label="MongoDB Slow Queries",
        unit="integer",
        metrics=(
            MetricDefinition(name="count", label="Slow Queries"),
            MetricDefinition(name="total_time", label="Total Time (ms)"),
            MetricDefinition(name="average_time", label="Average Time (ms)"),
        ),
    ),
}


# =============================================================================
# SlowQueryPlugin Class
# =============================================================================


class SlowQueryPlugin:
    """
    Mackerel plugin wrapping a SlowQuerySampler.

    Example:
        >>> plugin = SlowQueryPlugin(load_config())
        >>> plugin.run()
        mongodb.slow_queries.count    3.000000    1760790000
        mongodb.slow_queries.total_time    245.500000    1760790000
        mongodb.slow_queries.average_time    81.833333    1760790000
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        sampler: SlowQuerySampler | None = None,
        stdout: TextIO | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the plugin.

        Args:
            config: Application configuration.
            sampler: Sampler to use. Built from config when not given.
            stdout: Stream receiving plugin output (default sys.stdout).
            clock: Callable returning the current aware datetime.
        """
        self._config = config
        self._sampler = sampler or SlowQuerySampler(
            config.mongodb,
            timeout_seconds=config.plugin.timeout_seconds,
            window=timedelta(seconds=config.plugin.window_seconds),
        )
        self._stdout = stdout or sys.stdout
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def metric_key_prefix(self) -> str:
        """Prefix applied to graph and metric names."""
        return self._config.plugin.metric_key_prefix

    def graph_definition(self) -> dict[str, GraphDefinition]:
        """Return the graphs this plugin reports, keyed by unprefixed name."""
        return GRAPH_DEFINITIONS

    def format_definitions(self) -> str:
        """Render the graph definitions block read by the agent."""
        graphs = {
            f"{self.metric_key_prefix}.{name}": graph.to_dict()
            for name, graph in self.graph_definition().items()
        }
        return f"{META_HEADER}\n{json.dumps({'graphs': graphs})}\n"

    def format_values(self, values: Mapping[str, float], now: datetime) -> list[str]:
        """
        Render metric lines in graph definition order.

        Metrics missing from ``values`` are left out.
        """
        epoch = int(now.timestamp())
        lines = []
        for graph_name, graph in self.graph_definition().items():
            for metric in graph.metrics:
                if metric.name not in values:
                    continue
                key = f"{self.metric_key_prefix}.{graph_name}.{metric.name}"
                lines.append(f"{key}\t{values[metric.name]:f}\t{epoch}")
        return lines

    def fetch_metrics(self) -> SlowQueryMetrics:
        """Run one collection.

        Raises:
            UnavailableError: If the sampler fails.
        """
        return asyncio.run(self._sampler.collect())

    def output_values(self) -> None:
        """Collect and write metric lines."""
        metrics = self.fetch_metrics()
        for line in self.format_values(metrics.to_dict(), self._clock()):
            self._stdout.write(line + "\n")
        self._stdout.flush()

    def output_definitions(self) -> None:
        """Write the graph definitions block."""
        self._stdout.write(self.format_definitions())
        self._stdout.flush()

    def run(self) -> None:
        """Write definitions when the agent asks for them, values otherwise."""
        if os.environ.get(META_ENV_VAR):
            self.output_definitions()
            return
        self.output_values()
