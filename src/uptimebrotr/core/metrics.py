"""
Prometheus metrics collection and HTTP exposition.

Two families of metrics live here:

- **Service metrics** shared by all services (cycle counts, durations and
  failure streaks), recorded automatically by
  [BaseService.run_forever()][uptimebrotr.core.base_service.BaseService.run_forever].
- **Probe metrics** built once at import time from a static table
  ([PROBE_METRIC_TABLE][uptimebrotr.core.metrics.PROBE_METRIC_TABLE]) that
  maps each ``(category, probe)`` pair to its label names and exported
  payload fields. [ProbeMetrics][uptimebrotr.core.metrics.ProbeMetrics]
  updates them after every probe outcome; no metric name is ever composed
  at observation time.

Architecture:
    SERVICE_INFO:               Static metadata set once at startup.
    SERVICE_GAUGE:              Point-in-time values (current state).
    SERVICE_COUNTER:            Cumulative totals (monotonically increasing).
    CYCLE_DURATION_SECONDS:     Histogram of service cycle durations.
    UP:                         1 while the process is serving.
    PROBE_METRICS:              Per-probe counters, gauges and latency
                                histograms keyed by target labels.

Note:
    Counters reset when the process restarts; consumers use ``rate()``
    and ``increase()`` which tolerate resets.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)
from pydantic import BaseModel, Field

from uptimebrotr.models.constants import TargetCategory


if TYPE_CHECKING:
    from uptimebrotr.models.outcome import ProbeOutcome


METRIC_PREFIX = "uptimebrotr_"
LATENCY_BUCKETS = (0.003, 0.03, 0.1, 0.3, 1.5, 10)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class MetricsConfig(BaseModel):
    """Configuration for the standalone Prometheus metrics endpoint.

    Set ``host`` to ``"0.0.0.0"`` in container environments to allow
    external scraping. The endpoint is only started when ``enabled``
    is True. The [Api][uptimebrotr.services.api.Api] service always
    serves the same registry under ``/metrics/prometheus``.
    """

    enabled: bool = Field(default=False, description="Enable metrics collection")
    port: int = Field(default=8000, ge=1024, le=65535, description="Metrics HTTP port")
    host: str = Field(default="127.0.0.1", description="Metrics HTTP bind address")
    path: str = Field(default="/metrics", description="Metrics endpoint path")


# ---------------------------------------------------------------------------
# Common Service Metrics (auto-tracked by BaseService.run_forever)
# ---------------------------------------------------------------------------

SERVICE_INFO = Info(
    "service",
    "Service information and metadata",
)

CYCLE_DURATION_SECONDS = Histogram(
    "cycle_duration_seconds",
    "Duration of service cycle in seconds",
    ["service", "loop"],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800, 3600),
)

# Automatic labels (BaseService.run_forever):
#   gauge:   consecutive_failures, last_cycle_timestamp
#   counter: cycles_success, cycles_failed, errors_{type}
SERVICE_GAUGE = Gauge(
    "service_gauge",
    "Service gauge values (point-in-time state)",
    ["service", "name"],
)

SERVICE_COUNTER = Counter(
    "service_counter",
    "Service counter values (cumulative totals)",
    ["service", "name"],
)

UP = Gauge(f"{METRIC_PREFIX}up", "1 = up, 0 = not up")


# ---------------------------------------------------------------------------
# Static probe metric table
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ProbeMetricSpec:
    """Metric definition for one probe of one category.

    Attributes:
        category: Category the probe runs against.
        probe: Field prefix of the probe (see
            [ProbeOutcome][uptimebrotr.models.outcome.ProbeOutcome]).
        labels: Prometheus label names, in the order values are passed.
        gauges: Payload fields additionally exported as gauges.
        description: Human-readable subject used in help texts.
    """

    category: TargetCategory
    probe: str
    labels: tuple[str, ...]
    description: str
    gauges: tuple[str, ...] = ()

    @property
    def base_name(self) -> str:
        """Metric name stem, e.g. ``uptimebrotr_gateway_comment_fetch``."""
        return f"{METRIC_PREFIX}{self.category.value}_{self.probe}"


PROBE_METRIC_TABLE: dict[tuple[TargetCategory, str], ProbeMetricSpec] = {
    (spec.category, spec.probe): spec
    for spec in (
        ProbeMetricSpec(
            TargetCategory.GATEWAY,
            "comment_fetch",
            ("gateway_url",),
            "gateway synthetic content round trip",
        ),
        ProbeMetricSpec(
            TargetCategory.GATEWAY,
            "snapshot_fetch",
            ("gateway_url", "node_address"),
            "gateway mutable record fetch",
            gauges=("seconds_since_updated_at",),
        ),
        ProbeMetricSpec(
            TargetCategory.CONTENT_ROUTER,
            "get_providers_fetch",
            ("router_url",),
            "router provider record round trip",
        ),
        ProbeMetricSpec(
            TargetCategory.CONTENT_ROUTER,
            "node_providers_fetch",
            ("router_url", "node_address"),
            "router provider lookup for a node record topic",
            gauges=("last_provider_count",),
        ),
        ProbeMetricSpec(
            TargetCategory.RELAY,
            "pubsub_round_trip",
            ("relay_url",),
            "relay publish/subscribe round trip",
        ),
        ProbeMetricSpec(
            TargetCategory.NAME_SERVICE,
            "resolve_address",
            ("resolver", "name"),
            "name resolution",
        ),
        ProbeMetricSpec(
            TargetCategory.STATIC_PAGE,
            "webpage_fetch",
            ("page_url",),
            "static page fetch",
        ),
        ProbeMetricSpec(
            TargetCategory.PREVIEWER,
            "preview_fetch",
            ("previewer_url",),
            "previewer page fetch",
        ),
        ProbeMetricSpec(
            TargetCategory.APPLICATION_NODE,
            "record_fetch",
            ("node_address",),
            "node record fetch",
            gauges=("last_update_timestamp",),
        ),
        ProbeMetricSpec(
            TargetCategory.APPLICATION_NODE,
            "challenge_publish",
            ("node_address",),
            "synthetic challenge publish to a silent node",
        ),
    )
}

# Node fields maintained outside probe outcomes (persistent listener, peer polls)
NODE_FIELD_GAUGES: tuple[str, ...] = (
    "pubsub_peer_count",
    "pubsub_dht_peer_count",
    "pubsub_router_peer_count",
    "pubsub_message_count",
    "last_pubsub_message_timestamp",
    "last_authoritative_message_timestamp",
)


class _ProbeInstruments:
    """Prometheus objects for one [ProbeMetricSpec][uptimebrotr.core.metrics.ProbeMetricSpec]."""

    def __init__(self, spec: ProbeMetricSpec, registry: CollectorRegistry) -> None:
        name = spec.base_name
        labels = spec.labels
        what = f"{spec.description} labeled with: {', '.join(labels)}"
        self.spec = spec
        self.count = Counter(f"{name}_count", f"count of {what}", labels, registry=registry)
        self.success_count = Counter(
            f"{name}_success_count", f"count of successful {what}", labels, registry=registry
        )
        self.duration_sum = Counter(
            f"{name}_duration_seconds_sum",
            f"sum of durations in seconds of {what}",
            labels,
            registry=registry,
        )
        self.attempt_count = Counter(
            f"{name}_attempt_count", f"count of attempts of {what}", labels, registry=registry
        )
        self.last_success = Gauge(
            f"{name}_last_success", f"1 if the last {what} succeeded", labels, registry=registry
        )
        self.last_duration = Gauge(
            f"{name}_last_duration_seconds",
            f"duration in seconds of the last {what}",
            labels,
            registry=registry,
        )
        self.last_attempt_count = Gauge(
            f"{name}_last_attempt_count",
            f"attempts of the last {what}",
            labels,
            registry=registry,
        )
        self.latency = Histogram(
            f"{name}_latency_seconds",
            f"latency histogram of {what}",
            labels,
            buckets=LATENCY_BUCKETS,
            registry=registry,
        )
        self.fields = {
            field: Gauge(f"{name}_{field}", f"{field} of {what}", labels, registry=registry)
            for field in spec.gauges
        }


class ProbeMetrics:
    """Exporter for probe outcomes, built from the static table.

    Args:
        registry: Prometheus registry to register into. Defaults to the
            global registry; tests pass a fresh ``CollectorRegistry``.
        table: Probe metric table. Defaults to
            [PROBE_METRIC_TABLE][uptimebrotr.core.metrics.PROBE_METRIC_TABLE].
    """

    def __init__(
        self,
        registry: CollectorRegistry = REGISTRY,
        table: Mapping[tuple[TargetCategory, str], ProbeMetricSpec] | None = None,
    ) -> None:
        self.registry = registry
        self._instruments = {
            key: _ProbeInstruments(spec, registry)
            for key, spec in (table if table is not None else PROBE_METRIC_TABLE).items()
        }
        self._node_fields = {
            field: Gauge(
                f"{METRIC_PREFIX}{TargetCategory.APPLICATION_NODE.value}_{field}",
                f"{field} of application nodes labeled with: node_address",
                ("node_address",),
                registry=registry,
            )
            for field in NODE_FIELD_GAUGES
        }

    def spec(self, category: TargetCategory, probe: str) -> ProbeMetricSpec:
        """Return the table entry for ``(category, probe)``.

        Raises:
            KeyError: If the pair is not in the table.
        """
        return self._instruments[(category, probe)].spec

    def observe(
        self,
        category: TargetCategory,
        outcome: ProbeOutcome,
        labels: Sequence[str],
        fields: Mapping[str, object] | None = None,
    ) -> None:
        """Record one probe outcome.

        Duration and attempt metrics are only updated for successful runs,
        whose latency is meaningful.

        Args:
            category: Category of the probed target.
            outcome: The probe outcome.
            labels: Label values in the order declared by the table entry.
            fields: Derived payload fields; entries listed in the spec's
                ``gauges`` are exported.
        """
        instruments = self._instruments.get((category, outcome.probe))
        if instruments is None:
            return
        values = tuple(labels)
        instruments.count.labels(*values).inc()
        instruments.last_success.labels(*values).set(1 if outcome.success else 0)
        if outcome.success and outcome.latency is not None:
            instruments.success_count.labels(*values).inc()
            instruments.duration_sum.labels(*values).inc(outcome.latency)
            instruments.attempt_count.labels(*values).inc(outcome.attempts)
            instruments.last_duration.labels(*values).set(outcome.latency)
            instruments.last_attempt_count.labels(*values).set(outcome.attempts)
            instruments.latency.labels(*values).observe(outcome.latency)
        merged = {**dict(outcome.payload), **(fields or {})}
        for field, gauge in instruments.fields.items():
            value = merged.get(field)
            if isinstance(value, int | float) and not isinstance(value, bool):
                gauge.labels(*values).set(value)

    def set_node_field(self, node_address: str, field: str, value: float) -> None:
        """Set one of the [NODE_FIELD_GAUGES][uptimebrotr.core.metrics.NODE_FIELD_GAUGES]."""
        gauge = self._node_fields.get(field)
        if gauge is not None:
            gauge.labels(node_address).set(value)


PROBE_METRICS = ProbeMetrics()


# ---------------------------------------------------------------------------
# HTTP Server
# ---------------------------------------------------------------------------


class MetricsServer:
    """Async HTTP server exposing a Prometheus-compatible endpoint.

    Built on aiohttp for compatibility with the async service architecture.
    Used when a service runs without the [Api][uptimebrotr.services.api.Api]
    surface.

    Example:
        server = MetricsServer(MetricsConfig(enabled=True, port=8001))
        await server.start()
        # ... service runs ...
        await server.stop()
    """

    def __init__(self, config: MetricsConfig) -> None:
        self._config = config
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start listening for Prometheus scrape requests.

        No-op if metrics are disabled in the configuration.

        Raises:
            OSError: If the port is already in use or binding fails.
        """
        if not self._config.enabled:
            return

        app = web.Application()
        app.router.add_get(self._config.path, self._handle_metrics)

        self._runner = web.AppRunner(app, access_log=None)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await site.start()

    async def stop(self) -> None:
        """Stop the HTTP server. Idempotent."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    @staticmethod
    async def _handle_metrics(_request: web.Request) -> web.Response:
        return web.Response(
            body=generate_latest(),
            headers={"Content-Type": CONTENT_TYPE_LATEST},
        )


async def start_metrics_server(config: MetricsConfig | None = None) -> MetricsServer:
    """Create and start a metrics server; the caller must ``stop()`` it."""
    server = MetricsServer(config or MetricsConfig())
    await server.start()
    return server
