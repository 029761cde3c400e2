"""Core layer: shared state, persistence and service infrastructure.

Sits in the middle of the diamond DAG. It depends on
``uptimebrotr.models`` and ``uptimebrotr.utils``; ``uptimebrotr.probes``
and ``uptimebrotr.services`` depend on it.

Attributes:
    Ledger: Facade owning the state store, target registry, history,
        reliability aggregator, probe metrics and HTTP session. Injected
        into every service. See [Ledger][uptimebrotr.core.ledger.Ledger].
    StateStore: Per-target latest fields with read-merge-write updates and
        atomic JSON persistence. Documents are migrated at load time by
        [apply_migrations][uptimebrotr.core.migrations.apply_migrations].
    TargetRegistry: Current targets per category, refreshed from
        descriptor documents.
    HistorySnapshotter: Immutable timestamped snapshots with a bounded
        recent cache and range queries.
    ReliabilityAggregator: Rolling-window success rate and latency
        statistics computed from history.
    BaseService: Abstract generic base class with lifecycle management,
        interval loops with failure accounting, and Prometheus metrics.
    Logger: Structured logger supporting key=value and JSON output modes.
    ProbeMetrics: Probe exporter built from the static
        [PROBE_METRIC_TABLE][uptimebrotr.core.metrics.PROBE_METRIC_TABLE].

Examples:
    ```python
    from uptimebrotr.core import Ledger

    async with Ledger.from_yaml("config/ledger.yaml") as ledger:
        await ledger.registry.wait_until_ready()
        ledger.save_state()
    ```
"""

from .aggregator import (
    DEFAULT_WINDOWS,
    ReliabilityAggregator,
    ReliabilityStats,
    outcomes_from_history,
    summarize,
)
from .base_service import BaseService, BaseServiceConfig, ConfigT
from .history import HistoryQuery, HistorySnapshotter, is_immutable, parse_time
from .ledger import HistoryConfig, HttpConfig, Ledger, LedgerConfig
from .logger import Logger, StructuredFormatter, format_kv_pairs
from .metrics import (
    CYCLE_DURATION_SECONDS,
    PROBE_METRIC_TABLE,
    PROBE_METRICS,
    SERVICE_COUNTER,
    SERVICE_GAUGE,
    SERVICE_INFO,
    UP,
    MetricsConfig,
    MetricsServer,
    ProbeMetrics,
    ProbeMetricSpec,
    start_metrics_server,
)
from .migrations import MIGRATIONS, SCHEMA_VERSION, apply_migrations
from .registry import RegistryConfig, TargetRegistry
from .state import StateStore
from .view import build_view
from .yaml import load_yaml


__all__ = [
    "CYCLE_DURATION_SECONDS",
    "DEFAULT_WINDOWS",
    "MIGRATIONS",
    "PROBE_METRICS",
    "PROBE_METRIC_TABLE",
    "SCHEMA_VERSION",
    "SERVICE_COUNTER",
    "SERVICE_GAUGE",
    "SERVICE_INFO",
    "UP",
    "BaseService",
    "BaseServiceConfig",
    "ConfigT",
    "HistoryConfig",
    "HistoryQuery",
    "HistorySnapshotter",
    "HttpConfig",
    "Ledger",
    "LedgerConfig",
    "Logger",
    "MetricsConfig",
    "MetricsServer",
    "ProbeMetricSpec",
    "ProbeMetrics",
    "RegistryConfig",
    "ReliabilityAggregator",
    "ReliabilityStats",
    "StateStore",
    "StructuredFormatter",
    "TargetRegistry",
    "apply_migrations",
    "build_view",
    "format_kv_pairs",
    "is_immutable",
    "load_yaml",
    "outcomes_from_history",
    "parse_time",
    "start_metrics_server",
    "summarize",
]
