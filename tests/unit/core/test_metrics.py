"""
Unit tests for core.metrics module.

Tests:
- MetricsConfig defaults and validation
- PROBE_METRIC_TABLE covers every probe with a unique metric stem
- ProbeMetrics.observe() counters, gauges and histogram on success/failure
- Payload gauges and node field gauges
- MetricsServer lifecycle
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from prometheus_client import CollectorRegistry
from pydantic import ValidationError

from uptimebrotr import probes
from uptimebrotr.core.metrics import (
    NODE_FIELD_GAUGES,
    PROBE_METRIC_TABLE,
    MetricsConfig,
    MetricsServer,
    ProbeMetrics,
    ProbeMetricSpec,
    start_metrics_server,
)
from uptimebrotr.models import ProbeOutcome, TargetCategory


GATEWAY = TargetCategory.GATEWAY
LABELS = {"gateway_url": "https://ipfs.io"}


def _sample(registry: CollectorRegistry, name: str, labels: dict | None = None) -> float | None:
    return registry.get_sample_value(name, labels if labels is not None else LABELS)


# ============================================================================
# Configuration Tests
# ============================================================================


class TestMetricsConfig:
    def test_defaults(self) -> None:
        config = MetricsConfig()
        assert config.enabled is False
        assert config.port == 8000
        assert config.path == "/metrics"

    def test_privileged_port_rejected(self) -> None:
        with pytest.raises(ValidationError):
            MetricsConfig(port=80)


# ============================================================================
# Table Tests
# ============================================================================


class TestProbeMetricTable:
    def test_unique_stems(self) -> None:
        stems = [spec.base_name for spec in PROBE_METRIC_TABLE.values()]
        assert len(stems) == len(set(stems))

    def test_stem(self) -> None:
        spec = PROBE_METRIC_TABLE[(GATEWAY, "comment_fetch")]
        assert spec.base_name == "uptimebrotr_gateway_comment_fetch"
        assert spec.labels == ("gateway_url",)

    @pytest.mark.parametrize(
        "probe_class",
        [
            probes.ContentRoundTripProbe,
            probes.DomainSnapshotProbe,
            probes.ContentRoutingProbe,
            probes.NodeProvidersProbe,
            probes.PubSubRoundTripProbe,
            probes.PersistentListenProbe,
            probes.NameResolutionProbe,
            probes.NameRecordProbe,
            probes.StaticContentProbe,
            probes.PreviewProbe,
        ],
        ids=lambda cls: cls.__name__,
    )
    def test_every_probe_has_an_entry(self, probe_class: type) -> None:
        assert (probe_class.CATEGORY, probe_class.PROBE) in PROBE_METRIC_TABLE


# ============================================================================
# ProbeMetrics Tests
# ============================================================================


class TestProbeMetrics:
    """Tests for ProbeMetrics.observe()."""

    def test_success(self, metrics_registry: CollectorRegistry) -> None:
        metrics = ProbeMetrics(registry=metrics_registry)
        outcome = ProbeOutcome.ok("https://ipfs.io", "comment_fetch", 0.5, attempts=2)
        metrics.observe(GATEWAY, outcome, ("https://ipfs.io",))

        stem = "uptimebrotr_gateway_comment_fetch"
        assert _sample(metrics_registry, f"{stem}_count_total") == 1
        assert _sample(metrics_registry, f"{stem}_success_count_total") == 1
        assert _sample(metrics_registry, f"{stem}_duration_seconds_sum_total") == 0.5
        assert _sample(metrics_registry, f"{stem}_attempt_count_total") == 2
        assert _sample(metrics_registry, f"{stem}_last_success") == 1
        assert _sample(metrics_registry, f"{stem}_last_duration_seconds") == 0.5
        assert _sample(metrics_registry, f"{stem}_last_attempt_count") == 2
        assert _sample(metrics_registry, f"{stem}_latency_seconds_count") == 1

    def test_failure_skips_duration(self, metrics_registry: CollectorRegistry) -> None:
        metrics = ProbeMetrics(registry=metrics_registry)
        metrics.observe(
            GATEWAY,
            ProbeOutcome.ok("https://ipfs.io", "comment_fetch", 0.5),
            ("https://ipfs.io",),
        )
        metrics.observe(
            GATEWAY,
            ProbeOutcome.failed("https://ipfs.io", "comment_fetch", "timeout"),
            ("https://ipfs.io",),
        )

        stem = "uptimebrotr_gateway_comment_fetch"
        assert _sample(metrics_registry, f"{stem}_count_total") == 2
        assert _sample(metrics_registry, f"{stem}_success_count_total") == 1
        assert _sample(metrics_registry, f"{stem}_last_success") == 0
        assert _sample(metrics_registry, f"{stem}_last_duration_seconds") == 0.5

    def test_payload_gauges(self, metrics_registry: CollectorRegistry) -> None:
        metrics = ProbeMetrics(registry=metrics_registry)
        outcome = ProbeOutcome.ok(
            "https://ipfs.io",
            "snapshot_fetch",
            1.0,
            payload={"seconds_since_updated_at": 42, "ignored": "x"},
        )
        metrics.observe(GATEWAY, outcome, ("https://ipfs.io", "plebtoken.eth"))
        labels = {"gateway_url": "https://ipfs.io", "node_address": "plebtoken.eth"}
        name = "uptimebrotr_gateway_snapshot_fetch_seconds_since_updated_at"
        assert _sample(metrics_registry, name, labels) == 42

    def test_derived_fields_override_payload(self, metrics_registry: CollectorRegistry) -> None:
        metrics = ProbeMetrics(registry=metrics_registry)
        outcome = ProbeOutcome.ok(
            "https://ipfs.io", "snapshot_fetch", 1.0, payload={"seconds_since_updated_at": 1}
        )
        metrics.observe(
            GATEWAY,
            outcome,
            ("https://ipfs.io", "plebtoken.eth"),
            fields={"seconds_since_updated_at": 7},
        )
        labels = {"gateway_url": "https://ipfs.io", "node_address": "plebtoken.eth"}
        name = "uptimebrotr_gateway_snapshot_fetch_seconds_since_updated_at"
        assert _sample(metrics_registry, name, labels) == 7

    def test_unknown_probe_ignored(self, metrics_registry: CollectorRegistry) -> None:
        metrics = ProbeMetrics(registry=metrics_registry)
        metrics.observe(GATEWAY, ProbeOutcome.ok("u", "unknown_probe", 1.0), ("u",))
        with pytest.raises(KeyError):
            metrics.spec(GATEWAY, "unknown_probe")

    def test_custom_table(self, metrics_registry: CollectorRegistry) -> None:
        spec = ProbeMetricSpec(GATEWAY, "custom", ("gateway_url",), "custom probe")
        metrics = ProbeMetrics(registry=metrics_registry, table={(GATEWAY, "custom"): spec})
        outcome = ProbeOutcome.ok("https://ipfs.io", "custom", 1.0)
        metrics.observe(GATEWAY, outcome, ("https://ipfs.io",))
        assert _sample(metrics_registry, "uptimebrotr_gateway_custom_count_total") == 1
        assert metrics.spec(GATEWAY, "custom") is spec

    def test_node_fields(self, metrics_registry: CollectorRegistry) -> None:
        metrics = ProbeMetrics(registry=metrics_registry)
        metrics.set_node_field("plebtoken.eth", NODE_FIELD_GAUGES[0], 5)
        metrics.set_node_field("plebtoken.eth", "not_a_field", 1)
        name = f"uptimebrotr_application_node_{NODE_FIELD_GAUGES[0]}"
        assert _sample(metrics_registry, name, {"node_address": "plebtoken.eth"}) == 5


# ============================================================================
# MetricsServer Tests
# ============================================================================


class TestMetricsServer:
    """Tests for MetricsServer lifecycle."""

    async def test_disabled_is_noop(self) -> None:
        server = await start_metrics_server(MetricsConfig(enabled=False))
        assert server._runner is None
        await server.stop()

    async def test_start_and_stop(self) -> None:
        runner = MagicMock()
        runner.setup = AsyncMock()
        runner.cleanup = AsyncMock()
        site = MagicMock()
        site.start = AsyncMock()
        config = MetricsConfig(enabled=True, host="0.0.0.0", port=9100)
        with (
            patch("uptimebrotr.core.metrics.web.AppRunner", return_value=runner),
            patch("uptimebrotr.core.metrics.web.TCPSite", return_value=site) as tcp_site,
        ):
            server = MetricsServer(config)
            await server.start()
            tcp_site.assert_called_once_with(runner, "0.0.0.0", 9100)
            site.start.assert_awaited_once()

            await server.stop()
            await server.stop()
        runner.cleanup.assert_awaited_once()

    async def test_handler_serves_registry(self) -> None:
        response = await MetricsServer._handle_metrics(MagicMock())
        assert response.status == 200
        assert b"uptimebrotr_up" in response.body
