"""
Unit tests for services.monitor.service module.

Tests:
- Lifecycle: probe construction, registry readiness, listener shutdown
- _guarded(): prerequisite skips and crash containment
- _dispatch(): fan-out concurrency limits and sequential ordering
- Endpoint x node schedules walk nodes sequentially per endpoint
- run(): node records first, then every other enabled schedule
- refresh_registry() failure handling
"""

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from uptimebrotr.core.ledger import Ledger
from uptimebrotr.exceptions import PrerequisiteMissing, RegistryError
from uptimebrotr.models import ProbeOutcome, ServiceName, Target, TargetCategory
from uptimebrotr.services.monitor import CategorySchedule, Monitor, MonitorConfig


MODULE = "uptimebrotr.services.monitor.service"


def _fake_probe(name: str = "comment_fetch", **execute: Any) -> MagicMock:
    probe = MagicMock()
    probe.PROBE = name
    probe.prerequisites = MagicMock()
    probe.execute = AsyncMock(**execute)
    return probe


def _gateways(count: int) -> list[Target]:
    return [
        Target(f"https://gw{i}.example.com", TargetCategory.GATEWAY) for i in range(count)
    ]


@pytest.fixture
def monitor(ledger: Ledger) -> Monitor:
    return Monitor(ledger, MonitorConfig())


# ============================================================================
# Lifecycle Tests
# ============================================================================


class TestLifecycle:
    def test_service_name(self) -> None:
        assert Monitor.SERVICE_NAME == ServiceName.MONITOR
        assert Monitor.CONFIG_CLASS is MonitorConfig

    def test_probes_require_context(self, monitor: Monitor) -> None:
        with pytest.raises(RuntimeError, match="probes are not built"):
            _ = monitor.listener

    async def test_context_builds_probes(self, monitor: Monitor) -> None:
        async with monitor:
            assert monitor.listener is not None
            assert monitor.is_running is True
        assert monitor.is_running is False

    async def test_exit_stops_listener(self, monitor: Monitor) -> None:
        async with monitor:
            stop = AsyncMock()
            monitor.listener.stop = stop  # type: ignore[method-assign]
        stop.assert_awaited_once()


# ============================================================================
# _guarded() Tests
# ============================================================================


class TestGuarded:
    """Tests for Monitor._guarded()."""

    async def test_skips_missing_prerequisites(self, monitor: Monitor, gateway: Target) -> None:
        probe = _fake_probe()
        probe.prerequisites.side_effect = PrerequisiteMissing("no public key")
        assert await monitor._guarded(probe, gateway) is None
        probe.execute.assert_not_awaited()

    async def test_returns_outcome(self, monitor: Monitor, gateway: Target) -> None:
        outcome = ProbeOutcome.ok(gateway.identity, "comment_fetch", 1.0)
        probe = _fake_probe(return_value=outcome)
        assert await monitor._guarded(probe, gateway) is outcome

    async def test_crash_becomes_failure(self, monitor: Monitor, gateway: Target) -> None:
        probe = _fake_probe(side_effect=RuntimeError("bug"))
        outcome = await monitor._guarded(probe, gateway)
        assert outcome is not None
        assert outcome.success is False
        assert outcome.reason == "bug"

    async def test_cancellation_propagates(self, monitor: Monitor, gateway: Target) -> None:
        probe = _fake_probe(side_effect=asyncio.CancelledError())
        with pytest.raises(asyncio.CancelledError):
            await monitor._guarded(probe, gateway)


# ============================================================================
# _dispatch() Tests
# ============================================================================


class TestDispatch:
    """Tests for Monitor._dispatch()."""

    @staticmethod
    def _tracking_work(log: list[str], active: list[int]) -> Any:
        async def work(item: int) -> int:
            active[0] += 1
            active[1] = max(active[1], active[0])
            log.append(f"start {item}")
            await asyncio.sleep(0.01)
            log.append(f"end {item}")
            active[0] -= 1
            return item

        return work

    async def test_fan_out_is_concurrent(self, monitor: Monitor) -> None:
        log: list[str] = []
        active = [0, 0]
        results = await monitor._dispatch(
            CategorySchedule(), [1, 2, 3], self._tracking_work(log, active)
        )
        assert sorted(results) == [1, 2, 3]
        assert active[1] == 3

    async def test_fan_out_max_tasks(self, monitor: Monitor) -> None:
        log: list[str] = []
        active = [0, 0]
        await monitor._dispatch(
            CategorySchedule(max_tasks=2), [1, 2, 3, 4], self._tracking_work(log, active)
        )
        assert active[1] == 2

    async def test_sequential_order(self, monitor: Monitor) -> None:
        log: list[str] = []
        active = [0, 0]
        results = await monitor._dispatch(
            CategorySchedule(discipline="sequential"), [1, 2], self._tracking_work(log, active)
        )
        assert results == [1, 2]
        assert log == ["start 1", "end 1", "start 2", "end 2"]

    async def test_sequential_stops_on_shutdown(self, monitor: Monitor) -> None:
        work = AsyncMock(side_effect=lambda item: item)
        monitor.request_shutdown()
        results = await monitor._dispatch(
            CategorySchedule(discipline="sequential", delay=5), [1, 2, 3], work
        )
        assert results == [1]

    async def test_fan_out_drops_errors(self, monitor: Monitor) -> None:
        async def work(item: int) -> int:
            if item == 2:
                raise RuntimeError("boom")
            return item

        results = await monitor._dispatch(CategorySchedule(), [1, 2, 3], work)
        assert sorted(results) == [1, 3]


# ============================================================================
# Schedule Tests
# ============================================================================


class TestSchedules:
    """Tests for the per-category schedules."""

    async def test_check_gateways(self, ledger: Ledger, monitor: Monitor) -> None:
        ledger.registry.set_targets(TargetCategory.GATEWAY, _gateways(2))
        async with monitor:
            probe = _fake_probe(
                side_effect=lambda t: ProbeOutcome.ok(t.identity, "comment_fetch", 1.0)
            )
            monitor._content = probe
            outcomes = await monitor.check_gateways()
        assert len(outcomes) == 2
        assert all(outcome.success for outcome in outcomes)

    async def test_snapshot_pairs_walk_nodes_sequentially(
        self, ledger: Ledger, monitor: Monitor
    ) -> None:
        gateways = _gateways(2)
        nodes = [Target(n, TargetCategory.APPLICATION_NODE) for n in ("a.eth", "b.eth")]
        ledger.registry.set_targets(TargetCategory.GATEWAY, gateways)
        ledger.registry.set_targets(TargetCategory.APPLICATION_NODE, nodes)
        calls: list[tuple[str, str]] = []

        def build(ledger: Ledger, gateway: Target, config: Any) -> MagicMock:
            async def execute(node: Target) -> ProbeOutcome:
                calls.append((gateway.identity, node.identity))
                await asyncio.sleep(0)
                return ProbeOutcome.ok(node.identity, "snapshot_fetch", 1.0)

            return _fake_probe("snapshot_fetch", side_effect=execute)

        with patch(f"{MODULE}.DomainSnapshotProbe", side_effect=build):
            outcomes = await monitor.check_gateway_snapshots()

        assert len(outcomes) == 4
        for gateway in gateways:
            per_gateway = [node for gw, node in calls if gw == gateway.identity]
            assert per_gateway == ["a.eth", "b.eth"]

    async def test_run_fetches_records_first(self, monitor: Monitor) -> None:
        order: list[str] = []

        def recorder(name: str) -> AsyncMock:
            async def cycle() -> list:
                order.append(name)
                return []

            return AsyncMock(side_effect=cycle)

        names = [name for name, _, _ in monitor.schedules()]
        for name in names:
            setattr(monitor, f"check_{name}", recorder(name))
        monitor.config.schedules.previewers.enabled = False

        await monitor.run()
        assert order[0] == "node_records"
        assert sorted(order) == sorted(n for n in names if n != "previewers")

    async def test_run_survives_failing_schedule(self, monitor: Monitor) -> None:
        for name, _, _ in monitor.schedules():
            setattr(monitor, f"check_{name}", AsyncMock(return_value=[]))
        monitor.check_gateways.side_effect = RuntimeError("boom")
        await monitor.run()
        monitor.check_previewers.assert_awaited_once()


# ============================================================================
# Registry Refresh Tests
# ============================================================================


class TestRefreshRegistry:
    async def test_failure_keeps_running(self, ledger: Ledger, monitor: Monitor) -> None:
        with patch.object(
            ledger.registry, "refresh", AsyncMock(side_effect=RegistryError("down"))
        ) as refresh:
            await monitor.refresh_registry()
        refresh.assert_awaited_once()
