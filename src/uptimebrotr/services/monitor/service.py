"""
Monitor service: the probe scheduler.

Every probe kind owns an independent timer
([CategorySchedule][uptimebrotr.services.monitor.CategorySchedule]). On
each tick the scheduler takes the current targets of the category from the
[TargetRegistry][uptimebrotr.core.registry.TargetRegistry] and probes them
with the schedule's discipline:

- **fan_out**: all targets concurrently (``asyncio.gather`` with
  ``return_exceptions=True``), optionally bounded by a semaphore;
- **sequential**: one target at a time, target N+1 never starting before
  target N completed, optionally spaced by ``delay``.

Endpoint x node schedules (gateway snapshots, router node lookups) apply
the discipline to the endpoints and always walk the nodes of one endpoint
sequentially, so a single endpoint is never flooded.

Every invocation goes through
[_guarded()][uptimebrotr.services.monitor.Monitor._guarded]: targets
missing prerequisite data are skipped for the tick, and an unexpected
error degrades to a logged failure instead of ending the loop.

The persistent listener runs beside the schedules on its own loops (sync,
provider lookups, peer polls, challenge rechecks).

See Also:
    [MonitorConfig][uptimebrotr.services.monitor.MonitorConfig]: Configuration
        model for this service.
    [BaseProbe][uptimebrotr.probes.BaseProbe]: Contract of the probes
        scheduled here.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, ClassVar, TypeVar

from uptimebrotr.core.base_service import MAIN_LOOP, BaseService
from uptimebrotr.core.metrics import SERVICE_INFO
from uptimebrotr.exceptions import PrerequisiteMissing, RegistryError
from uptimebrotr.models import ProbeOutcome, ServiceName, TargetCategory
from uptimebrotr.probes import (
    BaseProbe,
    ContentRoundTripProbe,
    ContentRoutingProbe,
    DomainSnapshotProbe,
    NameRecordProbe,
    NameResolutionProbe,
    NodeProvidersProbe,
    PersistentListenProbe,
    PreviewProbe,
    PubSubRoundTripProbe,
    StaticContentProbe,
    describe_error,
)
from uptimebrotr.utils.kubo import KuboClient

from .configs import CategorySchedule, Discipline, MonitorConfig


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence
    from types import TracebackType

    from uptimebrotr.core.ledger import Ledger
    from uptimebrotr.models import Target


T = TypeVar("T")

REGISTRY_LOOP = "registry"
LISTENER_SYNC_LOOP = "listener_sync"
LISTENER_LOOKUP_LOOP = "listener_lookup"
LISTENER_PEERS_LOOP = "listener_peers"
LISTENER_RECHECK_LOOP = "listener_recheck"


class Monitor(BaseService[MonitorConfig]):
    """Probe scheduler over the target registry.

    Lifecycle:
        1. ``__aenter__``: build the probes on the ledger's session and
           block until the registry has been refreshed once.
        2. ``run()``: one pass of every enabled schedule (``--once``).
        3. ``run_forever()``: one loop per schedule, plus the registry
           refresh loop and the listener loops, in a ``TaskGroup``.
        4. ``__aexit__``: close the listener subscriptions.
    """

    SERVICE_NAME: ClassVar[ServiceName] = ServiceName.MONITOR
    CONFIG_CLASS: ClassVar[type[MonitorConfig]] = MonitorConfig

    def __init__(self, ledger: Ledger, config: MonitorConfig | None = None) -> None:
        super().__init__(ledger, config)
        self._config: MonitorConfig
        self._records: NameRecordProbe | None = None
        self._content: ContentRoundTripProbe | None = None
        self._routing: ContentRoutingProbe | None = None
        self._pubsub: PubSubRoundTripProbe | None = None
        self._names: NameResolutionProbe | None = None
        self._static: StaticContentProbe | None = None
        self._preview: PreviewProbe | None = None
        self._listener: PersistentListenProbe | None = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _kubo(self, url: str) -> KuboClient:
        return KuboClient(
            url, self._ledger.session, max_size=self._ledger.config.http.max_response_size
        )

    def build_probes(self) -> None:
        """Instantiate the probes on the ledger's open session."""
        ledger = self._ledger
        config = self._config
        self._records = NameRecordProbe(ledger, config.records)
        self._content = ContentRoundTripProbe(
            ledger, self._kubo(config.kubo_api_url), config.content
        )
        self._routing = ContentRoutingProbe(ledger, config.routing)
        self._pubsub = PubSubRoundTripProbe(
            ledger, self._kubo(config.reference_relay_url), config.pubsub
        )
        self._names = NameResolutionProbe(ledger, config.names)
        self._static = StaticContentProbe(ledger, config.static)
        self._preview = PreviewProbe(ledger, config.preview)
        self._listener = PersistentListenProbe(
            ledger, self._kubo(config.resolved_listener_relay_url), config.listener
        )

    async def __aenter__(self) -> Monitor:
        await super().__aenter__()
        self.build_probes()
        ready = await self._ledger.registry.wait_until_ready(
            should_stop=lambda: not self.is_running
        )
        self._logger.info("registry_ready" if ready else "registry_wait_aborted")
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: TracebackType | None,
    ) -> None:
        if self._listener is not None:
            await self._listener.stop()
        await super().__aexit__(_exc_type, _exc_val, _exc_tb)

    def _probe(self, probe: T | None) -> T:
        if probe is None:
            raise RuntimeError("probes are not built; use 'async with monitor:'")
        return probe

    @property
    def listener(self) -> PersistentListenProbe:
        return self._probe(self._listener)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def _guarded(self, probe: BaseProbe, target: Target) -> ProbeOutcome | None:
        """Run one probe invocation; never raises except on cancellation.

        Returns:
            The outcome, or ``None`` if the target was skipped for missing
            prerequisites.
        """
        try:
            probe.prerequisites(target)
        except PrerequisiteMissing as e:
            self._logger.debug(
                "target_skipped", probe=probe.PROBE, target=target.identity, reason=str(e)
            )
            return None
        try:
            return await probe.execute(target)
        except (asyncio.CancelledError, KeyboardInterrupt, SystemExit):
            raise
        except Exception as e:  # Intentionally broad: one invocation never ends a tick
            self._logger.error(
                "probe_crashed", probe=probe.PROBE, target=target.identity, error=str(e)
            )
            self.inc_counter(f"probe_errors_{probe.PROBE}")
            return ProbeOutcome.failed(target.identity, probe.PROBE, describe_error(e))

    async def _dispatch(
        self,
        schedule: CategorySchedule,
        items: Sequence[T],
        work: Callable[[T], Awaitable[Any]],
    ) -> list[Any]:
        """Apply *work* to *items* with the schedule's discipline."""
        if schedule.discipline is Discipline.SEQUENTIAL:
            return await self._sequential(items, work, schedule.delay)

        semaphore = asyncio.Semaphore(schedule.max_tasks) if schedule.max_tasks else None

        async def bounded(item: T) -> Any:
            if semaphore is None:
                return await work(item)
            async with semaphore:
                return await work(item)

        results = await asyncio.gather(*(bounded(item) for item in items), return_exceptions=True)
        collected: list[Any] = []
        for result in results:
            # gather(return_exceptions=True) captures CancelledError as a result
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                self._logger.error("dispatch_error", error=str(result))
                continue
            collected.append(result)
        return collected

    async def _sequential(
        self,
        items: Sequence[T],
        work: Callable[[T], Awaitable[Any]],
        delay: float,
    ) -> list[Any]:
        results: list[Any] = []
        for index, item in enumerate(items):
            if index and delay and await self.wait(delay):
                break
            results.append(await work(item))
        return results

    def _report(self, name: str, outcomes: list[ProbeOutcome | None]) -> None:
        succeeded = sum(1 for o in outcomes if o is not None and o.success)
        failed = sum(1 for o in outcomes if o is not None and not o.success)
        skipped = sum(1 for o in outcomes if o is None)
        self.set_gauge(f"{name}_succeeded", succeeded)
        self.set_gauge(f"{name}_failed", failed)
        self.set_gauge(f"{name}_skipped", skipped)
        self._logger.info(
            "schedule_completed", schedule=name, succeeded=succeeded, failed=failed, skipped=skipped
        )

    async def _probe_each(
        self, name: str, schedule: CategorySchedule, probe: BaseProbe, category: TargetCategory
    ) -> list[ProbeOutcome | None]:
        targets = self._ledger.registry.targets(category)
        outcomes = await self._dispatch(schedule, targets, lambda t: self._guarded(probe, t))
        self._report(name, outcomes)
        return outcomes

    async def _probe_pairs(
        self,
        name: str,
        schedule: CategorySchedule,
        category: TargetCategory,
        probe_for: Callable[[Target], BaseProbe],
    ) -> list[ProbeOutcome | None]:
        registry = self._ledger.registry

        async def walk_nodes(endpoint: Target) -> list[ProbeOutcome | None]:
            probe = probe_for(endpoint)
            nodes = registry.targets(TargetCategory.APPLICATION_NODE)
            return await self._sequential(nodes, lambda n: self._guarded(probe, n), schedule.delay)

        per_endpoint = await self._dispatch(schedule, registry.targets(category), walk_nodes)
        outcomes = [outcome for results in per_endpoint for outcome in results]
        self._report(name, outcomes)
        return outcomes

    # -------------------------------------------------------------------------
    # Schedules
    # -------------------------------------------------------------------------

    async def check_node_records(self) -> list[ProbeOutcome | None]:
        """Fetch every node's latest record (prerequisite producer)."""
        return await self._probe_each(
            "node_records",
            self._config.schedules.node_records,
            self._probe(self._records),
            TargetCategory.APPLICATION_NODE,
        )

    async def check_gateways(self) -> list[ProbeOutcome | None]:
        """Content round trip through every gateway."""
        return await self._probe_each(
            "gateways",
            self._config.schedules.gateways,
            self._probe(self._content),
            TargetCategory.GATEWAY,
        )

    async def check_gateway_snapshots(self) -> list[ProbeOutcome | None]:
        """Fetch every node's record through every gateway."""
        return await self._probe_pairs(
            "gateway_snapshots",
            self._config.schedules.gateway_snapshots,
            TargetCategory.GATEWAY,
            lambda gateway: DomainSnapshotProbe(self._ledger, gateway, self._config.snapshot),
        )

    async def check_routers(self) -> list[ProbeOutcome | None]:
        """Provider record round trip on every router."""
        return await self._probe_each(
            "routers",
            self._config.schedules.routers,
            self._probe(self._routing),
            TargetCategory.CONTENT_ROUTER,
        )

    async def check_router_nodes(self) -> list[ProbeOutcome | None]:
        """Provider lookups for every node's record topic on every router."""
        return await self._probe_pairs(
            "router_nodes",
            self._config.schedules.router_nodes,
            TargetCategory.CONTENT_ROUTER,
            lambda router: NodeProvidersProbe(self._ledger, router, self._config.routing),
        )

    async def check_relays(self) -> list[ProbeOutcome | None]:
        """Pub/sub round trip through every relay."""
        return await self._probe_each(
            "relays",
            self._config.schedules.relays,
            self._probe(self._pubsub),
            TargetCategory.RELAY,
        )

    async def check_name_services(self) -> list[ProbeOutcome | None]:
        """Resolve the configured names through every resolver."""
        return await self._probe_each(
            "name_services",
            self._config.schedules.name_services,
            self._probe(self._names),
            TargetCategory.NAME_SERVICE,
        )

    async def check_static_pages(self) -> list[ProbeOutcome | None]:
        """Fetch and match every static page."""
        return await self._probe_each(
            "static_pages",
            self._config.schedules.static_pages,
            self._probe(self._static),
            TargetCategory.STATIC_PAGE,
        )

    async def check_previewers(self) -> list[ProbeOutcome | None]:
        """Render a recent post through every previewer."""
        return await self._probe_each(
            "previewers",
            self._config.schedules.previewers,
            self._probe(self._preview),
            TargetCategory.PREVIEWER,
        )

    def schedules(self) -> list[tuple[str, CategorySchedule, Callable[[], Awaitable[Any]]]]:
        """``(name, schedule, cycle)`` of every probe kind, records first."""
        schedules = self._config.schedules
        return [
            ("node_records", schedules.node_records, self.check_node_records),
            ("gateways", schedules.gateways, self.check_gateways),
            ("gateway_snapshots", schedules.gateway_snapshots, self.check_gateway_snapshots),
            ("routers", schedules.routers, self.check_routers),
            ("router_nodes", schedules.router_nodes, self.check_router_nodes),
            ("relays", schedules.relays, self.check_relays),
            ("name_services", schedules.name_services, self.check_name_services),
            ("static_pages", schedules.static_pages, self.check_static_pages),
            ("previewers", schedules.previewers, self.check_previewers),
        ]

    async def refresh_registry(self) -> None:
        """Refresh the node registry; failures keep the previous set."""
        try:
            await self._ledger.registry.refresh()
        except RegistryError as e:
            self._logger.warning("registry_refresh_failed", error=str(e))
            self.inc_counter("registry_refresh_failed")

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Run one pass of every enabled schedule.

        Node records are fetched first so that the dependent schedules see
        the public keys of this pass.
        """
        enabled = [(name, cycle) for name, schedule, cycle in self.schedules() if schedule.enabled]
        first, rest = enabled[:1], enabled[1:]
        for _, cycle in first:
            await cycle()
        results = await asyncio.gather(*(cycle() for _, cycle in rest), return_exceptions=True)
        for (name, _), result in zip(rest, results, strict=True):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                self._logger.error("schedule_failed", schedule=name, error=str(result))

    async def run_forever(self) -> None:
        """Run every enabled schedule on its own loop until shutdown."""
        if self._config.metrics.enabled:
            SERVICE_INFO.info({"service": str(self.SERVICE_NAME)})

        registry_config = self._ledger.registry.config
        listener_config = self._config.listener
        listener = self.listener

        async with asyncio.TaskGroup() as group:
            if registry_config.sources:
                group.create_task(
                    self.run_loop(
                        REGISTRY_LOOP,
                        registry_config.refresh_interval,
                        self.refresh_registry,
                        warmup=registry_config.refresh_interval,
                    )
                )
            for name, schedule, cycle in self.schedules():
                if schedule.enabled:
                    loop = MAIN_LOOP if name == "node_records" else name
                    group.create_task(
                        self.run_loop(loop, schedule.interval, cycle, warmup=schedule.warmup)
                    )
            if listener_config.enabled:
                group.create_task(
                    self.run_loop(LISTENER_SYNC_LOOP, listener_config.sync_interval, listener.sync)
                )
                group.create_task(
                    self.run_loop(
                        LISTENER_LOOKUP_LOOP,
                        listener_config.lookup_interval,
                        listener.lookup_all_peers,
                        warmup=listener_config.sync_interval,
                    )
                )
                group.create_task(
                    self.run_loop(
                        LISTENER_PEERS_LOOP,
                        listener_config.peers_interval,
                        listener.poll_peers,
                        warmup=listener_config.peers_interval,
                    )
                )
                group.create_task(
                    self.run_loop(
                        LISTENER_RECHECK_LOOP,
                        listener_config.recheck_interval,
                        listener.recheck,
                        warmup=listener_config.staleness_window,
                    )
                )
        self._logger.info("run_forever_stopped")
