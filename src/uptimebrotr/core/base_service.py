"""
Abstract base class for long-running UptimeBrotr services.

``BaseService[ConfigT]`` gives every service the same lifecycle: structured
logging via [Logger][uptimebrotr.core.logger.Logger], graceful shutdown on
an ``asyncio.Event``, interval-based cycling with a consecutive failure
limit, and Prometheus cycle metrics.

The cycling itself lives in
[run_loop()][uptimebrotr.core.base_service.BaseService.run_loop] so that a
service can drive several independent loops (the
[Monitor][uptimebrotr.services.monitor.Monitor] runs one per probe
schedule) with the same failure accounting as
[run_forever()][uptimebrotr.core.base_service.BaseService.run_forever].

See Also:
    [Ledger][uptimebrotr.core.ledger.Ledger]: Shared state injected into
        every service.
    [BaseServiceConfig][uptimebrotr.core.base_service.BaseServiceConfig]:
        Base configuration model for all services.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, ClassVar, Generic, Self, TypeVar, cast

from pydantic import BaseModel, Field

from uptimebrotr.models.constants import ServiceName  # noqa: TC001

from .logger import Logger
from .metrics import (
    CYCLE_DURATION_SECONDS,
    SERVICE_COUNTER,
    SERVICE_GAUGE,
    SERVICE_INFO,
    MetricsConfig,
)
from .yaml import load_yaml


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from types import TracebackType

    from .ledger import Ledger


MAIN_LOOP = "main"


# ---------------------------------------------------------------------------
# Base Configuration
# ---------------------------------------------------------------------------


class BaseServiceConfig(BaseModel):
    """Settings shared by every service that cycles.

    Subclass this to add service-specific fields.
    """

    interval: float = Field(
        default=60.0,
        ge=1.0,
        description="Seconds between run cycles",
    )
    max_consecutive_failures: int = Field(
        default=5,
        ge=0,
        description="Stop after this many consecutive errors (0 = unlimited)",
    )
    metrics: MetricsConfig = Field(
        default_factory=MetricsConfig,
        description="Prometheus metrics configuration",
    )


ConfigT = TypeVar("ConfigT", bound=BaseServiceConfig)


class BaseService(ABC, Generic[ConfigT]):
    """Abstract base class for all UptimeBrotr services.

    Subclasses set ``SERVICE_NAME`` and ``CONFIG_CLASS`` and implement
    [run()][uptimebrotr.core.base_service.BaseService.run].

    Attributes:
        SERVICE_NAME: Identifier used in logging and metrics.
        CONFIG_CLASS: Pydantic model used by the factory methods.
        _ledger: Shared [Ledger][uptimebrotr.core.ledger.Ledger].
        _config: Typed service configuration.
        _logger: [Logger][uptimebrotr.core.logger.Logger] named after the
            service.
        _shutdown_event: Set once shutdown is requested.

    Note:
        The lifecycle is ``async with ledger:`` then ``async with service:``
        then [run_forever()][uptimebrotr.core.base_service.BaseService.run_forever],
        or a single [run()][uptimebrotr.core.base_service.BaseService.run]
        with ``--once``.
    """

    SERVICE_NAME: ClassVar[ServiceName]
    CONFIG_CLASS: ClassVar[type[BaseModel]]

    def __init__(self, ledger: Ledger, config: ConfigT | None = None) -> None:
        self._ledger = ledger
        self._config: ConfigT = (
            config if config is not None else cast("ConfigT", self.CONFIG_CLASS())
        )
        self._logger = Logger(self.SERVICE_NAME)
        self._shutdown_event = asyncio.Event()

    @property
    def config(self) -> ConfigT:
        """The typed service configuration (read-only)."""
        return self._config

    @property
    def ledger(self) -> Ledger:
        return self._ledger

    @abstractmethod
    async def run(self) -> None:
        """Execute one bounded cycle of the service's work."""
        ...

    def request_shutdown(self) -> None:
        """Request a graceful shutdown. Safe to call from signal handlers."""
        self._shutdown_event.set()

    @property
    def is_running(self) -> bool:
        """Whether shutdown has not been requested yet."""
        return not self._shutdown_event.is_set()

    async def wait(self, timeout: float) -> bool:  # noqa: ASYNC109
        """Sleep up to *timeout* seconds, waking early on shutdown.

        Returns:
            True if shutdown was requested, False if the timeout elapsed.
        """
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
            return True
        except TimeoutError:
            return False

    async def run_loop(
        self,
        loop: str,
        interval: float,
        cycle: Callable[[], Awaitable[Any]],
        *,
        warmup: float = 0.0,
    ) -> None:
        """Call *cycle* every *interval* seconds until shutdown.

        The first call is delayed by *warmup* seconds. A cycle that raises
        is counted as a failure; after ``max_consecutive_failures`` failures
        in a row (0 disables the limit) the loop stops. ``CancelledError``,
        ``KeyboardInterrupt`` and ``SystemExit`` propagate immediately.

        Metrics use the counter names ``cycles_success``, ``cycles_failed``
        and ``errors_{type}``, prefixed with ``{loop}_`` for loops other
        than the main one.

        Args:
            loop: Loop name used in logs and metric labels.
            interval: Seconds between the end of a cycle and the next one.
            cycle: Coroutine function run each cycle.
            warmup: Seconds to wait before the first cycle.
        """
        max_failures = self._config.max_consecutive_failures
        prefix = "" if loop == MAIN_LOOP else f"{loop}_"
        logger = self._logger if loop == MAIN_LOOP else self._logger.bind(loop=loop)

        if warmup > 0:
            logger.info("loop_warmup", seconds=warmup)
            if await self.wait(warmup):
                return

        logger.info("loop_started", interval=interval, max_consecutive_failures=max_failures)
        consecutive_failures = 0

        while self.is_running:
            cycle_start = time.monotonic()
            try:
                await cycle()

                duration = time.monotonic() - cycle_start
                self.inc_counter(f"{prefix}cycles_success")
                if self._config.metrics.enabled:
                    CYCLE_DURATION_SECONDS.labels(service=self.SERVICE_NAME, loop=loop).observe(
                        duration
                    )
                self.set_gauge(f"{prefix}last_cycle_timestamp", time.time())
                self.set_gauge(f"{prefix}consecutive_failures", 0)
                consecutive_failures = 0
                logger.info("cycle_completed", duration=round(duration, 3), next_cycle_s=interval)

            except (asyncio.CancelledError, KeyboardInterrupt, SystemExit):
                raise

            except Exception as e:  # Intentionally broad: top-level error boundary of a loop
                consecutive_failures += 1
                self.inc_counter(f"{prefix}cycles_failed")
                self.set_gauge(f"{prefix}consecutive_failures", consecutive_failures)
                self.inc_counter(f"{prefix}errors_{type(e).__name__}")
                logger.error(
                    "run_cycle_error",
                    error=str(e),
                    consecutive_failures=consecutive_failures,
                )
                if max_failures > 0 and consecutive_failures >= max_failures:
                    logger.critical(
                        "max_consecutive_failures_reached",
                        failures=consecutive_failures,
                        limit=max_failures,
                    )
                    break

            if await self.wait(interval):
                break

        logger.info("loop_stopped")

    async def run_forever(self) -> None:
        """Run [run()][uptimebrotr.core.base_service.BaseService.run] every ``config.interval``
        seconds.
        """
        if self._config.metrics.enabled:
            SERVICE_INFO.info({"service": str(self.SERVICE_NAME)})
        await self.run_loop(MAIN_LOOP, self._config.interval, self.run)
        self._logger.info("run_forever_stopped")

    # -------------------------------------------------------------------------
    # Factory Methods
    # -------------------------------------------------------------------------

    @classmethod
    def from_yaml(cls, config_path: str, ledger: Ledger, **kwargs: Any) -> Self:
        """Create a service from a YAML configuration file."""
        return cls.from_dict(load_yaml(config_path), ledger=ledger, **kwargs)

    @classmethod
    def from_dict(cls, data: dict[str, Any], ledger: Ledger, **kwargs: Any) -> Self:
        """Create a service from a configuration dictionary parsed into ``CONFIG_CLASS``."""
        config = cast("ConfigT", cls.CONFIG_CLASS(**data))
        return cls(ledger=ledger, config=config, **kwargs)

    # -------------------------------------------------------------------------
    # Context Manager
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> Self:
        self._shutdown_event.clear()
        self._logger.info("service_started")
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: TracebackType | None,
    ) -> None:
        self._shutdown_event.set()
        self._logger.info("service_stopped")

    # -------------------------------------------------------------------------
    # Custom Metrics
    # -------------------------------------------------------------------------

    def set_gauge(self, name: str, value: float) -> None:
        """Set a named service gauge. No-op when metrics are disabled."""
        if not self._config.metrics.enabled:
            return
        SERVICE_GAUGE.labels(service=self.SERVICE_NAME, name=name).set(value)

    def inc_counter(self, name: str, value: float = 1) -> None:
        """Increment a named service counter. No-op when metrics are disabled."""
        if not self._config.metrics.enabled:
            return
        SERVICE_COUNTER.labels(service=self.SERVICE_NAME, name=name).inc(value)
