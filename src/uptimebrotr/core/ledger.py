"""
Shared monitoring state facade injected into every service.

The [Ledger][uptimebrotr.core.ledger.Ledger] owns the objects that more
than one service reads or writes:

- the [StateStore][uptimebrotr.core.state.StateStore] (loaded from and
  saved to ``state_path``);
- the [TargetRegistry][uptimebrotr.core.registry.TargetRegistry];
- the [HistorySnapshotter][uptimebrotr.core.history.HistorySnapshotter]
  and the [ReliabilityAggregator][uptimebrotr.core.aggregator.ReliabilityAggregator]
  built on it;
- the [ProbeMetrics][uptimebrotr.core.metrics.ProbeMetrics] exporter;
- one ``aiohttp.ClientSession`` (proxy-aware) used by probes and the
  registry.

It is an async context manager: entering it opens the HTTP session and
loads the persisted state; leaving it closes the session. Running
``uptimebrotr all`` shares one Ledger between the Monitor, Archiver and Api
services in a single process.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any, Self

from pydantic import BaseModel, Field

from uptimebrotr.exceptions import PersistenceError
from uptimebrotr.utils.http import DEFAULT_MAX_SIZE, create_session

from .aggregator import DEFAULT_WINDOWS, ReliabilityAggregator
from .history import HistorySnapshotter
from .logger import Logger
from .metrics import PROBE_METRICS, ProbeMetrics
from .registry import RegistryConfig, TargetRegistry
from .state import StateStore
from .yaml import load_yaml


if TYPE_CHECKING:
    from types import TracebackType

    import aiohttp


# ---------------------------------------------------------------------------
# Configuration Models
# ---------------------------------------------------------------------------


class HttpConfig(BaseModel):
    """Outbound HTTP settings shared by probes and the registry.

    The proxy URL is read from ``proxy_url`` or, when unset, from the
    environment variable named by ``proxy_url_env``.
    """

    proxy_url: str | None = Field(default=None, description="HTTP/SOCKS proxy URL")
    proxy_url_env: str = Field(default="PROXY_URL", min_length=1)
    timeout: float = Field(default=60.0, ge=0.1, description="Default request timeout (seconds)")
    max_response_size: int = Field(
        default=DEFAULT_MAX_SIZE, ge=1024, description="Maximum response body size (bytes)"
    )

    def resolve_proxy_url(self) -> str | None:
        return self.proxy_url or os.environ.get(self.proxy_url_env) or None


class HistoryConfig(BaseModel):
    """History snapshot storage and query limits."""

    directory: str = Field(default="data/history", min_length=1)
    cache_size: int = Field(default=500, ge=0, le=100_000)
    max_results: int = Field(default=500, ge=1, le=100_000)


class LedgerConfig(BaseModel):
    """Configuration of the shared [Ledger][uptimebrotr.core.ledger.Ledger]."""

    state_path: str = Field(default="data/state.json", min_length=1)
    http: HttpConfig = Field(default_factory=HttpConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    reliability_windows: list[float] = Field(
        default_factory=lambda: list(DEFAULT_WINDOWS),
        min_length=1,
        description="Default reliability windows in hours",
    )


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class Ledger:
    """Owner of the state store, registry, history and HTTP session.

    Examples:
        ```python
        ledger = Ledger.from_yaml("config/ledger.yaml")
        async with ledger:
            await ledger.registry.wait_until_ready()
            ledger.state.get(TargetCategory.GATEWAY, "https://ipfs.io")
        ```
    """

    def __init__(
        self,
        config: LedgerConfig | None = None,
        *,
        metrics: ProbeMetrics | None = None,
    ) -> None:
        self._config = config or LedgerConfig()
        self._logger = Logger("ledger")
        self.state = StateStore()
        self.registry = TargetRegistry(self._config.registry)
        self.history = HistorySnapshotter(
            self._config.history.directory,
            cache_size=self._config.history.cache_size,
            max_results=self._config.history.max_results,
        )
        self.aggregator = ReliabilityAggregator(self.history, self._config.reliability_windows)
        self.metrics = metrics if metrics is not None else PROBE_METRICS
        self._session: aiohttp.ClientSession | None = None

    @property
    def config(self) -> LedgerConfig:
        return self._config

    @property
    def session(self) -> aiohttp.ClientSession:
        """The shared HTTP session.

        Raises:
            RuntimeError: If the ledger has not been entered.
        """
        if self._session is None:
            raise RuntimeError("Ledger session is not open; use 'async with ledger:'")
        return self._session

    @property
    def is_open(self) -> bool:
        return self._session is not None

    # -------------------------------------------------------------------------
    # State persistence
    # -------------------------------------------------------------------------

    def load_state(self) -> bool:
        """Replace the in-memory state with the persisted document.

        Read failures are logged and the current (empty) state is kept.

        Returns:
            True if the persisted document was loaded.
        """
        try:
            self.state = StateStore.load(self._config.state_path)
        except PersistenceError as e:
            self._logger.error("state_load_failed", path=self._config.state_path, error=str(e))
            return False
        self._logger.info("state_loaded", path=self._config.state_path)
        return True

    def save_state(self) -> None:
        """Persist the state atomically.

        Raises:
            PersistenceError: If the write fails.
        """
        self.state.save(self._config.state_path)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def open(self) -> None:
        """Open the HTTP session and load the persisted state. Idempotent."""
        if self._session is not None:
            return
        proxy_url = self._config.http.resolve_proxy_url()
        self._session = create_session(proxy_url, timeout=self._config.http.timeout)
        self.registry.session = self._session
        self.load_state()
        self._logger.info("ledger_opened", proxied=proxy_url is not None)

    async def close(self) -> None:
        """Close the HTTP session. Idempotent."""
        if self._session is None:
            return
        await self._session.close()
        self._session = None
        self.registry.session = None
        self._logger.info("ledger_closed")

    async def __aenter__(self) -> Self:
        await self.open()
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Factory Methods
    # -------------------------------------------------------------------------

    @classmethod
    def from_yaml(cls, config_path: str, **kwargs: Any) -> Self:
        """Create a ledger from a YAML configuration file."""
        return cls.from_dict(load_yaml(config_path), **kwargs)

    @classmethod
    def from_dict(cls, data: dict[str, Any], **kwargs: Any) -> Self:
        """Create a ledger from a configuration dictionary."""
        return cls(LedgerConfig(**data), **kwargs)
