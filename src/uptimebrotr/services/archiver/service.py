"""Archiver service: state persistence and history snapshots.

The Archiver owns the housekeeping timers that the probes never touch:

- the **main** loop saves the health state to ``state_path`` every
  ``interval`` seconds (atomic write);
- the **snapshot** loop writes the current view as an immutable history
  file every ``snapshot_interval`` seconds;
- the **cache** loop reloads the most recent history files into memory
  every ``cache_refresh_interval`` seconds, which also invalidates the
  reliability cache.

Disk I/O runs in worker threads so that probe timers are never stalled by
a slow filesystem.

See Also:
    [ArchiverConfig][uptimebrotr.services.archiver.ArchiverConfig]:
        Configuration model for this service.
    [HistorySnapshotter][uptimebrotr.core.history.HistorySnapshotter]:
        Snapshot storage.

Examples:
    ```python
    from uptimebrotr.core import Ledger
    from uptimebrotr.services import Archiver

    ledger = Ledger.from_yaml("config/ledger.yaml")
    archiver = Archiver.from_yaml("config/services/archiver.yaml", ledger=ledger)

    async with ledger:
        async with archiver:
            await archiver.run_forever()
    ```
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, ClassVar

from uptimebrotr.core.base_service import MAIN_LOOP, BaseService
from uptimebrotr.core.metrics import SERVICE_INFO
from uptimebrotr.core.view import build_view
from uptimebrotr.exceptions import PersistenceError
from uptimebrotr.models import ServiceName

from .configs import ArchiverConfig


if TYPE_CHECKING:
    from types import TracebackType


SNAPSHOT_LOOP = "snapshot"
CACHE_LOOP = "cache"


class Archiver(BaseService[ArchiverConfig]):
    """Periodic state saves, history snapshots and cache refreshes.

    A failed save is logged and retried on the next tick; the in-memory
    state is never lost because of it. Snapshot and cache failures
    propagate to [run_loop()][uptimebrotr.core.base_service.BaseService.run_loop]
    and count towards its failure limit.
    """

    SERVICE_NAME: ClassVar[ServiceName] = ServiceName.ARCHIVER
    CONFIG_CLASS: ClassVar[type[ArchiverConfig]] = ArchiverConfig

    async def __aenter__(self) -> Archiver:
        await super().__aenter__()
        try:
            cached = await asyncio.to_thread(self._ledger.history.refresh_cache)
        except PersistenceError as e:
            self._logger.error("history_cache_refresh_failed", error=str(e))
        else:
            self._logger.info("history_cache_loaded", snapshots=cached)
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: TracebackType | None,
    ) -> None:
        if self._config.save_on_exit:
            await self.save_state()
        await super().__aexit__(_exc_type, _exc_val, _exc_tb)

    async def save_state(self) -> bool:
        """Persist the health state. Returns False if the write failed."""
        try:
            await asyncio.to_thread(self._ledger.save_state)
        except PersistenceError as e:
            self._logger.error("state_save_failed", error=str(e))
            self.inc_counter("save_failed")
            return False
        self._logger.debug("state_saved", path=self._ledger.config.state_path)
        return True

    async def snapshot(self) -> None:
        """Write the current view as a new history snapshot.

        Raises:
            PersistenceError: If the file cannot be written.
        """
        view = build_view(self._ledger.state, self._ledger.registry)
        path = await asyncio.to_thread(self._ledger.history.write, view)
        self.inc_counter("snapshots_written")
        self._logger.info("snapshot_written", file=path.name)

    async def refresh_cache(self) -> None:
        """Reload the most recent history snapshots into memory.

        Raises:
            PersistenceError: If the history directory is unreadable.
        """
        cached = await asyncio.to_thread(self._ledger.history.refresh_cache)
        self.set_gauge("history_cached", cached)
        self.set_gauge("history_files", len(self._ledger.history.files))
        self._logger.info("history_cache_refreshed", snapshots=cached)

    async def run(self) -> None:
        """Save the state, write one snapshot and refresh the cache."""
        await self.save_state()
        await self.snapshot()
        await self.refresh_cache()

    async def run_forever(self) -> None:
        """Run the save, snapshot and cache loops until shutdown."""
        if self._config.metrics.enabled:
            SERVICE_INFO.info({"service": str(self.SERVICE_NAME)})
        config = self._config
        async with asyncio.TaskGroup() as group:
            group.create_task(
                self.run_loop(MAIN_LOOP, config.interval, self.save_state, warmup=config.interval)
            )
            group.create_task(
                self.run_loop(
                    SNAPSHOT_LOOP,
                    config.snapshot_interval,
                    self.snapshot,
                    warmup=config.snapshot_interval,
                )
            )
            group.create_task(
                self.run_loop(
                    CACHE_LOOP,
                    config.cache_refresh_interval,
                    self.refresh_cache,
                    warmup=config.cache_refresh_interval,
                )
            )
        self._logger.info("run_forever_stopped")
