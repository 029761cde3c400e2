"""
Immutable history snapshots with a bounded recent-snapshot cache.

Every snapshot interval the [Archiver][uptimebrotr.services.archiver.Archiver]
writes the current externally visible view (see
[build_view][uptimebrotr.core.view.build_view]) as one JSON file named by
its ISO-8601 UTC creation time, e.g. ``2024-01-01T00:00:00.000Z.json``. The
file name is the only index: listing the directory and sorting names gives
chronological order.

[refresh_cache()][uptimebrotr.core.history.HistorySnapshotter.refresh_cache]
keeps the ``cache_size`` most recent snapshots in memory; range queries read
cached snapshots from memory and older ones from disk.

Note:
    Queries never truncate. A range selecting more than ``max_results``
    points fails with
    [HistoryQueryError][uptimebrotr.exceptions.HistoryQueryError] telling
    the caller how to narrow it down.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from uptimebrotr.core.logger import Logger
from uptimebrotr.exceptions import HistoryQueryError, PersistenceError
from uptimebrotr.models.constants import TargetCategory


SNAPSHOT_SUFFIX = ".json"


def format_snapshot_name(moment: datetime) -> str:
    """Return the file name of a snapshot taken at *moment*.

    Millisecond precision with a ``Z`` suffix keeps names sortable.
    """
    moment = moment.astimezone(UTC)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def parse_time(value: str | float) -> float:
    """Parse a query time into unix seconds.

    Numeric values (or numeric strings) are unix seconds. Anything else is
    parsed as an ISO-8601 date; naive dates are taken as UTC.

    Raises:
        HistoryQueryError: If *value* is neither.
    """
    if isinstance(value, bool):
        raise HistoryQueryError(f"invalid time value: {value!r}")
    if isinstance(value, int | float):
        return float(value)
    text = str(value).strip()
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if math.isfinite(seconds):
            return seconds
        raise HistoryQueryError(f"invalid time value: {value!r}")
    try:
        moment = datetime.fromisoformat(text)
    except ValueError as e:
        raise HistoryQueryError(f"invalid time value: {value!r}") from e
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.timestamp()


def is_snapshot_name(name: str) -> bool:
    """True if *name* is a snapshot file name carrying an ISO-8601 time."""
    if not name.endswith(SNAPSHOT_SUFFIX):
        return False
    try:
        datetime.fromisoformat(name.removesuffix(SNAPSHOT_SUFFIX))
    except ValueError:
        return False
    return True


def is_immutable(to: str | float | None, now: float) -> bool:
    """Return True when a query's end time lies fully in the past."""
    if to is None or to == "":
        return False
    return parse_time(to) < now


@dataclass(frozen=True, slots=True)
class HistoryQuery:
    """Range query over history snapshots.

    Attributes:
        from_: Start time (unix seconds or ISO date). Unbounded if ``None``.
        to: End time (unix seconds or ISO date). Unbounded if ``None``.
        interval: Minimum spacing in seconds between returned points.
        gateway: Keep only this gateway within the ``gateway`` category.
        node: Keep only this node within the ``application_node`` category.
        include: Top-level keys to keep; all when empty.
    """

    from_: str | float | None = None
    to: str | float | None = None
    interval: float | None = None
    gateway: str | None = None
    node: str | None = None
    include: tuple[str, ...] = ()


class HistorySnapshotter:
    """Writes, caches and queries history snapshots.

    Args:
        directory: Directory holding one file per snapshot.
        cache_size: Number of most recent snapshots kept in memory.
        max_results: Maximum number of points a query may select.
    """

    def __init__(
        self, directory: str | Path, cache_size: int = 500, max_results: int = 500
    ) -> None:
        self.directory = Path(directory)
        self.cache_size = cache_size
        self.max_results = max_results
        self._files: list[str] = []
        self._cache: dict[str, dict[str, Any]] = {}
        self._generation = 0
        self._logger = Logger("history")

    @property
    def generation(self) -> int:
        """Incremented by every cache refresh; derived caches key on it."""
        return self._generation

    @property
    def files(self) -> list[str]:
        """Known snapshot file names, oldest first."""
        return list(self._files)

    # -------------------------------------------------------------------------
    # Writing
    # -------------------------------------------------------------------------

    def write(self, view: dict[str, Any], now: datetime | None = None) -> Path:
        """Write *view* as a new immutable snapshot.

        Returns:
            Path of the written file.

        Raises:
            PersistenceError: If the file cannot be written.
        """
        name = format_snapshot_name(now or datetime.now(UTC)) + SNAPSHOT_SUFFIX
        path = self.directory / name
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(view, separators=(",", ":"), default=str), encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"failed writing history snapshot '{path}': {e}") from e
        if not self._files or name > self._files[-1]:
            self._files.append(name)
        elif name not in self._files:
            self._files = sorted({*self._files, name})
        return path

    # -------------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------------

    def _read(self, name: str) -> dict[str, Any]:
        path = self.directory / name
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise PersistenceError(f"failed reading history snapshot '{path}': {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(f"history snapshot '{path}' is not an object")
        return data

    def refresh_cache(self) -> int:
        """List snapshot files and load the most recent ones into memory.

        Returns:
            Number of snapshots cached.

        Raises:
            PersistenceError: If the directory or a cached file is unreadable.
        """
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            names = [p.name for p in self.directory.iterdir() if p.is_file()]
        except OSError as e:
            raise PersistenceError(f"failed listing history '{self.directory}': {e}") from e
        files = sorted(name for name in names if is_snapshot_name(name))
        skipped = [n for n in names if n.endswith(SNAPSHOT_SUFFIX) and not is_snapshot_name(n)]
        if skipped:
            self._logger.warning("history_files_skipped", files=", ".join(sorted(skipped)))
        recent = files[-self.cache_size :] if self.cache_size > 0 else []
        cache = {name: self._cache.get(name) or self._read(name) for name in recent}
        self._files = files
        self._cache = cache
        self._generation += 1
        return len(cache)

    def load(self, name: str) -> dict[str, Any]:
        """Return one snapshot, from memory when cached."""
        cached = self._cache.get(name)
        return cached if cached is not None else self._read(name)

    @staticmethod
    def timestamp_of(name: str) -> float:
        """Unix seconds encoded in a snapshot file name."""
        return parse_time(name.removesuffix(SNAPSHOT_SUFFIX))

    def select(self, query: HistoryQuery) -> list[str]:
        """Return the snapshot names a query selects, oldest first.

        Raises:
            HistoryQueryError: If more than ``max_results`` points are
                selected, or a time parameter is invalid.
        """
        start = parse_time(query.from_) if query.from_ not in (None, "") else -math.inf
        end = parse_time(query.to) if query.to not in (None, "") else math.inf
        selected: list[str] = []
        previous: float | None = None
        for name in self._files:
            ts = self.timestamp_of(name)
            if ts < start or ts > end:
                continue
            if previous is not None and query.interval and ts - previous < query.interval:
                continue
            previous = ts
            selected.append(name)
            if len(selected) > self.max_results:
                raise HistoryQueryError(
                    f"too many results (more than {self.max_results}), add "
                    "from=timestamp-seconds, to=timestamp-seconds and/or "
                    "interval=seconds to your query"
                )
        return selected

    def since(self, start: float) -> list[tuple[float, dict[str, Any]]]:
        """Return every snapshot taken at or after *start*, oldest first.

        Unlike [query()][uptimebrotr.core.history.HistorySnapshotter.query]
        this is not bounded by ``max_results``; it feeds the
        [ReliabilityAggregator][uptimebrotr.core.aggregator.ReliabilityAggregator].
        """
        return [
            (ts, self.load(name))
            for name in self._files
            if (ts := self.timestamp_of(name)) >= start
        ]

    def query(self, query: HistoryQuery) -> list[list[Any]]:
        """Run a range query.

        Returns:
            ``[[timestamp_seconds, view], ...]`` ordered by time.

        Raises:
            HistoryQueryError: See [select()][uptimebrotr.core.history.HistorySnapshotter.select].
            PersistenceError: If an uncached snapshot cannot be read.
        """
        points: list[list[Any]] = []
        for name in self.select(query):
            points.append([round(self.timestamp_of(name)), _filter_view(self.load(name), query)])
        return points


def _filter_view(view: dict[str, Any], query: HistoryQuery) -> dict[str, Any]:
    filtered: dict[str, Any] | None = None
    if query.gateway:
        gateways = view.get(TargetCategory.GATEWAY.value) or {}
        filtered = {TargetCategory.GATEWAY.value: {query.gateway: gateways.get(query.gateway)}}
    if query.node:
        nodes = view.get(TargetCategory.APPLICATION_NODE.value) or {}
        filtered = {
            **(filtered or {}),
            TargetCategory.APPLICATION_NODE.value: {query.node: nodes.get(query.node)},
        }
    if filtered is None:
        filtered = dict(view)
    if query.include:
        filtered = {k: v for k, v in filtered.items() if k in query.include}
    return filtered
