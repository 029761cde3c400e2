"""
Rolling-window reliability statistics computed from history snapshots.

Statistics are never maintained as running aggregates. Each window is
recomputed on demand from the per-run outcomes reconstructed out of history
snapshots, then cached until the next history cache refresh.

Rules:

- success rate = successes / total, 0 when there are no runs;
- mean latency, median latency and mean attempts only consider
  successful runs and are 0 when there are none;
- the median is positional: ``sorted(latencies)[len // 2]``, never
  interpolated.

See Also:
    [HistorySnapshotter][uptimebrotr.core.history.HistorySnapshotter]:
        Source of snapshots and of the cache generation.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from uptimebrotr.models.outcome import (
    ProbeOutcome,
    attempts_field,
    count_field,
    success_field,
    time_field,
    timestamp_field,
)


if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from uptimebrotr.models.constants import TargetCategory

    from .history import HistorySnapshotter


DEFAULT_WINDOWS: tuple[int, ...] = (1, 6, 24)


@dataclass(frozen=True, slots=True)
class ReliabilityStats:
    """Reliability of one target probe over one lookback window."""

    window_hours: float
    total: int
    successes: int
    success_rate: float
    mean_latency: float
    median_latency: float
    mean_attempts: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def summarize(
    outcomes: Iterable[ProbeOutcome],
    window_hours: float,
    now: float | None = None,
) -> ReliabilityStats:
    """Aggregate the outcomes that fall inside the last *window_hours*.

    Args:
        outcomes: Per-run outcomes, in any order.
        window_hours: Lookback window in hours.
        now: Reference unix time; defaults to the current time.
    """
    now = time.time() if now is None else now
    start = now - window_hours * 3600
    runs = [o for o in outcomes if start <= o.timestamp <= now]
    succeeded = [o for o in runs if o.success and o.latency is not None]

    total = len(runs)
    successes = len(succeeded)
    if not successes:
        return ReliabilityStats(window_hours, total, 0, 0.0, 0.0, 0.0, 0.0)

    latencies = sorted(o.latency for o in succeeded if o.latency is not None)
    return ReliabilityStats(
        window_hours=window_hours,
        total=total,
        successes=successes,
        success_rate=successes / total,
        mean_latency=sum(latencies) / successes,
        median_latency=latencies[len(latencies) // 2],
        mean_attempts=sum(o.attempts for o in succeeded) / successes,
    )


def _entry_at(
    view: dict[str, Any],
    category: TargetCategory,
    identity: str,
    path: Sequence[str],
) -> dict[str, Any] | None:
    node: Any = view.get(category.value)
    for key in (identity, *path):
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node if isinstance(node, dict) else None


def outcomes_from_history(
    history: Iterable[tuple[float, dict[str, Any]]],
    category: TargetCategory,
    identity: str,
    probe: str,
    path: Sequence[str] = (),
) -> list[ProbeOutcome]:
    """Reconstruct per-run outcomes from a chronological series of snapshots.

    A snapshot contributes a run whenever the probe's run counter or its last
    run timestamp differs from the previous snapshot. Runs that happened
    between two snapshots are only seen through the last of them.

    Args:
        history: ``(timestamp_seconds, view)`` pairs, oldest first.
        category: Category of the target.
        identity: Target identity.
        probe: Field prefix of the probe.
        path: Nested per-target map holding the probe fields.
    """
    outcomes: list[ProbeOutcome] = []
    previous: tuple[Any, Any] | None = None
    for snapshot_ts, view in history:
        entry = _entry_at(view, category, identity, path)
        if entry is None or success_field(probe) not in entry:
            continue
        marker = (entry.get(count_field(probe)), entry.get(timestamp_field(probe)))
        if marker == previous:
            continue
        previous = marker

        success = bool(entry.get(success_field(probe)))
        latency = entry.get(time_field(probe))
        attempts = entry.get(attempts_field(probe))
        run_ts = entry.get(timestamp_field(probe))
        outcomes.append(
            ProbeOutcome(
                identity=identity,
                probe=probe,
                success=success and isinstance(latency, int | float),
                latency=float(latency) if success and isinstance(latency, int | float) else None,
                attempts=attempts if isinstance(attempts, int) and attempts >= 0 else 1,
                timestamp=int(run_ts) if isinstance(run_ts, int | float) else int(snapshot_ts),
            )
        )
    return outcomes


class ReliabilityAggregator:
    """Computes reliability windows on demand, cached per history refresh.

    The cache is dropped whenever the
    [HistorySnapshotter][uptimebrotr.core.history.HistorySnapshotter]
    generation changes, i.e. after every
    [refresh_cache()][uptimebrotr.core.history.HistorySnapshotter.refresh_cache].

    Args:
        history: Snapshot source.
        windows: Default lookback windows in hours.
    """

    def __init__(
        self,
        history: HistorySnapshotter,
        windows: Sequence[float] = DEFAULT_WINDOWS,
    ) -> None:
        self._history = history
        self.windows = tuple(windows)
        self._generation = -1
        self._snapshots: list[tuple[float, dict[str, Any]]] = []
        self._snapshots_since: float | None = None
        self._cache: dict[tuple[Any, ...], ReliabilityStats] = {}

    def _snapshots_for(self, start: float) -> list[tuple[float, dict[str, Any]]]:
        if self._history.generation != self._generation:
            self._generation = self._history.generation
            self._snapshots = []
            self._snapshots_since = None
            self._cache.clear()
        if self._snapshots_since is None or start < self._snapshots_since:
            self._snapshots = self._history.since(start)
            self._snapshots_since = start
        return [s for s in self._snapshots if s[0] >= start]

    def stats(
        self,
        category: TargetCategory,
        identity: str,
        probe: str,
        *,
        path: Sequence[str] = (),
        windows: Sequence[float] | None = None,
        now: float | None = None,
    ) -> list[ReliabilityStats]:
        """Return one [ReliabilityStats][uptimebrotr.core.aggregator.ReliabilityStats] per window.

        Raises:
            PersistenceError: If an uncached snapshot cannot be read.
        """
        now = time.time() if now is None else now
        hours = tuple(windows) if windows else self.windows
        if not hours:
            return []
        snapshots = self._snapshots_for(now - max(hours) * 3600)
        outcomes: list[ProbeOutcome] | None = None
        results: list[ReliabilityStats] = []
        for window in hours:
            key = (category, identity, probe, tuple(path), window)
            cached = self._cache.get(key)
            if cached is None:
                if outcomes is None:
                    outcomes = outcomes_from_history(snapshots, category, identity, probe, path)
                cached = self._cache[key] = summarize(outcomes, window, now)
            results.append(cached)
        return results
