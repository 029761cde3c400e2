"""Externally visible view of the health state.

[build_view][uptimebrotr.core.view.build_view] renders the state of the
targets currently in the registry, which is what the ``GET /`` endpoint
serves and what history snapshots capture. Targets dropped from the
registry disappear from the view but keep their state entry.

Peer lists stored on application nodes are rendered as counts, and a
``network`` aggregate sums node statistics and counts unique peers across
all nodes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from uptimebrotr.models import TargetCategory


if TYPE_CHECKING:
    from collections.abc import Iterable

    from .registry import TargetRegistry
    from .state import StateStore


NETWORK_KEY = "network"
STATS_FIELD = "stats"
PEER_LIST_FIELDS: tuple[str, ...] = ("pubsub_peers", "pubsub_dht_peers", "pubsub_router_peers")


def peer_count_field(peer_list_field: str) -> str:
    """``pubsub_dht_peers`` -> ``pubsub_dht_peer_count``."""
    return f"{peer_list_field.removesuffix('s')}_count"


def peer_key(peer: Any) -> str:
    """Identity of a peer given as a provider record or a bare id string."""
    if isinstance(peer, dict):
        return str(peer.get("ID") or peer)
    return str(peer)


def _node_entry(identity: str, fields: dict[str, Any]) -> dict[str, Any]:
    entry: dict[str, Any] = {"identity": identity}
    for key, value in fields.items():
        if key in PEER_LIST_FIELDS:
            entry[peer_count_field(key)] = len(value) if isinstance(value, list) else 0
        else:
            entry[key] = value
    return entry


def network_aggregate(nodes: Iterable[dict[str, Any]]) -> dict[str, Any]:
    """Sum node statistics and count unique peers across *nodes* (raw state entries)."""
    stats: dict[str, float] = {}
    peers: dict[str, set[str]] = {field: set() for field in PEER_LIST_FIELDS}
    node_count = 0
    for fields in nodes:
        node_count += 1
        node_stats = fields.get(STATS_FIELD)
        if isinstance(node_stats, dict):
            for name, value in node_stats.items():
                if isinstance(value, int | float) and not isinstance(value, bool):
                    stats[name] = stats.get(name, 0) + value
        for field in PEER_LIST_FIELDS:
            value = fields.get(field)
            if isinstance(value, list):
                peers[field].update(peer_key(peer) for peer in value)
    return {
        "node_count": node_count,
        STATS_FIELD: stats,
        **{peer_count_field(field): len(ids) for field, ids in peers.items()},
    }


def build_view(
    state: StateStore,
    registry: TargetRegistry,
    include: Iterable[str] | None = None,
) -> dict[str, Any]:
    """Render the current view.

    Args:
        state: Health state store.
        registry: Target registry deciding which targets are shown.
        include: Top-level keys to keep; all when empty or ``None``.

    Returns:
        ``{category: {identity: {"identity": ..., **fields}}, "network": {...}}``
    """
    view: dict[str, Any] = {}
    node_fields: list[dict[str, Any]] = []
    for category in TargetCategory:
        entries = state.category(category)
        rendered: dict[str, Any] = {}
        for target in registry.targets(category):
            fields = entries.get(target.identity) or {}
            if category is TargetCategory.APPLICATION_NODE:
                node_fields.append(fields)
                rendered[target.identity] = _node_entry(target.identity, fields)
            else:
                rendered[target.identity] = {"identity": target.identity, **fields}
        view[category.value] = rendered
    view[NETWORK_KEY] = network_aggregate(node_fields)

    keep = [key for key in include or () if key]
    if keep:
        view = {key: value for key, value in view.items() if key in keep}
    return view
