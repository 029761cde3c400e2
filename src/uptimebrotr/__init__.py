r"""UptimeBrotr -- Synthetic round-trip uptime monitoring.

Probes the infrastructure of a content-addressed pub/sub network
(gateways, content routers, relays, name services, application nodes,
static pages and previewers) with synthetic round trips, keeps the last
outcome of every probe in a health state, snapshots it into an immutable
history and serves both over HTTP.

Architecture follows a **diamond DAG** dependency structure where imports
flow strictly downward:

```text
              services         Monitor, Archiver, Api
             /   |   \
          core probes utils    Ledger and state | probe strategies | keys, HTTP, RPC
             \   |   /
              models           Pure frozen dataclasses (zero I/O)
```

Attributes:
    models: Targets, probe outcomes and field naming. Zero I/O.
    core: Ledger, state store, registry, history, aggregator, base
        service, logging, metrics.
    probes: One verification strategy per endpoint category.
    utils: Key derivation, bounded HTTP, node RPC client, DNS.
    services: Long-running services sharing one Ledger.

Note:
    Top-level imports (``from uptimebrotr import Monitor``) use lazy
    loading and resolve on first access.
"""

import importlib
from importlib.metadata import version as _get_version


__version__ = _get_version("uptimebrotr")

__all__ = [
    "Api",
    "ApiConfig",
    "Archiver",
    "ArchiverConfig",
    "BaseService",
    "ConfigT",
    "Ledger",
    "LedgerConfig",
    "Logger",
    "Monitor",
    "MonitorConfig",
    "ProbeOutcome",
    "Target",
    "TargetCategory",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseService": ("uptimebrotr.core", "BaseService"),
    "ConfigT": ("uptimebrotr.core", "ConfigT"),
    "Ledger": ("uptimebrotr.core", "Ledger"),
    "LedgerConfig": ("uptimebrotr.core", "LedgerConfig"),
    "Logger": ("uptimebrotr.core", "Logger"),
    "ProbeOutcome": ("uptimebrotr.models", "ProbeOutcome"),
    "Target": ("uptimebrotr.models", "Target"),
    "TargetCategory": ("uptimebrotr.models", "TargetCategory"),
    "Api": ("uptimebrotr.services", "Api"),
    "ApiConfig": ("uptimebrotr.services", "ApiConfig"),
    "Archiver": ("uptimebrotr.services", "Archiver"),
    "ArchiverConfig": ("uptimebrotr.services", "ArchiverConfig"),
    "Monitor": ("uptimebrotr.services", "Monitor"),
    "MonitorConfig": ("uptimebrotr.services", "MonitorConfig"),
}


def __getattr__(name: str) -> object:
    if name in _LAZY_IMPORTS:
        module_path, attr_name = _LAZY_IMPORTS[name]
        module = importlib.import_module(module_path)
        value = getattr(module, attr_name)
        globals()[name] = value  # Cache for subsequent access
        return value
    raise AttributeError(f"module 'uptimebrotr' has no attribute {name!r}")


def __dir__() -> list[str]:
    return __all__
