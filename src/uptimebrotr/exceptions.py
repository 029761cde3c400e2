"""UptimeBrotr exception hierarchy.

Provides typed exceptions for every error category so that probes, the
scheduler, and the persistence layer can distinguish transient network
trouble from semantic verification failures and configuration mistakes,
while letting ``CancelledError`` propagate untouched.

Exception hierarchy:

```text
UptimeBrotrError (base -- never raised directly)
├── ConfigurationError       -- config validation, missing endpoint lists
├── PersistenceError         -- state/history read or write failures
├── DecodingError            -- malformed identity, key, or CID input
├── ConnectivityError        -- endpoint unreachable, non-JSON body, bad status
│   └── ProbeTimeoutError    -- probe step exceeded its fixed timeout
├── VerificationError        -- response received but content does not match
├── RoutingError             -- every routing source failed (combined reasons)
├── RegistryError            -- descriptor document rejected / all sources failed
├── HistoryQueryError        -- history query too large or malformed
└── PrerequisiteMissing      -- target skipped until its input data exists
```

This module sits at the package root, below every layer, so that
``models``, ``utils``, ``core``, ``probes`` and ``services`` can all raise
and catch the same types.

See Also:
    [BaseProbe][uptimebrotr.probes.base.BaseProbe]: Converts every
        [UptimeBrotrError][uptimebrotr.exceptions.UptimeBrotrError] into a
        failed [ProbeOutcome][uptimebrotr.models.outcome.ProbeOutcome].
    [BaseService][uptimebrotr.core.base_service.BaseService]: Catches
        errors escaping a cycle in
        [run_forever()][uptimebrotr.core.base_service.BaseService.run_forever].
"""

from __future__ import annotations


class UptimeBrotrError(Exception):
    """Base exception for all UptimeBrotr errors.

    Never raised directly -- always use a specific subclass.
    """


# ---------------------------------------------------------------------------
# Configuration and persistence
# ---------------------------------------------------------------------------


class ConfigurationError(UptimeBrotrError):
    """Invalid or missing configuration (YAML, env vars, CLI flags).

    Fatal at startup for the dependent category only.

    See Also:
        [load_yaml()][uptimebrotr.core.yaml.load_yaml]: YAML loading.
    """


class PersistenceError(UptimeBrotrError):
    """Failed to read or write durable state or a history snapshot.

    Always logged; the process keeps serving from in-memory state.

    See Also:
        [StateStore][uptimebrotr.core.state.StateStore]: Raises this on
            unreadable state documents.
        [HistorySnapshotter][uptimebrotr.core.history.HistorySnapshotter]:
            Raises this on unreadable snapshot files.
    """


class DecodingError(UptimeBrotrError, ValueError):
    """Malformed identity, public key, or content identifier.

    Raised by the pure key derivation functions; never retried.

    See Also:
        [uptimebrotr.utils.keys][]: Key derivation functions.
    """


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


class ConnectivityError(UptimeBrotrError):
    """Transient network failure: unreachable endpoint, bad status, non-JSON body.

    See Also:
        [fetch_json()][uptimebrotr.utils.http.fetch_json]: Raises this for
            bodies that do not parse as JSON.
    """


class ProbeTimeoutError(ConnectivityError):
    """A probe step exceeded its fixed timeout."""


class VerificationError(UptimeBrotrError):
    """A response arrived but its content, signature, or identity is wrong.

    Reported exactly like a transient failure, but logged with the
    mismatch detail.
    """


class RoutingError(UptimeBrotrError):
    """Every routing source failed; the message joins each source's reason.

    See Also:
        [fetch_providers_fan_out()][uptimebrotr.probes.routing.fetch_providers_fan_out]:
            Raises this when zero usable results were obtained.
    """


# ---------------------------------------------------------------------------
# Registry, history, scheduling
# ---------------------------------------------------------------------------


class RegistryError(UptimeBrotrError):
    """Descriptor document rejected, or no descriptor source succeeded.

    See Also:
        [TargetRegistry.refresh()][uptimebrotr.core.registry.TargetRegistry.refresh]
    """


class HistoryQueryError(UptimeBrotrError):
    """History query exceeds the result limit or carries bad parameters.

    See Also:
        [HistorySnapshotter.query()][uptimebrotr.core.history.HistorySnapshotter.query]
    """


class PrerequisiteMissing(UptimeBrotrError):
    """A target cannot be probed yet because input data is still missing.

    The scheduler skips the target for the current tick without counting
    a failure; it is tried again on the next tick.
    """
