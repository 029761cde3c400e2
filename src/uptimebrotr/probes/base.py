"""
Common probe contract and shared helpers.

Every probe implements [probe()][uptimebrotr.probes.base.BaseProbe.probe]
and is invoked through [run()][uptimebrotr.probes.base.BaseProbe.run],
which never raises except for ``asyncio.CancelledError``: expected failures
(network, timeouts, verification mismatches, malformed bodies) become a
failed [ProbeOutcome][uptimebrotr.models.ProbeOutcome] carrying the
reason, logged with the mismatch detail.

[record()][uptimebrotr.probes.base.BaseProbe.record] applies an outcome to
the [StateStore][uptimebrotr.core.state.StateStore] (run counter by
increment, zero-filled fields by merge) and to the
[ProbeMetrics][uptimebrotr.core.metrics.ProbeMetrics] exporter.
[execute()][uptimebrotr.probes.base.BaseProbe.execute] does both and is
what the scheduler calls.
"""

from __future__ import annotations

import secrets
import string
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, ClassVar, TypeVar

import aiohttp

from uptimebrotr.core.logger import Logger
from uptimebrotr.exceptions import PrerequisiteMissing, UptimeBrotrError
from uptimebrotr.models import PUBLIC_KEY_FIELD, ProbeOutcome, TargetCategory, count_field


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from uptimebrotr.core.ledger import Ledger
    from uptimebrotr.models import Target


T = TypeVar("T")

# Exceptions a probe converts into a failed outcome
PROBE_ERRORS: tuple[type[BaseException], ...] = (
    UptimeBrotrError,
    TimeoutError,
    OSError,
    aiohttp.ClientError,
    ValueError,
    KeyError,
    TypeError,
)

_RANDOM_ALPHABET = string.ascii_lowercase + string.digits


def random_string(length: int = 12) -> str:
    """Random lowercase alphanumeric string for synthetic content."""
    return "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(length))


def describe_error(error: BaseException) -> str:
    """Readable failure reason, falling back to the exception type."""
    return str(error) or type(error).__name__


# ---------------------------------------------------------------------------
# Retry helper
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class AttemptCounter:
    """Mutable attempt count, readable after a retried call failed."""

    count: int = 0


async def fetch_with_retries(
    fetch: Callable[[], Awaitable[T]],
    retries: int,
    counter: AttemptCounter | None = None,
) -> tuple[T, int]:
    """Call *fetch* until it succeeds or the retries are exhausted.

    The attempt counter is incremented before each try and retries are
    immediate. The last error is re-raised once ``attempts > retries``, so
    ``retries=3`` allows at most 4 tries.

    Args:
        fetch: Coroutine factory performing one try.
        retries: Number of retries after the first try.
        counter: Optional counter shared with the caller, so the attempt
            count is known even when the final error propagates.

    Returns:
        ``(value, attempts)``.
    """
    counter = counter if counter is not None else AttemptCounter()
    while True:
        counter.count += 1
        try:
            return await fetch(), counter.count
        except PROBE_ERRORS:
            if counter.count > retries:
                raise


# ---------------------------------------------------------------------------
# Base probe
# ---------------------------------------------------------------------------


class BaseProbe(ABC):
    """Protocol-specific verification routine producing one outcome per run.

    Attributes:
        CATEGORY: Category whose state entry receives the outcome.
        PROBE: Field prefix of the outcome (``comment_fetch``, ...).
        PAYLOAD_DEFAULTS: Numeric payload fields written as zero when a run
            fails, so a target that never succeeded still carries them.
    """

    CATEGORY: ClassVar[TargetCategory]
    PROBE: ClassVar[str]
    PAYLOAD_DEFAULTS: ClassVar[Mapping[str, Any]] = MappingProxyType({})

    def __init__(self, ledger: Ledger) -> None:
        self._ledger = ledger
        self._logger = Logger("probes").bind(probe=self.PROBE)

    @property
    def ledger(self) -> Ledger:
        return self._ledger

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    def prerequisites(self, target: Target) -> None:  # noqa: B027
        """Raise if *target* cannot be probed yet.

        Raises:
            PrerequisiteMissing: If input data for *target* is missing.
        """

    def state_location(self, target: Target) -> tuple[TargetCategory, str, tuple[str, ...]]:
        """``(category, identity, path)`` of the state entry for *target*."""
        return self.CATEGORY, target.identity, ()

    def labels(self, target: Target) -> tuple[str, ...]:
        """Metric label values for *target*, in table order."""
        return (target.identity,)

    def derived_fields(self, outcome: ProbeOutcome) -> dict[str, Any]:
        """Extra fields computed from an outcome at record time."""
        return {}

    def node_state(self, node: Target) -> dict[str, Any]:
        """Current state fields of an application node."""
        return self._ledger.state.get(TargetCategory.APPLICATION_NODE, node.identity)

    def require_public_key(self, node: Target) -> str:
        """Return the public key recorded for *node*.

        Raises:
            PrerequisiteMissing: If no record has been fetched for it yet.
        """
        public_key = self.node_state(node).get(PUBLIC_KEY_FIELD)
        if not isinstance(public_key, str) or not public_key:
            raise PrerequisiteMissing(f"no public key recorded for node '{node.identity}' yet")
        return public_key

    @abstractmethod
    async def probe(self, target: Target, attempts: AttemptCounter) -> ProbeOutcome:
        """Perform the round trip; may raise any of ``PROBE_ERRORS``.

        Implementations increment *attempts* (directly or through
        [fetch_with_retries][uptimebrotr.probes.base.fetch_with_retries])
        so a failure reports how many tries were made.
        """

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    async def run(self, target: Target) -> ProbeOutcome:
        """Run the probe once against *target*; never raises."""
        attempts = AttemptCounter()
        try:
            self.prerequisites(target)
            return await self.probe(target, attempts)
        except PROBE_ERRORS as e:
            reason = describe_error(e)
            if isinstance(e, PrerequisiteMissing):
                self._logger.debug("probe_skipped", target=target.identity, reason=reason)
            else:
                self._logger.warning("probe_failed", target=target.identity, reason=reason)
            return ProbeOutcome.failed(
                target.identity, self.PROBE, reason, attempts=max(attempts.count, 1)
            )

    def record(
        self,
        target: Target,
        outcome: ProbeOutcome,
        extra: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Apply *outcome* to the state store and the metrics exporter.

        Returns:
            The fields merged into state (without the run counter).
        """
        category, identity, path = self.state_location(target)
        defaults = {} if outcome.success else dict(self.PAYLOAD_DEFAULTS)
        fields = {
            **defaults,
            **outcome.to_fields(),
            **self.derived_fields(outcome),
            **(extra or {}),
        }
        state = self._ledger.state
        state.increment(category, identity, count_field(self.PROBE), path=path)
        state.merge(category, identity, fields, path=path)
        self._ledger.metrics.observe(category, outcome, self.labels(target), fields)
        return fields

    async def execute(self, target: Target) -> ProbeOutcome:
        """Run the probe once and record its outcome."""
        outcome = await self.run(target)
        self.record(target, outcome)
        if outcome.success:
            self._logger.info(
                "probe_succeeded",
                target=target.identity,
                latency=round(outcome.latency or 0.0, 3),
                attempts=outcome.attempts,
            )
        return outcome


def elapsed(start: float) -> float:
    """Seconds since *start* (a ``time.monotonic()`` reading)."""
    return time.monotonic() - start
