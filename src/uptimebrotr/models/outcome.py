"""Probe outcome model.

A [ProbeOutcome][uptimebrotr.models.outcome.ProbeOutcome] is produced once
per probe invocation and consumed by the
[StateStore][uptimebrotr.core.state.StateStore] and the
[ProbeMetrics][uptimebrotr.core.metrics.ProbeMetrics] exporter. It is not
retained itself: only its effect on state and history is.

State fields are named after the probe's field prefix. For a probe named
``comment_fetch``:

```text
comment_fetch_count                 counter, merged by increment
last_comment_fetch_success          bool
last_comment_fetch_time             seconds, 0 on failure
last_comment_fetch_attempt_count    int
last_comment_fetch_timestamp        unix seconds of the run
```
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ._validation import (
    deep_freeze,
    thaw,
    validate_instance,
    validate_mapping,
    validate_non_negative_number,
    validate_str_not_empty,
    validate_timestamp,
)


if TYPE_CHECKING:
    from collections.abc import Mapping


def count_field(probe: str) -> str:
    """Name of the monotonic run counter for *probe*."""
    return f"{probe}_count"


def success_field(probe: str) -> str:
    """Name of the last-success flag for *probe*."""
    return f"last_{probe}_success"


def time_field(probe: str) -> str:
    """Name of the last-latency field for *probe*."""
    return f"last_{probe}_time"


def attempts_field(probe: str) -> str:
    """Name of the last-attempt-count field for *probe*."""
    return f"last_{probe}_attempt_count"


def timestamp_field(probe: str) -> str:
    """Name of the last-run timestamp field for *probe*."""
    return f"last_{probe}_timestamp"


@dataclass(frozen=True, slots=True)
class ProbeOutcome:
    """Result of a single probe invocation.

    Attributes:
        identity: Identity of the probed target.
        probe: Field prefix of the probe (e.g. ``comment_fetch``).
        timestamp: Unix timestamp (seconds) of the run.
        success: Whether the round trip was verified.
        latency: Seconds from the measured start to verified completion.
            ``None`` on failure.
        attempts: Number of tries performed (1 for single-shot probes).
        payload: Extra structured fields merged into state (peer counts,
            freshness timestamps, ...).
        reason: Failure description for logging. ``None`` on success.

    Raises:
        ValueError: If a successful outcome has no latency, or a field is
            out of range.
    """

    identity: str
    probe: str
    success: bool
    latency: float | None = None
    attempts: int = 1
    timestamp: int = field(default_factory=lambda: int(time.time()))
    payload: Mapping[str, Any] = field(default_factory=dict)
    reason: str | None = None

    def __post_init__(self) -> None:
        validate_str_not_empty(self.identity, "identity")
        validate_str_not_empty(self.probe, "probe")
        validate_instance(self.success, bool, "success")
        validate_timestamp(self.timestamp, "timestamp")
        validate_timestamp(self.attempts, "attempts")
        validate_mapping(self.payload, "payload")
        if self.latency is not None:
            validate_non_negative_number(self.latency, "latency")
        if self.success and self.latency is None:
            raise ValueError("successful outcome requires a latency")
        if not self.success and self.latency is not None:
            object.__setattr__(self, "latency", None)
        object.__setattr__(self, "payload", deep_freeze(self.payload))

    @classmethod
    def ok(
        cls,
        identity: str,
        probe: str,
        latency: float,
        *,
        attempts: int = 1,
        payload: Mapping[str, Any] | None = None,
    ) -> ProbeOutcome:
        """Build a successful outcome."""
        return cls(
            identity=identity,
            probe=probe,
            success=True,
            latency=latency,
            attempts=attempts,
            payload=payload or {},
        )

    @classmethod
    def failed(
        cls,
        identity: str,
        probe: str,
        reason: str,
        *,
        attempts: int = 1,
        payload: Mapping[str, Any] | None = None,
    ) -> ProbeOutcome:
        """Build a failed outcome carrying a descriptive *reason*."""
        return cls(
            identity=identity,
            probe=probe,
            success=False,
            attempts=attempts,
            payload=payload or {},
            reason=reason,
        )

    def to_fields(self) -> dict[str, Any]:
        """Render the zero-filled state fields for this outcome.

        Failures report ``0`` latency instead of omitting the field, so that
        aggregation arithmetic never meets a missing value. The run counter
        is not included: it is merged by increment.
        """
        return {
            success_field(self.probe): self.success,
            time_field(self.probe): self.latency if self.latency is not None else 0,
            attempts_field(self.probe): self.attempts,
            timestamp_field(self.probe): self.timestamp,
            **thaw(self.payload),
        }
