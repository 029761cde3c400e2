"""Pure frozen dataclasses with zero I/O for targets and probe outcomes.

The models layer is the foundation of the diamond DAG. It depends only on
the Python standard library. Every model uses
``@dataclass(frozen=True, slots=True)`` and validates in ``__post_init__``
so invalid instances never escape the constructor.

Attributes:
    Target: A monitored endpoint, classified by
        [TargetCategory][uptimebrotr.models.constants.TargetCategory].
    ProbeOutcome: Success flag, latency, attempts and payload of a single
        probe run, rendered to zero-filled state fields.
    ServiceName: Service identifiers used in logs and metrics.
"""

from .constants import PUBLIC_KEY_FIELD, PUBSUB_TOPIC_FIELD, ServiceName, TargetCategory
from .outcome import (
    ProbeOutcome,
    attempts_field,
    count_field,
    success_field,
    time_field,
    timestamp_field,
)
from .target import Target


__all__ = [
    "PUBLIC_KEY_FIELD",
    "PUBSUB_TOPIC_FIELD",
    "ProbeOutcome",
    "ServiceName",
    "Target",
    "TargetCategory",
    "attempts_field",
    "count_field",
    "success_field",
    "time_field",
    "timestamp_field",
]
