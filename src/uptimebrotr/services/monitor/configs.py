"""Monitor service configuration models.

See Also:
    [Monitor][uptimebrotr.services.monitor.Monitor]: The service class
        that consumes these configurations.
    [BaseServiceConfig][uptimebrotr.core.base_service.BaseServiceConfig]:
        Base class providing ``interval``, ``max_consecutive_failures``,
        and ``metrics`` fields.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field, model_validator

from uptimebrotr.core.base_service import BaseServiceConfig
from uptimebrotr.probes import (
    ContentRoundTripConfig,
    ContentRoutingConfig,
    ListenerConfig,
    NameRecordConfig,
    NameResolutionConfig,
    PreviewConfig,
    PubSubRoundTripConfig,
    SnapshotConfig,
    StaticContentConfig,
)


DEFAULT_KUBO_API_URL = "http://127.0.0.1:5001/api/v0"


class Discipline(StrEnum):
    """How one tick iterates its targets.

    Attributes:
        FAN_OUT: All targets probed concurrently.
        SEQUENTIAL: One target at a time, optionally spaced by ``delay``.
    """

    FAN_OUT = "fan_out"
    SEQUENTIAL = "sequential"


class CategorySchedule(BaseModel):
    """Timer and iteration discipline of one probe kind.

    For schedules probing endpoint x node pairs (gateway snapshots, router
    node lookups), the discipline applies to the endpoints; the nodes of
    one endpoint are always probed sequentially, spaced by ``delay``.
    """

    enabled: bool = Field(default=True)
    interval: float = Field(default=600.0, ge=1.0, description="Seconds between ticks")
    discipline: Discipline = Field(default=Discipline.FAN_OUT)
    warmup: float = Field(default=0.0, ge=0.0, description="Seconds before the first tick")
    delay: float = Field(default=0.0, ge=0.0, description="Seconds between sequential targets")
    max_tasks: int | None = Field(
        default=None, ge=1, description="Concurrency limit for fan-out (unlimited if unset)"
    )

    @model_validator(mode="after")
    def _validate_max_tasks(self) -> CategorySchedule:
        if self.max_tasks is not None and self.discipline is Discipline.SEQUENTIAL:
            raise ValueError("max_tasks only applies to the fan_out discipline")
        return self


def _schedule(**kwargs: object) -> CategorySchedule:
    return CategorySchedule.model_validate(kwargs)


class MonitorSchedules(BaseModel):
    """One schedule per probe kind.

    Schedules that need node records delay their first tick so that
    [NameRecordProbe][uptimebrotr.probes.NameRecordProbe] has run first.
    """

    node_records: CategorySchedule = Field(default_factory=lambda: _schedule(interval=300))
    gateways: CategorySchedule = Field(default_factory=lambda: _schedule(interval=600))
    gateway_snapshots: CategorySchedule = Field(
        default_factory=lambda: _schedule(interval=600, warmup=120)
    )
    routers: CategorySchedule = Field(default_factory=lambda: _schedule(interval=600))
    router_nodes: CategorySchedule = Field(
        default_factory=lambda: _schedule(interval=600, warmup=120)
    )
    relays: CategorySchedule = Field(default_factory=lambda: _schedule(interval=600))
    name_services: CategorySchedule = Field(default_factory=lambda: _schedule(interval=300))
    static_pages: CategorySchedule = Field(default_factory=lambda: _schedule(interval=60))
    previewers: CategorySchedule = Field(
        default_factory=lambda: _schedule(interval=600, warmup=120)
    )


class ListenerSettings(ListenerConfig):
    """[ListenerConfig][uptimebrotr.probes.ListenerConfig] plus an on/off switch."""

    enabled: bool = Field(default=True)


class MonitorConfig(BaseServiceConfig):
    """Configuration for the Monitor service.

    Attributes:
        kubo_api_url: RPC URL of the write-capable node synthetic content
            is added to.
        reference_relay_url: RPC URL of the reference relay used by the
            pub/sub round trip.
        listener_relay_url: RPC URL the persistent listener subscribes
            through; the reference relay when unset.
        schedules: Per probe kind timers.
    """

    kubo_api_url: str = Field(default=DEFAULT_KUBO_API_URL, min_length=1)
    reference_relay_url: str = Field(default=DEFAULT_KUBO_API_URL, min_length=1)
    listener_relay_url: str | None = Field(default=None)
    schedules: MonitorSchedules = Field(default_factory=MonitorSchedules)

    content: ContentRoundTripConfig = Field(default_factory=ContentRoundTripConfig)
    routing: ContentRoutingConfig = Field(default_factory=ContentRoutingConfig)
    pubsub: PubSubRoundTripConfig = Field(default_factory=PubSubRoundTripConfig)
    listener: ListenerSettings = Field(default_factory=ListenerSettings)
    names: NameResolutionConfig = Field(default_factory=NameResolutionConfig)
    snapshot: SnapshotConfig = Field(default_factory=SnapshotConfig)
    records: NameRecordConfig = Field(default_factory=NameRecordConfig)
    static: StaticContentConfig = Field(default_factory=StaticContentConfig)
    preview: PreviewConfig = Field(default_factory=PreviewConfig)

    @property
    def resolved_listener_relay_url(self) -> str:
        return self.listener_relay_url or self.reference_relay_url
