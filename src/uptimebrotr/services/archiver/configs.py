"""Archiver service configuration models.

See Also:
    [Archiver][uptimebrotr.services.archiver.Archiver]: The service class
        that consumes these configurations.
    [BaseServiceConfig][uptimebrotr.core.base_service.BaseServiceConfig]:
        Base class providing ``interval``, ``max_consecutive_failures``,
        and ``metrics`` fields. Here ``interval`` is the state save period.
"""

from __future__ import annotations

from pydantic import Field

from uptimebrotr.core.base_service import BaseServiceConfig


class ArchiverConfig(BaseServiceConfig):
    """Configuration for the Archiver service.

    Attributes:
        interval: Seconds between state saves.
        snapshot_interval: Seconds between history snapshots.
        cache_refresh_interval: Seconds between history cache refreshes.
        save_on_exit: Write the state once more when the service stops.
    """

    snapshot_interval: float = Field(
        default=60.0, ge=1.0, description="Seconds between history snapshots"
    )
    cache_refresh_interval: float = Field(
        default=300.0, ge=1.0, description="Seconds between history cache refreshes"
    )
    save_on_exit: bool = Field(default=True)
