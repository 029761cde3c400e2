"""Probe scheduler service.

See Also:
    [Monitor][uptimebrotr.services.monitor.service.Monitor]: The service class.
    [MonitorConfig][uptimebrotr.services.monitor.configs.MonitorConfig]:
        Service configuration.
"""

from .configs import (
    CategorySchedule,
    Discipline,
    ListenerSettings,
    MonitorConfig,
    MonitorSchedules,
)
from .service import Monitor


__all__ = [
    "CategorySchedule",
    "Discipline",
    "ListenerSettings",
    "Monitor",
    "MonitorConfig",
    "MonitorSchedules",
]
