"""Service layer: the long-running processes built on the core.

Attributes:
    Monitor: Probe scheduler, one timer per probe kind plus the persistent
        listener.
    Archiver: Periodic state saves, history snapshots and history cache
        refreshes.
    Api: FastAPI surface serving the current view, history, reliability
        windows and Prometheus metrics.

All services extend [BaseService][uptimebrotr.core.base_service.BaseService]
and share one [Ledger][uptimebrotr.core.ledger.Ledger].
"""

from .api import Api, ApiConfig
from .archiver import Archiver, ArchiverConfig
from .monitor import CategorySchedule, Discipline, Monitor, MonitorConfig, MonitorSchedules


__all__ = [
    "Api",
    "ApiConfig",
    "Archiver",
    "ArchiverConfig",
    "CategorySchedule",
    "Discipline",
    "Monitor",
    "MonitorConfig",
    "MonitorSchedules",
]
