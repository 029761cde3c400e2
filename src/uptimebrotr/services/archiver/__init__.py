"""Archiver service package.

Re-exports the public symbols::

    from uptimebrotr.services.archiver import Archiver, ArchiverConfig
"""

from .configs import ArchiverConfig
from .service import Archiver


__all__ = [
    "Archiver",
    "ArchiverConfig",
]
