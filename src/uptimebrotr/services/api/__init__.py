"""Api service package.

Re-exports the public symbols::

    from uptimebrotr.services.api import Api, ApiConfig
"""

from .configs import ApiConfig
from .service import Api


__all__ = [
    "Api",
    "ApiConfig",
]
