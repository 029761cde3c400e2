"""Api service configuration models.

See Also:
    [Api][uptimebrotr.services.api.Api]: The service class that consumes
        these configurations.
    [BaseServiceConfig][uptimebrotr.core.base_service.BaseServiceConfig]:
        Base class providing ``interval``, ``max_consecutive_failures``,
        and ``metrics`` fields.
"""

from __future__ import annotations

from pydantic import Field

from uptimebrotr.core.base_service import BaseServiceConfig


class ApiConfig(BaseServiceConfig):
    """Configuration for the Api service.

    Attributes:
        host: Bind address for the HTTP server.
        port: Port for the HTTP server.
        cors_origins: Allowed CORS origins. Empty list disables CORS.
        reload_state: Reload the persisted state every cycle. Only useful
            when the Api runs in its own process next to a Monitor; in
            ``uptimebrotr all`` the state is shared in memory.
    """

    host: str = Field(default="0.0.0.0", min_length=1, description="HTTP bind address")  # noqa: S104
    port: int = Field(default=8080, ge=1, le=65535, description="HTTP port")
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    reload_state: bool = Field(default=False, description="Reload state.json every cycle")
