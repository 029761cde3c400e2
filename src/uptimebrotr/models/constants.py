"""Shared constants for the models layer.

See Also:
    [Target][uptimebrotr.models.target.Target]: Classified by
        [TargetCategory][uptimebrotr.models.constants.TargetCategory].
    [BaseService][uptimebrotr.core.base_service.BaseService]: Uses
        [ServiceName][uptimebrotr.models.constants.ServiceName] for logging
        and metrics labels.
"""

from __future__ import annotations

from enum import StrEnum


class TargetCategory(StrEnum):
    """Endpoint category of a monitored [Target][uptimebrotr.models.target.Target].

    The value doubles as the top-level key of the health state document
    and of the HTTP snapshot view.

    Attributes:
        APPLICATION_NODE: A network identity publishing mutable records and
            pub/sub traffic (refreshed from descriptor documents).
        GATEWAY: HTTP content gateway serving ``/ipfs`` and ``/ipns`` paths.
        CONTENT_ROUTER: Delegated routing service answering provider queries.
        RELAY: Pub/sub provider exposing a node RPC API.
        NAME_SERVICE: External resolver turning human-readable names into
            text records.
        STATIC_PAGE: Plain web page checked with a regex.
        PREVIEWER: Link-preview service rendering application content.
    """

    APPLICATION_NODE = "application_node"
    GATEWAY = "gateway"
    CONTENT_ROUTER = "content_router"
    RELAY = "relay"
    NAME_SERVICE = "name_service"
    STATIC_PAGE = "static_page"
    PREVIEWER = "previewer"


class ServiceName(StrEnum):
    """Canonical service identifiers used in logging and metrics.

    Attributes:
        MONITOR: Probe scheduler
            ([Monitor][uptimebrotr.services.monitor.Monitor]).
        ARCHIVER: State persistence and history snapshots
            ([Archiver][uptimebrotr.services.archiver.Archiver]).
        API: HTTP snapshot, history and metrics surface
            ([Api][uptimebrotr.services.api.Api]).
    """

    MONITOR = "monitor"
    ARCHIVER = "archiver"
    API = "api"


# Signed-record field names shared by probes and the view builder
PUBLIC_KEY_FIELD = "public_key"
PUBSUB_TOPIC_FIELD = "pubsub_topic"
