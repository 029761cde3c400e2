"""Protocol probes: one verification strategy per endpoint category.

Every probe subclasses [BaseProbe][uptimebrotr.probes.base.BaseProbe],
whose [run()][uptimebrotr.probes.base.BaseProbe.run] never raises: failures
become a [ProbeOutcome][uptimebrotr.models.ProbeOutcome] with
``success=False`` and a reason. The [Monitor][uptimebrotr.services.monitor.Monitor]
schedules them.

Attributes:
    ContentRoundTripProbe: Write through the reference node, read back
        through a gateway (``comment_fetch``).
    DomainSnapshotProbe: Fetch a node record through a gateway and check
        its signer (``snapshot_fetch``).
    ContentRoutingProbe: Announce and read back a provider record on a
        router (``get_providers_fetch``).
    NodeProvidersProbe: Count a router's providers for a node's record
        topic (``node_providers_fetch``).
    PubSubRoundTripProbe: Two-way publish/subscribe through a relay
        (``pubsub_round_trip``).
    PersistentListenProbe: Long-lived node topic subscriptions with
        challenge rechecks (``challenge_publish``).
    NameResolutionProbe: Resolve a name's text record to an address
        (``resolve_address``).
    NameRecordProbe: Fetch each node's latest record through the reference
        gateway (``record_fetch``).
    StaticContentProbe: Match a regex in a web page (``webpage_fetch``).
    PreviewProbe: Render a recent post through a previewer (``preview_fetch``).
"""

from .base import (
    PROBE_ERRORS,
    AttemptCounter,
    BaseProbe,
    describe_error,
    fetch_with_retries,
    random_string,
)
from .content import ContentRoundTripConfig, ContentRoundTripProbe, synthetic_comment
from .listen import ListenerConfig, PersistentListenProbe, build_challenge_request
from .names import NameResolutionConfig, NameResolutionProbe
from .pubsub import PubSubRoundTripConfig, PubSubRoundTripProbe
from .records import NameRecordConfig, NameRecordProbe
from .routing import (
    ContentRoutingConfig,
    ContentRoutingProbe,
    NodeProvidersProbe,
    fetch_providers,
    fetch_providers_fan_out,
    fetch_providers_with_fallback,
)
from .snapshot import DomainSnapshotProbe, SnapshotConfig
from .static import PreviewConfig, PreviewProbe, StaticContentConfig, StaticContentProbe


__all__ = [
    "PROBE_ERRORS",
    "AttemptCounter",
    "BaseProbe",
    "ContentRoundTripConfig",
    "ContentRoundTripProbe",
    "ContentRoutingConfig",
    "ContentRoutingProbe",
    "DomainSnapshotProbe",
    "ListenerConfig",
    "NameRecordConfig",
    "NameRecordProbe",
    "NameResolutionConfig",
    "NameResolutionProbe",
    "NodeProvidersProbe",
    "PersistentListenProbe",
    "PreviewConfig",
    "PreviewProbe",
    "PubSubRoundTripConfig",
    "PubSubRoundTripProbe",
    "SnapshotConfig",
    "StaticContentConfig",
    "StaticContentProbe",
    "build_challenge_request",
    "describe_error",
    "fetch_providers",
    "fetch_providers_fan_out",
    "fetch_providers_with_fallback",
    "fetch_with_retries",
    "random_string",
    "synthetic_comment",
]
