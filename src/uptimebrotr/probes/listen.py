"""
Persistent pub/sub listening on application node topics.

Unlike the other probes, [PersistentListenProbe][uptimebrotr.probes.listen.PersistentListenProbe]
is not request/response. For every application node whose record has been
fetched (so its ``pubsub_topic`` and ``public_key`` are known) it keeps one
subscription open on the listening relay, reconnecting every
``reconnect_delay`` seconds after a transport failure. Every message
updates:

- ``pubsub_message_count`` (increment);
- ``last_pubsub_message_timestamp``;
- ``last_authoritative_message_timestamp`` when the message is signed by
  the node's own public key.

Four periodic operations are driven by the
[Monitor][uptimebrotr.services.monitor.Monitor]:

- [sync()][uptimebrotr.probes.listen.PersistentListenProbe.sync] starts and
  stops listeners as the registry and node records change;
- [lookup_all_peers()][uptimebrotr.probes.listen.PersistentListenProbe.lookup_all_peers]
  looks up the peers providing each topic (DHT with fallback, routers
  fanned out);
- [poll_peers()][uptimebrotr.probes.listen.PersistentListenProbe.poll_peers]
  records the relay's current topic peers;
- [recheck()][uptimebrotr.probes.listen.PersistentListenProbe.recheck]
  publishes a signed challenge request to every node that has been silent
  longer than ``staleness_window``, to tell a silent relay from an idle
  node. That publish is the probe's outcome (``challenge_publish``): it
  succeeds when the node answers on its topic within ``challenge_timeout``.
"""

from __future__ import annotations

import asyncio
import contextlib
import secrets
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import cbor2
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from pydantic import BaseModel, Field

from uptimebrotr.core.view import peer_count_field, peer_key
from uptimebrotr.exceptions import DecodingError, PrerequisiteMissing, ProbeTimeoutError
from uptimebrotr.models import (
    PUBLIC_KEY_FIELD,
    PUBSUB_TOPIC_FIELD,
    ProbeOutcome,
    TargetCategory,
)
from uptimebrotr.utils.keys import (
    decode_public_key,
    parse_peer_id,
    public_key_bytes_to_address,
    topic_to_routing_key,
)

from .base import PROBE_ERRORS, BaseProbe, elapsed
from .routing import fetch_providers_fan_out, fetch_providers_with_fallback


if TYPE_CHECKING:
    from collections.abc import Mapping

    from uptimebrotr.core.ledger import Ledger
    from uptimebrotr.models import Target
    from uptimebrotr.utils.kubo import KuboClient, PubSubMessage

    from .base import AttemptCounter


MESSAGE_COUNT_FIELD = "pubsub_message_count"
MESSAGE_TIMESTAMP_FIELD = "last_pubsub_message_timestamp"
AUTHORITATIVE_TIMESTAMP_FIELD = "last_authoritative_message_timestamp"
ERROR_COUNT_FIELD = "last_challenge_publish_error_count"

CHALLENGE_PROTOCOL_VERSION = "1.0.0"
CHALLENGE_SIGNED_PROPERTIES = (
    "type",
    "timestamp",
    "challengeRequestId",
    "acceptedChallengeTypes",
    "encrypted",
    "protocolVersion",
    "userAgent",
)


class ListenerConfig(BaseModel):
    """Settings of the persistent listener and its challenge rechecks."""

    reconnect_delay: float = Field(default=5.0, ge=0.1, description="Seconds between reconnects")
    staleness_window: float = Field(
        default=600.0,
        ge=1.0,
        description="A node silent for longer than this gets a challenge request",
    )
    recheck_interval: float = Field(default=300.0, ge=1.0, description="Seconds between rechecks")
    peers_interval: float = Field(default=10.0, ge=1.0, description="Seconds between peer polls")
    sync_interval: float = Field(
        default=60.0, ge=1.0, description="Seconds between listener syncs with the registry"
    )
    lookup_interval: float = Field(
        default=600.0, ge=1.0, description="Seconds between topic provider lookups"
    )
    challenge_timeout: float = Field(
        default=60.0, ge=1.0, description="Seconds to wait for a node's answer to a challenge"
    )
    lookup_timeout: float = Field(default=60.0, ge=1.0)
    dht_sources: list[str] = Field(
        default_factory=lambda: ["http://127.0.0.1:5001/api/v0"],
        description="Provider lookup sources tried in order",
    )
    router_sources: list[str] = Field(
        default_factory=list,
        description="Provider lookup sources queried together; the registry's routers when empty",
    )


def message_public_key(data: bytes) -> bytes | None:
    """Return the raw ``signature.publicKey`` of a CBOR pub/sub message, if any."""
    try:
        message = cbor2.loads(data)
    except (cbor2.CBORDecodeError, ValueError, TypeError, EOFError):
        return None
    signature = message.get("signature") if isinstance(message, dict) else None
    public_key = signature.get("publicKey") if isinstance(signature, dict) else None
    if isinstance(public_key, bytes):
        return public_key
    if isinstance(public_key, str):
        try:
            return decode_public_key(public_key)
        except DecodingError:
            return None
    return None


def build_challenge_request(user_agent: str = "/uptimebrotr/") -> bytes:
    """Encode a signed challenge request from a throwaway Ed25519 key.

    The payload is random: nodes cannot decrypt it, but they answer any
    well-formed, correctly signed request, which is what the recheck needs.
    """
    private_key = Ed25519PrivateKey.generate()
    public_key = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    request: dict[str, Any] = {
        "type": "CHALLENGEREQUEST",
        "timestamp": int(time.time()),
        "challengeRequestId": parse_peer_id(public_key_bytes_to_address(public_key)),
        "acceptedChallengeTypes": ["image/png"],
        "encrypted": {
            "ciphertext": secrets.token_bytes(64),
            "iv": secrets.token_bytes(12),
            "tag": secrets.token_bytes(16),
            "type": "ed25519-aes-gcm",
        },
        "protocolVersion": CHALLENGE_PROTOCOL_VERSION,
        "userAgent": user_agent,
    }
    signed = cbor2.dumps({name: request[name] for name in CHALLENGE_SIGNED_PROPERTIES})
    request["signature"] = {
        "signature": private_key.sign(signed),
        "publicKey": public_key,
        "type": "ed25519",
        "signedPropertyNames": list(CHALLENGE_SIGNED_PROPERTIES),
    }
    return cbor2.dumps(request)


@dataclass(slots=True)
class _Listener:
    node: Target
    topic: str
    public_key: str
    task: asyncio.Task[None]


class PersistentListenProbe(BaseProbe):
    """Listen on every node's topic and challenge silent nodes.

    Args:
        ledger: Shared ledger.
        relay: Node RPC client subscriptions and challenges go through.
        config: Listener settings.
    """

    CATEGORY = TargetCategory.APPLICATION_NODE
    PROBE = "challenge_publish"

    def __init__(
        self,
        ledger: Ledger,
        relay: KuboClient,
        config: ListenerConfig | None = None,
    ) -> None:
        super().__init__(ledger)
        self._relay = relay
        self._config = config or ListenerConfig()
        self._listeners: dict[str, _Listener] = {}
        self._answers: dict[str, asyncio.Event] = {}
        self._challenge_errors: dict[str, int] = {}

    @property
    def listening(self) -> list[str]:
        """Identities of the nodes currently listened to."""
        return sorted(self._listeners)

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def handle_message(self, node: Target, public_key: bytes, message: PubSubMessage) -> None:
        """Apply one received message to the node's state.

        Args:
            node: The node whose topic the message arrived on.
            public_key: The node's raw public key.
            message: The received message.
        """
        state = self._ledger.state
        metrics = self._ledger.metrics
        count = state.increment(TargetCategory.APPLICATION_NODE, node.identity, MESSAGE_COUNT_FIELD)
        now = round(time.time())
        fields: dict[str, int] = {MESSAGE_TIMESTAMP_FIELD: now}

        signer = message_public_key(message.data)
        if signer is not None and signer == public_key:
            fields[AUTHORITATIVE_TIMESTAMP_FIELD] = now
            self._answer_event(node.identity).set()

        state.merge(TargetCategory.APPLICATION_NODE, node.identity, fields)
        metrics.set_node_field(node.identity, MESSAGE_COUNT_FIELD, count)
        for field, value in fields.items():
            metrics.set_node_field(node.identity, field, value)

    def _answer_event(self, identity: str) -> asyncio.Event:
        return self._answers.setdefault(identity, asyncio.Event())

    # -------------------------------------------------------------------------
    # Listener lifecycle
    # -------------------------------------------------------------------------

    async def _listen(self, node: Target, topic: str, public_key: bytes) -> None:
        logger = self._logger.bind(node=node.identity)
        while True:
            lost = asyncio.Event()

            def on_error(error: Exception, lost: asyncio.Event = lost) -> None:
                logger.warning("listener_stream_failed", error=str(error))
                lost.set()

            subscription = None
            try:
                subscription = await self._relay.subscribe(
                    topic,
                    lambda message: self.handle_message(node, public_key, message),
                    on_error,
                )
                logger.info("listener_subscribed", topic=topic)
                await lost.wait()
            except PROBE_ERRORS as e:
                logger.warning("listener_subscribe_failed", error=str(e))
            finally:
                if subscription is not None:
                    await subscription.close()
            await asyncio.sleep(self._config.reconnect_delay)

    def _start_listener(self, node: Target, topic: str, public_key: str) -> None:
        try:
            raw_key = decode_public_key(public_key)
        except DecodingError as e:
            self._logger.warning("listener_key_invalid", node=node.identity, error=str(e))
            return
        task = asyncio.create_task(self._listen(node, topic, raw_key))
        self._listeners[node.identity] = _Listener(node, topic, public_key, task)

    async def _stop_listener(self, identity: str) -> None:
        listener = self._listeners.pop(identity, None)
        if listener is None:
            return
        listener.task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await listener.task

    async def stop(self) -> None:
        """Close every subscription."""
        for identity in list(self._listeners):
            await self._stop_listener(identity)

    async def sync(self) -> None:
        """Align listeners with the registry and the recorded node keys and topics.

        Nodes without a known topic or public key are skipped until their
        record has been fetched.
        """
        nodes = {
            node.identity: node
            for node in self._ledger.registry.targets(TargetCategory.APPLICATION_NODE)
        }
        for identity in list(self._listeners):
            if identity not in nodes:
                await self._stop_listener(identity)
        # Nodes dropped from the registry
        for identity in [i for i in self._answers if i not in nodes]:
            del self._answers[identity]
        for identity in [i for i in self._challenge_errors if i not in nodes]:
            del self._challenge_errors[identity]

        for node in nodes.values():
            fields = self.node_state(node)
            topic = fields.get(PUBSUB_TOPIC_FIELD)
            public_key = fields.get(PUBLIC_KEY_FIELD)
            if not isinstance(topic, str) or not isinstance(public_key, str):
                self._logger.debug("listener_skipped", node=node.identity)
                continue
            current = self._listeners.get(node.identity)
            if (
                current is not None
                and current.topic == topic
                and current.public_key == public_key
                and not current.task.done()
            ):
                continue
            await self._stop_listener(node.identity)
            self._start_listener(node, topic, public_key)

    async def lookup_all_peers(self) -> None:
        """Look up the topic providers of every listened node, one at a time."""
        for listener in list(self._listeners.values()):
            await self.lookup_peers(listener.node, listener.topic)

    # -------------------------------------------------------------------------
    # Peers
    # -------------------------------------------------------------------------

    async def lookup_peers(self, node: Target, topic: str) -> dict[str, Any]:
        """Record the peers providing *topic* according to the DHT and the routers.

        Lookup failures are logged; the other lookup still counts.
        """
        session = self._ledger.session
        timeout = self._config.lookup_timeout
        cid = topic_to_routing_key(topic)
        fields: dict[str, Any] = {"pubsub_topic_routing_cid": cid}

        try:
            providers = await fetch_providers_with_fallback(
                session, self._config.dht_sources, cid, timeout=timeout
            )
            fields["pubsub_dht_peers"] = [peer_key(p) for p in providers]
        except PROBE_ERRORS as e:
            self._logger.warning("dht_peers_failed", node=node.identity, error=str(e))

        router_sources = self._config.router_sources or [
            router.identity
            for router in self._ledger.registry.targets(TargetCategory.CONTENT_ROUTER)
        ]
        try:
            providers = await fetch_providers_fan_out(session, router_sources, cid, timeout=timeout)
            fields["pubsub_router_peers"] = [peer_key(p) for p in providers]
        except PROBE_ERRORS as e:
            self._logger.warning("router_peers_failed", node=node.identity, error=str(e))

        self._store_peers(node, fields)
        return fields

    async def poll_peers(self) -> None:
        """Record the relay's current peers on every listened topic."""
        for listener in list(self._listeners.values()):
            try:
                peers = await self._relay.peers(listener.topic)
            except PROBE_ERRORS as e:
                self._logger.warning(
                    "pubsub_peers_failed", node=listener.node.identity, error=str(e)
                )
                continue
            self._store_peers(listener.node, {"pubsub_peers": peers})

    def _store_peers(self, node: Target, fields: dict[str, Any]) -> None:
        self._ledger.state.merge(TargetCategory.APPLICATION_NODE, node.identity, fields)
        for field, value in fields.items():
            if isinstance(value, list):
                self._ledger.metrics.set_node_field(
                    node.identity, peer_count_field(field), len(value)
                )

    # -------------------------------------------------------------------------
    # Challenges
    # -------------------------------------------------------------------------

    def is_stale(self, node: Target, now: float | None = None) -> bool:
        """Whether no authoritative message arrived within the staleness window."""
        now = time.time() if now is None else now
        last = self.node_state(node).get(AUTHORITATIVE_TIMESTAMP_FIELD)
        if not isinstance(last, int | float):
            return True
        return last < now - self._config.staleness_window

    async def recheck(self, now: float | None = None) -> list[ProbeOutcome]:
        """Challenge every listened node that is stale, one at a time."""
        outcomes: list[ProbeOutcome] = []
        for listener in list(self._listeners.values()):
            if self.is_stale(listener.node, now):
                outcomes.append(await self.execute(listener.node))
        return outcomes

    def prerequisites(self, target: Target) -> None:
        self.require_public_key(target)
        if not isinstance(self.node_state(target).get(PUBSUB_TOPIC_FIELD), str):
            raise PrerequisiteMissing(f"no pubsub topic recorded for node '{target.identity}' yet")

    async def probe(self, target: Target, attempts: AttemptCounter) -> ProbeOutcome:
        attempts.count += 1
        topic = self.node_state(target)[PUBSUB_TOPIC_FIELD]
        answered = self._answer_event(target.identity)
        answered.clear()

        start = time.monotonic()
        await self._relay.publish(topic, build_challenge_request())
        try:
            async with asyncio.timeout(self._config.challenge_timeout):
                await answered.wait()
        except TimeoutError as e:
            raise ProbeTimeoutError(
                f"no answer from '{target.identity}' within {self._config.challenge_timeout}s"
            ) from e
        return ProbeOutcome.ok(target.identity, self.PROBE, elapsed(start))

    def record(
        self,
        target: Target,
        outcome: ProbeOutcome,
        extra: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Record the outcome with the count of consecutive failed challenges."""
        errors = 0 if outcome.success else self._challenge_errors.get(target.identity, 0) + 1
        self._challenge_errors[target.identity] = errors
        return super().record(target, outcome, {ERROR_COUNT_FIELD: errors, **(extra or {})})
