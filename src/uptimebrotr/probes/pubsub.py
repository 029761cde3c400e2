"""
Publish/subscribe round trip between a relay and the reference node.

Each run uses a fresh random topic so that runs never see each other's
traffic. Both sides subscribe, both publish a uniquely tagged message, and
each side waits for the other's message with a
[MessageWaiter][uptimebrotr.utils.kubo.MessageWaiter]. The run succeeds
only if both directions complete before the timeout; both subscriptions
are closed exactly once whatever happens.
"""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from uptimebrotr.models import ProbeOutcome, TargetCategory
from uptimebrotr.utils.keys import random_peer_id
from uptimebrotr.utils.kubo import KuboClient, MessageWaiter

from .base import BaseProbe, elapsed


if TYPE_CHECKING:
    from collections.abc import Callable

    from uptimebrotr.core.ledger import Ledger
    from uptimebrotr.models import Target
    from uptimebrotr.utils.kubo import Subscription

    from .base import AttemptCounter


RELAY_GREETING = "hello from pubsub provider"
REFERENCE_GREETING = "hello from uptime monitor"


class PubSubRoundTripConfig(BaseModel):
    """Settings of the relay round trip."""

    timeout: float = Field(
        default=300.0, ge=1.0, description="Seconds each side waits for the other's message"
    )


class PubSubRoundTripProbe(BaseProbe):
    """Verify a relay both delivers and receives pub/sub messages.

    Args:
        ledger: Shared ledger.
        reference: Node RPC client of the reference relay.
        config: Round trip settings.
        client_factory: Builds the RPC client of the relay under test from
            its URL. Defaults to a [KuboClient][uptimebrotr.utils.kubo.KuboClient]
            on the ledger's session.
    """

    CATEGORY = TargetCategory.RELAY
    PROBE = "pubsub_round_trip"

    def __init__(
        self,
        ledger: Ledger,
        reference: KuboClient,
        config: PubSubRoundTripConfig | None = None,
        *,
        client_factory: Callable[[str], KuboClient] | None = None,
    ) -> None:
        super().__init__(ledger)
        self._reference = reference
        self._config = config or PubSubRoundTripConfig()
        self._client_factory = client_factory or self._default_client
        self._publishes: set[asyncio.Task[None]] = set()

    def _default_client(self, url: str) -> KuboClient:
        return KuboClient(
            url, self._ledger.session, max_size=self._ledger.config.http.max_response_size
        )

    async def probe(self, target: Target, attempts: AttemptCounter) -> ProbeOutcome:
        attempts.count += 1
        relay = self._client_factory(target.identity)
        topic = random_peer_id()
        now = datetime.now(UTC).isoformat()
        relay_message = f"{RELAY_GREETING} {now}".encode()
        reference_message = f"{REFERENCE_GREETING} {now}".encode()

        relay_waiter = MessageWaiter()
        reference_waiter = MessageWaiter()
        subscriptions: list[Subscription] = []
        start = time.monotonic()
        try:
            subscriptions.append(await relay.subscribe(topic, relay_waiter.feed))
            subscriptions.append(await self._reference.subscribe(topic, reference_waiter.feed))
            relay_waiter.expect(reference_message)
            reference_waiter.expect(relay_message)

            self._publish_in_background(relay, topic, relay_message)
            self._publish_in_background(self._reference, topic, reference_message)

            results = await asyncio.gather(
                relay_waiter.wait(self._config.timeout),
                reference_waiter.wait(self._config.timeout),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
            return ProbeOutcome.ok(target.identity, self.PROBE, elapsed(start))
        finally:
            for subscription in subscriptions:
                await self._unsubscribe(subscription)

    def _publish_in_background(self, client: KuboClient, topic: str, data: bytes) -> None:
        task = asyncio.create_task(client.publish(topic, data))
        self._publishes.add(task)
        task.add_done_callback(self._publish_done)

    def _publish_done(self, task: asyncio.Task[None]) -> None:
        self._publishes.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._logger.warning("publish_failed", error=str(task.exception()))

    async def _unsubscribe(self, subscription: Subscription) -> None:
        try:
            await subscription.close()
        except Exception as e:  # Intentionally broad: unsubscribe errors are logged only
            self._logger.warning("unsubscribe_failed", topic=subscription.topic, error=str(e))
