"""
Unit tests for probes.pubsub module.

Tests:
- PubSubRoundTripProbe two-way delivery over an in-memory bus
- Timeout when one direction never arrives
- Subscriptions closed exactly once on every path
"""

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from uptimebrotr.core.ledger import Ledger
from uptimebrotr.models import Target, TargetCategory
from uptimebrotr.probes.pubsub import PubSubRoundTripConfig, PubSubRoundTripProbe
from uptimebrotr.utils.kubo import PubSubMessage


class FakeBus:
    """In-memory topic bus shared by fake node clients."""

    def __init__(self) -> None:
        self.callbacks: dict[str, list[Any]] = {}

    def client(self, *, deliver: bool = True) -> MagicMock:
        client = MagicMock()
        client.subscriptions = []

        async def subscribe(topic: str, callback: Any) -> MagicMock:
            self.callbacks.setdefault(topic, []).append(callback)
            subscription = MagicMock()
            subscription.topic = topic
            subscription.close = AsyncMock()
            client.subscriptions.append(subscription)
            return subscription

        async def publish(topic: str, data: bytes) -> None:
            if not deliver:
                return
            for callback in self.callbacks.get(topic, []):
                callback(PubSubMessage(topic, data))

        client.subscribe = AsyncMock(side_effect=subscribe)
        client.publish = AsyncMock(side_effect=publish)
        return client


def _config(timeout: float) -> PubSubRoundTripConfig:
    # Bypasses the one-second minimum so failure cases stay fast
    return PubSubRoundTripConfig.model_construct(timeout=timeout)


# ============================================================================
# Probe Tests
# ============================================================================


class TestPubSubRoundTripProbe:
    """Tests for PubSubRoundTripProbe."""

    @pytest.fixture
    def bus(self) -> FakeBus:
        return FakeBus()

    async def test_round_trip(self, ledger: Ledger, relay: Target, bus: FakeBus) -> None:
        reference = bus.client()
        relay_client = bus.client()
        probe = PubSubRoundTripProbe(
            ledger, reference, _config(5), client_factory=lambda url: relay_client
        )
        outcome = await probe.execute(relay)

        assert outcome.success is True
        relay_topic = relay_client.subscribe.await_args.args[0]
        assert reference.subscribe.await_args.args[0] == relay_topic
        for client in (reference, relay_client):
            client.publish.assert_awaited_once()
            client.subscriptions[0].close.assert_awaited_once()

        fields = ledger.state.get(TargetCategory.RELAY, relay.identity)
        assert fields["last_pubsub_round_trip_success"] is True
        assert fields["pubsub_round_trip_count"] == 1

    async def test_fresh_topic_each_run(self, ledger: Ledger, relay: Target, bus: FakeBus) -> None:
        relay_client = bus.client()
        probe = PubSubRoundTripProbe(
            ledger, bus.client(), _config(5), client_factory=lambda url: relay_client
        )
        await probe.run(relay)
        await probe.run(relay)
        first, second = (call.args[0] for call in relay_client.subscribe.await_args_list)
        assert first != second

    async def test_timeout(self, ledger: Ledger, relay: Target, bus: FakeBus) -> None:
        reference = bus.client()
        relay_client = bus.client(deliver=False)
        probe = PubSubRoundTripProbe(
            ledger, reference, _config(0.05), client_factory=lambda url: relay_client
        )
        outcome = await probe.run(relay)

        assert outcome.success is False
        assert "timed out" in outcome.reason
        reference.subscriptions[0].close.assert_awaited_once()
        relay_client.subscriptions[0].close.assert_awaited_once()

    async def test_subscribe_failure(self, ledger: Ledger, relay: Target, bus: FakeBus) -> None:
        reference = bus.client()
        relay_client = bus.client()
        relay_client.subscribe = AsyncMock(side_effect=OSError("refused"))
        probe = PubSubRoundTripProbe(
            ledger, reference, _config(5), client_factory=lambda url: relay_client
        )
        outcome = await probe.run(relay)

        assert outcome.success is False
        assert outcome.reason == "refused"
        reference.subscribe.assert_not_awaited()

    async def test_close_error_is_logged_only(
        self, ledger: Ledger, relay: Target, bus: FakeBus
    ) -> None:
        reference = bus.client()
        relay_client = bus.client()
        probe = PubSubRoundTripProbe(
            ledger, reference, _config(5), client_factory=lambda url: relay_client
        )
        original = relay_client.subscribe.side_effect

        async def subscribe(topic: str, callback: Any) -> MagicMock:
            subscription = await original(topic, callback)
            subscription.close.side_effect = RuntimeError("stream gone")
            return subscription

        relay_client.subscribe.side_effect = subscribe
        outcome = await probe.run(relay)
        assert outcome.success is True
        reference.subscriptions[0].close.assert_awaited_once()
