"""
Unit tests for probes.content module.

Tests:
- synthetic_comment() shape and lookup_field() dotted access
- ContentRoundTripProbe write, fetch and verify through a gateway
- Mismatch retries, unpin on every path
"""

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from uptimebrotr.core.ledger import Ledger
from uptimebrotr.models import Target, TargetCategory
from uptimebrotr.probes.content import (
    ContentRoundTripConfig,
    ContentRoundTripProbe,
    lookup_field,
    synthetic_comment,
)


CID = "bafkreigh2akiscaildcqabsyg3dfr6chu3fgpregiymsck7e7aqa4s52zy"
FETCH = "uptimebrotr.probes.content.fetch_json"


@pytest.fixture
def kubo() -> MagicMock:
    kubo = MagicMock()
    kubo.add = AsyncMock(return_value=CID)
    kubo.pin_rm = AsyncMock()
    return kubo


@pytest.fixture
def config() -> ContentRoundTripConfig:
    return ContentRoundTripConfig(propagation_delay=0, retries=2)


def _probe(
    ledger: Ledger, kubo: MagicMock, config: ContentRoundTripConfig
) -> ContentRoundTripProbe:
    return ContentRoundTripProbe(
        ledger, kubo, config, payload_factory=lambda: {"id": "abc"}, match_field="id"
    )


async def _slow_answer(*args: Any, **kwargs: Any) -> Any:
    await asyncio.sleep(0.01)
    return {"id": "abc"}


# ============================================================================
# Helper Tests
# ============================================================================


class TestHelpers:
    def test_synthetic_comment(self) -> None:
        first, second = synthetic_comment(), synthetic_comment()
        assert lookup_field(first, "author.address") != lookup_field(second, "author.address")
        assert set(first) == {"author", "signature", "title", "content"}

    def test_lookup_field(self) -> None:
        document = {"a": {"b": 1}}
        assert lookup_field(document, "a.b") == 1
        assert lookup_field(document, "a.c") is None
        assert lookup_field(document, "a.b.c") is None
        assert lookup_field([1], "a") is None


# ============================================================================
# Probe Tests
# ============================================================================


class TestContentRoundTripProbe:
    """Tests for ContentRoundTripProbe."""

    async def test_round_trip_recorded(
        self,
        ledger: Ledger,
        gateway: Target,
        kubo: MagicMock,
        config: ContentRoundTripConfig,
    ) -> None:
        fetch = AsyncMock(side_effect=_slow_answer)
        with patch(FETCH, fetch):
            outcome = await _probe(ledger, kubo, config).execute(gateway)

        assert outcome.success is True
        kubo.add.assert_awaited_once_with(b'{"id": "abc"}')
        assert fetch.await_args.args[1] == f"{gateway.identity}/ipfs/{CID}"
        kubo.pin_rm.assert_awaited_once_with(CID)

        fields = ledger.state.get(TargetCategory.GATEWAY, gateway.identity)
        assert fields["last_comment_fetch_success"] is True
        assert fields["last_comment_fetch_time"] > 0
        assert fields["last_comment_fetch_attempt_count"] == 1
        assert fields["comment_fetch_count"] == 1

    async def test_retries_until_match(
        self,
        ledger: Ledger,
        gateway: Target,
        kubo: MagicMock,
        config: ContentRoundTripConfig,
    ) -> None:
        fetch = AsyncMock(side_effect=[TimeoutError(), {"id": "other"}, {"id": "abc"}])
        with patch(FETCH, fetch):
            outcome = await _probe(ledger, kubo, config).run(gateway)
        assert outcome.success is True
        assert outcome.attempts == 3

    async def test_mismatch_fails(
        self,
        ledger: Ledger,
        gateway: Target,
        kubo: MagicMock,
        config: ContentRoundTripConfig,
    ) -> None:
        with patch(FETCH, AsyncMock(return_value={"id": "other"})):
            outcome = await _probe(ledger, kubo, config).run(gateway)
        assert outcome.success is False
        assert outcome.attempts == 3
        assert "failed fetching got response" in outcome.reason
        kubo.pin_rm.assert_awaited_once_with(CID)

    async def test_write_failure_skips_fetch(
        self,
        ledger: Ledger,
        gateway: Target,
        kubo: MagicMock,
        config: ContentRoundTripConfig,
    ) -> None:
        kubo.add.side_effect = OSError("node down")
        fetch = AsyncMock()
        with patch(FETCH, fetch):
            outcome = await _probe(ledger, kubo, config).run(gateway)
        assert outcome.success is False
        assert outcome.reason == "node down"
        fetch.assert_not_awaited()
        kubo.pin_rm.assert_not_awaited()

    async def test_unpin_error_does_not_fail_run(
        self,
        ledger: Ledger,
        gateway: Target,
        kubo: MagicMock,
        config: ContentRoundTripConfig,
    ) -> None:
        kubo.pin_rm.side_effect = RuntimeError("unpin failed")
        with patch(FETCH, AsyncMock(return_value={"id": "abc"})):
            outcome = await _probe(ledger, kubo, config).run(gateway)
        assert outcome.success is True
