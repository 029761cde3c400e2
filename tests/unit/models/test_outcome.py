"""
Unit tests for models.outcome module.

Tests:
- Field name helpers
- ok() / failed() constructors and validation
- to_fields() zero-filling on failure and payload flattening
"""

import pytest

from uptimebrotr.models import ProbeOutcome
from uptimebrotr.models.outcome import (
    attempts_field,
    count_field,
    success_field,
    time_field,
    timestamp_field,
)


class TestFieldNames:
    def test_names(self) -> None:
        assert count_field("comment_fetch") == "comment_fetch_count"
        assert success_field("comment_fetch") == "last_comment_fetch_success"
        assert time_field("comment_fetch") == "last_comment_fetch_time"
        assert attempts_field("comment_fetch") == "last_comment_fetch_attempt_count"
        assert timestamp_field("comment_fetch") == "last_comment_fetch_timestamp"


class TestProbeOutcome:
    """Construction and validation."""

    def test_ok(self) -> None:
        outcome = ProbeOutcome.ok("https://ipfs.io", "comment_fetch", 1.5, attempts=2)
        assert outcome.success is True
        assert outcome.latency == 1.5
        assert outcome.attempts == 2
        assert outcome.reason is None
        assert outcome.timestamp > 0

    def test_failed_has_no_latency(self) -> None:
        outcome = ProbeOutcome.failed("https://ipfs.io", "comment_fetch", "timeout")
        assert outcome.success is False
        assert outcome.latency is None
        assert outcome.reason == "timeout"

    def test_failed_latency_dropped(self) -> None:
        outcome = ProbeOutcome("a", "p", success=False, latency=3.0)
        assert outcome.latency is None

    def test_success_requires_latency(self) -> None:
        with pytest.raises(ValueError, match="latency"):
            ProbeOutcome("a", "p", success=True)

    def test_negative_latency_rejected(self) -> None:
        with pytest.raises(ValueError):
            ProbeOutcome.ok("a", "p", -1.0)

    def test_negative_attempts_rejected(self) -> None:
        with pytest.raises(ValueError):
            ProbeOutcome.ok("a", "p", 1.0, attempts=-1)

    def test_payload_frozen(self) -> None:
        outcome = ProbeOutcome.ok("a", "p", 1.0, payload={"peers": ["x"]})
        assert outcome.payload["peers"] == ("x",)
        with pytest.raises(TypeError):
            outcome.payload["peers"] = []  # type: ignore[index]


class TestToFields:
    def test_success_fields(self) -> None:
        outcome = ProbeOutcome(
            "a", "comment_fetch", success=True, latency=2.0, attempts=3, timestamp=100
        )
        assert outcome.to_fields() == {
            "last_comment_fetch_success": True,
            "last_comment_fetch_time": 2.0,
            "last_comment_fetch_attempt_count": 3,
            "last_comment_fetch_timestamp": 100,
        }

    def test_failure_zero_fills_latency(self) -> None:
        outcome = ProbeOutcome("a", "comment_fetch", success=False, timestamp=100)
        fields = outcome.to_fields()
        assert fields["last_comment_fetch_success"] is False
        assert fields["last_comment_fetch_time"] == 0

    def test_payload_thawed(self) -> None:
        outcome = ProbeOutcome.ok("a", "p", 1.0, payload={"peers": ["x"], "stats": {"n": 1}})
        fields = outcome.to_fields()
        assert fields["peers"] == ["x"]
        assert fields["stats"] == {"n": 1}
        assert "p_count" not in fields
