"""Shared fixtures and helpers for services.api test package."""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Any

import pytest
from fastapi.testclient import TestClient

from uptimebrotr.core.ledger import Ledger
from uptimebrotr.models import Target, TargetCategory
from uptimebrotr.services.api import Api, ApiConfig


GATEWAY_URL = "https://ipfs.io"


def gateway_view(count: int, success: bool, latency: float, ts: int) -> dict[str, Any]:
    """History view holding one gateway content round trip."""
    return {
        "gateway": {
            GATEWAY_URL: {
                "identity": GATEWAY_URL,
                "comment_fetch_count": count,
                "last_comment_fetch_success": success,
                "last_comment_fetch_time": latency,
                "last_comment_fetch_attempt_count": 1,
                "last_comment_fetch_timestamp": ts,
            }
        },
        "network": {},
    }


@pytest.fixture
def api_config() -> ApiConfig:
    """Minimal API config for testing."""
    return ApiConfig(interval=60.0, host="127.0.0.1", port=9999)


@pytest.fixture
def api_service(ledger: Ledger, api_config: ApiConfig) -> Api:
    gateway = Target(GATEWAY_URL, TargetCategory.GATEWAY)
    ledger.registry.set_targets(TargetCategory.GATEWAY, [gateway])
    return Api(ledger, api_config)


@pytest.fixture
def recent_history(ledger: Ledger) -> list[int]:
    """Three runs in the last half hour: success, failure, success."""
    now = int(time.time())
    stamps = [now - 1800, now - 1200, now - 600]
    for count, (ts, success, latency) in enumerate(
        zip(stamps, (True, False, True), (10, 0, 20), strict=True), start=1
    ):
        ledger.history.write(
            gateway_view(count, success, latency, ts), datetime.fromtimestamp(ts, UTC)
        )
    ledger.history.refresh_cache()
    return stamps


@pytest.fixture
def test_client(api_service: Api) -> TestClient:
    """FastAPI TestClient from the Api service."""
    app = api_service._build_app()
    return TestClient(app)
