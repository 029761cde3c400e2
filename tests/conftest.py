"""
Pytest configuration and shared fixtures for UptimeBrotr tests.

Provides:
- A Ledger on a temporary directory with a mocked HTTP session and an
  isolated Prometheus registry
- Node key material (public key, derived address)
- Target factories for every category
"""

from __future__ import annotations

import logging
from typing import Any
from unittest.mock import MagicMock

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from prometheus_client import CollectorRegistry

from uptimebrotr.core.ledger import HistoryConfig, Ledger, LedgerConfig
from uptimebrotr.core.metrics import ProbeMetrics
from uptimebrotr.core.registry import RegistryConfig
from uptimebrotr.models import Target, TargetCategory
from uptimebrotr.utils.keys import encode_public_key, public_key_bytes_to_address


# ============================================================================
# Logging Configuration
# ============================================================================


@pytest.fixture(scope="session", autouse=True)
def setup_logging() -> None:
    """Configure logging for tests."""
    logging.basicConfig(level=logging.DEBUG)


# ============================================================================
# Ledger Fixtures
# ============================================================================


@pytest.fixture
def metrics_registry() -> CollectorRegistry:
    """Fresh Prometheus registry, so probe metrics never collide between tests."""
    return CollectorRegistry()


@pytest.fixture
def probe_metrics(metrics_registry: CollectorRegistry) -> ProbeMetrics:
    return ProbeMetrics(registry=metrics_registry)


@pytest.fixture
def ledger_config(tmp_path: Any) -> LedgerConfig:
    """Ledger config writing state and history under ``tmp_path``."""
    return LedgerConfig(
        state_path=str(tmp_path / "state.json"),
        history=HistoryConfig(directory=str(tmp_path / "history"), cache_size=10, max_results=5),
        registry=RegistryConfig(),
    )


@pytest.fixture
def ledger(ledger_config: LedgerConfig, probe_metrics: ProbeMetrics) -> Ledger:
    """Ledger with a mocked HTTP session (probes patch the fetch helpers)."""
    ledger = Ledger(ledger_config, metrics=probe_metrics)
    ledger._session = MagicMock()
    return ledger


# ============================================================================
# Key Fixtures
# ============================================================================


@pytest.fixture
def node_key() -> dict[str, Any]:
    """Fresh Ed25519 key: raw bytes, base64 text and peer-id address."""
    private_key = Ed25519PrivateKey.generate()
    raw = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    return {
        "private_key": private_key,
        "raw": raw,
        "public_key": encode_public_key(raw),
        "address": public_key_bytes_to_address(raw),
    }


# ============================================================================
# Target Fixtures
# ============================================================================


@pytest.fixture
def gateway() -> Target:
    return Target("https://gateway.example.com", TargetCategory.GATEWAY)


@pytest.fixture
def router() -> Target:
    return Target("https://router.example.com", TargetCategory.CONTENT_ROUTER)


@pytest.fixture
def relay() -> Target:
    return Target("https://relay.example.com/api/v0", TargetCategory.RELAY)


@pytest.fixture
def node() -> Target:
    return Target("plebtoken.eth", TargetCategory.APPLICATION_NODE)
