"""
Unit tests for core.ledger module.

Tests:
- Configuration models (HttpConfig proxy resolution, LedgerConfig defaults)
- Ledger construction and factories
- open() / close() lifecycle and session guard
- load_state() / save_state()
"""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pydantic import ValidationError

from uptimebrotr.core.ledger import HttpConfig, Ledger, LedgerConfig
from uptimebrotr.core.metrics import PROBE_METRICS, ProbeMetrics
from uptimebrotr.exceptions import PersistenceError
from uptimebrotr.models import TargetCategory


class TestConfig:
    def test_proxy_from_field(self) -> None:
        assert HttpConfig(proxy_url="socks5://tor:9050").resolve_proxy_url() == "socks5://tor:9050"

    def test_proxy_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MY_PROXY", "http://proxy:3128")
        assert HttpConfig(proxy_url_env="MY_PROXY").resolve_proxy_url() == "http://proxy:3128"

    def test_no_proxy(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("PROXY_URL", raising=False)
        assert HttpConfig().resolve_proxy_url() is None

    def test_windows_required(self) -> None:
        with pytest.raises(ValidationError):
            LedgerConfig(reliability_windows=[])


class TestLedger:
    """Tests for Ledger."""

    def test_defaults_use_global_metrics(self) -> None:
        ledger = Ledger()
        assert ledger.metrics is PROBE_METRICS
        assert ledger.aggregator.windows == (1, 6, 24)

    def test_from_dict(self, tmp_path: Path, probe_metrics: ProbeMetrics) -> None:
        ledger = Ledger.from_dict(
            {
                "state_path": str(tmp_path / "s.json"),
                "registry": {"targets": {"gateway": ["https://ipfs.io"]}},
            },
            metrics=probe_metrics,
        )
        assert ledger.config.state_path == str(tmp_path / "s.json")
        assert ledger.registry.get(TargetCategory.GATEWAY, "https://ipfs.io") is not None
        assert ledger.metrics is probe_metrics

    def test_from_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "ledger.yaml"
        path.write_text("history:\n  max_results: 7\n")
        assert Ledger.from_yaml(str(path)).history.max_results == 7

    def test_session_guard(self) -> None:
        with pytest.raises(RuntimeError, match="not open"):
            Ledger().session

    async def test_open_and_close(self, ledger_config: LedgerConfig) -> None:
        session = MagicMock()
        session.close = AsyncMock()
        ledger = Ledger(ledger_config)
        with patch("uptimebrotr.core.ledger.create_session", return_value=session) as create:
            async with ledger:
                assert ledger.is_open
                assert ledger.session is session
                assert ledger.registry.session is session
                await ledger.open()
            create.assert_called_once()
        session.close.assert_awaited_once()
        assert not ledger.is_open
        assert ledger.registry.session is None
        await ledger.close()

    async def test_open_loads_state(self, ledger_config: LedgerConfig) -> None:
        writer = Ledger(ledger_config)
        writer.state.merge(TargetCategory.GATEWAY, "https://ipfs.io", {"a": 1})
        writer.save_state()

        session = MagicMock()
        session.close = AsyncMock()
        reader = Ledger(ledger_config)
        with patch("uptimebrotr.core.ledger.create_session", return_value=session):
            async with reader:
                assert reader.state.get(TargetCategory.GATEWAY, "https://ipfs.io") == {"a": 1}

    def test_load_state_corrupt(self, ledger_config: LedgerConfig) -> None:
        Path(ledger_config.state_path).write_text("{oops")
        ledger = Ledger(ledger_config)
        ledger.state.merge(TargetCategory.GATEWAY, "https://ipfs.io", {"a": 1})
        assert ledger.load_state() is False
        assert ledger.state.get(TargetCategory.GATEWAY, "https://ipfs.io") == {"a": 1}

    def test_save_state_error(self, ledger_config: LedgerConfig) -> None:
        ledger = Ledger(ledger_config)
        with (
            patch("uptimebrotr.core.state.os.replace", side_effect=OSError("read-only")),
            pytest.raises(PersistenceError),
        ):
            ledger.save_state()
