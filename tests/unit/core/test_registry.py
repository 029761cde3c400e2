"""
Unit tests for core.registry module.

Tests:
- RegistryConfig static target validation
- Static targets seeded and deduplicated per category
- refresh() from file and HTTP sources, partial and total failure
- wait_until_ready() retry loop and abort
"""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pydantic import ValidationError

from uptimebrotr.core.registry import RegistryConfig, TargetRegistry
from uptimebrotr.exceptions import ConnectivityError, RegistryError
from uptimebrotr.models import Target, TargetCategory


NODES = TargetCategory.APPLICATION_NODE


def _write_doc(path: Path, addresses: list[str], key: str = "subplebbits") -> str:
    path.write_text(json.dumps({key: [{"address": a, "tags": ["x"]} for a in addresses]}))
    return str(path)


# ============================================================================
# Configuration Tests
# ============================================================================


class TestRegistryConfig:
    """Tests for RegistryConfig validation."""

    def test_defaults(self) -> None:
        config = RegistryConfig()
        assert config.sources == []
        assert config.list_key == "subplebbits"

    def test_static_nodes_rejected(self) -> None:
        with pytest.raises(ValidationError, match="sources"):
            RegistryConfig(targets={"application_node": ["plebtoken.eth"]})

    def test_invalid_descriptor_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RegistryConfig(targets={"name_service": [{"kind": "doh"}]})

    def test_refresh_interval_lower_bound(self) -> None:
        with pytest.raises(ValidationError):
            RegistryConfig(refresh_interval=1)


# ============================================================================
# Static Target Tests
# ============================================================================


class TestStaticTargets:
    def test_seeded_and_deduplicated(self) -> None:
        registry = TargetRegistry(
            RegistryConfig(
                targets={
                    "gateway": ["https://a", "https://b", "https://a"],
                    "name_service": [{"identity": "1.1.1.1", "name": "plebbit.eth.limo"}],
                }
            )
        )
        assert [t.identity for t in registry.targets(TargetCategory.GATEWAY)] == [
            "https://a",
            "https://b",
        ]
        resolver = registry.get(TargetCategory.NAME_SERVICE, "1.1.1.1")
        assert resolver is not None
        assert resolver.get("name") == "plebbit.eth.limo"
        assert registry.get(TargetCategory.GATEWAY, "https://missing") is None
        assert registry.targets(TargetCategory.RELAY) == ()

    def test_ready_without_sources(self) -> None:
        assert TargetRegistry().ready

    def test_set_targets_first_seen_wins(self) -> None:
        registry = TargetRegistry()
        registry.set_targets(
            NODES,
            [Target("a", NODES, {"n": 1}), Target("b", NODES), Target("a", NODES, {"n": 2})],
        )
        targets = registry.targets(NODES)
        assert [t.identity for t in targets] == ["a", "b"]
        assert targets[0].get("n") == 1


# ============================================================================
# Refresh Tests
# ============================================================================


class TestRefresh:
    """Tests for TargetRegistry.refresh()."""

    async def test_file_sources_merged(self, tmp_path: Path) -> None:
        first = _write_doc(tmp_path / "a.json", ["plebtoken.eth", "12D3KooWa"])
        second = _write_doc(tmp_path / "b.json", ["12D3KooWa", "business.eth"])
        registry = TargetRegistry(RegistryConfig(sources=[first, second]))
        assert not registry.ready

        assert await registry.refresh() == 3
        assert registry.ready
        assert registry.refresh_count == 1
        assert [t.identity for t in registry.targets(NODES)] == [
            "plebtoken.eth",
            "12D3KooWa",
            "business.eth",
        ]
        assert registry.targets(NODES)[0].get("tags") == ("x",)

    async def test_http_source(self) -> None:
        session = MagicMock()
        registry = TargetRegistry(
            RegistryConfig(sources=["https://example.com/list.json"], timeout=5), session
        )
        document = {"subplebbits": [{"address": "plebtoken.eth"}]}
        with patch(
            "uptimebrotr.core.registry.fetch_json", new_callable=AsyncMock, return_value=document
        ) as fetch:
            assert await registry.refresh() == 1
        fetch.assert_awaited_once_with(session, "https://example.com/list.json", timeout=5)

    async def test_http_source_without_session(self) -> None:
        registry = TargetRegistry(RegistryConfig(sources=["https://example.com/list.json"]))
        with pytest.raises(RegistryError, match="no HTTP session"):
            await registry.fetch_source("https://example.com/list.json")

    async def test_malformed_document_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"subplebbits": "not a list"}))
        registry = TargetRegistry(RegistryConfig(sources=[str(path)]))
        with pytest.raises(RegistryError, match="failed fetching descriptor list"):
            await registry.fetch_source(str(path))

    async def test_bad_descriptor_rejects_whole_document(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"subplebbits": [{"address": "ok.eth"}, {"title": "x"}]}))
        registry = TargetRegistry(RegistryConfig(sources=[str(path)]))
        with pytest.raises(RegistryError, match="invalid descriptor"):
            await registry.fetch_source(str(path))

    async def test_partial_failure(self, tmp_path: Path) -> None:
        good = _write_doc(tmp_path / "a.json", ["plebtoken.eth"])
        registry = TargetRegistry(RegistryConfig(sources=[str(tmp_path / "missing.json"), good]))
        assert await registry.refresh() == 1

    async def test_failed_source_keeps_last_good_nodes(self, tmp_path: Path) -> None:
        first = _write_doc(tmp_path / "a.json", ["plebtoken.eth"])
        second_path = tmp_path / "b.json"
        second = _write_doc(second_path, ["business.eth"])
        registry = TargetRegistry(RegistryConfig(sources=[first, second]))
        assert await registry.refresh() == 2

        second_path.write_text("{broken")
        assert await registry.refresh() == 2
        assert [t.identity for t in registry.targets(NODES)] == ["plebtoken.eth", "business.eth"]
        assert registry.refresh_count == 2

    async def test_recovered_source_replaces_its_nodes(self, tmp_path: Path) -> None:
        path = tmp_path / "a.json"
        registry = TargetRegistry(RegistryConfig(sources=[_write_doc(path, ["plebtoken.eth"])]))
        await registry.refresh()

        _write_doc(path, ["business.eth"])
        await registry.refresh()
        assert [t.identity for t in registry.targets(NODES)] == ["business.eth"]

    async def test_empty_merge_keeps_previous(self, tmp_path: Path) -> None:
        path = tmp_path / "a.json"
        registry = TargetRegistry(RegistryConfig(sources=[_write_doc(path, ["plebtoken.eth"])]))
        await registry.refresh()

        _write_doc(path, [])
        with pytest.raises(RegistryError, match="no nodes"):
            await registry.refresh()
        assert [t.identity for t in registry.targets(NODES)] == ["plebtoken.eth"]
        assert registry.refresh_count == 1

    async def test_all_fail_keeps_previous(self, tmp_path: Path) -> None:
        path = tmp_path / "a.json"
        registry = TargetRegistry(RegistryConfig(sources=[_write_doc(path, ["plebtoken.eth"])]))
        await registry.refresh()

        path.write_text("{broken")
        with pytest.raises(RegistryError, match="all descriptor sources failed"):
            await registry.refresh()

        assert [t.identity for t in registry.targets(NODES)] == ["plebtoken.eth"]
        assert registry.refresh_count == 1

    async def test_connectivity_error_wrapped(self) -> None:
        registry = TargetRegistry(RegistryConfig(sources=["https://x/list.json"]), MagicMock())
        with (
            patch(
                "uptimebrotr.core.registry.fetch_json",
                new_callable=AsyncMock,
                side_effect=ConnectivityError("failed fetching got response 'rate limited'"),
            ),
            pytest.raises(RegistryError, match="rate limited"),
        ):
            await registry.refresh()


# ============================================================================
# wait_until_ready() Tests
# ============================================================================


class TestWaitUntilReady:
    async def test_retries_until_success(self, tmp_path: Path) -> None:
        path = tmp_path / "a.json"
        registry = TargetRegistry(RegistryConfig(sources=[str(path)]))
        calls = 0

        async def fake_sleep(_: float) -> None:
            nonlocal calls
            calls += 1
            _write_doc(path, ["plebtoken.eth"])

        with patch("uptimebrotr.core.registry.asyncio.sleep", side_effect=fake_sleep):
            assert await registry.wait_until_ready(retry_interval=0.01) is True

        assert calls == 1
        assert registry.ready

    async def test_abort(self, tmp_path: Path) -> None:
        registry = TargetRegistry(RegistryConfig(sources=[str(tmp_path / "missing.json")]))
        stopped = await registry.wait_until_ready(retry_interval=0.01, should_stop=lambda: True)
        assert stopped is False
        assert not registry.ready
