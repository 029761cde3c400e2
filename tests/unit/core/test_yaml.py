"""
Unit tests for core.yaml module.

Tests:
- load_yaml() mapping documents, empty files, missing files
- Non-mapping documents and unsafe tags rejected
"""

from pathlib import Path

import pytest
import yaml

from uptimebrotr.core.yaml import load_yaml
from uptimebrotr.exceptions import ConfigurationError


CONFIG_DIR = Path(__file__).resolve().parents[3] / "config"


class TestLoadYaml:
    def test_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "c.yaml"
        path.write_text("interval: 60\nschedules:\n  gateways:\n    interval: 600\n")
        expected = {"interval": 60, "schedules": {"gateways": {"interval": 600}}}
        assert load_yaml(str(path)) == expected

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "c.yaml"
        path.write_text("")
        assert load_yaml(str(path)) == {}

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_yaml(str(tmp_path / "absent.yaml"))

    def test_list_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "c.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_yaml(str(path))

    def test_unsafe_tag_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "c.yaml"
        path.write_text("x: !!python/object/apply:os.system ['true']\n")
        with pytest.raises(yaml.YAMLError):
            load_yaml(str(path))


class TestShippedConfigs:
    """The YAML files under config/ parse into their models."""

    def test_ledger_config(self) -> None:
        from uptimebrotr.core.ledger import LedgerConfig

        config = LedgerConfig(**load_yaml(str(CONFIG_DIR / "ledger.yaml")))
        assert config.registry.sources

    @pytest.mark.parametrize(
        ("name", "config_path"),
        [
            ("monitor", "uptimebrotr.services.monitor.MonitorConfig"),
            ("archiver", "uptimebrotr.services.archiver.ArchiverConfig"),
            ("api", "uptimebrotr.services.api.ApiConfig"),
        ],
    )
    def test_service_configs(self, name: str, config_path: str) -> None:
        import importlib

        module_name, class_name = config_path.rsplit(".", 1)
        config_class = getattr(importlib.import_module(module_name), class_name)
        config_class(**load_yaml(str(CONFIG_DIR / "services" / f"{name}.yaml")))
