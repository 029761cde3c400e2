"""YAML configuration loading for UptimeBrotr.

Uses ``yaml.safe_load`` so configuration files can never instantiate
arbitrary Python objects. Used by
[Ledger.from_yaml()][uptimebrotr.core.ledger.Ledger.from_yaml] and
[BaseService.from_yaml()][uptimebrotr.core.base_service.BaseService.from_yaml].
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from uptimebrotr.exceptions import ConfigurationError


def load_yaml(config_path: str) -> dict[str, Any]:
    """Load and parse a YAML configuration file.

    Args:
        config_path: Path to the YAML file (absolute or relative).

    Returns:
        Parsed configuration as a nested dictionary. Returns an empty dict
        if the file exists but contains no data.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file contains invalid YAML syntax.
        ConfigurationError: If the top-level document is not a mapping.

    Warning:
        The structure of the returned dictionary is not validated here;
        callers pass it to a Pydantic model for schema validation.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with path.open(encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Config file {config_path} must contain a mapping, got {type(data).__name__}"
        )
    return data
