"""
Configuration loader (``agency_config.loader``).

Loads the billing YAML file and parses it into ``BillingConfig``.  This is
internal tooling; runtime callers go through
``agency_config.get_active_config()``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Top level not a mapping, unknown section or invalid value  -> ``ValueError``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from agency_config.schema import BillingConfig


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def load_billing_config(path: Path, database_url: str | None = None) -> BillingConfig:
    """Parse ``path`` into a BillingConfig, optionally overriding the database URL."""
    data = load_yaml_file(path)
    if database_url:
        database = dict(data.get("database") or {})
        database["url"] = database_url
        data["database"] = database
    return BillingConfig.from_dict(data)
