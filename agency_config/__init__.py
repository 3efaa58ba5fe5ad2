"""
agency_config -- single public entrypoint for billing configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration files
    or environment variables.

Architecture position:
    Configuration -- sits above ``agency_kernel`` and beside
    ``agency_services``.  Neither of those imports from ``agency_config``;
    the HTTP façade passes the values in.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``ValueError`` -- schema validation failures.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from agency_config.loader import load_billing_config
from agency_config.schema import (
    AmountsConfig,
    BillingConfig,
    BillingRules,
    DatabaseConfig,
    NumberingConfig,
    TaskTypeSettings,
)

_logger = logging.getLogger("agency_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults" / "billing.yaml"

CONFIG_PATH_ENV = "AGENCY_BILLING_CONFIG"
DATABASE_URL_ENV = "AGENCY_BILLING_DATABASE_URL"


def get_active_config(path: Path | str | None = None) -> BillingConfig:
    """The ONLY public configuration entrypoint.

    Resolution order for the file: ``path``, then ``$AGENCY_BILLING_CONFIG``,
    then the default shipped with the package.  ``$AGENCY_BILLING_DATABASE_URL``
    overrides ``database.url`` when set.

    Raises:
        FileNotFoundError: If the resolved file does not exist.
        ValueError: If configuration validation fails.
    """
    resolved = Path(path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
    if not resolved.is_file():
        raise FileNotFoundError(f"Billing configuration not found: {resolved}")

    config = load_billing_config(resolved, database_url=os.environ.get(DATABASE_URL_ENV))

    _logger.info(
        "billing_config_loaded",
        extra={
            "config_path": str(resolved),
            "decimals": config.amounts.decimals,
            "strict_inconsistent_billing": config.billing.strict_inconsistent_billing,
            "disabled_task_type_count": len(config.task_types.disabled),
        },
    )
    return config


__all__ = [
    "AmountsConfig",
    "BillingConfig",
    "BillingRules",
    "DatabaseConfig",
    "NumberingConfig",
    "TaskTypeSettings",
    "get_active_config",
]
