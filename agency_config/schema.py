"""
agency_config.schema
====================

Responsibility:
    Configuration schema for the agency billing subsystem: database
    connection, debit note numbering, amount rounding, billing rules and
    enabled task types.  Values are loaded from YAML by
    ``agency_config.get_active_config()``.

Architecture:
    Configuration layer.  Consumed by the HTTP façade when it wires the
    services.  MUST NOT be imported by agency_kernel or agency_services.

Invariants enforced:
    - ``amounts.decimals`` is between 0 and 9 (the Numeric scale).
    - ``numbering.number_format`` contains a ``{seq`` placeholder.
    - Disabled task types name registered task types.

Failure modes:
    - Invalid configuration values -> ``ValueError`` from ``__post_init__``.
"""

from dataclasses import dataclass, field
from typing import Self
from uuid import UUID

from agency_kernel.domain.task_types import TaskType
from agency_kernel.logging_config import get_logger

logger = get_logger("config.schema")

_ISOLATION_LEVELS = frozenset({
    "READ COMMITTED",
    "REPEATABLE READ",
    "SERIALIZABLE",
    "AUTOCOMMIT",
})

DEFAULT_SYSTEM_ACTOR_ID = UUID("00000000-0000-0000-0000-000000000001")


@dataclass
class DatabaseConfig:
    """Connection settings for agency_kernel.db.engine."""

    url: str = "sqlite:///:memory:"
    isolation_level: str | None = None
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10

    def __post_init__(self):
        if not self.url:
            raise ValueError("database.url is required")
        if self.isolation_level is not None:
            self.isolation_level = self.isolation_level.upper()
            if self.isolation_level not in _ISOLATION_LEVELS:
                raise ValueError(
                    f"database.isolation_level must be one of {sorted(_ISOLATION_LEVELS)}"
                )
        if self.pool_size < 1:
            raise ValueError("database.pool_size must be at least 1")
        if self.max_overflow < 0:
            raise ValueError("database.max_overflow cannot be negative")


@dataclass
class NumberingConfig:
    """Debit note numbering: ``str.format`` template over seq, year, task_type."""

    number_format: str = "DN{seq:06d}"
    sequence_name: str = "debit_note"

    def __post_init__(self):
        if "{seq" not in self.number_format:
            raise ValueError("numbering.number_format must contain a {seq} placeholder")
        if not self.sequence_name:
            raise ValueError("numbering.sequence_name is required")


@dataclass
class AmountsConfig:
    """Rounding of amounts computed by the subsystem."""

    decimals: int = 2

    def __post_init__(self):
        if not 0 <= self.decimals <= 9:
            raise ValueError("amounts.decimals must be between 0 and 9")


@dataclass
class BillingRules:
    """
    Behavioral switches.

    ``strict_inconsistent_billing`` makes the all-billed-on-different-notes
    case fail with InconsistentBillingError instead of returning the first
    note with a warning.
    """

    strict_inconsistent_billing: bool = False
    system_actor_id: UUID = DEFAULT_SYSTEM_ACTOR_ID

    def __post_init__(self):
        if not isinstance(self.system_actor_id, UUID):
            self.system_actor_id = UUID(str(self.system_actor_id))


@dataclass
class TaskTypeSettings:
    """Task types switched off for this installation."""

    disabled: tuple[TaskType, ...] = ()

    def __post_init__(self):
        resolved = []
        for value in self.disabled:
            try:
                resolved.append(TaskType(value))
            except ValueError:
                raise ValueError(f"task_types.disabled: unknown task type {value!r}") from None
        self.disabled = tuple(resolved)


@dataclass
class BillingConfig:
    """
    Root configuration of the agency billing subsystem.

    Contract:
        All sections have defaults.  ``__post_init__`` of each section
        validates its constraints and raises ``ValueError`` on violation.
    """

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    numbering: NumberingConfig = field(default_factory=NumberingConfig)
    amounts: AmountsConfig = field(default_factory=AmountsConfig)
    billing: BillingRules = field(default_factory=BillingRules)
    task_types: TaskTypeSettings = field(default_factory=TaskTypeSettings)

    def __post_init__(self):
        logger.info(
            "billing_config_initialized",
            extra={
                "database_dialect": self.database.url.split(":", 1)[0],
                "number_format": self.numbering.number_format,
                "decimals": self.amounts.decimals,
                "strict_inconsistent_billing": self.billing.strict_inconsistent_billing,
                "disabled_task_types": [t.value for t in self.task_types.disabled],
            },
        )

    @property
    def enabled_task_types(self) -> tuple[TaskType, ...]:
        return tuple(t for t in TaskType if t not in self.task_types.disabled)

    @classmethod
    def with_defaults(cls) -> Self:
        """Create config with built-in defaults."""
        logger.info("billing_config_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        """Create config from a dictionary (e.g. parsed YAML)."""
        logger.info(
            "billing_config_loading_from_dict",
            extra={"keys": sorted(data.keys())},
        )
        unknown = sorted(set(data) - {"database", "numbering", "amounts", "billing", "task_types"})
        if unknown:
            raise ValueError(f"Unknown configuration sections: {', '.join(unknown)}")

        task_types = dict(data.get("task_types") or {})
        if "disabled" in task_types:
            task_types["disabled"] = tuple(task_types["disabled"] or ())

        return cls(
            database=DatabaseConfig(**(data.get("database") or {})),
            numbering=NumberingConfig(**(data.get("numbering") or {})),
            amounts=AmountsConfig(**(data.get("amounts") or {})),
            billing=BillingRules(**(data.get("billing") or {})),
            task_types=TaskTypeSettings(**task_types),
        )
