"""Pure domain layer: task type registry, amount arithmetic, DTOs, clock."""

from agency_kernel.domain.task_types import (
    DetailLine,
    TaskType,
    TaskTypeSpec,
    all_task_type_specs,
    build_detail_line,
    get_task_type_spec,
    parse_task_type,
)

__all__ = [
    "DetailLine",
    "TaskType",
    "TaskTypeSpec",
    "all_task_type_specs",
    "build_detail_line",
    "get_task_type_spec",
    "parse_task_type",
]
