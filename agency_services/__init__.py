"""
Transaction-owning billing services.

Each public method commits on success and rolls back on failure; the stores
in ``agency_kernel.services`` only flush.
"""

from agency_services.aggregation_service import AggregationService
from agency_services.detail_service import DetailService
from agency_services.task_record_service import TaskRecordService
from agency_services.unlink_service import UnlinkService

__all__ = [
    "AggregationService",
    "DetailService",
    "TaskRecordService",
    "UnlinkService",
]
