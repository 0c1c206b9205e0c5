from src.core.schedules.models import (
    DispatchTickResult,
    ExecutionReceipt,
    ExecutionRequest,
    ScheduleCreateRequest,
    ScheduleListResponse,
    ScheduleRecord,
    ScheduleRecurrence,
    ScheduleResponse,
    ScheduleUpdateRequest,
)
from src.core.schedules.repository import ScheduleStore

__all__ = [
    "DispatchTickResult",
    "ExecutionReceipt",
    "ExecutionRequest",
    "ScheduleCreateRequest",
    "ScheduleListResponse",
    "ScheduleRecord",
    "ScheduleRecurrence",
    "ScheduleResponse",
    "ScheduleStore",
    "ScheduleUpdateRequest",
]
