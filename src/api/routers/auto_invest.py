from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, status

from src.api.dependencies import get_dispatcher, get_schedule_service
from src.api.routers.http_errors import raise_auto_invest_http_exception
from src.api.routers.runtime_utils import assert_feature_enabled
from src.core.common.errors import AutoInvestError
from src.core.schedules.dispatcher import ExecutionDispatcher
from src.core.schedules.models import (
    DispatchTickResult,
    ScheduleAccountRequest,
    ScheduleAuditResponse,
    ScheduleCreateRequest,
    ScheduleExecutionsResponse,
    ScheduleListResponse,
    ScheduleResponse,
    ScheduleStatus,
    ScheduleUpdateRequest,
)
from src.core.schedules.service import ScheduleLifecycleService

router = APIRouter(tags=["Auto-Invest Schedules"])

IdempotencyKeyHeader = Annotated[
    Optional[str],
    Header(
        alias="Idempotency-Key",
        description="Optional idempotency key; a repeat within the retention window replays.",
        examples=["auto-invest-create-001"],
    ),
]
ScheduleIdPath = Annotated[
    str,
    Path(description="Auto-invest schedule identifier.", examples=["ais_0a1b2c3d4e5f"]),
]
AccountIdQuery = Annotated[
    str,
    Query(description="Owning account identifier.", examples=["acct_001"]),
]


def _assert_lifecycle_enabled() -> None:
    assert_feature_enabled(
        name="AUTO_INVEST_LIFECYCLE_ENABLED",
        default=True,
        detail="AUTO_INVEST_LIFECYCLE_DISABLED",
    )


def _assert_support_apis_enabled() -> None:
    assert_feature_enabled(
        name="AUTO_INVEST_SUPPORT_APIS_ENABLED",
        default=True,
        detail="AUTO_INVEST_SUPPORT_APIS_DISABLED",
    )


@router.post(
    "/wealth/auto-invest",
    response_model=ScheduleResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Auto-Invest Schedule",
    description=(
        "Validates the recurrence, computes the first execution instant on or after "
        "start_date, and persists the schedule as active."
    ),
)
def create_schedule(
    payload: ScheduleCreateRequest,
    idempotency_key: IdempotencyKeyHeader = None,
    service: ScheduleLifecycleService = Depends(get_schedule_service),
) -> ScheduleResponse:
    _assert_lifecycle_enabled()
    try:
        return service.create(payload=payload, idempotency_key=idempotency_key)
    except AutoInvestError as exc:
        raise_auto_invest_http_exception(exc)


@router.get(
    "/wealth/auto-invest",
    response_model=ScheduleListResponse,
    status_code=status.HTTP_200_OK,
    summary="List Auto-Invest Schedules",
    description="Lists the account's schedules, optionally filtered by status and portfolio.",
)
def list_schedules(
    account_id: AccountIdQuery,
    schedule_status: Annotated[
        Optional[ScheduleStatus],
        Query(alias="status", description="Lifecycle status filter.", examples=["active"]),
    ] = None,
    portfolio_id: Annotated[
        Optional[str],
        Query(description="Portfolio filter.", examples=["pf_core_01"]),
    ] = None,
    service: ScheduleLifecycleService = Depends(get_schedule_service),
) -> ScheduleListResponse:
    _assert_lifecycle_enabled()
    return service.list_schedules(
        account_id=account_id, status=schedule_status, portfolio_id=portfolio_id
    )


@router.post(
    "/wealth/auto-invest/dispatch",
    response_model=DispatchTickResult,
    status_code=status.HTTP_200_OK,
    summary="Run One Dispatch Tick",
    description="Executes every due schedule once. Operational endpoint, disabled by default.",
)
def run_dispatch_tick(
    dispatcher: ExecutionDispatcher = Depends(get_dispatcher),
) -> DispatchTickResult:
    assert_feature_enabled(
        name="AUTO_INVEST_MANUAL_DISPATCH_ENABLED",
        default=False,
        detail="AUTO_INVEST_MANUAL_DISPATCH_DISABLED",
    )
    return dispatcher.tick()


@router.get(
    "/wealth/auto-invest/{schedule_id}",
    response_model=ScheduleResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Auto-Invest Schedule",
    description="Returns one schedule owned by the account.",
)
def get_schedule(
    schedule_id: ScheduleIdPath,
    account_id: AccountIdQuery,
    service: ScheduleLifecycleService = Depends(get_schedule_service),
) -> ScheduleResponse:
    _assert_lifecycle_enabled()
    try:
        return service.get(account_id=account_id, schedule_id=schedule_id)
    except AutoInvestError as exc:
        raise_auto_invest_http_exception(exc)


@router.patch(
    "/wealth/auto-invest/{schedule_id}",
    response_model=ScheduleResponse,
    status_code=status.HTTP_200_OK,
    summary="Update Auto-Invest Schedule",
    description=(
        "Partial update while active or paused. Changing frequency or schedule recomputes "
        "next_execution_date, other fields do not."
    ),
)
def update_schedule(
    schedule_id: ScheduleIdPath,
    payload: ScheduleUpdateRequest,
    idempotency_key: IdempotencyKeyHeader = None,
    service: ScheduleLifecycleService = Depends(get_schedule_service),
) -> ScheduleResponse:
    _assert_lifecycle_enabled()
    try:
        return service.update(
            schedule_id=schedule_id, payload=payload, idempotency_key=idempotency_key
        )
    except AutoInvestError as exc:
        raise_auto_invest_http_exception(exc)


@router.delete(
    "/wealth/auto-invest/{schedule_id}",
    response_model=ScheduleResponse,
    status_code=status.HTTP_200_OK,
    summary="Cancel Auto-Invest Schedule",
    description="Cancels the schedule. Cancellation is terminal; the record is retained.",
)
def cancel_schedule(
    schedule_id: ScheduleIdPath,
    account_id: AccountIdQuery,
    idempotency_key: IdempotencyKeyHeader = None,
    service: ScheduleLifecycleService = Depends(get_schedule_service),
) -> ScheduleResponse:
    _assert_lifecycle_enabled()
    try:
        return service.cancel(
            account_id=account_id, schedule_id=schedule_id, idempotency_key=idempotency_key
        )
    except AutoInvestError as exc:
        raise_auto_invest_http_exception(exc)


@router.post(
    "/wealth/auto-invest/{schedule_id}/pause",
    response_model=ScheduleResponse,
    status_code=status.HTTP_200_OK,
    summary="Pause Auto-Invest Schedule",
    description="Moves an active schedule to paused.",
)
def pause_schedule(
    schedule_id: ScheduleIdPath,
    payload: ScheduleAccountRequest,
    idempotency_key: IdempotencyKeyHeader = None,
    service: ScheduleLifecycleService = Depends(get_schedule_service),
) -> ScheduleResponse:
    _assert_lifecycle_enabled()
    try:
        return service.pause(
            account_id=payload.account_id,
            schedule_id=schedule_id,
            idempotency_key=idempotency_key,
        )
    except AutoInvestError as exc:
        raise_auto_invest_http_exception(exc)


@router.post(
    "/wealth/auto-invest/{schedule_id}/resume",
    response_model=ScheduleResponse,
    status_code=status.HTTP_200_OK,
    summary="Resume Auto-Invest Schedule",
    description=(
        "Moves a paused schedule back to active. Missed windows are not back-filled; the next "
        "execution is the first occurrence after now."
    ),
)
def resume_schedule(
    schedule_id: ScheduleIdPath,
    payload: ScheduleAccountRequest,
    idempotency_key: IdempotencyKeyHeader = None,
    service: ScheduleLifecycleService = Depends(get_schedule_service),
) -> ScheduleResponse:
    _assert_lifecycle_enabled()
    try:
        return service.resume(
            account_id=payload.account_id,
            schedule_id=schedule_id,
            idempotency_key=idempotency_key,
        )
    except AutoInvestError as exc:
        raise_auto_invest_http_exception(exc)


@router.get(
    "/wealth/auto-invest/{schedule_id}/audit",
    response_model=ScheduleAuditResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Schedule Audit Trail",
    description="Returns the append-only lifecycle and execution audit for support.",
)
def get_schedule_audit(
    schedule_id: ScheduleIdPath,
    account_id: AccountIdQuery,
    service: ScheduleLifecycleService = Depends(get_schedule_service),
) -> ScheduleAuditResponse:
    _assert_support_apis_enabled()
    try:
        return service.list_audit(account_id=account_id, schedule_id=schedule_id)
    except AutoInvestError as exc:
        raise_auto_invest_http_exception(exc)


@router.get(
    "/wealth/auto-invest/{schedule_id}/executions",
    response_model=ScheduleExecutionsResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Schedule Execution Attempts",
    description="Returns execution attempts with idempotency tokens and retry timing.",
)
def get_schedule_executions(
    schedule_id: ScheduleIdPath,
    account_id: AccountIdQuery,
    service: ScheduleLifecycleService = Depends(get_schedule_service),
) -> ScheduleExecutionsResponse:
    _assert_support_apis_enabled()
    try:
        return service.list_executions(account_id=account_id, schedule_id=schedule_id)
    except AutoInvestError as exc:
        raise_auto_invest_http_exception(exc)
