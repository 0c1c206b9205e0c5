from threading import Lock
from typing import Optional

from fastapi import HTTPException, status

from src.api.routers import auto_invest_config
from src.api.routers.runtime_utils import normalize_backend_init_error
from src.core.common.idempotency import IdempotencyGuard
from src.core.policies.service import InvestmentPolicyService
from src.core.schedules.dispatcher import ExecutionDispatcher, InvestmentExecutor
from src.core.schedules.repository import ScheduleStore
from src.core.schedules.service import ScheduleLifecycleService

_LOCK = Lock()
_STORE: Optional[ScheduleStore] = None
_EXECUTOR: Optional[InvestmentExecutor] = None
_SCHEDULE_SERVICE: Optional[ScheduleLifecycleService] = None
_POLICY_SERVICE: Optional[InvestmentPolicyService] = None
_DISPATCHER: Optional[ExecutionDispatcher] = None


def _store_locked() -> ScheduleStore:
    global _STORE
    if _STORE is None:
        _STORE = auto_invest_config.build_store()
    return _STORE


def get_schedule_store() -> ScheduleStore:
    try:
        with _LOCK:
            return _store_locked()
    except RuntimeError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=normalize_backend_init_error(
                detail=str(exc),
                required_detail="AUTO_INVEST_POSTGRES_DSN_REQUIRED",
                fallback_detail="AUTO_INVEST_POSTGRES_CONNECTION_FAILED",
            ),
        ) from exc


def _idempotency_guard(store: ScheduleStore) -> IdempotencyGuard:
    return IdempotencyGuard(
        store=store,
        retention_seconds=auto_invest_config.idempotency_retention_seconds(),
    )


def get_schedule_service() -> ScheduleLifecycleService:
    global _SCHEDULE_SERVICE
    store = get_schedule_store()
    with _LOCK:
        if _SCHEDULE_SERVICE is None:
            _SCHEDULE_SERVICE = ScheduleLifecycleService(
                store=store,
                default_timezone=auto_invest_config.default_timezone(),
                idempotency=_idempotency_guard(store),
            )
        return _SCHEDULE_SERVICE


def get_policy_service() -> InvestmentPolicyService:
    global _POLICY_SERVICE
    store = get_schedule_store()
    with _LOCK:
        if _POLICY_SERVICE is None:
            _POLICY_SERVICE = InvestmentPolicyService(
                store=store,
                idempotency=_idempotency_guard(store),
            )
        return _POLICY_SERVICE


def build_dispatcher() -> ExecutionDispatcher:
    """Used by both the HTTP trigger and the background scheduler; raises RuntimeError."""
    global _EXECUTOR
    global _DISPATCHER
    with _LOCK:
        if _DISPATCHER is None:
            store = _store_locked()
            if _EXECUTOR is None:
                _EXECUTOR = auto_invest_config.build_executor()
            _DISPATCHER = ExecutionDispatcher(
                store=store,
                executor=_EXECUTOR,
                claim_lease_seconds=auto_invest_config.claim_lease_seconds(),
                max_retry_window_seconds=auto_invest_config.max_retry_window_seconds(),
            )
        return _DISPATCHER


def get_dispatcher() -> ExecutionDispatcher:
    try:
        return build_dispatcher()
    except RuntimeError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc


def reset_auto_invest_runtime_for_tests() -> None:
    global _STORE
    global _EXECUTOR
    global _SCHEDULE_SERVICE
    global _POLICY_SERVICE
    global _DISPATCHER
    with _LOCK:
        _STORE = None
        _EXECUTOR = None
        _SCHEDULE_SERVICE = None
        _POLICY_SERVICE = None
        _DISPATCHER = None
