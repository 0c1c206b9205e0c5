import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from src.core.common.errors import (
    DomainValidationError,
    InvalidTransitionError,
    NotFoundError,
)
from src.core.common.idempotency import IdempotencyGuard
from src.core.schedules.models import (
    ExecutionAttemptEntry,
    ExecutionAttemptRecord,
    ScheduleAuditEntry,
    ScheduleAuditEventType,
    ScheduleAuditRecord,
    ScheduleAuditResponse,
    ScheduleCreateRequest,
    ScheduleExecutionsResponse,
    ScheduleListResponse,
    ScheduleRecord,
    ScheduleResponse,
    ScheduleStatus,
    ScheduleUpdateRequest,
)
from src.core.schedules.next_execution import (
    build_recurrence_rule,
    first_run,
    local_today,
    next_run,
    resolve_timezone,
)
from src.core.schedules.repository import ScheduleStore

logger = logging.getLogger(__name__)

TERMINAL_STATES = {"completed", "cancelled"}
MUTABLE_STATES = {"active", "paused"}

TRANSITION_MAP: dict[tuple[ScheduleStatus, ScheduleAuditEventType], ScheduleStatus] = {
    ("active", "PAUSED"): "paused",
    ("paused", "RESUMED"): "active",
    ("active", "COMPLETED"): "completed",
    ("paused", "COMPLETED"): "completed",
}

_CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")


class ScheduleLifecycleService:
    def __init__(
        self,
        *,
        store: ScheduleStore,
        clock: Optional[Callable[[], datetime]] = None,
        default_timezone: str = "UTC",
        idempotency: Optional[IdempotencyGuard] = None,
    ) -> None:
        self._store = store
        self._clock = clock or _utc_now
        self._default_timezone = default_timezone
        self._idempotency = idempotency or IdempotencyGuard(store=store, clock=self._clock)

    def create(
        self,
        *,
        payload: ScheduleCreateRequest,
        idempotency_key: Optional[str] = None,
    ) -> ScheduleResponse:
        request_payload = payload.model_dump(mode="json")
        replayed = self._idempotency.replay(
            account_id=payload.account_id,
            operation="CREATE_SCHEDULE",
            idempotency_key=idempotency_key,
            request_payload=request_payload,
        )
        if replayed is not None:
            return ScheduleResponse.model_validate(replayed)

        now = self._clock()
        _require_text("account_id", payload.account_id)
        _require_text("name", payload.name)
        _require_text("portfolio_id", payload.portfolio_id)
        _require_text("funding_source_id", payload.funding_source_id)
        _validate_amount(payload.amount)
        _validate_currency(payload.currency)
        timezone_name = payload.timezone or self._default_timezone
        tz = resolve_timezone(timezone_name)
        rule = build_recurrence_rule(payload.frequency, payload.schedule)
        if payload.start_date < local_today(now, tz):
            raise DomainValidationError("start_date", "start_date must not be in the past")

        next_execution = first_run(rule=rule, start_date=payload.start_date, tz=tz)
        if next_execution <= now:
            # start_date is today and the local time has already passed
            next_execution = next_run(
                rule=rule, start_date=payload.start_date, reference=now, tz=tz
            )

        schedule = ScheduleRecord(
            schedule_id=f"ais_{uuid.uuid4().hex[:12]}",
            account_id=payload.account_id,
            portfolio_id=payload.portfolio_id or "",
            funding_source_id=payload.funding_source_id or "",
            name=payload.name.strip(),
            amount=payload.amount,
            currency=payload.currency,
            frequency=payload.frequency,
            schedule=payload.schedule,
            allocation_rule=payload.allocation_rule,
            timezone=timezone_name,
            status="active",
            start_date=payload.start_date,
            next_execution_date=next_execution,
            created_at=now,
            updated_at=now,
        )
        audit = _audit(
            schedule=schedule,
            event_type="CREATED",
            from_status=None,
            at=now,
            details={"next_execution_date": next_execution.isoformat()},
        )
        self._store.create_schedule(schedule=schedule, audit=audit)
        logger.info(
            "auto_invest.schedule.created",
            extra={
                "extra_fields": {
                    "schedule_id": schedule.schedule_id,
                    "account_id": schedule.account_id,
                    "frequency": schedule.frequency,
                }
            },
        )

        response = to_schedule_response(schedule)
        self._idempotency.remember(
            account_id=payload.account_id,
            operation="CREATE_SCHEDULE",
            idempotency_key=idempotency_key,
            request_payload=request_payload,
            response_payload=response.model_dump(mode="json"),
        )
        return response

    def get(self, *, account_id: str, schedule_id: str) -> ScheduleResponse:
        return to_schedule_response(self._load(account_id=account_id, schedule_id=schedule_id))

    def list_schedules(
        self,
        *,
        account_id: str,
        status: Optional[ScheduleStatus] = None,
        portfolio_id: Optional[str] = None,
    ) -> ScheduleListResponse:
        rows = self._store.list_schedules(
            account_id=account_id, status=status, portfolio_id=portfolio_id
        )
        return ScheduleListResponse(
            schedules=[to_schedule_response(row) for row in rows],
            total_count=len(rows),
        )

    def update(
        self,
        *,
        schedule_id: str,
        payload: ScheduleUpdateRequest,
        idempotency_key: Optional[str] = None,
    ) -> ScheduleResponse:
        request_payload = {"schedule_id": schedule_id, **payload.model_dump(mode="json")}
        return self._idempotent(
            account_id=payload.account_id,
            operation="UPDATE_SCHEDULE",
            idempotency_key=idempotency_key,
            request_payload=request_payload,
            apply=lambda: self._update(schedule_id=schedule_id, payload=payload),
        )

    def pause(
        self, *, account_id: str, schedule_id: str, idempotency_key: Optional[str] = None
    ) -> ScheduleResponse:
        return self._idempotent(
            account_id=account_id,
            operation="PAUSE_SCHEDULE",
            idempotency_key=idempotency_key,
            request_payload={"schedule_id": schedule_id},
            apply=lambda: self._transition(
                account_id=account_id, schedule_id=schedule_id, event_type="PAUSED"
            ),
        )

    def resume(
        self, *, account_id: str, schedule_id: str, idempotency_key: Optional[str] = None
    ) -> ScheduleResponse:
        return self._idempotent(
            account_id=account_id,
            operation="RESUME_SCHEDULE",
            idempotency_key=idempotency_key,
            request_payload={"schedule_id": schedule_id},
            apply=lambda: self._transition(
                account_id=account_id, schedule_id=schedule_id, event_type="RESUMED"
            ),
        )

    def cancel(
        self, *, account_id: str, schedule_id: str, idempotency_key: Optional[str] = None
    ) -> ScheduleResponse:
        return self._idempotent(
            account_id=account_id,
            operation="CANCEL_SCHEDULE",
            idempotency_key=idempotency_key,
            request_payload={"schedule_id": schedule_id},
            apply=lambda: self._transition(
                account_id=account_id, schedule_id=schedule_id, event_type="CANCELLED"
            ),
        )

    def mark_completed(self, *, account_id: str, schedule_id: str) -> ScheduleResponse:
        """Reserved for end conditions such as a fixed number of occurrences."""
        return self._transition(
            account_id=account_id, schedule_id=schedule_id, event_type="COMPLETED"
        )

    def list_audit(self, *, account_id: str, schedule_id: str) -> ScheduleAuditResponse:
        self._load(account_id=account_id, schedule_id=schedule_id)
        return ScheduleAuditResponse(
            schedule_id=schedule_id,
            entries=[
                _to_audit_entry(row) for row in self._store.list_audit(schedule_id=schedule_id)
            ],
        )

    def list_executions(
        self, *, account_id: str, schedule_id: str
    ) -> ScheduleExecutionsResponse:
        self._load(account_id=account_id, schedule_id=schedule_id)
        return ScheduleExecutionsResponse(
            schedule_id=schedule_id,
            attempts=[
                _to_attempt_entry(row)
                for row in self._store.list_execution_attempts(schedule_id=schedule_id)
            ],
        )

    def _idempotent(
        self,
        *,
        account_id: str,
        operation: str,
        idempotency_key: Optional[str],
        request_payload: dict[str, Any],
        apply: Callable[[], ScheduleResponse],
    ) -> ScheduleResponse:
        replayed = self._idempotency.replay(
            account_id=account_id,
            operation=operation,
            idempotency_key=idempotency_key,
            request_payload=request_payload,
        )
        if replayed is not None:
            return ScheduleResponse.model_validate(replayed)
        response = apply()
        self._idempotency.remember(
            account_id=account_id,
            operation=operation,
            idempotency_key=idempotency_key,
            request_payload=request_payload,
            response_payload=response.model_dump(mode="json"),
        )
        return response

    def _load(self, *, account_id: str, schedule_id: str) -> ScheduleRecord:
        schedule = self._store.get_schedule(account_id=account_id, schedule_id=schedule_id)
        if schedule is None:
            raise NotFoundError("SCHEDULE_NOT_FOUND")
        return schedule

    def _update(self, *, schedule_id: str, payload: ScheduleUpdateRequest) -> ScheduleResponse:
        current = self._load(account_id=payload.account_id, schedule_id=schedule_id)
        if current.status not in MUTABLE_STATES:
            raise InvalidTransitionError(
                f"INVALID_TRANSITION: cannot update schedule in status {current.status}"
            )

        changes = payload.model_dump(exclude_unset=True, exclude={"account_id"})
        changes = {key: value for key, value in changes.items() if value is not None}
        if "name" in changes:
            _require_text("name", payload.name)
        if "amount" in changes:
            _validate_amount(payload.amount)
        if "currency" in changes:
            _validate_currency(payload.currency)
        if "funding_source_id" in changes:
            _require_text("funding_source_id", payload.funding_source_id)

        now = self._clock()
        updated = current.model_copy(deep=True)
        if payload.name is not None:
            updated.name = payload.name.strip()
        if payload.amount is not None:
            updated.amount = payload.amount
        if payload.currency is not None:
            updated.currency = payload.currency
        if payload.funding_source_id is not None:
            updated.funding_source_id = payload.funding_source_id
        if payload.allocation_rule is not None:
            updated.allocation_rule = payload.allocation_rule

        details: dict[str, Any] = {"changed_fields": sorted(changes)}
        if payload.frequency is not None or payload.schedule is not None:
            updated.frequency = payload.frequency or current.frequency
            updated.schedule = payload.schedule or current.schedule
            rule = build_recurrence_rule(updated.frequency, updated.schedule)
            updated.next_execution_date = next_run(
                rule=rule,
                start_date=updated.start_date,
                reference=now,
                tz=resolve_timezone(updated.timezone),
            )
            # retry state belonged to the previous instant
            updated.failure_count = 0
            updated.first_failure_at = None
            updated.next_retry_at = None
            details["next_execution_date"] = updated.next_execution_date.isoformat()

        updated.updated_at = now
        updated.version = current.version + 1
        audit = _audit(
            schedule=updated,
            event_type="UPDATED",
            from_status=current.status,
            at=now,
            details=details,
        )
        stored = self._store.transition_schedule(
            schedule=updated, audit=audit, expected_version=current.version
        )
        return to_schedule_response(stored)

    def _transition(
        self,
        *,
        account_id: str,
        schedule_id: str,
        event_type: ScheduleAuditEventType,
    ) -> ScheduleResponse:
        current = self._load(account_id=account_id, schedule_id=schedule_id)
        to_status = _resolve_transition(current.status, event_type)
        now = self._clock()

        updated = current.model_copy(deep=True)
        updated.status = to_status
        updated.updated_at = now
        updated.version = current.version + 1
        details: dict[str, Any] = {}
        if event_type == "RESUMED":
            updated.failure_count = 0
            updated.first_failure_at = None
            updated.next_retry_at = None
            if current.next_execution_date <= now:
                # missed windows are skipped, only the next future occurrence is scheduled
                updated.next_execution_date = next_run(
                    rule=build_recurrence_rule(current.frequency, current.schedule),
                    start_date=current.start_date,
                    reference=now,
                    tz=resolve_timezone(current.timezone),
                )
                details["skipped_from"] = current.next_execution_date.isoformat()
            details["next_execution_date"] = updated.next_execution_date.isoformat()

        audit = _audit(
            schedule=updated,
            event_type=event_type,
            from_status=current.status,
            at=now,
            details=details,
        )
        stored = self._store.transition_schedule(
            schedule=updated, audit=audit, expected_version=current.version
        )
        logger.info(
            "auto_invest.schedule.transitioned",
            extra={
                "extra_fields": {
                    "schedule_id": schedule_id,
                    "from_status": current.status,
                    "to_status": to_status,
                }
            },
        )
        return to_schedule_response(stored)


def to_schedule_response(schedule: ScheduleRecord) -> ScheduleResponse:
    return ScheduleResponse(
        schedule_id=schedule.schedule_id,
        account_id=schedule.account_id,
        portfolio_id=schedule.portfolio_id,
        funding_source_id=schedule.funding_source_id,
        name=schedule.name,
        amount=schedule.amount,
        currency=schedule.currency,
        frequency=schedule.frequency,
        schedule=schedule.schedule,
        allocation_rule=schedule.allocation_rule,
        timezone=schedule.timezone,
        status=schedule.status,
        start_date=schedule.start_date.isoformat(),
        next_execution_date=schedule.next_execution_date.isoformat(),
        last_execution_date=(
            schedule.last_execution_date.isoformat()
            if schedule.last_execution_date is not None
            else None
        ),
        created_at=schedule.created_at.isoformat(),
        updated_at=schedule.updated_at.isoformat(),
    )


def new_audit_id() -> str:
    return f"aud_{uuid.uuid4().hex[:12]}"


def _audit(
    *,
    schedule: ScheduleRecord,
    event_type: ScheduleAuditEventType,
    from_status: Optional[ScheduleStatus],
    at: datetime,
    details: dict[str, Any],
) -> ScheduleAuditRecord:
    return ScheduleAuditRecord(
        audit_id=new_audit_id(),
        schedule_id=schedule.schedule_id,
        account_id=schedule.account_id,
        event_type=event_type,
        from_status=from_status,
        to_status=schedule.status,
        at=at,
        details=details,
    )


def _resolve_transition(
    current_status: ScheduleStatus, event_type: ScheduleAuditEventType
) -> ScheduleStatus:
    if event_type == "CANCELLED" and current_status not in TERMINAL_STATES:
        return "cancelled"
    next_status = TRANSITION_MAP.get((current_status, event_type))
    if next_status is None:
        raise InvalidTransitionError(
            f"INVALID_TRANSITION: {event_type} not allowed from {current_status}"
        )
    return next_status


def _require_text(field: str, value: Optional[str]) -> None:
    if value is None or not value.strip():
        raise DomainValidationError(field, f"{field} is required")


def _validate_amount(amount) -> None:
    if amount is None or not amount.is_finite() or amount <= 0:
        raise DomainValidationError("amount", "amount must be greater than zero")


def _validate_currency(currency: Optional[str]) -> None:
    if currency is None or _CURRENCY_PATTERN.match(currency) is None:
        raise DomainValidationError("currency", "currency must be a 3-letter ISO code")


def _to_audit_entry(row: ScheduleAuditRecord) -> ScheduleAuditEntry:
    return ScheduleAuditEntry(
        audit_id=row.audit_id,
        schedule_id=row.schedule_id,
        event_type=row.event_type,
        from_status=row.from_status,
        to_status=row.to_status,
        at=row.at.isoformat(),
        details=row.details,
    )


def _to_attempt_entry(row: ExecutionAttemptRecord) -> ExecutionAttemptEntry:
    return ExecutionAttemptEntry(
        attempt_id=row.attempt_id,
        idempotency_token=row.idempotency_token,
        scheduled_for=row.scheduled_for.isoformat(),
        attempt_no=row.attempt_no,
        outcome=row.outcome,
        execution_id=row.execution_id,
        error=row.error,
        attempted_at=row.attempted_at.isoformat(),
        next_retry_at=row.next_retry_at.isoformat() if row.next_retry_at is not None else None,
    )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
