"""
Executes due auto-invest schedules exactly once per scheduled instant.

A tick claims each due schedule, re-reads it under the claim, and sends one
execution request keyed by a token derived from the schedule id and the
scheduled instant. Failures keep ``next_execution_date`` unchanged and retry on
a bounded backoff; once the retry window is exhausted the schedule is paused
and an alert is stored for the insight feed.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Literal, Optional, Protocol

from src.core.common.canonical import short_hash
from src.core.common.errors import ConsistencyError, DownstreamUnavailableError
from src.core.schedules.models import (
    DispatchTickResult,
    ExecutionAttemptRecord,
    ExecutionReceipt,
    ExecutionRequest,
    ScheduleAlertRecord,
    ScheduleAuditRecord,
    ScheduleRecord,
)
from src.core.schedules.next_execution import build_recurrence_rule, next_run, resolve_timezone
from src.core.schedules.repository import ScheduleStore
from src.core.schedules.service import new_audit_id

logger = logging.getLogger(__name__)

BACKOFF_STEPS = (
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=30),
    timedelta(days=1),
)
DEFAULT_CLAIM_LEASE_SECONDS = 300
DEFAULT_MAX_RETRY_WINDOW_SECONDS = 3 * 24 * 3600
DEFAULT_BATCH_LIMIT = 100

DispatchOutcome = Literal["executed", "failed", "skipped", "auto_paused"]


class InvestmentExecutor(Protocol):
    def execute(self, request: ExecutionRequest) -> ExecutionReceipt: ...


def execution_token(*, schedule_id: str, scheduled_for: datetime) -> str:
    instant = scheduled_for.astimezone(timezone.utc).isoformat()
    return f"ait_{short_hash([schedule_id, instant], length=32)}"


def backoff_delay(failure_count: int) -> timedelta:
    index = min(max(failure_count, 1), len(BACKOFF_STEPS)) - 1
    return BACKOFF_STEPS[index]


class ExecutionDispatcher:
    def __init__(
        self,
        *,
        store: ScheduleStore,
        executor: InvestmentExecutor,
        clock: Optional[Callable[[], datetime]] = None,
        claim_lease_seconds: int = DEFAULT_CLAIM_LEASE_SECONDS,
        max_retry_window_seconds: int = DEFAULT_MAX_RETRY_WINDOW_SECONDS,
        batch_limit: int = DEFAULT_BATCH_LIMIT,
    ) -> None:
        self._store = store
        self._executor = executor
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._claim_lease = timedelta(seconds=claim_lease_seconds)
        self._max_retry_window = timedelta(seconds=max_retry_window_seconds)
        self._batch_limit = batch_limit

    def tick(self, now: Optional[datetime] = None) -> DispatchTickResult:
        now = now or self._clock()
        due = self._store.list_due_schedules(now=now, limit=self._batch_limit)
        result = DispatchTickResult(tick_at=now.isoformat(), due_count=len(due))
        for schedule in due:
            try:
                outcome = self._dispatch_one(schedule=schedule, now=now)
            except Exception:
                # one broken schedule must not block the rest of the batch
                logger.exception(
                    "auto_invest.dispatch.schedule_failed",
                    extra={"extra_fields": {"schedule_id": schedule.schedule_id}},
                )
                outcome = "failed"
            if outcome == "executed":
                result.executed.append(schedule.schedule_id)
            elif outcome == "failed":
                result.failed.append(schedule.schedule_id)
            elif outcome == "auto_paused":
                result.auto_paused.append(schedule.schedule_id)
            else:
                result.skipped.append(schedule.schedule_id)
        if due:
            logger.info(
                "auto_invest.dispatch.tick",
                extra={
                    "extra_fields": {
                        "due_count": result.due_count,
                        "executed": len(result.executed),
                        "failed": len(result.failed),
                        "skipped": len(result.skipped),
                        "auto_paused": len(result.auto_paused),
                    }
                },
            )
        return result

    def _dispatch_one(self, *, schedule: ScheduleRecord, now: datetime) -> DispatchOutcome:
        claim_token = f"clm_{uuid.uuid4().hex[:12]}"
        claimed = self._store.claim_schedule(
            schedule_id=schedule.schedule_id,
            claim_token=claim_token,
            now=now,
            lease_expires_at=now + self._claim_lease,
        )
        if claimed is None:
            return "skipped"
        try:
            if not _is_due(claimed, now):
                return "skipped"

            token = execution_token(
                schedule_id=claimed.schedule_id, scheduled_for=claimed.next_execution_date
            )
            prior = self._store.get_successful_execution(idempotency_token=token)
            if prior is not None:
                self._advance(
                    schedule=claimed,
                    token=token,
                    execution_id=prior.execution_id,
                    now=now,
                    attempt=None,
                )
                return "executed"

            try:
                receipt = self._executor.execute(_to_request(claimed, token))
            except DownstreamUnavailableError as exc:
                return self._record_failure(
                    schedule=claimed, token=token, now=now, error=str(exc), retryable=exc.retryable
                )
            except Exception as exc:
                logger.exception(
                    "auto_invest.execution.unexpected_error",
                    extra={
                        "extra_fields": {
                            "schedule_id": claimed.schedule_id,
                            "idempotency_token": token,
                        }
                    },
                )
                return self._record_failure(
                    schedule=claimed,
                    token=token,
                    now=now,
                    error=f"EXECUTOR_UNEXPECTED_ERROR: {exc.__class__.__name__}",
                    retryable=True,
                )

            attempt = ExecutionAttemptRecord(
                attempt_id=f"aia_{uuid.uuid4().hex[:12]}",
                schedule_id=claimed.schedule_id,
                account_id=claimed.account_id,
                idempotency_token=token,
                scheduled_for=claimed.next_execution_date,
                attempt_no=claimed.failure_count + 1,
                outcome="SUCCEEDED",
                execution_id=receipt.execution_id,
                attempted_at=now,
            )
            self._advance(
                schedule=claimed,
                token=token,
                execution_id=receipt.execution_id,
                now=now,
                attempt=attempt,
            )
            return "executed"
        finally:
            self._store.release_claim(schedule_id=schedule.schedule_id, claim_token=claim_token)

    def _advance(
        self,
        *,
        schedule: ScheduleRecord,
        token: str,
        execution_id: Optional[str],
        now: datetime,
        attempt: Optional[ExecutionAttemptRecord],
    ) -> None:
        scheduled_for = schedule.next_execution_date
        try:
            self._commit_success(
                base=schedule,
                scheduled_for=scheduled_for,
                token=token,
                execution_id=execution_id,
                now=now,
                attempt=attempt,
            )
            return
        except ConsistencyError:
            fresh = self._store.get_schedule(
                account_id=schedule.account_id, schedule_id=schedule.schedule_id
            )

        # a lifecycle call landed between claim and commit
        if fresh is not None and fresh.next_execution_date == scheduled_for:
            self._commit_success(
                base=fresh,
                scheduled_for=scheduled_for,
                token=token,
                execution_id=execution_id,
                now=now,
                attempt=attempt,
            )
        elif attempt is not None:
            self._store.append_execution_attempt(attempt)

    def _commit_success(
        self,
        *,
        base: ScheduleRecord,
        scheduled_for: datetime,
        token: str,
        execution_id: Optional[str],
        now: datetime,
        attempt: Optional[ExecutionAttemptRecord],
    ) -> None:
        updated = base.model_copy(deep=True)
        updated.last_execution_date = scheduled_for
        updated.next_execution_date = next_run(
            rule=build_recurrence_rule(base.frequency, base.schedule),
            start_date=base.start_date,
            reference=scheduled_for,
            tz=resolve_timezone(base.timezone),
        )
        updated.failure_count = 0
        updated.first_failure_at = None
        updated.next_retry_at = None
        updated.updated_at = now
        updated.version = base.version + 1
        audit = ScheduleAuditRecord(
            audit_id=new_audit_id(),
            schedule_id=base.schedule_id,
            account_id=base.account_id,
            event_type="EXECUTED",
            from_status=base.status,
            to_status=updated.status,
            at=now,
            details={
                "idempotency_token": token,
                "execution_id": execution_id,
                "scheduled_for": scheduled_for.isoformat(),
                "next_execution_date": updated.next_execution_date.isoformat(),
            },
        )
        self._store.transition_schedule(
            schedule=updated, audit=audit, expected_version=base.version, attempt=attempt
        )

    def _record_failure(
        self,
        *,
        schedule: ScheduleRecord,
        token: str,
        now: datetime,
        error: str,
        retryable: bool,
    ) -> DispatchOutcome:
        failure_count = schedule.failure_count + 1
        first_failure_at = schedule.first_failure_at or now
        window_ends_at = first_failure_at + self._max_retry_window
        exhausted = not retryable or now >= window_ends_at

        logger.warning(
            "auto_invest.execution.failed",
            extra={
                "extra_fields": {
                    "schedule_id": schedule.schedule_id,
                    "idempotency_token": token,
                    "failure_count": failure_count,
                    "error": error,
                    "retry_exhausted": exhausted,
                }
            },
        )

        updated = schedule.model_copy(deep=True)
        updated.failure_count = failure_count
        updated.first_failure_at = first_failure_at
        updated.updated_at = now
        updated.version = schedule.version + 1

        alert: Optional[ScheduleAlertRecord] = None
        if exhausted:
            updated.status = "paused"
            updated.next_retry_at = None
            alert = ScheduleAlertRecord(
                alert_id=f"ial_{uuid.uuid4().hex[:12]}",
                schedule_id=schedule.schedule_id,
                account_id=schedule.account_id,
                alert_type="EXECUTION_RETRY_EXHAUSTED",
                message=(
                    f"Auto-invest '{schedule.name}' was paused after {failure_count} failed "
                    "execution attempts."
                ),
                idempotency_token=token,
                raised_at=now,
            )
        else:
            updated.next_retry_at = min(now + backoff_delay(failure_count), window_ends_at)

        attempt = ExecutionAttemptRecord(
            attempt_id=f"aia_{uuid.uuid4().hex[:12]}",
            schedule_id=schedule.schedule_id,
            account_id=schedule.account_id,
            idempotency_token=token,
            scheduled_for=schedule.next_execution_date,
            attempt_no=failure_count,
            outcome="FAILED",
            error=error,
            attempted_at=now,
            next_retry_at=updated.next_retry_at,
        )
        audit = ScheduleAuditRecord(
            audit_id=new_audit_id(),
            schedule_id=schedule.schedule_id,
            account_id=schedule.account_id,
            event_type="AUTO_PAUSED" if exhausted else "EXECUTION_FAILED",
            from_status=schedule.status,
            to_status=updated.status,
            at=now,
            details={
                "idempotency_token": token,
                "error": error,
                "failure_count": failure_count,
                "next_retry_at": (
                    updated.next_retry_at.isoformat() if updated.next_retry_at else None
                ),
            },
        )
        try:
            self._store.transition_schedule(
                schedule=updated,
                audit=audit,
                expected_version=schedule.version,
                attempt=attempt,
                alert=alert,
            )
        except ConsistencyError:
            # the schedule changed under the claim; keep the attempt for support
            self._store.append_execution_attempt(attempt)
            return "failed"
        return "auto_paused" if exhausted else "failed"


def _is_due(schedule: ScheduleRecord, now: datetime) -> bool:
    if schedule.status != "active" or schedule.next_execution_date > now:
        return False
    return schedule.next_retry_at is None or schedule.next_retry_at <= now


def _to_request(schedule: ScheduleRecord, token: str) -> ExecutionRequest:
    return ExecutionRequest(
        idempotency_token=token,
        schedule_id=schedule.schedule_id,
        account_id=schedule.account_id,
        portfolio_id=schedule.portfolio_id,
        funding_source_id=schedule.funding_source_id,
        amount=schedule.amount,
        currency=schedule.currency,
        allocation_rule=schedule.allocation_rule,
        scheduled_for=schedule.next_execution_date,
    )
