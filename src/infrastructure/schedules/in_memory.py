from copy import deepcopy
from datetime import datetime
from threading import Lock
from typing import Optional

from src.core.common.errors import ConsistencyError
from src.core.policies.models import InvestmentPolicyRecord
from src.core.schedules.models import (
    ExecutionAttemptRecord,
    MutationIdempotencyRecord,
    ScheduleAlertRecord,
    ScheduleAuditRecord,
    ScheduleRecord,
)
from src.core.schedules.repository import ScheduleStore


class InMemoryScheduleStore(ScheduleStore):
    def __init__(self) -> None:
        self._lock = Lock()
        self._schedules: dict[str, ScheduleRecord] = {}
        self._claims: dict[str, tuple[str, datetime]] = {}
        self._audit: dict[str, list[ScheduleAuditRecord]] = {}
        self._attempts: dict[str, list[ExecutionAttemptRecord]] = {}
        self._alerts: list[ScheduleAlertRecord] = []
        self._idempotency: dict[tuple[str, str], MutationIdempotencyRecord] = {}
        self._policies: dict[str, list[InvestmentPolicyRecord]] = {}

    def create_schedule(self, *, schedule: ScheduleRecord, audit: ScheduleAuditRecord) -> None:
        with self._lock:
            if schedule.schedule_id in self._schedules:
                raise ConsistencyError("SCHEDULE_ALREADY_EXISTS")
            self._schedules[schedule.schedule_id] = deepcopy(schedule)
            self._audit.setdefault(schedule.schedule_id, []).append(deepcopy(audit))

    def get_schedule(self, *, account_id: str, schedule_id: str) -> Optional[ScheduleRecord]:
        with self._lock:
            schedule = self._schedules.get(schedule_id)
            if schedule is None or schedule.account_id != account_id:
                return None
            return deepcopy(schedule)

    def list_schedules(
        self,
        *,
        account_id: str,
        status: Optional[str],
        portfolio_id: Optional[str],
    ) -> list[ScheduleRecord]:
        with self._lock:
            rows = [row for row in self._schedules.values() if row.account_id == account_id]

        if status is not None:
            rows = [row for row in rows if row.status == status]
        if portfolio_id is not None:
            rows = [row for row in rows if row.portfolio_id == portfolio_id]
        rows = sorted(rows, key=lambda x: (x.created_at, x.schedule_id))
        return [deepcopy(row) for row in rows]

    def delete_schedule(self, *, account_id: str, schedule_id: str) -> bool:
        with self._lock:
            schedule = self._schedules.get(schedule_id)
            if schedule is None or schedule.account_id != account_id:
                return False
            del self._schedules[schedule_id]
            self._claims.pop(schedule_id, None)
            return True

    def transition_schedule(
        self,
        *,
        schedule: ScheduleRecord,
        audit: ScheduleAuditRecord,
        expected_version: int,
        attempt: Optional[ExecutionAttemptRecord] = None,
        alert: Optional[ScheduleAlertRecord] = None,
    ) -> ScheduleRecord:
        with self._lock:
            current = self._schedules.get(schedule.schedule_id)
            if current is None:
                raise ConsistencyError("SCHEDULE_NOT_FOUND")
            if current.version != expected_version:
                raise ConsistencyError("SCHEDULE_VERSION_CONFLICT")
            self._schedules[schedule.schedule_id] = deepcopy(schedule)
            self._audit.setdefault(schedule.schedule_id, []).append(deepcopy(audit))
            if attempt is not None:
                self._attempts.setdefault(attempt.schedule_id, []).append(deepcopy(attempt))
            if alert is not None:
                self._alerts.append(deepcopy(alert))
        return deepcopy(schedule)

    def list_due_schedules(self, *, now: datetime, limit: int) -> list[ScheduleRecord]:
        with self._lock:
            rows = [
                row
                for row in self._schedules.values()
                if row.status == "active"
                and row.next_execution_date <= now
                and (row.next_retry_at is None or row.next_retry_at <= now)
            ]
        rows = sorted(rows, key=lambda x: (x.next_execution_date, x.schedule_id))
        return [deepcopy(row) for row in rows[:limit]]

    def claim_schedule(
        self,
        *,
        schedule_id: str,
        claim_token: str,
        now: datetime,
        lease_expires_at: datetime,
    ) -> Optional[ScheduleRecord]:
        with self._lock:
            schedule = self._schedules.get(schedule_id)
            if schedule is None or schedule.status != "active":
                return None
            held = self._claims.get(schedule_id)
            if held is not None and held[1] > now:
                return None
            self._claims[schedule_id] = (claim_token, lease_expires_at)
            return deepcopy(schedule)

    def release_claim(self, *, schedule_id: str, claim_token: str) -> None:
        with self._lock:
            held = self._claims.get(schedule_id)
            if held is not None and held[0] == claim_token:
                del self._claims[schedule_id]

    def list_audit(self, *, schedule_id: str) -> list[ScheduleAuditRecord]:
        with self._lock:
            return [deepcopy(row) for row in self._audit.get(schedule_id, [])]

    def append_execution_attempt(self, attempt: ExecutionAttemptRecord) -> None:
        with self._lock:
            self._attempts.setdefault(attempt.schedule_id, []).append(deepcopy(attempt))

    def list_execution_attempts(self, *, schedule_id: str) -> list[ExecutionAttemptRecord]:
        with self._lock:
            return [deepcopy(row) for row in self._attempts.get(schedule_id, [])]

    def get_successful_execution(
        self, *, idempotency_token: str
    ) -> Optional[ExecutionAttemptRecord]:
        with self._lock:
            for attempts in self._attempts.values():
                for attempt in attempts:
                    if (
                        attempt.idempotency_token == idempotency_token
                        and attempt.outcome == "SUCCEEDED"
                    ):
                        return deepcopy(attempt)
        return None

    def list_alerts(self, *, account_id: str) -> list[ScheduleAlertRecord]:
        with self._lock:
            return [deepcopy(row) for row in self._alerts if row.account_id == account_id]

    def get_idempotency(
        self, *, scope: str, idempotency_key: str
    ) -> Optional[MutationIdempotencyRecord]:
        with self._lock:
            record = self._idempotency.get((scope, idempotency_key))
            return deepcopy(record) if record is not None else None

    def save_idempotency(self, record: MutationIdempotencyRecord) -> None:
        with self._lock:
            self._idempotency[(record.scope, record.idempotency_key)] = deepcopy(record)

    def append_policy_version(self, record: InvestmentPolicyRecord) -> None:
        with self._lock:
            versions = self._policies.setdefault(record.account_id, [])
            if any(row.version_no == record.version_no for row in versions):
                raise ConsistencyError("POLICY_VERSION_CONFLICT")
            versions.append(deepcopy(record))

    def get_current_policy(self, *, account_id: str) -> Optional[InvestmentPolicyRecord]:
        with self._lock:
            versions = self._policies.get(account_id, [])
            if not versions:
                return None
            return deepcopy(max(versions, key=lambda x: x.version_no))

    def get_policy_version(
        self, *, account_id: str, version_no: int
    ) -> Optional[InvestmentPolicyRecord]:
        with self._lock:
            for row in self._policies.get(account_id, []):
                if row.version_no == version_no:
                    return deepcopy(row)
        return None

    def list_policy_versions(self, *, account_id: str) -> list[InvestmentPolicyRecord]:
        with self._lock:
            rows = list(self._policies.get(account_id, []))
        return [deepcopy(row) for row in sorted(rows, key=lambda x: x.version_no)]
