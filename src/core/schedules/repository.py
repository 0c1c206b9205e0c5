from datetime import datetime
from typing import Optional, Protocol

from src.core.policies.models import InvestmentPolicyRecord
from src.core.schedules.models import (
    ExecutionAttemptRecord,
    MutationIdempotencyRecord,
    ScheduleAlertRecord,
    ScheduleAuditRecord,
    ScheduleRecord,
)


class ScheduleStore(Protocol):
    def create_schedule(self, *, schedule: ScheduleRecord, audit: ScheduleAuditRecord) -> None: ...

    def get_schedule(self, *, account_id: str, schedule_id: str) -> Optional[ScheduleRecord]: ...

    def list_schedules(
        self,
        *,
        account_id: str,
        status: Optional[str],
        portfolio_id: Optional[str],
    ) -> list[ScheduleRecord]: ...

    def delete_schedule(self, *, account_id: str, schedule_id: str) -> bool: ...

    def transition_schedule(
        self,
        *,
        schedule: ScheduleRecord,
        audit: ScheduleAuditRecord,
        expected_version: int,
        attempt: Optional[ExecutionAttemptRecord] = None,
        alert: Optional[ScheduleAlertRecord] = None,
    ) -> ScheduleRecord: ...

    def list_due_schedules(self, *, now: datetime, limit: int) -> list[ScheduleRecord]: ...

    def claim_schedule(
        self,
        *,
        schedule_id: str,
        claim_token: str,
        now: datetime,
        lease_expires_at: datetime,
    ) -> Optional[ScheduleRecord]: ...

    def release_claim(self, *, schedule_id: str, claim_token: str) -> None: ...

    def list_audit(self, *, schedule_id: str) -> list[ScheduleAuditRecord]: ...

    def append_execution_attempt(self, attempt: ExecutionAttemptRecord) -> None: ...

    def list_execution_attempts(self, *, schedule_id: str) -> list[ExecutionAttemptRecord]: ...

    def get_successful_execution(
        self, *, idempotency_token: str
    ) -> Optional[ExecutionAttemptRecord]: ...

    def list_alerts(self, *, account_id: str) -> list[ScheduleAlertRecord]: ...

    def get_idempotency(
        self, *, scope: str, idempotency_key: str
    ) -> Optional[MutationIdempotencyRecord]: ...

    def save_idempotency(self, record: MutationIdempotencyRecord) -> None: ...

    def append_policy_version(self, record: InvestmentPolicyRecord) -> None: ...

    def get_current_policy(self, *, account_id: str) -> Optional[InvestmentPolicyRecord]: ...

    def get_policy_version(
        self, *, account_id: str, version_no: int
    ) -> Optional[InvestmentPolicyRecord]: ...

    def list_policy_versions(self, *, account_id: str) -> list[InvestmentPolicyRecord]: ...
