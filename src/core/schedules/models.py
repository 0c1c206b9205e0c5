from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

ScheduleFrequency = Literal["weekly", "biweekly", "monthly", "quarterly"]
ScheduleStatus = Literal["active", "paused", "completed", "cancelled"]
AllocationRule = Literal["ips_target", "custom"]
ScheduleAuditEventType = Literal[
    "CREATED",
    "UPDATED",
    "PAUSED",
    "RESUMED",
    "CANCELLED",
    "COMPLETED",
    "EXECUTED",
    "EXECUTION_FAILED",
    "AUTO_PAUSED",
]
ExecutionOutcome = Literal["SUCCEEDED", "FAILED"]
ScheduleAlertType = Literal["EXECUTION_RETRY_EXHAUSTED"]


class ScheduleRecurrence(BaseModel):
    day_of_month: Optional[int] = Field(
        default=None,
        description="Day of month (1-31) for monthly and quarterly schedules.",
        examples=[15],
    )
    day_of_week: Optional[int] = Field(
        default=None,
        description="Day of week (0=Sunday .. 6=Saturday) for weekly and biweekly schedules.",
        examples=[1],
    )
    time: str = Field(
        default="09:30",
        description="Local execution time (HH:MM, 24h) in the account timezone.",
        examples=["09:30"],
    )


class ScheduleCreateRequest(BaseModel):
    account_id: str = Field(description="Owning account identifier.", examples=["acct_001"])
    name: str = Field(description="Display name of the schedule.", examples=["Monthly core"])
    portfolio_id: Optional[str] = Field(
        default=None,
        description="Target portfolio receiving the contribution.",
        examples=["pf_core_01"],
    )
    funding_source_id: Optional[str] = Field(
        default=None,
        description="Linked funding source debited on each execution.",
        examples=["fs_bank_01"],
    )
    amount: Decimal = Field(description="Contribution amount per execution.", examples=["250.00"])
    currency: str = Field(default="USD", description="ISO currency code.", examples=["USD"])
    frequency: ScheduleFrequency = Field(
        description="Recurrence frequency.", examples=["monthly"]
    )
    schedule: ScheduleRecurrence = Field(
        default_factory=ScheduleRecurrence,
        description="Recurrence detail: day_of_month or day_of_week plus local time.",
        examples=[{"day_of_month": 15, "time": "09:30"}],
    )
    allocation_rule: AllocationRule = Field(
        default="ips_target",
        description="How contributions are allocated across the portfolio.",
        examples=["ips_target"],
    )
    start_date: date = Field(
        description="First calendar date (account-local) the schedule may execute.",
        examples=["2026-01-31"],
    )
    timezone: Optional[str] = Field(
        default=None,
        description="IANA timezone of the account. Defaults to the service default timezone.",
        examples=["America/New_York"],
    )


class ScheduleUpdateRequest(BaseModel):
    account_id: str = Field(description="Owning account identifier.", examples=["acct_001"])
    name: Optional[str] = Field(default=None, description="New display name.")
    amount: Optional[Decimal] = Field(default=None, description="New contribution amount.")
    currency: Optional[str] = Field(default=None, description="New ISO currency code.")
    funding_source_id: Optional[str] = Field(default=None, description="New funding source.")
    frequency: Optional[ScheduleFrequency] = Field(default=None, description="New frequency.")
    schedule: Optional[ScheduleRecurrence] = Field(
        default=None, description="New recurrence detail."
    )
    allocation_rule: Optional[AllocationRule] = Field(
        default=None, description="New allocation rule."
    )


class ScheduleAccountRequest(BaseModel):
    account_id: str = Field(description="Owning account identifier.", examples=["acct_001"])


class ScheduleRecord(BaseModel):
    schedule_id: str
    account_id: str
    portfolio_id: str
    funding_source_id: str
    name: str
    amount: Decimal
    currency: str
    frequency: ScheduleFrequency
    schedule: ScheduleRecurrence
    allocation_rule: AllocationRule
    timezone: str
    status: ScheduleStatus
    start_date: date
    next_execution_date: datetime
    last_execution_date: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    version: int = 1
    failure_count: int = 0
    first_failure_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None


class ScheduleAuditRecord(BaseModel):
    audit_id: str
    schedule_id: str
    account_id: str
    event_type: ScheduleAuditEventType
    from_status: Optional[ScheduleStatus] = None
    to_status: ScheduleStatus
    at: datetime
    details: Dict[str, Any] = Field(default_factory=dict)


class ExecutionAttemptRecord(BaseModel):
    attempt_id: str
    schedule_id: str
    account_id: str
    idempotency_token: str
    scheduled_for: datetime
    attempt_no: int
    outcome: ExecutionOutcome
    execution_id: Optional[str] = None
    error: Optional[str] = None
    attempted_at: datetime
    next_retry_at: Optional[datetime] = None


class ScheduleAlertRecord(BaseModel):
    alert_id: str
    schedule_id: str
    account_id: str
    alert_type: ScheduleAlertType
    message: str
    idempotency_token: str
    raised_at: datetime


class MutationIdempotencyRecord(BaseModel):
    idempotency_key: str
    scope: str
    operation: str
    request_hash: str
    response_json: Dict[str, Any]
    created_at: datetime


class ScheduleResponse(BaseModel):
    schedule_id: str = Field(description="Schedule identifier.", examples=["ais_0a1b2c3d4e5f"])
    account_id: str = Field(description="Owning account identifier.", examples=["acct_001"])
    portfolio_id: str = Field(description="Target portfolio.", examples=["pf_core_01"])
    funding_source_id: str = Field(description="Funding source.", examples=["fs_bank_01"])
    name: str = Field(description="Display name.", examples=["Monthly core"])
    amount: Decimal = Field(description="Contribution amount.", examples=["250.00"])
    currency: str = Field(description="ISO currency code.", examples=["USD"])
    frequency: ScheduleFrequency = Field(description="Recurrence frequency.")
    schedule: ScheduleRecurrence = Field(description="Recurrence detail.")
    allocation_rule: AllocationRule = Field(description="Allocation rule.")
    timezone: str = Field(description="Account timezone.", examples=["America/New_York"])
    status: ScheduleStatus = Field(description="Lifecycle status.", examples=["active"])
    start_date: str = Field(description="Start date (ISO).", examples=["2026-01-31"])
    next_execution_date: str = Field(
        description="Next execution instant (UTC ISO8601).",
        examples=["2026-01-31T14:30:00+00:00"],
    )
    last_execution_date: Optional[str] = Field(
        default=None,
        description="Last successful execution instant (UTC ISO8601).",
    )
    created_at: str = Field(description="Creation timestamp (UTC ISO8601).")
    updated_at: str = Field(description="Last update timestamp (UTC ISO8601).")


class ScheduleListResponse(BaseModel):
    schedules: List[ScheduleResponse] = Field(
        default_factory=list, description="Schedules ordered by creation time."
    )
    total_count: int = Field(description="Number of schedules returned.", examples=[1])


class ScheduleAuditEntry(BaseModel):
    audit_id: str = Field(description="Audit entry identifier.", examples=["aud_0a1b2c3d4e5f"])
    schedule_id: str = Field(description="Schedule identifier.")
    event_type: ScheduleAuditEventType = Field(description="Audit event type.")
    from_status: Optional[ScheduleStatus] = Field(default=None, description="Status before.")
    to_status: ScheduleStatus = Field(description="Status after.")
    at: str = Field(description="Event timestamp (UTC ISO8601).")
    details: Dict[str, Any] = Field(default_factory=dict, description="Structured detail.")


class ScheduleAuditResponse(BaseModel):
    schedule_id: str = Field(description="Schedule identifier.")
    entries: List[ScheduleAuditEntry] = Field(
        default_factory=list, description="Append-only audit entries in write order."
    )


class ExecutionAttemptEntry(BaseModel):
    attempt_id: str = Field(description="Attempt identifier.")
    idempotency_token: str = Field(description="Deterministic execution token.")
    scheduled_for: str = Field(description="Scheduled execution instant (UTC ISO8601).")
    attempt_no: int = Field(description="Attempt number for this scheduled instant.")
    outcome: ExecutionOutcome = Field(description="Attempt outcome.")
    execution_id: Optional[str] = Field(default=None, description="Downstream execution id.")
    error: Optional[str] = Field(default=None, description="Failure detail.")
    attempted_at: str = Field(description="Attempt timestamp (UTC ISO8601).")
    next_retry_at: Optional[str] = Field(default=None, description="Scheduled retry instant.")


class ScheduleExecutionsResponse(BaseModel):
    schedule_id: str = Field(description="Schedule identifier.")
    attempts: List[ExecutionAttemptEntry] = Field(
        default_factory=list, description="Execution attempts in write order."
    )


class ExecutionRequest(BaseModel):
    idempotency_token: str
    schedule_id: str
    account_id: str
    portfolio_id: str
    funding_source_id: str
    amount: Decimal
    currency: str
    allocation_rule: AllocationRule
    scheduled_for: datetime


class ExecutionReceipt(BaseModel):
    execution_id: str
    idempotency_token: str
    accepted_at: datetime


class DispatchTickResult(BaseModel):
    tick_at: str = Field(description="Tick instant (UTC ISO8601).")
    due_count: int = Field(description="Schedules returned by the due query.")
    executed: List[str] = Field(default_factory=list, description="Executed schedule ids.")
    failed: List[str] = Field(default_factory=list, description="Failed schedule ids.")
    skipped: List[str] = Field(
        default_factory=list, description="Schedules skipped after the pre-dispatch re-read."
    )
    auto_paused: List[str] = Field(
        default_factory=list, description="Schedules paused after exhausting retries."
    )
