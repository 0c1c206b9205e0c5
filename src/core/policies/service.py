import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from src.core.common.errors import ConsistencyError, NotFoundError
from src.core.common.idempotency import IdempotencyGuard
from src.core.insights.generator import (
    DEFAULT_PRODUCERS,
    InsightContext,
    SignalProducer,
    generate_insights,
)
from src.core.insights.models import InsightsResponse
from src.core.policies.compliance import compute_drift, validate_policy
from src.core.policies.models import (
    ComplianceResult,
    InvestmentPolicyPutRequest,
    InvestmentPolicyRecord,
    InvestmentPolicyResponse,
    InvestmentPolicyVersionSummary,
)
from src.core.policies.snapshot import PortfolioSnapshot
from src.core.schedules.models import ScheduleAlertRecord
from src.core.schedules.repository import ScheduleStore

logger = logging.getLogger(__name__)


class InvestmentPolicyService:
    def __init__(
        self,
        *,
        store: ScheduleStore,
        clock: Optional[Callable[[], datetime]] = None,
        idempotency: Optional[IdempotencyGuard] = None,
        producers: Sequence[SignalProducer] = DEFAULT_PRODUCERS,
    ) -> None:
        self._store = store
        self._clock = clock or _utc_now
        self._idempotency = idempotency or IdempotencyGuard(store=store, clock=self._clock)
        self._producers = producers

    def get_current(
        self,
        *,
        account_id: str,
        include_history: bool = False,
        version_no: Optional[int] = None,
    ) -> InvestmentPolicyResponse:
        if version_no is None:
            record = self._store.get_current_policy(account_id=account_id)
            if record is None:
                raise NotFoundError("INVESTMENT_POLICY_NOT_FOUND")
        else:
            record = self._store.get_policy_version(account_id=account_id, version_no=version_no)
            if record is None:
                raise NotFoundError("INVESTMENT_POLICY_VERSION_NOT_FOUND")

        history = None
        if include_history:
            history = [
                _to_version_summary(row)
                for row in self._store.list_policy_versions(account_id=account_id)
            ]
        return _to_response(record, history=history)

    def put(
        self,
        *,
        payload: InvestmentPolicyPutRequest,
        idempotency_key: Optional[str] = None,
    ) -> InvestmentPolicyResponse:
        request_payload = payload.model_dump(mode="json")
        replayed = self._idempotency.replay(
            account_id=payload.account_id,
            operation="PUT_INVESTMENT_POLICY",
            idempotency_key=idempotency_key,
            request_payload=request_payload,
        )
        if replayed is not None:
            return InvestmentPolicyResponse.model_validate(replayed)

        policy = payload.to_policy()
        validation = validate_policy(policy)
        if not validation.valid:
            detail = "; ".join(f"{issue.field}: {issue.message}" for issue in validation.errors)
            raise ConsistencyError(f"INVESTMENT_POLICY_INCONSISTENT: {detail}")

        current = self._store.get_current_policy(account_id=payload.account_id)
        record = InvestmentPolicyRecord(
            policy_id=f"ips_{uuid.uuid4().hex[:12]}",
            account_id=payload.account_id,
            version_no=1 if current is None else current.version_no + 1,
            created_at=self._clock(),
            created_by=payload.created_by,
            policy=policy,
        )
        self._store.append_policy_version(record)
        logger.info(
            "investment_policy.version.created",
            extra={
                "extra_fields": {
                    "account_id": record.account_id,
                    "policy_id": record.policy_id,
                    "version_no": record.version_no,
                }
            },
        )

        response = _to_response(record, history=None)
        self._idempotency.remember(
            account_id=payload.account_id,
            operation="PUT_INVESTMENT_POLICY",
            idempotency_key=idempotency_key,
            request_payload=request_payload,
            response_payload=response.model_dump(mode="json"),
        )
        return response

    def validate_against_portfolio(
        self, *, account_id: str, snapshot: PortfolioSnapshot
    ) -> ComplianceResult:
        record = self._store.get_current_policy(account_id=account_id)
        if record is None:
            raise NotFoundError("INVESTMENT_POLICY_NOT_FOUND")
        return compute_drift(record.policy, snapshot)

    def generate_insights(
        self, *, account_id: str, snapshot: PortfolioSnapshot
    ) -> InsightsResponse:
        record = self._store.get_current_policy(account_id=account_id)
        policy = record.policy if record is not None else None
        context = InsightContext(
            snapshot=snapshot,
            policy=policy,
            compliance=compute_drift(policy, snapshot) if policy is not None else None,
            alerts=tuple(self._open_alerts(account_id=account_id)),
        )
        insights = generate_insights(context, self._producers)
        return InsightsResponse(
            account_id=account_id,
            as_of=snapshot.as_of.isoformat(),
            insights=insights,
            total_count=len(insights),
        )


    def _open_alerts(self, *, account_id: str) -> list[ScheduleAlertRecord]:
        """Alerts whose schedule is still paused in the failure episode that raised them."""
        open_alerts = []
        for alert in self._store.list_alerts(account_id=account_id):
            schedule = self._store.get_schedule(
                account_id=account_id, schedule_id=alert.schedule_id
            )
            if (
                schedule is not None
                and schedule.status == "paused"
                and schedule.first_failure_at is not None
                and alert.raised_at >= schedule.first_failure_at
            ):
                open_alerts.append(alert)
        return open_alerts


def _to_version_summary(record: InvestmentPolicyRecord) -> InvestmentPolicyVersionSummary:
    return InvestmentPolicyVersionSummary(
        policy_id=record.policy_id,
        version_no=record.version_no,
        created_at=record.created_at.isoformat(),
        created_by=record.created_by,
    )


def _to_response(
    record: InvestmentPolicyRecord,
    *,
    history: Optional[list[InvestmentPolicyVersionSummary]],
) -> InvestmentPolicyResponse:
    return InvestmentPolicyResponse(
        account_id=record.account_id,
        policy_id=record.policy_id,
        version_no=record.version_no,
        created_at=record.created_at.isoformat(),
        policy=record.policy,
        history=history,
    )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
