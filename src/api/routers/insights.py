from fastapi import APIRouter, Depends, status

from src.api.dependencies import get_policy_service
from src.api.routers.runtime_utils import assert_feature_enabled
from src.core.insights.models import InsightsRequest, InsightsResponse
from src.core.policies.service import InvestmentPolicyService

router = APIRouter(tags=["Insights"])


@router.post(
    "/wealth/insights",
    response_model=InsightsResponse,
    status_code=status.HTTP_200_OK,
    summary="Generate Portfolio Insights",
    description=(
        "Derives prioritized insights from policy drift, liquidity, restrictions, tax-loss "
        "opportunities and auto-invest alerts. Accounts without a policy still receive "
        "insights that do not depend on one."
    ),
)
def generate_insights(
    payload: InsightsRequest,
    service: InvestmentPolicyService = Depends(get_policy_service),
) -> InsightsResponse:
    assert_feature_enabled(
        name="INSIGHTS_APIS_ENABLED",
        default=True,
        detail="INSIGHTS_APIS_DISABLED",
    )
    return service.generate_insights(
        account_id=payload.account_id, snapshot=payload.portfolio_snapshot
    )
