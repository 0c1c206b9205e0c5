from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Query, status

from src.api.dependencies import get_policy_service
from src.api.routers.http_errors import raise_auto_invest_http_exception
from src.api.routers.runtime_utils import assert_feature_enabled
from src.core.common.errors import AutoInvestError
from src.core.policies.models import (
    ComplianceResult,
    InvestmentPolicyPutRequest,
    InvestmentPolicyResponse,
    PolicyValidateRequest,
)
from src.core.policies.service import InvestmentPolicyService

router = APIRouter(tags=["Investment Policy"])


def _assert_policy_apis_enabled() -> None:
    assert_feature_enabled(
        name="INVESTMENT_POLICY_APIS_ENABLED",
        default=True,
        detail="INVESTMENT_POLICY_APIS_DISABLED",
    )


@router.get(
    "/wealth/investment-policy",
    response_model=InvestmentPolicyResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Investment Policy",
    description=(
        "Returns the current investment policy statement for the account, or a specific "
        "version when `version` is supplied. History lists every stored version."
    ),
)
def get_investment_policy(
    account_id: Annotated[
        str, Query(description="Owning account identifier.", examples=["acct_001"])
    ],
    include_history: Annotated[
        bool, Query(description="Include the version history summary.", examples=[True])
    ] = False,
    version: Annotated[
        Optional[int],
        Query(ge=1, description="Specific version number to return.", examples=[1]),
    ] = None,
    service: InvestmentPolicyService = Depends(get_policy_service),
) -> InvestmentPolicyResponse:
    _assert_policy_apis_enabled()
    try:
        return service.get_current(
            account_id=account_id, include_history=include_history, version_no=version
        )
    except AutoInvestError as exc:
        raise_auto_invest_http_exception(exc)


@router.put(
    "/wealth/investment-policy",
    response_model=InvestmentPolicyResponse,
    status_code=status.HTTP_200_OK,
    summary="Write Investment Policy Version",
    description=(
        "Validates allocation consistency and appends a new immutable policy version. "
        "Earlier versions stay readable."
    ),
)
def put_investment_policy(
    payload: InvestmentPolicyPutRequest,
    idempotency_key: Annotated[
        Optional[str],
        Header(
            alias="Idempotency-Key",
            description="Optional idempotency key for safe client retries.",
            examples=["ips-put-001"],
        ),
    ] = None,
    service: InvestmentPolicyService = Depends(get_policy_service),
) -> InvestmentPolicyResponse:
    _assert_policy_apis_enabled()
    try:
        return service.put(payload=payload, idempotency_key=idempotency_key)
    except AutoInvestError as exc:
        raise_auto_invest_http_exception(exc)


@router.post(
    "/wealth/investment-policy/validate",
    response_model=ComplianceResult,
    status_code=status.HTTP_200_OK,
    summary="Validate Portfolio Against Policy",
    description=(
        "Computes per-asset-class drift, liquidity and restriction compliance of the supplied "
        "snapshot against the account's current policy."
    ),
)
def validate_portfolio(
    payload: PolicyValidateRequest,
    service: InvestmentPolicyService = Depends(get_policy_service),
) -> ComplianceResult:
    _assert_policy_apis_enabled()
    try:
        return service.validate_against_portfolio(
            account_id=payload.account_id, snapshot=payload.portfolio_snapshot
        )
    except AutoInvestError as exc:
        raise_auto_invest_http_exception(exc)
