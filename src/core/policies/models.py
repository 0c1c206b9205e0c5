from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from src.core.policies.snapshot import PortfolioSnapshot

RiskTolerance = Literal[
    "conservative",
    "moderate_conservative",
    "moderate",
    "moderate_high",
    "moderate_aggressive",
    "aggressive",
]
ActionPriority = Literal["high", "medium", "low"]
RecommendedActionType = Literal["reduce_allocation", "increase_allocation"]

DEFAULT_REBALANCE_THRESHOLD_PERCENT = Decimal("5")


class RiskProfile(BaseModel):
    risk_tolerance: RiskTolerance = Field(
        description="Declared risk tolerance.", examples=["moderate"]
    )
    risk_score: Optional[int] = Field(default=None, description="Optional 1-100 risk score.")
    volatility_tolerance: Optional[Literal["low", "medium", "high"]] = Field(
        default=None, description="Optional volatility tolerance."
    )


class TimeHorizon(BaseModel):
    years: int = Field(description="Investment horizon in years.", examples=[15])
    category: Literal["short_term", "medium_term", "long_term"] = Field(
        description="Horizon bucket.", examples=["long_term"]
    )


class InvestmentObjectives(BaseModel):
    primary: str = Field(description="Primary objective.", examples=["capital_appreciation"])
    secondary: List[str] = Field(default_factory=list, description="Secondary objectives.")
    tertiary: List[str] = Field(default_factory=list, description="Tertiary objectives.")
    target_annual_return: Optional[Decimal] = Field(
        default=None, description="Optional target annual return in percent.", examples=["7"]
    )


class AllocationBand(BaseModel):
    target_percent: Decimal = Field(description="Target weight in percent.", examples=["60"])
    min_percent: Optional[Decimal] = Field(
        default=None, description="Lower tolerance band in percent.", examples=["55"]
    )
    max_percent: Optional[Decimal] = Field(
        default=None, description="Upper tolerance band in percent.", examples=["65"]
    )


class LiquidityRequirements(BaseModel):
    minimum_cash_percent: Decimal = Field(
        description="Minimum cash weight in percent.", examples=["2"]
    )
    emergency_fund_months: Optional[int] = Field(default=None, description="Months of expenses.")


class TaxConsiderations(BaseModel):
    tax_loss_harvesting: bool = Field(default=False, description="Harvest losses when possible.")
    tax_bracket: Optional[str] = Field(default=None, description="Declared tax bracket.")
    prefer_tax_advantaged: bool = Field(default=False, description="Prefer tax-advantaged lots.")


class InvestmentRestrictions(BaseModel):
    excluded_sectors: List[str] = Field(default_factory=list, description="Excluded sectors.")
    excluded_securities: List[str] = Field(
        default_factory=list, description="Excluded security symbols."
    )
    no_individual_stocks: bool = Field(default=False, description="Funds only.")
    esg_screening: bool = Field(default=False, description="Apply ESG screening.")
    esg_criteria: List[str] = Field(default_factory=list, description="ESG criteria.")


class RebalancingPolicy(BaseModel):
    frequency: str = Field(
        default="quarterly", description="Review cadence.", examples=["quarterly"]
    )
    threshold_percent: Decimal = Field(
        default=DEFAULT_REBALANCE_THRESHOLD_PERCENT,
        description="Absolute drift threshold in percentage points.",
        examples=["5"],
    )
    tax_aware: bool = Field(default=False, description="Prefer tax-aware rebalancing.")


class PolicyConstraints(BaseModel):
    liquidity_requirements: Optional[LiquidityRequirements] = None
    tax_considerations: Optional[TaxConsiderations] = None
    restrictions: Optional[InvestmentRestrictions] = None
    rebalancing_policy: Optional[RebalancingPolicy] = None


class InvestmentPolicy(BaseModel):
    risk_profile: RiskProfile = Field(description="Client risk profile.")
    time_horizon: TimeHorizon = Field(description="Investment horizon.")
    investment_objectives: InvestmentObjectives = Field(description="Ordered objectives.")
    target_allocation: Dict[str, AllocationBand] = Field(
        description="Target allocation keyed by asset class.",
        examples=[
            {
                "equities": {"target_percent": "60", "min_percent": "55", "max_percent": "65"},
                "fixed_income": {"target_percent": "30"},
                "treasury": {"target_percent": "5"},
                "alternatives": {"target_percent": "5"},
            }
        ],
    )
    constraints: PolicyConstraints = Field(
        default_factory=PolicyConstraints, description="Policy constraints."
    )

    def rebalance_threshold(self) -> Decimal:
        policy = self.constraints.rebalancing_policy
        if policy is None:
            return DEFAULT_REBALANCE_THRESHOLD_PERCENT
        return policy.threshold_percent


class InvestmentPolicyPutRequest(InvestmentPolicy):
    account_id: str = Field(description="Owning account identifier.", examples=["acct_001"])
    created_by: Optional[str] = Field(
        default=None, description="Actor recording the new version.", examples=["advisor_1"]
    )

    def to_policy(self) -> InvestmentPolicy:
        return InvestmentPolicy.model_validate(
            self.model_dump(exclude={"account_id", "created_by"})
        )


class InvestmentPolicyRecord(BaseModel):
    policy_id: str
    account_id: str
    version_no: int
    created_at: datetime
    created_by: Optional[str] = None
    policy: InvestmentPolicy


class InvestmentPolicyVersionSummary(BaseModel):
    policy_id: str = Field(description="Policy version identifier.")
    version_no: int = Field(description="Version number.", examples=[2])
    created_at: str = Field(description="Version creation timestamp (UTC ISO8601).")
    created_by: Optional[str] = Field(default=None, description="Actor that wrote the version.")


class InvestmentPolicyResponse(BaseModel):
    account_id: str = Field(description="Owning account identifier.")
    policy_id: str = Field(description="Policy version identifier.")
    version_no: int = Field(description="Version number of the returned policy.")
    created_at: str = Field(description="Version creation timestamp (UTC ISO8601).")
    policy: InvestmentPolicy = Field(description="Policy body.")
    history: Optional[List[InvestmentPolicyVersionSummary]] = Field(
        default=None,
        description="All versions, oldest first, when include_history=true.",
    )


class PolicyValidationIssue(BaseModel):
    field: str = Field(description="Failing field path.", examples=["target_allocation"])
    code: str = Field(description="Issue code.", examples=["ALLOCATION_SUM_MISMATCH"])
    message: str = Field(description="Human-readable message.")


class PolicyValidationResult(BaseModel):
    valid: bool = Field(description="True when the allocation is internally consistent.")
    total_target_percent: Decimal = Field(description="Sum of all target percents.")
    errors: List[PolicyValidationIssue] = Field(default_factory=list)


class AllocationDeviation(BaseModel):
    asset_class: str = Field(description="Asset class key.", examples=["equities"])
    target_percent: Decimal = Field(description="Policy target in percent.")
    current_percent: Decimal = Field(description="Current weight in percent.")
    deviation: Decimal = Field(description="current_percent - target_percent.")
    within_bands: bool = Field(description="Inside min/max bands or drift threshold.")


class RecommendedAction(BaseModel):
    action_type: RecommendedActionType = Field(description="Suggested action.")
    description: str = Field(description="Human-readable action.")
    priority: ActionPriority = Field(description="Action priority.")
    asset_class: str = Field(description="Asset class the action targets.")
    deviation: Decimal = Field(description="Signed drift that triggered the action.")


class LiquidityCompliance(BaseModel):
    compliant: bool
    current_cash_percent: Decimal
    required_cash_percent: Optional[Decimal] = None


class RestrictionViolation(BaseModel):
    symbol: str
    reason: str


class RestrictionCompliance(BaseModel):
    compliant: bool
    violations: List[RestrictionViolation] = Field(default_factory=list)


class ComplianceResult(BaseModel):
    is_compliant: bool = Field(description="All allocation, liquidity and restriction checks pass.")
    deviations: List[AllocationDeviation] = Field(default_factory=list)
    needs_rebalancing: bool = Field(description="At least one asset class is out of band.")
    recommended_actions: List[RecommendedAction] = Field(default_factory=list)
    unclassified_percent: Decimal = Field(
        default=Decimal("0"),
        description="Weight held in asset classes the policy does not name.",
    )
    liquidity_compliance: LiquidityCompliance
    restriction_compliance: RestrictionCompliance
    validated_at: str = Field(description="Snapshot as-of timestamp (UTC ISO8601).")


class PolicyValidateRequest(BaseModel):
    account_id: str = Field(description="Owning account identifier.", examples=["acct_001"])
    portfolio_snapshot: PortfolioSnapshot = Field(description="Live portfolio snapshot.")
