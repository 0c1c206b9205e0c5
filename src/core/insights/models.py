from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from src.core.policies.snapshot import PortfolioSnapshot

InsightCategory = Literal[
    "auto_invest",
    "liquidity",
    "rebalancing",
    "restrictions",
    "tax_loss_harvesting",
]
InsightPriority = Literal["high", "medium", "low"]


class InsightAction(BaseModel):
    action_type: str = Field(description="Machine-readable action.", examples=["reduce_allocation"])
    description: str = Field(description="Suggested next step.")


class Insight(BaseModel):
    insight_id: str = Field(
        description="Deterministic identifier derived from category, asset class and title.",
        examples=["ins_3f1c9a0b7d2e"],
    )
    category: InsightCategory = Field(description="Insight category.", examples=["rebalancing"])
    title: str = Field(description="Short headline.", examples=["Rebalance equities"])
    summary: str = Field(description="One-paragraph explanation.")
    priority: InsightPriority = Field(description="Insight priority.", examples=["high"])
    asset_class: Optional[str] = Field(
        default=None, description="Asset class the insight concerns, when any."
    )
    action: Optional[InsightAction] = Field(default=None, description="Suggested action.")


class InsightsRequest(BaseModel):
    account_id: str = Field(description="Owning account identifier.", examples=["acct_001"])
    portfolio_snapshot: PortfolioSnapshot = Field(description="Live portfolio snapshot.")


class InsightsResponse(BaseModel):
    account_id: str = Field(description="Owning account identifier.")
    as_of: str = Field(description="Snapshot as-of timestamp the insights were computed for.")
    insights: List[Insight] = Field(
        default_factory=list,
        description="Insights ordered by priority, then category, then production order.",
    )
    total_count: int = Field(description="Number of insights returned.")
