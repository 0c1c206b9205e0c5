from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class AllocationSlice(BaseModel):
    asset_class: str = Field(description="Asset class key.", examples=["equities"])
    value: Decimal = Field(description="Market value held in the asset class.", examples=["6800"])
    percent: Decimal = Field(description="Weight of the asset class in percent.", examples=["68"])


class PositionSnapshot(BaseModel):
    symbol: str = Field(description="Security symbol.", examples=["VTI"])
    asset_class: str = Field(description="Asset class key.", examples=["equities"])
    sector: Optional[str] = Field(default=None, description="Sector classification.")
    market_value: Decimal = Field(description="Current market value.", examples=["1200"])
    cost_basis: Optional[Decimal] = Field(default=None, description="Total cost basis.")
    is_individual_stock: bool = Field(
        default=False, description="True for single stocks, false for funds."
    )


class PortfolioSnapshot(BaseModel):
    portfolio_id: Optional[str] = Field(default=None, description="Portfolio identifier.")
    as_of: datetime = Field(
        description="Snapshot timestamp.", examples=["2026-03-02T21:00:00+00:00"]
    )
    allocation: List[AllocationSlice] = Field(
        default_factory=list, description="Current allocation by asset class."
    )
    cash_value: Decimal = Field(default=Decimal("0"), description="Cash held.")
    positions_value: Decimal = Field(default=Decimal("0"), description="Invested value.")
    positions: List[PositionSnapshot] = Field(
        default_factory=list, description="Optional position detail for tax and restriction checks."
    )
