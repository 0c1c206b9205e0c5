from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

from src.core.policies.models import InvestmentPolicy, InvestmentPolicyPutRequest
from src.core.policies.snapshot import AllocationSlice, PortfolioSnapshot, PositionSnapshot
from src.core.schedules.models import ScheduleCreateRequest, ScheduleRecurrence

FIXED_NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


def schedule_request(
    *,
    account_id: str = "acct_001",
    frequency: str = "monthly",
    day_of_month: Optional[int] = 15,
    day_of_week: Optional[int] = None,
    at: str = "09:30",
    start_date: date = date(2026, 1, 31),
    timezone_name: Optional[str] = "America/New_York",
    amount: str = "250.00",
    **overrides: Any,
) -> ScheduleCreateRequest:
    payload: dict[str, Any] = {
        "account_id": account_id,
        "name": "Monthly core",
        "portfolio_id": "pf_core_01",
        "funding_source_id": "fs_bank_01",
        "amount": Decimal(amount),
        "currency": "USD",
        "frequency": frequency,
        "schedule": ScheduleRecurrence(
            day_of_month=day_of_month, day_of_week=day_of_week, time=at
        ),
        "allocation_rule": "ips_target",
        "start_date": start_date,
        "timezone": timezone_name,
    }
    payload.update(overrides)
    return ScheduleCreateRequest(**payload)


def schedule_api_payload(*, start_date: Optional[date] = None, **overrides: Any) -> dict:
    payload = {
        "account_id": "acct_001",
        "name": "Monthly core",
        "portfolio_id": "pf_core_01",
        "funding_source_id": "fs_bank_01",
        "amount": "250.00",
        "currency": "USD",
        "frequency": "monthly",
        "schedule": {"day_of_month": 15, "time": "09:30"},
        "allocation_rule": "ips_target",
        "start_date": (start_date or date.today() + timedelta(days=30)).isoformat(),
        "timezone": "America/New_York",
    }
    payload.update(overrides)
    return payload


def policy_payload(
    *,
    account_id: str = "acct_001",
    target_allocation: Optional[dict[str, dict[str, str]]] = None,
    constraints: Optional[dict[str, Any]] = None,
) -> dict:
    return {
        "account_id": account_id,
        "created_by": "advisor_1",
        "risk_profile": {"risk_tolerance": "moderate", "risk_score": 55},
        "time_horizon": {"years": 15, "category": "long_term"},
        "investment_objectives": {
            "primary": "capital_appreciation",
            "secondary": ["income"],
        },
        "target_allocation": target_allocation
        or {
            "equities": {"target_percent": "60"},
            "fixed_income": {"target_percent": "30"},
            "treasury": {"target_percent": "5"},
            "alternatives": {"target_percent": "5"},
        },
        "constraints": constraints
        or {
            "liquidity_requirements": {"minimum_cash_percent": "2"},
            "rebalancing_policy": {"frequency": "quarterly", "threshold_percent": "5"},
        },
    }


def policy(**kwargs: Any) -> InvestmentPolicy:
    return InvestmentPolicyPutRequest(**policy_payload(**kwargs)).to_policy()


def policy_request(**kwargs: Any) -> InvestmentPolicyPutRequest:
    return InvestmentPolicyPutRequest(**policy_payload(**kwargs))


def snapshot(
    *,
    weights: Optional[dict[str, str]] = None,
    cash_value: str = "300",
    positions_value: str = "9700",
    positions: Iterable[PositionSnapshot] = (),
    as_of: datetime = FIXED_NOW,
) -> PortfolioSnapshot:
    weights = weights or {
        "equities": "68",
        "fixed_income": "27",
        "treasury": "3",
        "alternatives": "2",
    }
    return PortfolioSnapshot(
        portfolio_id="pf_core_01",
        as_of=as_of,
        allocation=[
            AllocationSlice(
                asset_class=asset_class,
                value=Decimal(percent) * Decimal("100"),
                percent=Decimal(percent),
            )
            for asset_class, percent in weights.items()
        ],
        cash_value=Decimal(cash_value),
        positions_value=Decimal(positions_value),
        positions=list(positions),
    )


def position(
    symbol: str,
    *,
    asset_class: str = "equities",
    market_value: str = "1000",
    cost_basis: Optional[str] = None,
    sector: Optional[str] = None,
    is_individual_stock: bool = False,
) -> PositionSnapshot:
    return PositionSnapshot(
        symbol=symbol,
        asset_class=asset_class,
        sector=sector,
        market_value=Decimal(market_value),
        cost_basis=Decimal(cost_basis) if cost_basis is not None else None,
        is_individual_stock=is_individual_stock,
    )


def snapshot_api_payload(**kwargs: Any) -> dict:
    return snapshot(**kwargs).model_dump(mode="json")
