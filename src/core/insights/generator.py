"""
Ranks and deduplicates insights from pluggable signal producers.

Each producer reads an ``InsightContext`` and returns zero or more insights.
Output depends only on the context, so identical inputs give identical lists.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Protocol, Sequence

from src.core.common.canonical import short_hash
from src.core.insights.models import Insight, InsightAction, InsightCategory, InsightPriority
from src.core.policies.models import ComplianceResult, InvestmentPolicy
from src.core.policies.snapshot import PortfolioSnapshot
from src.core.schedules.models import ScheduleAlertRecord

PRIORITY_RANK: dict[str, int] = {"high": 3, "medium": 2, "low": 1}
TAX_LOSS_MIN_PERCENT = Decimal("5")
TAX_LOSS_MEDIUM_PERCENT = Decimal("10")
_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class InsightContext:
    snapshot: PortfolioSnapshot
    policy: Optional[InvestmentPolicy] = None
    compliance: Optional[ComplianceResult] = None
    alerts: Sequence[ScheduleAlertRecord] = field(default_factory=tuple)


class SignalProducer(Protocol):
    def produce(self, context: InsightContext) -> list[Insight]: ...


def make_insight(
    *,
    category: InsightCategory,
    title: str,
    summary: str,
    priority: InsightPriority,
    asset_class: Optional[str] = None,
    action: Optional[InsightAction] = None,
) -> Insight:
    return Insight(
        insight_id=f"ins_{short_hash([category, asset_class, title], length=12)}",
        category=category,
        title=title,
        summary=summary,
        priority=priority,
        asset_class=asset_class,
        action=action,
    )


class ComplianceActionSignal:
    def produce(self, context: InsightContext) -> list[Insight]:
        if context.compliance is None:
            return []
        return [
            make_insight(
                category="rebalancing",
                title=f"Rebalance {action.asset_class}",
                summary=(
                    f"{action.asset_class} is {abs(action.deviation)} points "
                    f"{'above' if action.deviation > 0 else 'below'} its policy target."
                ),
                priority=action.priority,
                asset_class=action.asset_class,
                action=InsightAction(
                    action_type=action.action_type, description=action.description
                ),
            )
            for action in context.compliance.recommended_actions
        ]


class TaxLossHarvestingSignal:
    def produce(self, context: InsightContext) -> list[Insight]:
        policy = context.policy
        if policy is None:
            return []
        tax = policy.constraints.tax_considerations
        if tax is None or not tax.tax_loss_harvesting:
            return []

        losses: dict[str, list[tuple[str, Decimal, Decimal]]] = {}
        for position in context.snapshot.positions:
            if position.cost_basis is None or position.cost_basis <= _ZERO:
                continue
            loss = position.cost_basis - position.market_value
            loss_percent = loss / position.cost_basis * _HUNDRED
            if loss_percent < TAX_LOSS_MIN_PERCENT:
                continue
            losses.setdefault(position.asset_class, []).append(
                (position.symbol, loss, loss_percent)
            )

        insights: list[Insight] = []
        for asset_class in sorted(losses):
            rows = sorted(losses[asset_class])
            total_loss = sum((row[1] for row in rows), _ZERO)
            worst = max(row[2] for row in rows)
            symbols = ", ".join(row[0] for row in rows)
            insights.append(
                make_insight(
                    category="tax_loss_harvesting",
                    title=f"Harvest losses in {asset_class}",
                    summary=f"Unrealized losses of {total_loss} available in {symbols}.",
                    priority="medium" if worst >= TAX_LOSS_MEDIUM_PERCENT else "low",
                    asset_class=asset_class,
                    action=InsightAction(
                        action_type="harvest_tax_loss",
                        description=f"Review {symbols} for tax-loss harvesting.",
                    ),
                )
            )
        return insights


class LiquidityFloorSignal:
    def produce(self, context: InsightContext) -> list[Insight]:
        compliance = context.compliance
        if compliance is None or compliance.liquidity_compliance.compliant:
            return []
        liquidity = compliance.liquidity_compliance
        return [
            make_insight(
                category="liquidity",
                title="Cash below policy minimum",
                summary=(
                    f"Cash is {liquidity.current_cash_percent}% of the portfolio; the policy "
                    f"requires at least {liquidity.required_cash_percent}%."
                ),
                priority="high",
                asset_class="cash",
                action=InsightAction(
                    action_type="raise_cash",
                    description="Raise cash to meet the liquidity requirement.",
                ),
            )
        ]


class RestrictionSignal:
    def produce(self, context: InsightContext) -> list[Insight]:
        compliance = context.compliance
        if compliance is None or compliance.restriction_compliance.compliant:
            return []
        violations = compliance.restriction_compliance.violations
        symbols = ", ".join(violation.symbol for violation in violations)
        return [
            make_insight(
                category="restrictions",
                title="Holdings violate policy restrictions",
                summary=f"{len(violations)} holding(s) breach policy restrictions: {symbols}.",
                priority="high",
                action=InsightAction(
                    action_type="sell_restricted",
                    description=f"Review and exit {symbols}.",
                ),
            )
        ]


class AutoInvestAlertSignal:
    def produce(self, context: InsightContext) -> list[Insight]:
        if not context.alerts:
            return []
        schedule_ids = sorted({alert.schedule_id for alert in context.alerts})
        return [
            make_insight(
                category="auto_invest",
                title="Auto-invest schedule paused",
                summary=(
                    f"{len(schedule_ids)} auto-invest schedule(s) were paused after repeated "
                    f"execution failures: {', '.join(schedule_ids)}."
                ),
                priority="high",
                action=InsightAction(
                    action_type="review_funding",
                    description="Check the funding source, then resume the schedule.",
                ),
            )
        ]


DEFAULT_PRODUCERS: tuple[SignalProducer, ...] = (
    ComplianceActionSignal(),
    TaxLossHarvestingSignal(),
    LiquidityFloorSignal(),
    RestrictionSignal(),
    AutoInvestAlertSignal(),
)


def generate_insights(
    context: InsightContext,
    producers: Sequence[SignalProducer] = DEFAULT_PRODUCERS,
) -> list[Insight]:
    kept: dict[tuple[str, Optional[str]], tuple[int, Insight]] = {}
    order = 0
    for producer in producers:
        for insight in producer.produce(context):
            key = (insight.category, insight.asset_class)
            existing = kept.get(key)
            if existing is None:
                kept[key] = (order, insight)
            elif PRIORITY_RANK[insight.priority] > PRIORITY_RANK[existing[1].priority]:
                kept[key] = (existing[0], insight)
            order += 1

    ranked = sorted(
        kept.values(),
        key=lambda item: (-PRIORITY_RANK[item[1].priority], item[1].category, item[0]),
    )
    return [insight for _, insight in ranked]
