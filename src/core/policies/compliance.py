"""
FILE: src/core/policies/compliance.py
IPS allocation validation and drift measurement.

Pure functions: no clock reads, no I/O. Safe to call concurrently.
"""

from decimal import Decimal
from typing import Dict, List

from src.core.policies.models import (
    AllocationDeviation,
    ComplianceResult,
    InvestmentPolicy,
    LiquidityCompliance,
    PolicyValidationIssue,
    PolicyValidationResult,
    RecommendedAction,
    RestrictionCompliance,
    RestrictionViolation,
)
from src.core.policies.snapshot import PortfolioSnapshot

ALLOCATION_SUM_TARGET = Decimal("100")
ALLOCATION_SUM_EPSILON = Decimal("0.01")
_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


def validate_policy(policy: InvestmentPolicy) -> PolicyValidationResult:
    errors: List[PolicyValidationIssue] = []
    total = sum((band.target_percent for band in policy.target_allocation.values()), _ZERO)

    if not policy.target_allocation:
        errors.append(
            PolicyValidationIssue(
                field="target_allocation",
                code="ALLOCATION_EMPTY",
                message="target_allocation must name at least one asset class.",
            )
        )

    if abs(total - ALLOCATION_SUM_TARGET) > ALLOCATION_SUM_EPSILON:
        errors.append(
            PolicyValidationIssue(
                field="target_allocation",
                code="ALLOCATION_SUM_MISMATCH",
                message=f"Target allocation must sum to 100% (got {total}%).",
            )
        )

    for asset_class in sorted(policy.target_allocation):
        band = policy.target_allocation[asset_class]
        field = f"target_allocation.{asset_class}"
        if band.target_percent < _ZERO or band.target_percent > _HUNDRED:
            errors.append(
                PolicyValidationIssue(
                    field=f"{field}.target_percent",
                    code="TARGET_OUT_OF_RANGE",
                    message="target_percent must be between 0 and 100.",
                )
            )
        for bound in ("min_percent", "max_percent"):
            value = getattr(band, bound)
            if value is not None and (value < _ZERO or value > _HUNDRED):
                errors.append(
                    PolicyValidationIssue(
                        field=f"{field}.{bound}",
                        code="BAND_OUT_OF_RANGE",
                        message=f"{bound} must be between 0 and 100 (got {value}).",
                    )
                )
        if band.min_percent is not None and band.min_percent > band.target_percent:
            errors.append(
                PolicyValidationIssue(
                    field=f"{field}.min_percent",
                    code="MIN_ABOVE_TARGET",
                    message=(
                        f"min_percent {band.min_percent} exceeds target_percent "
                        f"{band.target_percent}."
                    ),
                )
            )
        if band.max_percent is not None and band.max_percent < band.target_percent:
            errors.append(
                PolicyValidationIssue(
                    field=f"{field}.max_percent",
                    code="MAX_BELOW_TARGET",
                    message=(
                        f"max_percent {band.max_percent} is below target_percent "
                        f"{band.target_percent}."
                    ),
                )
            )

    rebalancing = policy.constraints.rebalancing_policy
    if rebalancing is not None and not _ZERO < rebalancing.threshold_percent <= _HUNDRED:
        errors.append(
            PolicyValidationIssue(
                field="constraints.rebalancing_policy.threshold_percent",
                code="THRESHOLD_OUT_OF_RANGE",
                message=(
                    "threshold_percent must be greater than 0 and at most 100 "
                    f"(got {rebalancing.threshold_percent})."
                ),
            )
        )

    liquidity = policy.constraints.liquidity_requirements
    if liquidity is not None and not _ZERO <= liquidity.minimum_cash_percent <= _HUNDRED:
        errors.append(
            PolicyValidationIssue(
                field="constraints.liquidity_requirements.minimum_cash_percent",
                code="MINIMUM_CASH_OUT_OF_RANGE",
                message="minimum_cash_percent must be between 0 and 100.",
            )
        )

    return PolicyValidationResult(valid=not errors, total_target_percent=total, errors=errors)


def _current_weights(snapshot: PortfolioSnapshot) -> Dict[str, Decimal]:
    weights: Dict[str, Decimal] = {}
    for slice_ in snapshot.allocation:
        weights[slice_.asset_class] = weights.get(slice_.asset_class, _ZERO) + slice_.percent
    return weights


def _within_bands(
    *,
    current: Decimal,
    deviation: Decimal,
    min_percent: Decimal | None,
    max_percent: Decimal | None,
    threshold: Decimal,
) -> bool:
    if min_percent is None and max_percent is None:
        return abs(deviation) <= threshold
    if min_percent is not None and current < min_percent:
        return False
    if max_percent is not None and current > max_percent:
        return False
    return True


def _action_for(deviation: AllocationDeviation, threshold: Decimal) -> RecommendedAction:
    magnitude = abs(deviation.deviation)
    priority = "high" if magnitude > threshold * 2 else "medium"
    if deviation.deviation > 0:
        return RecommendedAction(
            action_type="reduce_allocation",
            description=(
                f"Reduce {deviation.asset_class} from {deviation.current_percent}% "
                f"toward the {deviation.target_percent}% target."
            ),
            priority=priority,
            asset_class=deviation.asset_class,
            deviation=deviation.deviation,
        )
    return RecommendedAction(
        action_type="increase_allocation",
        description=(
            f"Increase {deviation.asset_class} from {deviation.current_percent}% "
            f"toward the {deviation.target_percent}% target."
        ),
        priority=priority,
        asset_class=deviation.asset_class,
        deviation=deviation.deviation,
    )


def _cash_percent(snapshot: PortfolioSnapshot) -> Decimal:
    total = snapshot.cash_value + snapshot.positions_value
    if total <= _ZERO:
        return _ZERO
    return (snapshot.cash_value / total * _HUNDRED).quantize(Decimal("0.01"))


def evaluate_liquidity(
    policy: InvestmentPolicy, snapshot: PortfolioSnapshot
) -> LiquidityCompliance:
    current = _cash_percent(snapshot)
    requirements = policy.constraints.liquidity_requirements
    if requirements is None:
        return LiquidityCompliance(compliant=True, current_cash_percent=current)
    return LiquidityCompliance(
        compliant=current >= requirements.minimum_cash_percent,
        current_cash_percent=current,
        required_cash_percent=requirements.minimum_cash_percent,
    )


def evaluate_restrictions(
    policy: InvestmentPolicy, snapshot: PortfolioSnapshot
) -> RestrictionCompliance:
    restrictions = policy.constraints.restrictions
    if restrictions is None:
        return RestrictionCompliance(compliant=True)

    excluded_securities = {symbol.upper() for symbol in restrictions.excluded_securities}
    excluded_sectors = {sector.lower() for sector in restrictions.excluded_sectors}
    violations: List[RestrictionViolation] = []
    for position in sorted(snapshot.positions, key=lambda p: p.symbol):
        if position.market_value <= _ZERO:
            continue
        if position.symbol.upper() in excluded_securities:
            violations.append(
                RestrictionViolation(symbol=position.symbol, reason="EXCLUDED_SECURITY")
            )
        elif position.sector is not None and position.sector.lower() in excluded_sectors:
            violations.append(
                RestrictionViolation(symbol=position.symbol, reason="EXCLUDED_SECTOR")
            )
        elif restrictions.no_individual_stocks and position.is_individual_stock:
            violations.append(
                RestrictionViolation(symbol=position.symbol, reason="INDIVIDUAL_STOCK_NOT_ALLOWED")
            )
    return RestrictionCompliance(compliant=not violations, violations=violations)


def compute_drift(policy: InvestmentPolicy, snapshot: PortfolioSnapshot) -> ComplianceResult:
    threshold = policy.rebalance_threshold()
    weights = _current_weights(snapshot)

    deviations: List[AllocationDeviation] = []
    for asset_class in sorted(policy.target_allocation):
        band = policy.target_allocation[asset_class]
        current = weights.get(asset_class, _ZERO)
        deviation = current - band.target_percent
        deviations.append(
            AllocationDeviation(
                asset_class=asset_class,
                target_percent=band.target_percent,
                current_percent=current,
                deviation=deviation,
                within_bands=_within_bands(
                    current=current,
                    deviation=deviation,
                    min_percent=band.min_percent,
                    max_percent=band.max_percent,
                    threshold=threshold,
                ),
            )
        )

    out_of_band = [d for d in deviations if not d.within_bands]
    actions = sorted(
        (_action_for(d, threshold) for d in out_of_band),
        key=lambda action: (-abs(action.deviation), action.asset_class),
    )
    unclassified = sum(
        (weight for key, weight in weights.items() if key not in policy.target_allocation),
        _ZERO,
    )
    liquidity = evaluate_liquidity(policy, snapshot)
    restrictions = evaluate_restrictions(policy, snapshot)
    needs_rebalancing = bool(out_of_band)

    return ComplianceResult(
        is_compliant=not needs_rebalancing and liquidity.compliant and restrictions.compliant,
        deviations=deviations,
        needs_rebalancing=needs_rebalancing,
        recommended_actions=actions,
        unclassified_percent=unclassified,
        liquidity_compliance=liquidity,
        restriction_compliance=restrictions,
        validated_at=snapshot.as_of.isoformat(),
    )
