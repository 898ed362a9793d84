import math
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional


DEFAULT_BASELINE_CR = 0.03
DEFAULT_AOV = 50.0


@dataclass(frozen=True)
class BusinessImpact:
    monthly: float
    quarterly: float
    annual: float
    clv_impact: float
    cost_of_delay: float
    implementation_cost: float
    roi: Optional[float]
    break_even_days: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DecisionImpact:
    monthly: float
    annual: float
    cost_of_delay: float
    break_even_days: Optional[float]
    recommendation: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _number(value: Any, default: float) -> float:
    # None, empty strings, NaN and infinities all fall back to the default
    if value is None or value == "":
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def calculate_business_impact(
    uplift_pct: float,
    monthly_visitors: float,
    average_order_value: float,
    baseline_cr: float = DEFAULT_BASELINE_CR,
    implementation_hours: float = 10,
    hourly_rate: float = 150,
    days_to_implement: float = 7,
    avg_customer_lifespan_months: float = 12,
) -> BusinessImpact:
    """
    Project the revenue effect of shipping a variant with the given uplift.

    Precondition: `uplift_pct` is the observed improvement and is expected to be
    non-negative. A negative value is treated as no gain (clamped to 0);
    the sign is never flipped into a loss projection.
    """
    uplift = max(0.0, _number(uplift_pct, 0.0)) / 100
    visitors = max(0.0, _number(monthly_visitors, 0.0))
    aov = max(0.0, _number(average_order_value, 0.0))
    conv_rate = max(0.001, _number(baseline_cr, DEFAULT_BASELINE_CR) or DEFAULT_BASELINE_CR)

    additional_conversions = visitors * conv_rate * uplift
    monthly_revenue = additional_conversions * aov

    months = max(1.0, _number(avg_customer_lifespan_months, 12))
    hours = max(0.0, _number(implementation_hours, 10))
    rate = max(1.0, _number(hourly_rate, 150))
    implementation_cost = hours * rate

    daily_revenue = monthly_revenue / 30
    days = max(0.0, _number(days_to_implement, 7))
    annual = monthly_revenue * 12

    roi = (annual - implementation_cost) / implementation_cost * 100 if implementation_cost > 0 else None
    break_even_days = implementation_cost / daily_revenue if daily_revenue > 0 else None

    return BusinessImpact(
        monthly=monthly_revenue,
        quarterly=monthly_revenue * 3,
        annual=annual,
        clv_impact=monthly_revenue * months,
        cost_of_delay=days * daily_revenue,
        implementation_cost=implementation_cost,
        roi=roi,
        break_even_days=break_even_days,
    )


def simple_business_impact(
    improvement_pct: float,
    monthly_visitors: float,
    average_order_value: float = DEFAULT_AOV,
) -> Dict[str, float]:
    """
    Monthly/quarterly/annual revenue at the default 3% baseline.
    Non-finite or negative inputs give zeros.
    """
    if (
        not math.isfinite(improvement_pct)
        or not math.isfinite(monthly_visitors)
        or monthly_visitors < 0
        or average_order_value < 0
    ):
        return {"monthly": 0.0, "quarterly": 0.0, "annual": 0.0}

    improved_cr = DEFAULT_BASELINE_CR * (1 + improvement_pct / 100)
    delta_cr = max(0.0, improved_cr - DEFAULT_BASELINE_CR)
    monthly = monthly_visitors * delta_cr * average_order_value
    return {"monthly": monthly, "quarterly": monthly * 3, "annual": monthly * 12}


def describe_monthly_impact(monthly: float) -> str:
    if monthly > 10000:
        return f"High impact: ${round(monthly):,}/month potential"
    if monthly > 1000:
        return f"Moderate impact: ${round(monthly):,}/month"
    return "Low impact: Focus on bigger changes"


def decision_impact(
    uplift_pct: Optional[float],
    daily_visitors: Optional[float] = None,
    monthly_visitors: Optional[float] = None,
    average_order_value: Optional[float] = None,
    baseline_cr: Optional[float] = None,
) -> DecisionImpact:
    """
    Business impact summary attached to every recommendation.

    Monthly traffic defaults to daily traffic x 30 (100/day when unknown).
    Negative uplift carries no revenue gain.
    """
    monthly_traffic = monthly_visitors or (_number(daily_visitors, 0.0) or 100) * 30
    impact = calculate_business_impact(
        uplift_pct=_number(uplift_pct, 0.0),
        monthly_visitors=max(1.0, _number(monthly_traffic, 3000.0)),
        average_order_value=max(0.0, _number(average_order_value, DEFAULT_AOV)),
        baseline_cr=_number(baseline_cr, DEFAULT_BASELINE_CR),
        implementation_hours=10,
        days_to_implement=7,
    )
    return DecisionImpact(
        monthly=impact.monthly,
        annual=impact.annual,
        cost_of_delay=impact.cost_of_delay,
        break_even_days=impact.break_even_days,
        recommendation=describe_monthly_impact(impact.monthly),
    )
