import pytest

from abinsight.impact import (
    calculate_business_impact,
    decision_impact,
    describe_monthly_impact,
    simple_business_impact,
)


def test_business_impact_formulas():
    impact = calculate_business_impact(
        uplift_pct=10,
        monthly_visitors=100000,
        average_order_value=50,
        baseline_cr=0.03,
        implementation_hours=10,
        hourly_rate=150,
        days_to_implement=7,
    )

    # 100k visitors * 3% * 10% = 300 extra orders at $50
    assert impact.monthly == pytest.approx(15000.0)
    assert impact.quarterly == pytest.approx(45000.0)
    assert impact.annual == pytest.approx(180000.0)
    assert impact.implementation_cost == pytest.approx(1500.0)
    assert impact.cost_of_delay == pytest.approx(7 * 15000.0 / 30)
    assert impact.roi == pytest.approx((180000.0 - 1500.0) / 1500.0 * 100)
    assert impact.break_even_days == pytest.approx(1500.0 / 500.0)
    assert impact.clv_impact == pytest.approx(15000.0 * 12)


def test_zero_uplift_has_no_break_even():
    impact = calculate_business_impact(0, 100000, 50)
    assert impact.monthly == 0
    assert impact.break_even_days is None
    assert impact.roi == pytest.approx(-100.0)


def test_negative_uplift_is_not_turned_into_a_gain_or_loss():
    impact = calculate_business_impact(-20, 100000, 50)
    assert impact.monthly == 0
    assert impact.annual == 0
    assert impact.cost_of_delay == 0


def test_monetary_outputs_non_negative():
    for uplift in (0, 0.5, 5, 50, 400):
        impact = calculate_business_impact(uplift, 20000, 80)
        assert impact.monthly >= 0
        assert impact.quarterly >= 0
        assert impact.annual >= 0
        assert impact.cost_of_delay >= 0


def test_simple_business_impact_guards():
    assert simple_business_impact(float("inf"), 1000) == {"monthly": 0.0, "quarterly": 0.0, "annual": 0.0}
    assert simple_business_impact(10, -5)["monthly"] == 0.0

    result = simple_business_impact(10, 100000)
    assert result["monthly"] == pytest.approx(15000.0)


def test_describe_monthly_impact_bands():
    assert describe_monthly_impact(25000) == "High impact: $25,000/month potential"
    assert describe_monthly_impact(2500.4) == "Moderate impact: $2,500/month"
    assert describe_monthly_impact(10) == "Low impact: Focus on bigger changes"


def test_decision_impact_defaults_traffic_from_daily_visitors():
    # 1000/day -> 30k/month at the 3% baseline and $50 AOV
    impact = decision_impact(uplift_pct=10, daily_visitors=1000)
    assert impact.monthly == pytest.approx(30000 * 0.03 * 0.1 * 50)
    assert impact.recommendation.startswith("Moderate impact")

    unknown = decision_impact(uplift_pct=None)
    assert unknown.monthly == 0
    assert unknown.break_even_days is None
