import math
from datetime import datetime

from abinsight.context import TestContext
from abinsight.estimator import (
    HistoricalPattern,
    estimate_daily_visitors,
    estimate_time_to_decision,
    historical_pattern,
    time_estimate_text,
)
from abinsight.stats import required_sample_size_per_group


def test_required_sample_uses_relative_mde_and_variant_count():
    ctx = TestContext(baseline_cr=0.03, mde=0.1, variant_count=3, daily_visitors=1000)

    estimate = estimate_time_to_decision(ctx)

    per_group = required_sample_size_per_group(0.03, 0.003)
    assert estimate.required_sample_size == per_group * 3
    assert estimate.remaining_sample == per_group * 3


def test_days_to_significance_uses_allocation():
    ctx = TestContext(
        baseline_cr=0.03,
        mde=0.1,
        visitors=6000,
        daily_visitors=1000,
        traffic_allocation_ratio=0.5,
    )
    estimate = estimate_time_to_decision(ctx)

    expected_remaining = required_sample_size_per_group(0.03, 0.003) * 2 - 6000
    assert estimate.remaining_sample == expected_remaining
    assert estimate.est_days_to_significance == math.ceil(expected_remaining / 500)


def test_zero_effective_traffic_is_unbounded():
    ctx = TestContext(daily_visitors=500, traffic_allocation_ratio=0)
    estimate = estimate_time_to_decision(ctx)
    assert math.isinf(estimate.est_days_to_significance)
    assert time_estimate_text(estimate) == "Estimating time..."


def test_mde_floor_and_defaults():
    floored = estimate_time_to_decision(TestContext(mde=0.0001, daily_visitors=100))
    at_floor = estimate_time_to_decision(TestContext(mde=0.005, daily_visitors=100))
    assert floored.required_sample_size == at_floor.required_sample_size

    default = estimate_time_to_decision(TestContext(daily_visitors=100))
    assert default.required_sample_size == required_sample_size_per_group(0.03, 0.03 * 0.05) * 2


def test_sample_reached_means_ready_now():
    ctx = TestContext(visitors=10_000_000, daily_visitors=100)
    estimate = estimate_time_to_decision(ctx)
    assert estimate.remaining_sample == 0
    assert estimate.est_days_to_significance == 0
    assert time_estimate_text(estimate) == "Ready for decision now"


def test_confidence_trajectory_is_capped():
    ctx = TestContext(confidence=0.9, visitors=10_000_000, daily_visitors=100)
    estimate = estimate_time_to_decision(ctx)
    assert estimate.confidence_trend_pct == 99
    assert estimate.winner_likelihood_pct == 90

    early = estimate_time_to_decision(TestContext(confidence=0.2, daily_visitors=100))
    assert early.confidence_trend_pct == 20
    assert early.winner_likelihood_pct == 40


def test_history_is_blended_into_days():
    ctx = TestContext(baseline_cr=0.03, mde=0.1, daily_visitors=1000)
    plain = estimate_time_to_decision(ctx)
    history = HistoricalPattern(average_duration_days=14, success_rate=30, sample_count=4)

    blended = estimate_time_to_decision(ctx, history)

    assert blended.est_days_to_significance == round(0.6 * plain.est_days_to_significance + 0.4 * 14)
    assert time_estimate_text(blended) == f"~{blended.est_days_to_significance} days until decision"


def test_historical_pattern_filters_similar_finished_tests():
    tests = [
        {"test_type": "ab", "test_url": "https://shop.test/checkout", "started_date": datetime(2026, 1, 1),
         "ended_date": datetime(2026, 1, 11), "tags": ["Winner"]},
        {"test_type": "ab", "test_url": "https://shop.test/checkout?v=2", "started_date": datetime(2026, 2, 1),
         "ended_date": datetime(2026, 2, 21), "tags": []},
        # still running
        {"test_type": "ab", "test_url": "https://shop.test/checkout", "started_date": datetime(2026, 3, 1),
         "ended_date": None, "tags": ["winner"]},
        # different type
        {"test_type": "split_url", "test_url": "https://shop.test/checkout", "started_date": datetime(2026, 1, 1),
         "ended_date": datetime(2026, 1, 5), "tags": ["winner"]},
    ]

    pattern = historical_pattern(tests, test_type="ab", page_url="https://shop.test/checkout?utm=x")

    assert pattern.sample_count == 2
    assert pattern.average_duration_days == 15
    assert pattern.success_rate == 50
    assert "~15 days" in pattern.narrative


def test_historical_pattern_none_without_matches():
    assert historical_pattern([], test_type="ab") is None
    assert historical_pattern([{"test_type": "ab", "ended_date": None}]) is None


def test_daily_visitors_from_days_running():
    assert estimate_daily_visitors(7000, 14) == 500
    # started today counts as one day
    assert estimate_daily_visitors(40, 0) == 40
    # no start date: assume a week
    assert estimate_daily_visitors(700, None) == 100
    assert estimate_daily_visitors(0, 10) == 1
