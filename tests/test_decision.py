import time
from datetime import datetime, timezone

import pytest

from abinsight.ai_client import AiSuggestion
from abinsight.context import TestContext, normalize_confidence, pct_to_number
from abinsight.decision import (
    FALLBACK_STEPS,
    FALLBACK_TITLE,
    context_from_comparison,
    recommend,
    traffic_light,
)
from abinsight.estimator import HistoricalPattern
from abinsight.rules import DecisionRule, RULE_TABLES, evaluate_rules, rules_for
from abinsight.stats import required_sample_size_per_group


# A context that matches nothing in any table: plenty of traffic, two
# variants, a large effect still at low confidence, running, mid-duration.
QUIET = {
    "confidence": 50,
    "uplift": 30,
    "visitors": 100,
    "sample_size_calculated": 100000,
    "calculated_minimum": 100000,
    "visitors_per_variant": 500,
    "test_duration": 10,
    "daily_visitors": 5000,
    "variant_count": 2,
    "mde": 0.05,
    "status": "running",
    "control_conversion": 3.0,
    "variant_conversion": 3.0,
}


def test_context_normalization():
    ctx = TestContext.from_mapping({"confidence": "92.5", "uplift": "+12.5%", "visitors": "1200"})
    assert ctx.confidence == pytest.approx(0.925)
    assert ctx.uplift == pytest.approx(12.5)
    assert ctx.visitors == 1200

    assert normalize_confidence(0.97) == pytest.approx(0.97)
    assert normalize_confidence(150) == 1.0
    assert pct_to_number("n/a") is None


def test_context_duration_from_started_at():
    ctx = TestContext.from_mapping(
        {"started_at": "2026-10-01T00:00:00Z"},
        now=datetime(2026, 10, 15, tzinfo=timezone.utc),
    )
    assert ctx.test_duration == 14


def test_first_match_wins_in_declaration_order():
    ctx = TestContext.from_mapping({"confidence": 97, "visitors": 5000, "calculated_minimum": 1000,
                                    "test_duration": 40, "uplift": 1})
    # both winner_found and insufficient_difference hold
    assert evaluate_rules(rules_for("when_to_stop"), ctx).id == "winner_found"


def test_failing_predicate_is_skipped():
    def boom(_ctx):
        raise KeyError("missing")

    rules = (
        DecisionRule(id="broken", predicate=boom, title="never"),
        DecisionRule(id="ok", predicate=lambda c: True, title="fine"),
    )
    assert evaluate_rules(rules, TestContext()).id == "ok"


def test_unknown_type_uses_stop_rules():
    assert rules_for("something_else") is RULE_TABLES["when_to_stop"]
    assert rules_for(None) is RULE_TABLES["when_to_stop"]


@pytest.mark.parametrize("decision_type", sorted(RULE_TABLES))
def test_unmatched_context_gets_fallback(decision_type):
    result = recommend(decision_type, QUIET)

    assert result.source == "fallback"
    assert result.title == FALLBACK_TITLE
    assert result.steps == FALLBACK_STEPS
    assert len(result.steps) > 0


def test_rule_match_shapes_recommendation():
    result = recommend("why_not_significant", {**QUIET, "daily_visitors": 40})

    assert result.source == "rules"
    assert result.rule_id == "low_traffic"
    assert result.explanation == "Traffic too low"
    assert result.steps


def test_ai_steps_override_rule_steps():
    def ai(_ctx):
        return AiSuggestion(recommendation="Ship it", steps=["Roll out to 100%", "Watch refunds"])

    result = recommend("why_not_significant", {**QUIET, "daily_visitors": 40}, ai=ai)

    assert result.source == "rules+ai"
    assert result.title.startswith("Increase traffic allocation")
    assert result.steps == ("Roll out to 100%", "Watch refunds")


def test_ai_alone_when_no_rule_matches():
    def ai(_ctx):
        return AiSuggestion(recommendation="Try a new headline", steps=["Draft three headlines"])

    result = recommend("when_to_stop", QUIET, ai=ai)

    assert result.source == "ai"
    assert result.title == "Try a new headline"
    assert result.steps == ("Draft three headlines",)


def test_ai_failure_falls_back_to_rules():
    def broken(_ctx):
        raise ConnectionError("model offline")

    result = recommend("why_not_significant", {**QUIET, "daily_visitors": 40}, ai=broken)
    assert result.source == "rules"

    result = recommend("when_to_stop", QUIET, ai=broken)
    assert result.source == "fallback"


def test_ai_timeout_falls_back():
    def slow(_ctx):
        time.sleep(0.5)
        return AiSuggestion(recommendation="late", steps=["late"])

    result = recommend("when_to_stop", QUIET, ai=slow, ai_timeout=0.05)
    assert result.source == "fallback"


def test_malformed_ai_result_is_ignored():
    result = recommend("when_to_stop", QUIET, ai=lambda _ctx: {"recommendation": "dict, not a suggestion"})
    assert result.source == "fallback"


def test_history_narrative_and_failures():
    pattern = HistoricalPattern(average_duration_days=12, success_rate=40, sample_count=5,
                                narrative="Similar tests typically take ~12 days to complete.")
    result = recommend("when_to_stop", QUIET, history=lambda _ctx: pattern)
    assert result.explanation == pattern.narrative

    def broken(_ctx):
        raise RuntimeError("db down")

    result = recommend("when_to_stop", QUIET, history=broken)
    assert result.source == "fallback"
    assert result.explanation


def test_traffic_light_rules():
    assert traffic_light(TestContext(status="completed", uplift=-10, confidence=0.99), 500) == "green"
    assert traffic_light(TestContext(uplift=-4, confidence=0.91), 0) == "red"
    assert traffic_light(TestContext(uplift=4, confidence=0.96), 0) == "green"
    assert traffic_light(TestContext(uplift=4, confidence=0.96), 10) == "yellow"
    assert traffic_light(TestContext(uplift=4, confidence=0.88), 0) == "yellow"
    assert traffic_light(TestContext(), 0) == "yellow"


def test_confidence_pct_and_time_text():
    result = recommend("when_to_stop", {**QUIET, "confidence": 0.874})
    assert result.confidence_pct == 87
    assert result.time_estimate_text.startswith("~")
    assert result.business_impact.monthly > 0


def test_context_from_comparison():
    test = {"id": "t1", "test_name": "Hero", "test_status": "running",
            "started_date": datetime(2026, 10, 1), "organization_id": "org"}
    comparison = {"confidence": 0.92, "uplift_pct": 50.0, "total_visitors": 2000, "variant_count": 2,
                  "conversion_rate_control": 3.0, "conversion_rate_variant": 4.5}

    ctx = context_from_comparison(test, comparison, extra={"daily_visitors": 400},
                                  now=datetime(2026, 10, 8, tzinfo=timezone.utc))

    assert ctx.test_id == "t1"
    assert ctx.confidence == pytest.approx(0.92)
    assert ctx.baseline_cr == pytest.approx(0.03)
    assert ctx.visitors_per_variant == 1000
    assert ctx.daily_visitors == 400
    assert ctx.test_duration == 7


def test_context_from_comparison_fills_traffic_and_sample_targets():
    test = {"id": "t2", "test_status": "running", "started_date": datetime(2026, 10, 1)}
    comparison = {"confidence": 0.5, "uplift_pct": 0.0, "total_visitors": 1400, "variant_count": 2,
                  "conversion_rate_control": 5.0, "conversion_rate_variant": 5.0}

    ctx = context_from_comparison(test, comparison, now=datetime(2026, 10, 15, tzinfo=timezone.utc))

    expected = 2 * required_sample_size_per_group(0.05, 0.05 * 0.05)
    assert ctx.daily_visitors == 100
    assert ctx.sample_size_calculated == expected
    assert ctx.calculated_minimum == expected

    # far from the target, so neither stop rule applies
    assert recommend("when_to_stop", ctx).source == "fallback"


def test_context_from_comparison_keeps_given_targets():
    test = {"id": "t2", "test_status": "running"}
    comparison = {"confidence": 0.5, "total_visitors": 1400, "variant_count": 2}

    ctx = context_from_comparison(test, comparison, extra={"sample_size_calculated": 1000})

    assert ctx.sample_size_calculated == 1000
    assert ctx.daily_visitors == 200
    assert recommend("when_to_stop", ctx).rule_id == "reached_sample_size"


def test_text_flags_are_parsed():
    ctx = TestContext.from_mapping({"winner_declared": "false", "no_significant_difference": "True"})
    assert ctx.winner_declared is False
    assert ctx.no_significant_difference is True

    result = recommend("what_to_test_next", {"status": "completed", "winner_declared": "false"})
    assert result.rule_id != "after_winner"
    assert recommend("what_to_test_next", {"status": "completed", "winner_declared": "true"}).rule_id == "after_winner"
