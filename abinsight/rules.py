"""
Decision rule tables.

Each table is an ordered tuple of rules; the first rule whose predicate
holds for the context wins. Predicates read a normalized TestContext:
confidence is a probability (0.95 == 95%), uplift is a percentage.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence, Tuple

from .context import TestContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecisionRule:
    id: str
    predicate: Callable[[TestContext], bool]
    title: str
    explanation: str = ""
    steps: Tuple[str, ...] = ()


STOP_TEST = (
    DecisionRule(
        id="winner_found",
        predicate=lambda c: (c.confidence or 0) >= 0.95
        and (c.sample_size or c.visitors or 0) >= (c.calculated_minimum or 0),
        title="Stop and implement winner",
        explanation="You have statistical significance with adequate sample size.",
        steps=(
            "Roll the winning variant out to all traffic",
            "Monitor conversion rate for 1-2 weeks after launch",
        ),
    ),
    DecisionRule(
        id="insufficient_difference",
        predicate=lambda c: (c.test_duration or 0) > 28 and abs(c.uplift or 0) < 2,
        title="Stop test - difference too small",
        explanation="After 4 weeks, the observed difference is too small to be meaningful. Test bigger changes.",
        steps=(
            "End the test and keep the control",
            "Design a bolder variation for the next test",
        ),
    ),
    DecisionRule(
        id="degrading_performance",
        predicate=lambda c: (c.variant_conversion or 0) < (c.control_conversion or 0)
        and (c.confidence or 0) >= 0.95,
        title="Stop immediately - variant is hurting performance",
        explanation="Your variant is significantly worse. Revert to control.",
        steps=(
            "Send all traffic back to the control",
            "Review what in the variant may have caused the drop",
        ),
    ),
    DecisionRule(
        id="reached_sample_size",
        predicate=lambda c: (c.visitors or 0) >= (c.sample_size_calculated or 0)
        and (c.confidence or 0) < 0.90,
        title="Consider stopping - unlikely to reach significance",
        explanation="You've reached your calculated sample size but no clear winner emerged.",
        steps=(
            "Decide whether a longer run is worth the traffic",
            "Plan a follow-up test with a larger change",
        ),
    ),
)

NEXT_TEST_SUGGESTIONS = (
    DecisionRule(
        id="after_winner",
        predicate=lambda c: c.status == "completed" and c.winner_declared is True,
        title="What to test next",
        steps=(
            "Test a bolder version of your winner",
            "Apply the winning concept to other pages",
            "Test the opposite hypothesis to understand boundaries",
        ),
    ),
    DecisionRule(
        id="after_no_difference",
        predicate=lambda c: c.status == "completed" and c.no_significant_difference is True,
        title="Bigger changes recommended",
        steps=(
            "Test a more dramatic change",
            "Try a different element (e.g., headline vs. button)",
            "Combine multiple small changes into one test",
        ),
    ),
    DecisionRule(
        id="after_negative",
        predicate=lambda c: (c.variant_conversion or 0) < (c.control_conversion or 0),
        title="Variant underperformed",
        steps=(
            "Test the inverse of your change",
            "Break down the change into smaller elements",
            "Research user feedback before next test",
        ),
    ),
)


def _mde_pct(c: TestContext) -> float:
    # mde is relative (0.05); uplift is in percent
    return c.mde * 100 if c.mde else 5.0


SIGNIFICANCE_DIAGNOSTICS = (
    DecisionRule(
        id="low_traffic",
        predicate=lambda c: (c.daily_visitors or 0) < 100,
        title="Increase traffic allocation to 50/50 or test on higher-traffic pages",
        explanation="Traffic too low",
        steps=(
            "Raise the share of traffic entering the test",
            "Move the test to a page with more visitors",
        ),
    ),
    DecisionRule(
        id="small_effect",
        predicate=lambda c: abs(c.uplift or 0) < _mde_pct(c),
        title="Test bigger changes or accept that small effects need larger sample sizes",
        explanation="Effect size smaller than MDE",
        steps=(
            "Compare the observed uplift with the effect the test was sized for",
            "Extend the test or test a larger change",
        ),
    ),
    DecisionRule(
        id="high_variance",
        predicate=lambda c: (c.conversion_rate_variance or 0) > 0.3,
        title="Segment analysis or run longer to smooth variance",
        explanation="High variance in conversion rates",
        steps=(
            "Check device and traffic-source segments for outliers",
            "Run through at least one full weekly cycle",
        ),
    ),
    DecisionRule(
        id="multiple_variants",
        predicate=lambda c: (c.variant_count or 0) > 3,
        title="Reduce to 2-3 variants for faster results",
        explanation="Too many variants splitting traffic",
        steps=(
            "Pause the weakest variants",
            "Re-allocate their traffic to the remaining arms",
        ),
    ),
)

IMPROVE_VELOCITY = (
    DecisionRule(
        id="increase_traffic",
        predicate=lambda c: (c.daily_visitors or 0) < 300,
        title="Improve test velocity",
        steps=(
            "Increase traffic allocation to variants equally",
            "Run the test on a higher-traffic page",
        ),
    ),
    DecisionRule(
        id="reduce_variants",
        predicate=lambda c: (c.variant_count or 0) > 2,
        title="Too many variants",
        steps=(
            "Reduce to two variants (Control vs Variant)",
            "Pause the weakest performers",
        ),
    ),
)

INTERPRET_RESULTS = (
    DecisionRule(
        id="early_stage",
        predicate=lambda c: (c.visitors_per_variant or 0) < 100 or (c.test_duration or 0) < 2,
        title="Results are preliminary",
        steps=(
            "Wait for more data to reduce noise",
            "Aim for at least 100 visitors per variant",
        ),
    ),
    DecisionRule(
        id="winner_found",
        predicate=lambda c: (c.confidence or 0) >= 0.95
        and (c.variant_conversion or 0) > (c.control_conversion or 0),
        title="Winner detected",
        steps=(
            "Implement the winning variant",
            "Plan a follow-up test to iterate on the win",
        ),
    ),
)

IMPLEMENTATION_GUIDANCE = (
    DecisionRule(
        id="how_to_ship",
        predicate=lambda c: c.status == "completed" and bool(c.winner_declared),
        title="Implementation guidance",
        steps=(
            "Deploy the winning changes to production",
            "Monitor post-implementation metrics for 1-2 weeks",
        ),
    ),
)

DEFAULT_DECISION_TYPE = "when_to_stop"

RULE_TABLES: Dict[str, Tuple[DecisionRule, ...]] = {
    "when_to_stop": STOP_TEST,
    "what_to_test_next": NEXT_TEST_SUGGESTIONS,
    "why_not_significant": SIGNIFICANCE_DIAGNOSTICS,
    "improve_test_velocity": IMPROVE_VELOCITY,
    "interpret_results": INTERPRET_RESULTS,
    "implementation_guidance": IMPLEMENTATION_GUIDANCE,
}


def rules_for(decision_type: Optional[str]) -> Tuple[DecisionRule, ...]:
    """
    Rule table for a decision type; unknown types get the stop-test table.
    """
    return RULE_TABLES.get(decision_type or DEFAULT_DECISION_TYPE, RULE_TABLES[DEFAULT_DECISION_TYPE])


def evaluate_rules(rules: Sequence[DecisionRule], ctx: TestContext) -> Optional[DecisionRule]:
    """
    First rule whose predicate holds, in declaration order.

    A predicate that raises counts as not matching.
    """
    for rule in rules:
        try:
            if rule.predicate(ctx):
                return rule
        except Exception as exc:
            logger.debug("Rule %s failed to evaluate: %s", rule.id, exc)
    return None
