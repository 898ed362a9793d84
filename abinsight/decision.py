import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .ai_client import AiSuggestion
from .context import TestContext
from .estimator import (
    HistoricalPattern,
    TimeEstimate,
    estimate_daily_visitors,
    estimate_time_to_decision,
    time_estimate_text,
)
from .impact import DecisionImpact, decision_impact
from .rules import DecisionRule, evaluate_rules, rules_for

logger = logging.getLogger(__name__)


AiProvider = Callable[[TestContext], Optional[AiSuggestion]]
HistoryProvider = Callable[[TestContext], Optional[HistoricalPattern]]

DEFAULT_AI_TIMEOUT_SECONDS = 30.0

FALLBACK_TITLE = "Gather more data before deciding"
FALLBACK_EXPLANATION = "Current confidence and sample size suggest waiting for more data."
FALLBACK_STEPS = ("Monitor confidence daily", "Consider increasing traffic allocation")


@dataclass(frozen=True)
class Recommendation:
    source: str  # "rules" | "ai" | "rules+ai" | "fallback"
    title: str
    explanation: str
    steps: Tuple[str, ...]
    confidence_pct: int
    traffic_light: str  # "green" | "yellow" | "red"
    time_estimate_text: str
    business_impact: DecisionImpact
    rule_id: Optional[str] = None
    ai: Optional[AiSuggestion] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "title": self.title,
            "explanation": self.explanation,
            "steps": list(self.steps),
            "confidence_pct": self.confidence_pct,
            "traffic_light": self.traffic_light,
            "time_estimate_text": self.time_estimate_text,
            "business_impact": self.business_impact.to_dict(),
            "rule_id": self.rule_id,
            "ai": self.ai.to_dict() if self.ai else None,
        }


def traffic_light(ctx: TestContext, remaining_sample: float) -> str:
    """
    green: the test is completed, or confidence >= 95% with the required
    sample reached. red: a negative uplift at >= 90% confidence.
    yellow: everything else.
    """
    confidence = ctx.confidence or 0
    if ctx.status == "completed":
        return "green"
    if (ctx.uplift or 0) < 0 and confidence >= 0.90:
        return "red"
    if confidence >= 0.95 and remaining_sample <= 0:
        return "green"
    return "yellow"


def _load_history(history: Optional[HistoryProvider], ctx: TestContext) -> Optional[HistoricalPattern]:
    if history is None:
        return None
    try:
        return history(ctx)
    except Exception as exc:
        # history is advisory; a failed lookup never blocks a recommendation
        logger.warning("Historical context lookup failed: %s", exc)
        return None


def _ask_ai(ai: Optional[AiProvider], ctx: TestContext, timeout: float) -> Optional[AiSuggestion]:
    if ai is None:
        return None
    executor = ThreadPoolExecutor(max_workers=1)
    try:
        suggestion = executor.submit(ai, ctx).result(timeout=timeout)
    except FutureTimeout:
        logger.warning("AI recommendation timed out after %.1fs; using rules only", timeout)
        return None
    except Exception as exc:
        logger.warning("AI recommendation failed: %s; using rules only", exc)
        return None
    finally:
        executor.shutdown(wait=False)

    if suggestion is not None and not isinstance(suggestion, AiSuggestion):
        logger.warning("AI provider returned %r; ignoring it", type(suggestion).__name__)
        return None
    return suggestion


def _confidence_pct(ctx: TestContext, estimate: TimeEstimate) -> int:
    if ctx.confidence:
        pct = round(ctx.confidence * 100)
    else:
        pct = estimate.confidence_trend_pct or 0
    return min(99, max(0, pct))


def _join(*parts: Optional[str]) -> str:
    return " ".join(p for p in parts if p).strip()


def recommend(
    decision_type: Optional[str],
    context: Any,
    ai: Optional[AiProvider] = None,
    history: Optional[HistoryProvider] = None,
    ai_timeout: float = DEFAULT_AI_TIMEOUT_SECONDS,
    now: Any = None,
) -> Recommendation:
    """
    Produce a recommendation for one test.

    `context` is a TestContext or a raw mapping (normalized here). The rule
    table for `decision_type` is scanned first-match-wins. An AI suggestion,
    when a provider is given and answers in time, replaces the matched
    rule's steps; title and explanation stay with the rule. With no rule
    match the AI suggestion is used on its own, and with neither the
    "gather more data" fallback is returned. This function always returns
    a Recommendation.
    """
    if isinstance(context, TestContext):
        ctx = context
    else:
        ctx = TestContext.from_mapping(context or {}, now=now)

    match: Optional[DecisionRule] = evaluate_rules(rules_for(decision_type), ctx)

    historical = _load_history(history, ctx)
    narrative = historical.narrative if historical else ""
    estimate = estimate_time_to_decision(ctx, historical)
    suggestion = _ask_ai(ai, ctx, ai_timeout)

    shared = dict(
        confidence_pct=_confidence_pct(ctx, estimate),
        traffic_light=traffic_light(ctx, estimate.remaining_sample),
        time_estimate_text=time_estimate_text(estimate),
        business_impact=decision_impact(
            uplift_pct=ctx.uplift,
            daily_visitors=ctx.daily_visitors,
            monthly_visitors=ctx.monthly_visitors,
            average_order_value=ctx.average_order_value,
            baseline_cr=ctx.baseline_cr,
        ),
    )

    if match is not None:
        steps = tuple(suggestion.steps) if suggestion and suggestion.steps else match.steps
        return Recommendation(
            source="rules+ai" if suggestion else "rules",
            title=match.title or "Recommendation",
            explanation=_join(match.explanation, narrative),
            steps=steps,
            rule_id=match.id,
            ai=suggestion,
            **shared,
        )

    if suggestion is not None:
        return Recommendation(
            source="ai",
            title=suggestion.recommendation or "AI Recommendation",
            explanation=narrative,
            steps=tuple(suggestion.steps) or FALLBACK_STEPS,
            ai=suggestion,
            **shared,
        )

    return Recommendation(
        source="fallback",
        title=FALLBACK_TITLE,
        explanation=narrative or FALLBACK_EXPLANATION,
        steps=FALLBACK_STEPS,
        **shared,
    )


def context_from_comparison(
    test: Mapping[str, Any],
    comparison: Mapping[str, Any],
    extra: Optional[Mapping[str, Any]] = None,
    now: Any = None,
) -> TestContext:
    """
    Build a context from a test record and the computed comparison dict
    (see interpreter.summarize_test), letting `extra` override any field.

    Missing daily traffic is derived from visitors over days running, and
    missing sample targets from the required sample size for the test.
    """
    raw: Dict[str, Any] = {
        "test_id": test.get("id"),
        "test_name": test.get("test_name"),
        "organization_id": test.get("organization_id"),
        "test_type": test.get("test_type"),
        "test_url": test.get("test_url"),
        "status": test.get("test_status"),
        "started_at": test.get("started_date"),
        "now": test.get("ended_date"),
        "confidence": comparison.get("confidence"),
        "uplift": comparison.get("uplift_pct"),
        "visitors": comparison.get("total_visitors"),
        "variant_count": comparison.get("variant_count"),
        "control_conversion": comparison.get("conversion_rate_control"),
        "variant_conversion": comparison.get("conversion_rate_variant"),
    }
    if comparison.get("variant_count"):
        raw["visitors_per_variant"] = (comparison.get("total_visitors") or 0) / comparison["variant_count"]
    if comparison.get("conversion_rate_control"):
        raw["baseline_cr"] = comparison["conversion_rate_control"] / 100
    raw.update(extra or {})
    ctx = TestContext.from_mapping(raw, now=now)

    # Traffic and sample targets the stored records do not carry
    if ctx.daily_visitors is None:
        raw["daily_visitors"] = estimate_daily_visitors(ctx.visitors, ctx.test_duration)
        ctx = TestContext.from_mapping(raw, now=now)
    if ctx.sample_size_calculated is None or ctx.calculated_minimum is None:
        required = estimate_time_to_decision(ctx).required_sample_size
        if raw.get("sample_size_calculated") is None:
            raw["sample_size_calculated"] = required
        if raw.get("calculated_minimum") is None:
            raw["calculated_minimum"] = required
        ctx = TestContext.from_mapping(raw, now=now)
    return ctx
