import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .cache import InterpretationCache, interpretation_fingerprint
from .segments import SegmentBucket, SegmentInsight, segment_insights
from .stats import VariantStats, compare, conversion_rate, pick_best_variant, sample_ratio_mismatch

Segments = Optional[Dict[str, List[SegmentBucket]]]


@dataclass(frozen=True)
class Interpretation:
    status: str  # "winner" | "trending" | "no_diff" | "negative"
    executive_summary: str
    confidence_text: str
    recommendation: str
    best_case_pct: float
    most_likely_pct: float
    worst_case_pct: float
    risk_note: str
    confidence_pct: float
    uplift_pct: float
    total_visitors: int
    segment_insights: List[SegmentInsight] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        def finite(x):
            return x if math.isfinite(x) else None

        return {
            "status": self.status,
            "executive_summary": self.executive_summary,
            "confidence": self.confidence_text,
            "recommendation": self.recommendation,
            "risk_assessment": {
                "best_case_pct": finite(self.best_case_pct),
                "most_likely_pct": finite(self.most_likely_pct),
                "worst_case_pct": finite(self.worst_case_pct),
                "risk_note": self.risk_note,
            },
            "segment_insights": [i.to_dict() for i in self.segment_insights],
            "meta": {
                "confidence_pct": self.confidence_pct,
                "uplift_pct": finite(self.uplift_pct),
                "total_visitors": self.total_visitors,
            },
        }


def traffic_split_check(records: List[Dict[str, Any]], tolerance: float = 0.05) -> Dict[str, Any]:
    """
    Sample ratio mismatch check: each variant's observed share of visitors
    against its planned traffic_percentage. Variants without a planned
    percentage are assumed to split traffic evenly.
    """
    if not records:
        return {"mismatch": False, "worst_deviation": 0.0, "variants": []}

    planned_pct = [r.get("traffic_percentage") for r in records]
    if any(p is None for p in planned_pct):
        planned = [1 / len(records)] * len(records)
    else:
        planned = [float(p) / 100 for p in planned_pct]

    result = sample_ratio_mismatch([r["visitor_count"] for r in records], planned, tolerance)
    variants = [
        {
            "id": r.get("id"),
            "variant_name": r.get("variant_name"),
            "expected_share": expected,
            "observed_share": observed,
            "exceeds": abs(observed - expected) > tolerance,
        }
        for r, expected, observed in zip(records, planned, result["observed"])
    ]
    if not result["mismatch"]:
        # nothing exceeds when there is no traffic yet
        for v in variants:
            v["exceeds"] = False
    return {"mismatch": result["mismatch"], "worst_deviation": result["worst_deviation"], "variants": variants}


def summarize_test(
    variants: Iterable[Dict[str, Any]],
    visitors: Iterable[Dict[str, Any]],
    conversions: Iterable[Dict[str, Any]],
) -> Dict[str, Any]:
    """
    Count visitors and conversions per variant and compare the best
    treatment against control.

    Returns a dict with "control", "variant" (the best treatment, with counts),
    "conversion_rate_control", "conversion_rate_variant", "uplift_pct",
    "confidence", "total_visitors", "variant_count" and "srm"
    (see traffic_split_check).
    """
    by_variant: Dict[Any, Dict[str, Any]] = {}
    for v in variants:
        by_variant[v["id"]] = {**v, "visitor_count": 0, "conversion_count": 0}

    for v in visitors:
        key = v.get("assigned_variant_id") or v.get("variant_id")
        if key in by_variant:
            by_variant[key]["visitor_count"] += 1

    for c in conversions:
        if c.get("variant_id") in by_variant:
            by_variant[c["variant_id"]]["conversion_count"] += 1

    records = list(by_variant.values())
    control, best = pick_best_variant(records)
    total = sum(r["visitor_count"] for r in records)
    srm = traffic_split_check(records)

    if control is None or best is None:
        rate = conversion_rate(control["visitor_count"], control["conversion_count"]) if control else 0.0
        return {
            "control": control,
            "variant": best,
            "conversion_rate_control": rate,
            "conversion_rate_variant": 0.0,
            "uplift_pct": 0.0,
            "confidence": 0.0,
            "total_visitors": total,
            "variant_count": len(records),
            "srm": srm,
        }

    result = compare(
        VariantStats(control["visitor_count"], control["conversion_count"]),
        VariantStats(best["visitor_count"], best["conversion_count"]),
    )
    return {
        "control": control,
        "variant": best,
        "conversion_rate_control": result.conversion_rate_control,
        "conversion_rate_variant": result.conversion_rate_variant,
        "uplift_pct": result.uplift_pct,
        "confidence": result.confidence,
        "total_visitors": total,
        "variant_count": len(records),
        "srm": srm,
    }


def confidence_explanation(confidence_pct: float) -> str:
    if confidence_pct >= 95:
        return "Very confident this is a real improvement."
    if confidence_pct >= 90:
        return "Fairly confident, but some uncertainty remains."
    if confidence_pct >= 80:
        return "Suggestive but needs more data."
    return "Too early to draw conclusions."


def status_recommendation(status: str, confidence_pct: float) -> str:
    if status == "winner":
        return "Implement the winning variant immediately."
    if status == "negative":
        return "Keep the original; do not roll out the variant."
    if status == "no_diff":
        return "Stop the test and try a more impactful change."
    if confidence_pct >= 85:
        return "Continue testing a bit longer to confirm the result."
    return "Collect more data before deciding."


def _interpret(results: Dict[str, Any], segments: Segments) -> Interpretation:
    variant = results.get("variant") or {}
    name = variant.get("variant_name") or variant.get("name") or "B"
    confidence_pct = float(results.get("confidence") or 0) * 100
    uplift_pct = float(results.get("uplift_pct") or 0)
    total_visitors = int(results.get("total_visitors") or 0)

    lift = f"{uplift_pct:.1f}%" if math.isfinite(uplift_pct) else "unbounded"

    status = "trending"
    summary = "Early signal detected, but evidence is not strong enough."
    risk = "Uncertain - avoid implementing changes yet."

    if uplift_pct >= 10 and confidence_pct >= 95:
        status = "winner"
        summary = f"Variant {name} is a clear winner with {lift} better performance."
        risk = "Low risk - strong statistical evidence supports this change."
    elif 85 <= confidence_pct < 95 and uplift_pct >= 5:
        summary = f"Variant {name} shows promising results (+{lift}), but needs confirmation."
        risk = "Moderate risk - results are encouraging but not conclusive."
    elif abs(uplift_pct) < 5 and confidence_pct < 85:
        status = "no_diff"
        summary = "No meaningful difference detected between variants."
        risk = "Implementation risk is low since variants perform similarly."
    elif uplift_pct < 0:
        status = "negative"
        summary = "The original (control) performs better than the variant."
        risk = "High risk if variant is implemented - expect performance decline."

    # Simple band around the observed uplift
    band = max(5.0, abs(uplift_pct) * 0.5)

    return Interpretation(
        status=status,
        executive_summary=summary,
        confidence_text=confidence_explanation(confidence_pct),
        recommendation=status_recommendation(status, confidence_pct),
        best_case_pct=uplift_pct + band,
        most_likely_pct=uplift_pct,
        worst_case_pct=uplift_pct - band,
        risk_note=risk,
        confidence_pct=confidence_pct,
        uplift_pct=uplift_pct,
        total_visitors=total_visitors,
        segment_insights=segment_insights(segments),
    )


def generate_interpretation(
    test_id: Any,
    results: Dict[str, Any],
    cache: Optional[InterpretationCache] = None,
    segments: Union[Segments, Callable[[], Segments], None] = None,
) -> Interpretation:
    """
    Template interpretation of a test's results (see summarize_test).

    `segments` may be the bucketed segments or a callable producing them;
    a callable is only invoked when the interpretation is actually computed.
    With a cache, repeated calls for the same test and the same key metrics
    return the stored object until it expires.
    """
    def compute() -> Interpretation:
        buckets = segments() if callable(segments) else segments
        return _interpret(results, buckets)

    if cache is None:
        return compute()

    fingerprint = interpretation_fingerprint(results)
    return cache.get_or_compute(test_id, fingerprint, compute)
