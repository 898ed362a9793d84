import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from .context import TestContext, days_between
from .stats import required_sample_size_per_group


DEFAULT_MDE = 0.05        # relative
MIN_MDE = 0.005
DEFAULT_BASELINE = 0.03
MIN_BASELINE = 0.001

# Weights for blending the statistical estimate with history
ESTIMATE_WEIGHT = 0.6
HISTORY_WEIGHT = 0.4

# Assumed run length when a test has no start date
UNKNOWN_DURATION_DAYS = 7


@dataclass(frozen=True)
class HistoricalPattern:
    average_duration_days: Optional[int]
    success_rate: Optional[int]
    sample_count: int
    narrative: str = ""


@dataclass(frozen=True)
class TimeEstimate:
    required_sample_size: int
    remaining_sample: int
    est_days_to_significance: float  # int-valued, or math.inf
    confidence_trend_pct: int
    winner_likelihood_pct: int


def _field(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def historical_pattern(
    tests: Iterable[Any],
    test_type: Optional[str] = None,
    page_url: Optional[str] = None,
) -> Optional[HistoricalPattern]:
    """
    Summarize finished tests similar to the current one.

    A test is similar when it has the same test_type (if given), its URL
    contains the page URL without query string (if given), and it has ended.
    Success rate counts tests tagged with "winner". Returns None when nothing
    similar exists.
    """
    base_url = page_url.split("?")[0] if page_url else None
    similar = []
    for t in tests:
        if test_type and _field(t, "test_type") != test_type:
            continue
        if base_url and base_url not in (_field(t, "test_url") or ""):
            continue
        if not _field(t, "ended_date"):
            continue
        similar.append(t)

    if not similar:
        return None

    durations = []
    for t in similar:
        days = days_between(_field(t, "started_date"), _field(t, "ended_date"))
        # zero-length tests carry no duration signal
        if days:
            durations.append(days)
    avg_duration = round(sum(durations) / len(durations)) if durations else None

    winners = [
        t for t in similar
        if any(re.search("winner", str(tag), re.IGNORECASE) for tag in (_field(t, "tags") or []))
    ]
    success_rate = round(len(winners) / len(similar) * 100)

    parts = []
    if avg_duration:
        parts.append(f"Similar tests typically take ~{avg_duration} days to complete.")
    parts.append(f"Success rate for similar tests: ~{success_rate}%.")

    return HistoricalPattern(
        average_duration_days=avg_duration,
        success_rate=success_rate,
        sample_count=len(similar),
        narrative=" ".join(parts),
    )


def estimate_daily_visitors(visitors: Optional[float], days_running: Optional[float]) -> int:
    """
    Average visitors per day so far, at least 1. A test started today counts
    as one day.
    """
    days = UNKNOWN_DURATION_DAYS if days_running is None else max(1, days_running)
    return max(1, round((visitors or 0) / days))


def estimate_time_to_decision(
    ctx: TestContext,
    historical: Optional[HistoricalPattern] = None,
) -> TimeEstimate:
    """
    Required and remaining sample, and days until the test can be called.

    Days are blended 60/40 with the historical average duration of similar
    tests when one is known and the estimate itself is finite.
    """
    daily_visitors = max(1.0, ctx.daily_visitors or 0)
    mde = max(MIN_MDE, ctx.mde or DEFAULT_MDE)
    baseline = max(MIN_BASELINE, ctx.baseline_cr or DEFAULT_BASELINE)

    per_group = required_sample_size_per_group(baseline, baseline * mde)
    groups = max(2, int(ctx.variant_count or 2))
    required = per_group * groups

    observed = max(0.0, ctx.visitors or 0)
    remaining = int(max(0, required - observed))

    allocation = ctx.traffic_allocation_ratio if ctx.traffic_allocation_ratio is not None else 1.0
    effective_daily = daily_visitors * allocation
    days = math.ceil(remaining / effective_daily) if effective_daily > 0 else math.inf

    # Display heuristic only; never used for green/red
    progress = observed / required if required > 0 else 0
    current_pct = (ctx.confidence or 0) * 100
    trend_pct = min(99, round(current_pct + progress * 50))
    if trend_pct >= 95:
        likelihood = 90
    elif trend_pct >= 85:
        likelihood = 70
    else:
        likelihood = 40

    hist_days = historical.average_duration_days if historical else None
    if math.isfinite(days) and hist_days is not None:
        days = round(ESTIMATE_WEIGHT * days + HISTORY_WEIGHT * hist_days)

    return TimeEstimate(
        required_sample_size=required,
        remaining_sample=remaining,
        est_days_to_significance=max(0, days),
        confidence_trend_pct=trend_pct,
        winner_likelihood_pct=likelihood,
    )


def time_estimate_text(estimate: TimeEstimate) -> str:
    days = estimate.est_days_to_significance
    if days <= 0:
        return "Ready for decision now"
    if math.isfinite(days):
        return f"~{int(days)} days until decision"
    return "Estimating time..."
