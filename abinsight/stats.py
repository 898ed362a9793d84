from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import math

import pandas as pd

logger = logging.getLogger(__name__)


# Abramowitz-Stegun 26.2.17 coefficients. Changing these changes every
# confidence value the engine reports, so keep them literal.
_CDF_P = 0.2316419
_CDF_D = 0.3989423
_CDF_B1 = 0.3193815
_CDF_B2 = -0.3565638
_CDF_B3 = 1.781478
_CDF_B4 = -1.821256
_CDF_B5 = 1.330274

# Critical values used by the sample size and power helpers
Z_ALPHA = {0.10: 1.645, 0.05: 1.96, 0.01: 2.576}
Z_POWER = {0.8: 0.84, 0.9: 1.2816}
Z_INTERVAL = {0.90: 1.645, 0.95: 1.96, 0.99: 2.576}


@dataclass(frozen=True)
class VariantStats:
    visitor_count: int
    conversion_count: int


@dataclass(frozen=True)
class ComparisonResult:
    conversion_rate_control: float
    conversion_rate_variant: float
    uplift_pct: float
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        # JSON has no infinity, so +inf uplift is surfaced as None
        uplift = self.uplift_pct if math.isfinite(self.uplift_pct) else None
        return {
            "conversion_rate_control": self.conversion_rate_control,
            "conversion_rate_variant": self.conversion_rate_variant,
            "uplift_pct": uplift,
            "uplift_unbounded": not math.isfinite(self.uplift_pct),
            "confidence": self.confidence,
        }


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _critical_value(table: Dict[float, float], key: float, default: float, what: str) -> float:
    # Only the tabled levels are supported; anything else uses the default level
    if key not in table:
        logger.debug("Unsupported %s %r, using %r", what, key, default)
        return table[default]
    return table[key]


def conversion_rate(visitors: int, conversions: int) -> float:
    """
    Conversion rate as a percentage. Zero visitors gives 0 instead of a
    division error.
    """
    if not visitors or visitors <= 0:
        return 0.0
    return 100.0 * conversions / visitors


def uplift(control: VariantStats, variant: VariantStats) -> float:
    """
    Relative change of the variant's conversion rate versus control, in percent.

    +inf when control converts at exactly 0 and the variant does not,
    0 when both are 0.
    """
    cr_control = conversion_rate(control.visitor_count, control.conversion_count)
    cr_variant = conversion_rate(variant.visitor_count, variant.conversion_count)
    return _relative_uplift(cr_control, cr_variant)


def _relative_uplift(cr_control: float, cr_variant: float) -> float:
    if cr_control == 0:
        return math.inf if cr_variant > 0 else 0.0
    return (cr_variant - cr_control) / cr_control * 100.0


def normal_cdf(z: float) -> float:
    """
    Standard normal CDF using the fixed-coefficient polynomial approximation
    (absolute error below 7.5e-8).
    """
    t = 1.0 / (1.0 + _CDF_P * abs(z))
    d = _CDF_D * math.exp(-z * z / 2.0)
    p = d * t * (_CDF_B1 + t * (_CDF_B2 + t * (_CDF_B3 + t * (_CDF_B4 + t * _CDF_B5))))
    if z > 0:
        p = 1.0 - p
    return p


def z_test_two_proportions(n1: int, x1: int, n2: int, x2: int) -> Tuple[float, float]:
    """
    Pooled two-proportion z-test of group 2 against group 1.
    Returns (z, two-tailed p-value). Degenerate groups give (0.0, 1.0).
    """
    if not n1 or not n2:
        return 0.0, 1.0

    pooled = (x1 + x2) / (n1 + n2)
    se = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))
    if se == 0:
        return 0.0, 1.0

    p1 = x1 / n1
    p2 = x2 / n2
    z = (p2 - p1) / se
    p_two = 2 * (1 - normal_cdf(abs(z)))
    return z, _clamp(p_two)


def two_proportion_confidence(n1: int, x1: int, n2: int, x2: int) -> float:
    """
    Probability in [0, 1] that the difference between the two groups is not
    due to chance: 1 - two-tailed p-value.
    """
    # zero visitors and zero variance both come back as p = 1, i.e. confidence 0
    _, p_two = z_test_two_proportions(n1, x1, n2, x2)
    return _clamp(1 - p_two)


def confidence(control: VariantStats, variant: VariantStats) -> float:
    return two_proportion_confidence(
        control.visitor_count,
        control.conversion_count,
        variant.visitor_count,
        variant.conversion_count,
    )


def compare(control: VariantStats, variant: VariantStats) -> ComparisonResult:
    """
    Build the comparison every downstream component consumes.
    """
    cr_control = conversion_rate(control.visitor_count, control.conversion_count)
    cr_variant = conversion_rate(variant.visitor_count, variant.conversion_count)
    return ComparisonResult(
        conversion_rate_control=_clamp(cr_control, 0.0, 100.0),
        conversion_rate_variant=_clamp(cr_variant, 0.0, 100.0),
        uplift_pct=_relative_uplift(cr_control, cr_variant),
        confidence=confidence(control, variant),
    )


def required_sample_size_per_group(
    baseline: float,
    mde_abs: float,
    alpha: float = 0.05,
    power: float = 0.8,
) -> int:
    """
    Visitors needed in each group to detect an absolute lift of `mde_abs`
    over `baseline` (both proportions, e.g. 0.03 and 0.003).

    Uses the pooled-variance two-proportion formula with z = 1.96 for
    alpha 0.05 and z = 0.84 for 80% power. Alpha must be 0.10, 0.05 or
    0.01 and power 0.8 or 0.9; other values fall back to 0.05 and 0.8.
    Always returns at least 1; degenerate input (baseline outside (0, 1),
    non-positive MDE) returns 1.
    """
    if not (0 < baseline < 1) or not (mde_abs > 0):
        return 1

    z_alpha = _critical_value(Z_ALPHA, alpha, 0.05, "alpha")
    z_beta = _critical_value(Z_POWER, power, 0.8, "power")

    p1 = baseline
    p2 = min(1.0, baseline + mde_abs)
    p_bar = (p1 + p2) / 2
    q_bar = 1 - p_bar

    numerator = (
        z_alpha * math.sqrt(2 * p_bar * q_bar)
        + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2
    denominator = (p2 - p1) ** 2
    return max(1, math.ceil(numerator / denominator))


def confidence_interval_diff(
    n1: int,
    x1: int,
    n2: int,
    x2: int,
    level: float = 0.95,
) -> Dict[str, float]:
    """
    Unpooled interval for the difference in proportions (group 2 - group 1).
    """
    p1 = x1 / n1 if n1 > 0 else 0.0
    p2 = x2 / n2 if n2 > 0 else 0.0
    diff = p2 - p1
    se = math.sqrt((p1 * (1 - p1)) / (n1 or 1) + (p2 * (1 - p2)) / (n2 or 1))
    z_star = _critical_value(Z_INTERVAL, level, 0.95, "confidence level")
    margin = z_star * se
    return {"lower": diff - margin, "upper": diff + margin, "diff": diff, "se": se, "z_star": z_star}


def cohens_h(p1: float, p2: float) -> float:
    """
    Effect size between two proportions; positive when p2 > p1.
    """
    return 2 * (math.asin(math.sqrt(_clamp(p2))) - math.asin(math.sqrt(_clamp(p1))))


def interpret_cohens_h(h: float) -> str:
    magnitude = abs(h)
    if magnitude < 0.2:
        return "negligible"
    if magnitude < 0.5:
        return "small"
    if magnitude < 0.8:
        return "medium"
    return "large"


def achieved_power(n1: int, x1: int, n2: int, x2: int, alpha: float = 0.05) -> float:
    """
    Approximate power the observed samples have against the observed effect.
    """
    p1 = x1 / n1 if n1 > 0 else 0.0
    p2 = x2 / n2 if n2 > 0 else 0.0
    se_alt = math.sqrt((p1 * (1 - p1)) / (n1 or 1) + (p2 * (1 - p2)) / (n2 or 1))
    if se_alt == 0:
        return 0.0
    z_crit = _critical_value(Z_ALPHA, alpha, 0.05, "alpha")
    z = abs(p2 - p1) / se_alt
    return _clamp(1 - normal_cdf(z_crit - z))


def mde_for_sample_size(
    baseline: float,
    n_per_group: int,
    alpha: float = 0.05,
    power: float = 0.8,
) -> float:
    """
    Smallest absolute lift detectable with `n_per_group` visitors per group,
    found by bisection on the sample size formula.
    """
    if not (0 < baseline < 1) or not (n_per_group > 0):
        return 0.0

    z_alpha = _critical_value(Z_ALPHA, alpha, 0.05, "alpha")
    z_beta = _critical_value(Z_POWER, power, 0.8, "power")

    low = 0.0001
    high = min(0.5, 1 - baseline - 1e-6)
    for _ in range(30):
        mid = (low + high) / 2
        p1 = baseline
        p2 = baseline + mid
        p_bar = (p1 + p2) / 2
        lhs = (
            z_alpha * math.sqrt(2 * p_bar * (1 - p_bar))
            + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
        ) ** 2
        rhs = (p2 - p1) ** 2 * n_per_group
        if lhs > rhs:
            low = mid
        else:
            high = mid
    return (low + high) / 2


def sample_ratio_mismatch(
    counts: Sequence[int],
    planned_split: Sequence[float],
    tolerance: float = 0.05,
) -> Dict[str, Any]:
    """
    Compare the observed traffic split with the planned one (shares in 0..1).
    With no traffic yet there is nothing to compare and no mismatch.
    """
    total = sum(counts)
    if total <= 0:
        return {"mismatch": False, "worst_deviation": 0.0, "observed": [0.0 for _ in counts]}
    observed = [c / total for c in counts]
    deviations = [
        abs(share - (planned_split[i] if i < len(planned_split) else 0.0))
        for i, share in enumerate(observed)
    ]
    worst = max(deviations) if deviations else 0.0
    return {"mismatch": worst > tolerance, "worst_deviation": worst, "observed": observed}


def pick_best_variant(
    variants: List[Dict[str, Any]],
) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """
    Split variant records into (control, best treatment).

    Control is the record flagged variant_type == "control", or the first one.
    The best treatment is the one with the highest conversion rate; ties keep
    the earlier record.
    """
    if not variants:
        return None, None

    control = next((v for v in variants if v.get("variant_type") == "control"), variants[0])
    treatments = [v for v in variants if v is not control]

    best = None
    best_rate = -1.0
    for v in treatments:
        rate = conversion_rate(v.get("visitor_count", 0), v.get("conversion_count", 0))
        if rate > best_rate:
            best, best_rate = v, rate
    return control, best


def load_variant_csv(file_obj) -> pd.DataFrame:
    """
    Read a CSV file object into a pandas DataFrame.

    Expected columns:
    - variant (e.g. "control", "B")
    - visitors (int)
    - conversions (int)
    - variant_type (optional, "control" or "treatment")
    """
    df = pd.read_csv(file_obj)
    required_cols = {"variant", "visitors", "conversions"}
    if not required_cols.issubset(df.columns):
        missing = required_cols - set(df.columns)
        raise ValueError(f"CSV is missing required columns: {', '.join(sorted(missing))}")
    return df


def compute_variant_stats(df: pd.DataFrame) -> Dict[str, Dict[str, Any]]:
    """
    Per-variant rates plus uplift and confidence of every treatment versus control.

    Returns a dict like:
    {
      "control": {"visitors": 1000, "conversions": 30, "conversion_rate": 3.0},
      "B": {"visitors": 1000, "conversions": 45, "conversion_rate": 4.5,
            "uplift": 50.0, "confidence": 0.92},
    }
    """
    records: List[Dict[str, Any]] = []
    for _, row in df.iterrows():
        records.append({
            "name": str(row["variant"]),
            "visitor_count": int(row["visitors"]),
            "conversion_count": int(row["conversions"]),
            "variant_type": str(row["variant_type"]) if "variant_type" in df.columns else None,
        })

    control, _ = pick_best_variant(records)
    stats: Dict[str, Dict[str, Any]] = {}
    for rec in records:
        stats[rec["name"]] = {
            "visitors": rec["visitor_count"],
            "conversions": rec["conversion_count"],
            "conversion_rate": conversion_rate(rec["visitor_count"], rec["conversion_count"]),
        }

    if control is None:
        return stats

    control_stats = VariantStats(control["visitor_count"], control["conversion_count"])
    for rec in records:
        if rec is control:
            continue
        result = compare(control_stats, VariantStats(rec["visitor_count"], rec["conversion_count"]))
        stats[rec["name"]]["uplift"] = result.uplift_pct if math.isfinite(result.uplift_pct) else None
        stats[rec["name"]]["confidence"] = result.confidence

    return stats
