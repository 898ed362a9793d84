import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from .stats import VariantStats, compare

logger = logging.getLogger(__name__)


DEVICE_ORDER = ("desktop", "mobile", "tablet")
SOURCE_ORDER = ("direct", "search", "social", "email", "referral", "other")

SEARCH_HINTS = ("google", "bing", "duckduckgo", "yahoo", "baidu")
SOCIAL_HINTS = ("facebook", "twitter", "x.com", "linkedin", "instagram", "tiktok", "pinterest", "reddit")
EMAIL_HINTS = ("mail", "gmail", "outlook", "yahoo mail", "email", "mailchimp", "sendgrid")

SOURCE_LABELS = {
    "direct": "Direct traffic",
    "search": "Search traffic",
    "social": "Social traffic",
    "email": "Email traffic",
    "referral": "Referral traffic",
    "other": "Other traffic",
}

# Thresholds for calling out a segment
MIN_SEGMENT_VISITORS = 30
MIN_SEGMENT_UPLIFT_PCT = 8.0
MIN_SEGMENT_CONFIDENCE = 0.85
MAX_INSIGHTS = 3


@dataclass(frozen=True)
class SegmentBucket:
    dimension: str
    key: str
    label: str
    control: VariantStats
    treatment: VariantStats

    @property
    def total_visitors(self) -> int:
        return self.control.visitor_count + self.treatment.visitor_count


@dataclass(frozen=True)
class SegmentInsight:
    segment: str
    status: str  # "positive" | "negative"
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"segment": self.segment, "status": self.status, "message": self.message}


def normalize_device(device: Any) -> str:
    if not isinstance(device, str) or not device:
        return "desktop"
    d = device.lower()
    if "mobile" in d or d == "phone":
        return "mobile"
    if "tablet" in d or d == "ipad":
        return "tablet"
    return "desktop"


def categorize_referrer(source: Any) -> str:
    """
    Map a raw referrer string onto one of SOURCE_ORDER by keyword.
    """
    if not isinstance(source, str):
        return "direct"
    s = source.strip().lower()
    if not s or s in ("(direct)", "direct"):
        return "direct"
    if any(k in s for k in SEARCH_HINTS):
        return "search"
    if any(k in s for k in SOCIAL_HINTS):
        return "social"
    if any(k in s for k in EMAIL_HINTS) or "utm_medium=email" in s:
        return "email"
    if s.startswith("http") or "." in s:
        return "referral"
    return "other"


def _label(dimension: str, key: str) -> str:
    if dimension == "device":
        return key.capitalize()
    return SOURCE_LABELS.get(key, key)


def build_segments(
    visitors: Iterable[Dict[str, Any]],
    conversions: Iterable[Dict[str, Any]],
    control_id: Any,
) -> Dict[str, List[SegmentBucket]]:
    """
    Bucket visitor and conversion facts by device and by traffic source.

    Visitors land in the control arm when their assigned variant is
    `control_id`, otherwise in the treatment arm. A conversion is attributed
    to the segment of the visitor who converted and to the arm of its own
    variant_id; conversions from unknown visitors count as desktop/direct.

    Returns {"device": [...], "source": [...]} with one bucket per known
    segment value, in display order.
    """
    visitor_rows = []
    for v in visitors:
        variant_id = v.get("assigned_variant_id") or v.get("variant_id")
        visitor_rows.append({
            "visitor_id": v.get("visitor_id"),
            "arm": "control" if variant_id == control_id else "treatment",
            "device": normalize_device(v.get("device_type")),
            "source": categorize_referrer(v.get("referrer_source")),
        })
    vdf = pd.DataFrame(visitor_rows, columns=["visitor_id", "arm", "device", "source"])

    conversion_rows = [
        {
            "visitor_id": c.get("visitor_id"),
            "arm": "control" if c.get("variant_id") == control_id else "treatment",
        }
        for c in conversions
    ]
    cdf = pd.DataFrame(conversion_rows, columns=["visitor_id", "arm"])

    # Segment attribution for conversions comes from the visitor record
    vdf["visitor_id"] = vdf["visitor_id"].astype(str)
    cdf["visitor_id"] = cdf["visitor_id"].astype(str)
    lookup = vdf[["visitor_id", "device", "source"]].drop_duplicates("visitor_id", keep="last")
    cdf = cdf.merge(lookup, on="visitor_id", how="left")
    cdf["device"] = cdf["device"].fillna("desktop")
    cdf["source"] = cdf["source"].fillna("direct")

    segments: Dict[str, List[SegmentBucket]] = {}
    for dimension, order in (("device", DEVICE_ORDER), ("source", SOURCE_ORDER)):
        visits = vdf.groupby([dimension, "arm"]).size().to_dict()
        converted = cdf.groupby([dimension, "arm"]).size().to_dict()
        segments[dimension] = [
            SegmentBucket(
                dimension=dimension,
                key=key,
                label=_label(dimension, key),
                control=VariantStats(
                    int(visits.get((key, "control"), 0)),
                    int(converted.get((key, "control"), 0)),
                ),
                treatment=VariantStats(
                    int(visits.get((key, "treatment"), 0)),
                    int(converted.get((key, "treatment"), 0)),
                ),
            )
            for key in order
        ]

    logger.debug("Built segments from %d visitors and %d conversions", len(vdf), len(cdf))
    return segments


def evaluate_bucket(bucket: SegmentBucket) -> Optional[SegmentInsight]:
    """
    An insight for one bucket, or None when the bucket is too small,
    the uplift is unbounded, or the effect is not strong enough.
    """
    if bucket.total_visitors < MIN_SEGMENT_VISITORS:
        return None

    result = compare(bucket.control, bucket.treatment)
    uplift_pct = result.uplift_pct
    if not math.isfinite(uplift_pct):
        return None
    if abs(uplift_pct) < MIN_SEGMENT_UPLIFT_PCT or result.confidence < MIN_SEGMENT_CONFIDENCE:
        return None

    verb = "Variant outperforms" if uplift_pct > 0 else "Variant underperforms"
    return SegmentInsight(
        segment=bucket.label,
        status="positive" if uplift_pct > 0 else "negative",
        message=f"{bucket.label}: {verb} by {uplift_pct:.1f}% (confidence ~{result.confidence * 100:.0f}%).",
    )


def segment_insights(segments: Optional[Dict[str, List[SegmentBucket]]]) -> List[SegmentInsight]:
    """
    At most MAX_INSIGHTS notable segments, device buckets first, then sources.
    """
    if not segments:
        return []

    insights: List[SegmentInsight] = []
    for dimension in ("device", "source"):
        for bucket in segments.get(dimension, []):
            insight = evaluate_bucket(bucket)
            if insight is not None:
                insights.append(insight)
    return insights[:MAX_INSIGHTS]


def segment_table(segments: Dict[str, List[SegmentBucket]]) -> List[Dict[str, Any]]:
    """
    Flat per-bucket rows for display, skipping buckets with no visitors.
    """
    rows = []
    for dimension in ("device", "source"):
        for bucket in segments.get(dimension, []):
            if bucket.total_visitors == 0:
                continue
            result = compare(bucket.control, bucket.treatment)
            rows.append({
                "dimension": dimension,
                "segment": bucket.label,
                "control_rate": result.conversion_rate_control,
                "treatment_rate": result.conversion_rate_variant,
                "uplift_pct": result.uplift_pct if math.isfinite(result.uplift_pct) else None,
                "confidence": result.confidence,
                "sample_size": bucket.total_visitors,
            })
    return rows
