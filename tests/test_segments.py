import pytest

from abinsight.segments import (
    SegmentBucket,
    build_segments,
    categorize_referrer,
    normalize_device,
    segment_insights,
    segment_table,
)
from abinsight.stats import VariantStats


def _facts(spec):
    """
    Build visitor and conversion facts from rows of
    (variant_id, device, referrer, visitors, conversions).
    """
    visitors, conversions = [], []
    counter = 0
    for variant_id, device, referrer, n, x in spec:
        for i in range(n):
            counter += 1
            vid = f"v{counter}"
            visitors.append({
                "visitor_id": vid,
                "assigned_variant_id": variant_id,
                "device_type": device,
                "referrer_source": referrer,
            })
            if i < x:
                conversions.append({"visitor_id": vid, "variant_id": variant_id})
    return visitors, conversions


def _bucket(label, n1, x1, n2, x2):
    return SegmentBucket(
        dimension="device",
        key=label.lower(),
        label=label,
        control=VariantStats(n1, x1),
        treatment=VariantStats(n2, x2),
    )


@pytest.mark.parametrize("raw,expected", [
    (None, "desktop"),
    ("", "desktop"),
    ("Mobile", "mobile"),
    ("phone", "mobile"),
    ("iPad", "tablet"),
    ("tablet-android", "tablet"),
    ("tv", "desktop"),
])
def test_normalize_device(raw, expected):
    assert normalize_device(raw) == expected


@pytest.mark.parametrize("raw,expected", [
    (None, "direct"),
    ("", "direct"),
    ("(direct)", "direct"),
    ("https://www.google.com/search?q=x", "search"),
    ("facebook", "social"),
    ("newsletter?utm_medium=email", "email"),
    ("https://partner-blog.io/post", "referral"),
    ("partner", "other"),
])
def test_categorize_referrer(raw, expected):
    assert categorize_referrer(raw) == expected


def test_build_segments_counts_per_arm():
    visitors, conversions = _facts([
        ("ctl", "mobile", "google", 10, 2),
        ("var", "mobile", "google", 12, 5),
        ("ctl", "desktop", "", 8, 1),
        ("var", None, "(direct)", 6, 0),
    ])

    segments = build_segments(visitors, conversions, control_id="ctl")

    mobile = next(b for b in segments["device"] if b.key == "mobile")
    assert mobile.control == VariantStats(10, 2)
    assert mobile.treatment == VariantStats(12, 5)

    desktop = next(b for b in segments["device"] if b.key == "desktop")
    assert desktop.control == VariantStats(8, 1)
    assert desktop.treatment == VariantStats(6, 0)

    search = next(b for b in segments["source"] if b.key == "search")
    assert search.label == "Search traffic"
    assert search.total_visitors == 22

    # every known segment value is present, in display order
    assert [b.key for b in segments["device"]] == ["desktop", "mobile", "tablet"]
    assert len(segments["source"]) == 6


def test_unmatched_conversion_counts_as_desktop_direct():
    visitors, _ = _facts([("ctl", "mobile", "google", 5, 0)])
    conversions = [{"visitor_id": "ghost", "variant_id": "var"}]

    segments = build_segments(visitors, conversions, control_id="ctl")

    desktop = next(b for b in segments["device"] if b.key == "desktop")
    direct = next(b for b in segments["source"] if b.key == "direct")
    assert desktop.treatment.conversion_count == 1
    assert direct.treatment.conversion_count == 1


def test_build_segments_with_no_facts():
    segments = build_segments([], [], control_id="ctl")
    assert all(b.total_visitors == 0 for b in segments["device"] + segments["source"])
    assert segment_insights(segments) == []


def test_strong_segment_produces_insight():
    segments = {"device": [_bucket("Mobile", 500, 25, 500, 50)], "source": []}

    insights = segment_insights(segments)

    assert len(insights) == 1
    assert insights[0].segment == "Mobile"
    assert insights[0].status == "positive"
    assert insights[0].message.startswith("Mobile: Variant outperforms by 100.0%")


def test_negative_segment_is_flagged():
    segments = {"device": [_bucket("Desktop", 500, 60, 500, 30)], "source": []}
    insights = segment_insights(segments)
    assert insights[0].status == "negative"
    assert "underperforms" in insights[0].message


def test_small_segment_never_produces_insight():
    # 29 visitors in total with an extreme difference
    segments = {"device": [_bucket("Tablet", 14, 0, 15, 15)], "source": []}
    assert segment_insights(segments) == []


def test_unbounded_or_weak_segments_are_skipped():
    segments = {
        "device": [
            _bucket("Desktop", 500, 0, 500, 20),    # control never converts
            _bucket("Mobile", 500, 50, 500, 52),    # below 8%
            _bucket("Tablet", 40, 4, 40, 5),        # low confidence
        ],
        "source": [],
    }
    assert segment_insights(segments) == []


def test_at_most_three_insights_device_first():
    strong = [_bucket(f"Seg{i}", 500, 25, 500, 50) for i in range(5)]
    segments = {"device": strong[:2], "source": strong[2:]}

    insights = segment_insights(segments)

    assert [i.segment for i in insights] == ["Seg0", "Seg1", "Seg2"]


def test_segment_table_skips_empty_buckets():
    visitors, conversions = _facts([
        ("ctl", "mobile", "google", 40, 4),
        ("var", "mobile", "google", 40, 8),
    ])
    rows = segment_table(build_segments(visitors, conversions, control_id="ctl"))

    assert {r["segment"] for r in rows} == {"Mobile", "Search traffic"}
    mobile = next(r for r in rows if r["segment"] == "Mobile")
    assert mobile["uplift_pct"] == pytest.approx(100.0)
    assert mobile["sample_size"] == 80
