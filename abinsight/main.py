import io
import os
import logging
import math
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, UploadFile, File, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from .db import engine, get_db
from . import models
from .ai_client import generate_suggestion
from .cache import InterpretationCache, INTERPRETATION_TTL_SECONDS
from .decision import context_from_comparison, recommend
from .estimator import historical_pattern
from .impact import calculate_business_impact
from .interpreter import generate_interpretation, summarize_test
from .repository import load_test_facts, similar_completed_tests
from .segments import build_segments, segment_insights, segment_table
from .stats import load_variant_csv, compute_variant_stats, pick_best_variant

load_dotenv()

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = float(os.getenv("INTERPRETATION_CACHE_TTL_SECONDS", INTERPRETATION_TTL_SECONDS))
CACHE_MAX_ENTRIES = int(os.getenv("INTERPRETATION_CACHE_MAX_ENTRIES", "1000"))

app = FastAPI(title="abinsight")

# Create DB tables on startup (simple approach, good enough for local use)
models.Base.metadata.create_all(bind=engine)

# One cache per process; routes share it
interpretation_cache = InterpretationCache(ttl_seconds=CACHE_TTL_SECONDS, max_entries=CACHE_MAX_ENTRIES)


class RecommendationRequest(BaseModel):
    type: str = "when_to_stop"
    context: Dict[str, Any] = {}
    use_ai: bool = False


class ImpactRequest(BaseModel):
    uplift_pct: float
    monthly_visitors: float
    average_order_value: float = 50
    baseline_cr: float = 0.03
    implementation_hours: float = 10
    hourly_rate: float = 150
    days_to_implement: float = 7


def _finite(value: Optional[float]) -> Optional[float]:
    # JSON cannot carry infinity
    if value is None or not math.isfinite(value):
        return None
    return value


def _comparison_json(summary: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "control": summary["control"],
        "variant": summary["variant"],
        "conversion_rate_control": summary["conversion_rate_control"],
        "conversion_rate_variant": summary["conversion_rate_variant"],
        "uplift_pct": _finite(summary["uplift_pct"]),
        "uplift_unbounded": math.isinf(summary["uplift_pct"]),
        "confidence": summary["confidence"],
        "total_visitors": summary["total_visitors"],
        "variant_count": summary["variant_count"],
        "srm": summary["srm"],
    }


def _facts_or_404(db: Session, test_id: str) -> Dict[str, Any]:
    facts = load_test_facts(db, test_id)
    if not facts:
        raise HTTPException(status_code=404, detail="Test not found")
    return facts


def _segments_for(facts: Dict[str, Any]):
    control, _ = pick_best_variant(facts["variants"])
    if control is None:
        return None
    return build_segments(facts["visitors"], facts["conversions"], control["id"])


@app.get("/tests/{test_id}/interpretation")
def get_interpretation(test_id: str, db: Session = Depends(get_db)):
    """
    Comparison of the best variant against control, the traffic split check
    and a cached interpretation. Segments are only built on a cache miss.
    """
    facts = _facts_or_404(db, test_id)
    summary = summarize_test(facts["variants"], facts["visitors"], facts["conversions"])
    interpretation = generate_interpretation(
        test_id,
        summary,
        cache=interpretation_cache,
        segments=lambda: _segments_for(facts),
    )
    return {
        "test_id": test_id,
        "comparison": _comparison_json(summary),
        "interpretation": interpretation.to_dict(),
    }


@app.get("/tests/{test_id}/segments")
def get_segments(test_id: str, db: Session = Depends(get_db)):
    facts = _facts_or_404(db, test_id)
    srm = summarize_test(facts["variants"], facts["visitors"], facts["conversions"])["srm"]
    segments = _segments_for(facts)
    if segments is None:
        return {"test_id": test_id, "insights": [], "rows": [], "srm": srm}
    return {
        "test_id": test_id,
        "insights": [i.to_dict() for i in segment_insights(segments)],
        "rows": segment_table(segments),
        "srm": srm,
    }


@app.post("/tests/{test_id}/recommendation")
def post_recommendation(
    test_id: str,
    body: RecommendationRequest,
    db: Session = Depends(get_db),
):
    """
    Rule-based recommendation for the requested decision type, optionally
    with AI-generated next steps.
    """
    facts = _facts_or_404(db, test_id)
    summary = summarize_test(facts["variants"], facts["visitors"], facts["conversions"])
    ctx = context_from_comparison(facts["test"], summary, extra=body.context)

    def history(c):
        return historical_pattern(
            similar_completed_tests(db, c.organization_id),
            test_type=c.test_type,
            page_url=c.test_url,
        )

    result = recommend(
        body.type,
        ctx,
        ai=generate_suggestion if body.use_ai else None,
        history=history,
    )
    return {"test_id": test_id, "recommendation": result.to_dict()}


@app.post("/impact")
def post_impact(body: ImpactRequest):
    if body.uplift_pct < 0:
        raise HTTPException(status_code=400, detail="uplift_pct must be non-negative")
    impact = calculate_business_impact(
        uplift_pct=body.uplift_pct,
        monthly_visitors=body.monthly_visitors,
        average_order_value=body.average_order_value,
        baseline_cr=body.baseline_cr,
        implementation_hours=body.implementation_hours,
        hourly_rate=body.hourly_rate,
        days_to_implement=body.days_to_implement,
    )
    return impact.to_dict()


@app.post("/analyze")
async def analyze_csv(file: UploadFile = File(...)):
    """
    Receive a CSV of per-variant counts and return rates, uplift and confidence.
    """
    # Basic file type check (not bulletproof, but ok for now)
    if not file.filename or not file.filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="Please upload a .csv file.")

    contents = await file.read()
    try:
        df = load_variant_csv(io.BytesIO(contents))
        stats = compute_variant_stats(df)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info("Analyzed CSV with %d variants", len(stats))
    return {"variants": stats}
