from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from . import models


def abtest_to_dict(test: models.ABTest) -> Dict[str, Any]:
    return {
        "id": test.id,
        "test_name": test.test_name,
        "test_status": test.test_status,
        "started_date": test.started_date,
        "ended_date": test.ended_date,
        "organization_id": test.organization_id,
        "test_url": test.test_url,
        "test_type": test.test_type,
        "tags": list(test.tags or []),
    }


def load_test_facts(db: Session, test_id: str) -> Optional[Dict[str, Any]]:
    """
    Everything the engine needs about one test, as plain dicts:
    {"test": ..., "variants": [...], "visitors": [...], "conversions": [...]}.
    Returns None for an unknown test.
    """
    test = db.query(models.ABTest).filter(models.ABTest.id == test_id).first()
    if not test:
        return None

    variants = [
        {
            "id": v.id,
            "variant_name": v.variant_name,
            "variant_type": v.variant_type,
            "traffic_percentage": v.traffic_percentage,
        }
        for v in test.variants
    ]
    visitors = [
        {
            "visitor_id": v.visitor_id,
            "assigned_variant_id": v.assigned_variant_id,
            "device_type": v.device_type,
            "referrer_source": v.referrer_source,
            "first_seen_date": v.first_seen_date,
        }
        for v in db.query(models.Visitor).filter(models.Visitor.ab_test_id == test_id).all()
    ]
    conversions = [
        {
            "visitor_id": c.visitor_id,
            "variant_id": c.variant_id,
            "conversion_date": c.conversion_date,
        }
        for c in db.query(models.Conversion).filter(models.Conversion.ab_test_id == test_id).all()
    ]
    return {
        "test": abtest_to_dict(test),
        "variants": variants,
        "visitors": visitors,
        "conversions": conversions,
    }


def similar_completed_tests(db: Session, organization_id: Optional[str], limit: int = 50) -> List[Dict[str, Any]]:
    """
    The organization's most recent tests, newest first. Filtering by type and
    URL happens in estimator.historical_pattern.
    """
    if not organization_id:
        return []
    rows = (
        db.query(models.ABTest)
        .filter(models.ABTest.organization_id == organization_id)
        .order_by(models.ABTest.started_date.desc())
        .limit(limit)
        .all()
    )
    return [abtest_to_dict(t) for t in rows]
