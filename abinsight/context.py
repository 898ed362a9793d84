import math
import re
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union


_NUMBER_RE = re.compile(r"-?\d+(\.\d+)?")


def pct_to_number(value: Any) -> Optional[float]:
    """
    Read a percentage that may arrive as a number or as text like "+12.5%".
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    match = _NUMBER_RE.search(str(value))
    return float(match.group(0)) if match else None


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


_TRUE_TEXT = {"true", "yes", "1", "y"}
_FALSE_TEXT = {"false", "no", "0", "n", ""}


def _to_bool(value: Any) -> Optional[bool]:
    """
    Flags arrive as real booleans, numbers or text ("true", "false").
    Unrecognized text is treated as unknown.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in _TRUE_TEXT:
        return True
    if text in _FALSE_TEXT:
        return False
    return None


def _to_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def days_between(start: Any, end: Any) -> Optional[int]:
    s = _to_datetime(start)
    e = _to_datetime(end)
    if s is None or e is None:
        return None
    return max(0, round((e - s).total_seconds() / 86400))


def normalize_confidence(value: Any) -> Optional[float]:
    """
    Confidence as a probability in [0, 1]. Values above 1 are read as
    percentages (92.5 -> 0.925).
    """
    number = _to_float(value)
    if number is None:
        return None
    if number > 1:
        number = number / 100
    return max(0.0, min(1.0, number))


@dataclass(frozen=True)
class TestContext:
    """
    Everything known about one test at decision time.

    Built once per request by `from_mapping` and only read afterwards.
    `confidence` is a probability in [0, 1]; `uplift` and `mde` follow the
    dashboard's conventions (uplift in percent, mde relative, e.g. 0.05).
    """

    test_id: Optional[str] = None
    test_name: Optional[str] = None
    organization_id: Optional[str] = None
    test_type: Optional[str] = None
    test_url: Optional[str] = None
    status: Optional[str] = None
    question: Optional[str] = None

    confidence: Optional[float] = None
    uplift: Optional[float] = None
    visitors: Optional[float] = None
    sample_size: Optional[float] = None
    visitors_per_variant: Optional[float] = None
    test_duration: Optional[float] = None
    daily_visitors: Optional[float] = None
    monthly_visitors: Optional[float] = None
    average_order_value: Optional[float] = None
    baseline_cr: Optional[float] = None
    mde: Optional[float] = None
    variant_count: Optional[float] = None
    traffic_allocation_ratio: Optional[float] = None

    control_conversion: Optional[float] = None
    variant_conversion: Optional[float] = None
    calculated_minimum: Optional[float] = None
    sample_size_calculated: Optional[float] = None
    conversion_rate_variance: Optional[float] = None

    winner_declared: Optional[bool] = None
    no_significant_difference: Optional[bool] = None
    business_impact: Optional[str] = None

    __test__ = False  # keep pytest from collecting this as a test class

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], now: Any = None) -> "TestContext":
        """
        Normalize a loosely typed dict (as sent by the dashboard) into a context.
        Unknown keys are ignored.
        """
        data: Dict[str, Any] = {}
        names = {f.name for f in fields(cls)}
        text_fields = {"test_id", "test_name", "organization_id", "test_type", "test_url",
                       "status", "question", "business_impact"}
        bool_fields = {"winner_declared", "no_significant_difference"}

        for name in names:
            if name not in raw or raw[name] is None:
                continue
            value = raw[name]
            if name in text_fields:
                data[name] = str(value)
            elif name in bool_fields:
                data[name] = _to_bool(value)
            elif name == "confidence":
                data[name] = normalize_confidence(value)
            elif name == "uplift":
                data[name] = pct_to_number(value)
            else:
                data[name] = _to_float(value)

        # Daily visitors are sometimes sent under the older key
        if data.get("daily_visitors") is None and raw.get("visitors_per_day") is not None:
            data["daily_visitors"] = _to_float(raw.get("visitors_per_day"))

        if not data.get("test_duration"):
            data["test_duration"] = days_between(
                raw.get("started_at"),
                raw.get("now") or now or datetime.now(timezone.utc),
            )

        return cls(**data)

    def to_prompt_fields(self) -> Dict[str, str]:
        """
        String view of the context used when asking a model for advice.
        """
        def text(value: Any) -> str:
            return "" if value is None else str(value)

        return {
            "test_name": text(self.test_name),
            "status": text(self.status),
            "duration_days": text(self.test_duration),
            "confidence": text(None if self.confidence is None else round(self.confidence * 100, 1)),
            "uplift": text(self.uplift),
            "visitors": text(self.visitors),
            "business_impact": text(self.business_impact),
            "question": self.question or "What should I do next?",
        }
