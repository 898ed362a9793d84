import os
import json
import logging
from dataclasses import dataclass
from typing import List, Optional

import requests
from dotenv import load_dotenv

from .context import TestContext

# Load .env variables (OLLAMA_HOST, LLM_MODEL, LLM_TIMEOUT_SECONDS)
load_dotenv()

OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
LLM_MODEL = os.getenv("LLM_MODEL", "llama3")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "20"))

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AiSuggestion:
    recommendation: str
    steps: List[str]

    def to_dict(self):
        return {"recommendation": self.recommendation, "steps": list(self.steps)}


def build_prompt(ctx: TestContext) -> str:
    f = ctx.to_prompt_fields()
    return f"""
You are a world-class CRO advisor. Provide a concise, actionable recommendation (2-3 sentences) with 1-2 bullet next steps.
The statistics below are already computed. Do not recompute them; only interpret them.

Context:
Test: {f["test_name"]}
Status: {f["status"]}
Duration: {f["duration_days"]} days
Confidence: {f["confidence"]}%
Observed Uplift: {f["uplift"]}%
Visitors (approx): {f["visitors"]}
Business Impact (optional): {f["business_impact"]}

Question:
{f["question"]}

Output JSON ONLY with keys:
- "recommendation": a one-line recommendation
- "steps": a list of two short, concrete next steps
""".strip()


def parse_suggestion(content: str) -> Optional[AiSuggestion]:
    """
    Turn the model's reply into a suggestion. Anything that is not a JSON
    object with a non-empty "recommendation" string is rejected.
    """
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        logger.warning("Model reply was not valid JSON; ignoring it")
        return None

    if not isinstance(parsed, dict):
        return None
    recommendation = parsed.get("recommendation")
    if not isinstance(recommendation, str) or not recommendation.strip():
        return None

    steps = parsed.get("steps") or []
    if not isinstance(steps, list):
        steps = []
    return AiSuggestion(
        recommendation=recommendation.strip(),
        steps=[str(s) for s in steps if str(s).strip()],
    )


def generate_suggestion(ctx: TestContext) -> Optional[AiSuggestion]:
    """
    Ask the configured Ollama model for advice on one test.

    Network and HTTP errors propagate to the caller; an unusable reply
    returns None.
    """
    url = f"{OLLAMA_HOST}/api/chat"
    payload = {
        "model": LLM_MODEL,
        "messages": [
            {"role": "system", "content": "You are a careful conversion-rate analyst who follows instructions exactly."},
            {"role": "user", "content": build_prompt(ctx)},
        ],
        "stream": False,
        "format": "json",
    }

    resp = requests.post(url, json=payload, timeout=LLM_TIMEOUT_SECONDS)
    resp.raise_for_status()
    data = resp.json()

    # Ollama returns the whole conversation; we need the assistant message content
    content = (data.get("message") or {}).get("content", "").strip()
    return parse_suggestion(content)
