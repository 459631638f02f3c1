import json
import logging
import os

from llm import gemini_api_key, generate_text, parse_json_reply

logger = logging.getLogger(__name__)


def _normalize_string_list(value, max_items: int = 8, max_len: int = 200) -> list[str]:
    if not isinstance(value, list):
        return []
    out: list[str] = []
    seen: set[str] = set()
    for item in value:
        text = str(item).strip()
        if not text or text.lower() in seen:
            continue
        seen.add(text.lower())
        out.append(text[:max_len])
        if len(out) >= max_items:
            break
    return out


def average_score(responses: list[dict]):
    scores = []
    for r in responses:
        try:
            scores.append(float(r["score"]))
        except (KeyError, TypeError, ValueError):
            continue
    if not scores:
        return None
    return round(sum(scores) / len(scores), 1)


def fallback_analysis(responses: list[dict], reason: str) -> dict:
    return {
        "overall_score": average_score(responses),
        "summary": "Automated feedback is unavailable for this interview.",
        "strengths": [],
        "improvement_areas": [],
        "recommendations": [],
        "response_count": len(responses),
        "analysis_source": "fallback",
        "fallback_reason": reason,
    }


async def analyze_interview(responses: list[dict]) -> dict:
    """Aggregate score plus a short feedback summary for a finished interview."""
    if not gemini_api_key():
        return fallback_analysis(responses, "GEMINI_API_KEY not configured")

    scoring_model = os.getenv("SCORING_MODEL", "gemini-2.5-flash-lite")
    transcript = [
        {"question": r.get("question", ""), "answer": r.get("answer", "")}
        for r in responses
    ]
    prompt = f"""You are an interview coach reviewing a mock interview.

Questions and answers:
{json.dumps(transcript, ensure_ascii=False)[:6000]}

Return a JSON object with:
- "summary": 2-3 sentences of overall feedback addressed to the candidate
- "strengths": list of short strings
- "improvement_areas": list of short strings
- "recommendations": list of short, actionable strings

IMPORTANT: Return ONLY valid JSON, no markdown, no extra text."""

    try:
        data = parse_json_reply(await generate_text(prompt, scoring_model))
    except Exception as e:
        logger.warning("[ANALYSIS] Feedback generation error: %s", e)
        return fallback_analysis(responses, str(e))

    return {
        "overall_score": average_score(responses),
        "summary": str(data.get("summary", "")).strip(),
        "strengths": _normalize_string_list(data.get("strengths")),
        "improvement_areas": _normalize_string_list(data.get("improvement_areas")),
        "recommendations": _normalize_string_list(data.get("recommendations")),
        "response_count": len(responses),
        "analysis_source": "gemini",
    }
