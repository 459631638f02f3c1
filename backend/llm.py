import asyncio
import json
import os
import re
from typing import Optional

_JSON_BLOCK_RE = re.compile(r"\{.*\}", re.DOTALL)


def gemini_api_key() -> Optional[str]:
    return os.getenv("GEMINI_API_KEY") or None


async def generate_text(prompt: str, model: str) -> str:
    """One-shot Gemini completion, run off the event loop."""
    from google import genai

    client = genai.Client(api_key=gemini_api_key())
    response = await asyncio.to_thread(
        client.models.generate_content,
        model=model,
        contents=prompt,
    )
    return (response.text or "").strip()


def strip_code_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.endswith("```"):
            text = text[:-3]
        elif "```" in text:
            text = text[:text.rfind("```")]
    return text.strip()


def parse_json_reply(text: str) -> dict:
    """Parse a model reply that should be a JSON object, tolerating fences and stray text."""
    text = strip_code_fences(text)
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_BLOCK_RE.search(text)
        if not match:
            raise
        data = json.loads(match.group())
    if not isinstance(data, dict):
        raise ValueError("Model reply is not a JSON object")
    return data
