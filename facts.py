"""
Short programming facts for the IDE's loading screens.

This feature is decorative, so it never fails: without an API key, or when
the model call goes wrong, a built-in list is served instead.
"""
import json
import logging
import re
from typing import Any, Optional

from google.genai import types

from config import FACTS_MODEL
from exceptions import ConfigError, ModelCallError
from model_client import ModelClient, create_model_client

DEFAULT_FACT_COUNT = 8
MAX_FACT_COUNT = 20

FALLBACK_FACTS = [
    "The first computer bug was a real moth found in 1947.",
    "Python is named after Monty Python, not the snake.",
    "CSS stands for Cascading Style Sheets, and order matters!",
    "JavaScript was created in just 10 days in 1995.",
    "In Git, HEAD is just a pointer to your current branch.",
    "SQL is declarative: you say what you want, not how to get it.",
    "HTTP/2 multiplexes multiple streams over one connection.",
    "Rust's borrow checker prevents data races at compile time.",
]

_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


def clamp_count(raw: Any) -> int:
    """Parses the requested fact count, clamped to 1..MAX_FACT_COUNT."""
    try:
        value = int(float(raw))
    except (TypeError, ValueError):
        return DEFAULT_FACT_COUNT
    return max(1, min(MAX_FACT_COUNT, value))


def parse_facts(text: str, count: int) -> list[str]:
    """
    Extracts facts from the model's answer.

    A JSON array of strings is preferred; otherwise each non-empty line counts
    as one fact, with list bullets or numbering removed.
    """
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`").removeprefix("json").strip()
    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, list):
            return [str(item).strip() for item in parsed if str(item).strip()][:count]
    except json.JSONDecodeError:
        pass
    lines = [_BULLET.sub("", line).strip() for line in cleaned.splitlines()]
    return [line for line in lines if line][:count]


def generate_facts(count: int, client: Optional[ModelClient] = None) -> dict[str, Any]:
    """
    Returns {"facts": [...], "source": "gemini" | "fallback" | "error-fallback"}.
    """
    if client is None:
        try:
            client = create_model_client("facts")
        except ConfigError:
            logging.info("No Gemini key for facts; serving the built-in list.")
            return {"facts": FALLBACK_FACTS[:count], "source": "fallback"}

    prompt = (
        f"Return exactly {count} short one-line programming facts as a JSON array of strings. "
        "No prose, no markdown, just the JSON array."
    )
    try:
        text = client.generate_content(FACTS_MODEL, [types.Part.from_text(text=prompt)])
    except ModelCallError as e:
        logging.warning(f"Fact generation failed; serving the built-in list: {e}")
        return {"facts": FALLBACK_FACTS[:count], "source": "error-fallback", "error": str(e)}

    facts = parse_facts(text, count)
    if not facts:
        return {"facts": FALLBACK_FACTS[:count], "source": "fallback"}
    return {"facts": facts, "source": "gemini"}
