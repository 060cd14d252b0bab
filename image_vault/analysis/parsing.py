"""
    Turning free-form model output into a description and a tag list.
"""
import json
import re
from typing import Iterable, List, Optional, Tuple

MODEL_TAG_LIMIT = 12
HEURISTIC_TAG_LIMIT = 15

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")
_DESCRIPTION_LINE = re.compile(r"^description\s*:", re.IGNORECASE)
_TAGS_LINE = re.compile(r"^tags\s*:", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")
_DISALLOWED = re.compile(r"[^a-z0-9\- ]")

def normalize_tags(tags: Iterable, limit: int = MODEL_TAG_LIMIT) -> List[str]:
    """
        Lowercases, trims and strips tags to `[a-z0-9- ]`, drops empties and
        duplicates (first occurrence wins) and caps the list at `limit`.

        normalize_tags(normalize_tags(x)) == normalize_tags(x)
    """
    seen = []
    for tag in tags:
        if tag is None:
            continue
        cleaned = _WHITESPACE.sub(" ", str(tag).lower())
        cleaned = _DISALLOWED.sub("", cleaned)
        cleaned = _WHITESPACE.sub(" ", cleaned).strip()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
            if len(seen) >= limit:
                break
    return seen

def strip_code_fence(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", cleaned))
    return cleaned

def _parse_json(text: str) -> Optional[Tuple[str, list]]:
    try:
        parsed = json.loads(strip_code_fence(text))
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    description = str(parsed.get("description") or "").strip()
    if not description:
        return None
    tags = parsed.get("tags")
    return description, tags if isinstance(tags, list) else []

def _parse_lines(text: str) -> Tuple[str, list]:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    description_line = next((l for l in lines if _DESCRIPTION_LINE.match(l)), lines[0] if lines else "")
    tags_line = next((l for l in lines if _TAGS_LINE.match(l)), "")
    description = _DESCRIPTION_LINE.sub("", description_line, count=1).strip()
    tags = _TAGS_LINE.sub("", tags_line, count=1).split(",") if tags_line else []
    return description, tags

def parse_model_response(text: str, limit: int = MODEL_TAG_LIMIT) -> Tuple[str, List[str]]:
    """
        Extracts (description, tags) from a model reply.

        The reply should be a JSON object, possibly wrapped in a code fence.
        Anything else goes through line recovery: a `description:` line (or
        the first non-empty line) and a comma separated `tags:` line.
        The description may come back empty; callers decide what that means.
    """
    parsed = _parse_json(text or "")
    description, tags = parsed if parsed is not None else _parse_lines(text or "")
    return description, normalize_tags(tags, limit=limit)
