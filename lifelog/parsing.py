"""
Permissive JSON parsing for model output.

Two stages: a strict json.loads of the whole text, then a fallback that
pulls the first balanced top-level {...} object out of surrounding prose
or a fenced code block. The result is then checked against the analysis
payload shape.
"""

import json
import logging
import re
from typing import Any, Optional

from .errors import MalformedResponseError

logger = logging.getLogger(__name__)

JSON_PARSE_SNIPPET_MAX = 160

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)```", re.DOTALL | re.IGNORECASE)


def preview(text: str, limit: int = JSON_PARSE_SNIPPET_MAX) -> str:
    """Whitespace-collapsed prefix of text, for error messages."""
    return re.sub(r"\s+", " ", text or "").strip()[:limit]


def parse_strict(text: str) -> Optional[dict[str, Any]]:
    """json.loads the whole text; only a JSON object counts as success."""
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


def extract_first_object(text: str) -> Optional[str]:
    """
    Return the first balanced top-level {...} substring of text.

    Braces inside JSON strings (including escaped quotes) don't count.
    Returns None if no opening brace is ever closed.
    """
    if not text:
        return None
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        # Unclosed from here; try the next opening brace
        start = text.find("{", start + 1)
    return None


def try_parse_object(text: Optional[str]) -> Optional[dict[str, Any]]:
    """
    Parse a JSON object from model output, or return None.

    Tries, in order: the whole text, the body of a fenced code block,
    and the first balanced object embedded in prose.
    """
    if not text:
        return None
    text = text.strip()

    data = parse_strict(text)
    if data is not None:
        return data

    fence = _FENCE_RE.search(text)
    if fence:
        data = parse_strict(fence.group(1).strip())
        if data is not None:
            return data

    candidate = extract_first_object(text)
    if candidate is not None:
        data = parse_strict(candidate)
        if data is not None:
            return data

    return None


_LIST_FIELDS = {
    "tags": None,
    "time_blocks": "label",
    "action_items": "title",
    "suggestions": "target",
}


def coerce_analysis_payload(data: Any) -> dict[str, Any]:
    """
    Check a parsed object against the analysis schema and normalize it.

    summary must be a non-empty string. mood defaults to "" and the list
    fields to []. List items missing their required key are dropped.

    Raises:
        MalformedResponseError: If data is not an object or has no summary
    """
    if not isinstance(data, dict):
        raise MalformedResponseError("Analysis payload is not a JSON object")
    summary = data.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        raise MalformedResponseError(
            "Analysis payload has no summary", preview=preview(json.dumps(data, ensure_ascii=False))
        )

    result = dict(data)
    result["summary"] = summary.strip()
    mood = data.get("mood")
    result["mood"] = mood.strip() if isinstance(mood, str) else ""

    for key, required in _LIST_FIELDS.items():
        value = data.get(key)
        if not isinstance(value, list):
            result[key] = []
            continue
        if required is None:
            result[key] = [str(v) for v in value if isinstance(v, (str, int, float)) and str(v).strip()]
        else:
            result[key] = [
                v for v in value
                if isinstance(v, dict) and isinstance(v.get(required), str) and v[required].strip()
            ]
    return result


def ensure_analysis_json(text: Optional[str]) -> dict[str, Any]:
    """
    Parse and validate an analysis payload.

    Raises:
        MalformedResponseError: With a short preview of the offending text
    """
    data = try_parse_object(text)
    if data is None:
        snippet = preview(text or "")
        raise MalformedResponseError(f'Model response is not valid JSON: "{snippet}"', preview=snippet)
    return coerce_analysis_payload(data)


def parse_analysis(text: Optional[str]) -> Optional[dict[str, Any]]:
    """ensure_analysis_json() that returns None instead of raising."""
    try:
        return ensure_analysis_json(text)
    except MalformedResponseError as e:
        logger.debug("Unusable analysis response: %s", e)
        return None
