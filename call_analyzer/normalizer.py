"""
Normalization of raw analysis payloads into AnalysisResult.

The analysis service is a language model behind a prompt, so field values
drift: resolution status comes back in free text, sentiment as a string or a
float, tags as a list or a comma string. Everything here is best-effort
coercion. Unrecognized values are bucketed or dropped, never rejected.

All functions are pure.
"""

import math
from typing import Any, List, Optional

from .models import RESOLUTION_STATUSES, AnalysisResult

SENTIMENT_MIN = 1
SENTIMENT_MAX = 10

# Substring buckets for free-text resolution values, checked in order
RESOLUTION_KEYWORDS: list[tuple[tuple[str, ...], str]] = [
    (("resolve", "complete"), "resolved"),
    (("follow", "pending"), "followup"),
]

_TRUE_STRINGS = {"true", "yes", "y", "1"}
_FALSE_STRINGS = {"false", "no", "n", "0"}


def normalize_resolution(value: Any) -> Optional[str]:
    """
    Coerce a resolution status into the fixed enum.

    Examples:
        "Resolved" -> "resolved"
        "marked complete" -> "resolved"
        "follow up needed" -> "followup"
        "waiting" -> "unresolved"

    Returns:
        One of RESOLUTION_STATUSES, or None when no status was supplied
    """
    if value is None:
        return None
    text = str(value).strip().lower()
    if not text:
        return None
    if text in RESOLUTION_STATUSES:
        return text
    for keywords, status in RESOLUTION_KEYWORDS:
        if any(k in text for k in keywords):
            return status
    return "unresolved"


def normalize_sentiment(value: Any) -> Optional[int]:
    """
    Coerce a sentiment score into an integer in [1, 10].

    Non-numeric and negative input is treated as missing. Zero and values
    above the range are clamped.

    Examples:
        -5 -> None, 0 -> 1, 7 -> 7, 15 -> 10, "8" -> 8, "abc" -> None
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number) or number < 0:
        return None
    return int(min(SENTIMENT_MAX, max(SENTIMENT_MIN, round(number))))


def normalize_tags(value: Any) -> List[str]:
    """
    Coerce tags into an ordered list of unique, non-empty strings.

    A string is split on commas. None becomes an empty list.
    """
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        items = [value]

    tags: List[str] = []
    for item in items:
        if item is None:
            continue
        tag = str(item).strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def normalize_escalated(value: Any) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    return None


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize(raw: dict) -> AnalysisResult:
    """
    Map an analysis payload onto the canonical AnalysisResult.

    Args:
        raw: Payload returned by AnalysisClient.analyze (possibly degraded)

    Returns:
        AnalysisResult with every field coerced
    """
    persona = raw.get("persona")
    return AnalysisResult(
        summary=_optional_text(raw.get("summary")),
        coaching=_optional_text(raw.get("coaching")),
        tags=normalize_tags(raw.get("tags")),
        sentiment_score=normalize_sentiment(raw.get("sentiment_score")),
        resolution_status=normalize_resolution(raw.get("resolution_status")),
        escalated=normalize_escalated(raw.get("escalated")),
        call_type=_optional_text(raw.get("call_type")),
        persona=persona if isinstance(persona, dict) else None,
    )
