"""Robust JSON extraction from model replies using brace balancing."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json(text: str | None) -> dict | list | None:
    """Try to extract the first valid JSON object or array from *text*.

    Strategy:
    1. Attempt ``json.loads`` on the full text (fast path).
    2. Retry on the contents of any fenced code block.
    3. Slide through the text looking for ``{`` or ``[`` and attempt
       brace-balanced extraction.
    4. Return ``None`` if nothing works.
    """
    if not text or not text.strip():
        return None

    stripped = text.strip()

    try:
        return json.loads(stripped)
    except (json.JSONDecodeError, ValueError):
        pass

    for block in _FENCE_RE.findall(stripped):
        try:
            return json.loads(block.strip())
        except (json.JSONDecodeError, ValueError):
            continue

    for i, ch in enumerate(stripped):
        if ch == "{":
            result = _extract_balanced(stripped, i, "{", "}")
            if result is not None:
                return result
        elif ch == "[":
            result = _extract_balanced(stripped, i, "[", "]")
            if result is not None:
                return result

    logger.debug("No JSON found in model reply (%d chars)", len(stripped))
    return None


def extract_json_object(text: str | None) -> Optional[dict[str, Any]]:
    """Return the first JSON *object* in *text*.

    Same strategy as :func:`extract_json`, except that arrays and scalars
    are skipped rather than returned, so prose such as ``Items [1, 2]``
    ahead of the receipt object does not hide it.
    """
    if not text or not text.strip():
        return None

    stripped = text.strip()

    for candidate in (stripped, *(block.strip() for block in _FENCE_RE.findall(stripped))):
        try:
            result = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(result, dict):
            return result

    start = stripped.find("{")
    while start != -1:
        result = _extract_balanced(stripped, start, "{", "}")
        if isinstance(result, dict):
            return result
        start = stripped.find("{", start + 1)

    logger.debug("No JSON object found in model reply (%d chars)", len(stripped))
    return None


def _extract_balanced(text: str, start: int, open_ch: str, close_ch: str) -> dict | list | None:
    """Extract a brace-balanced substring starting at *start* and parse it."""
    depth = 0
    in_string = False
    escape = False

    for i in range(start, len(text)):
        ch = text[i]

        if escape:
            escape = False
            continue

        if ch == "\\":
            if in_string:
                escape = True
            continue

        if ch == '"':
            in_string = not in_string
            continue

        if in_string:
            continue

        if ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                candidate = text[start : i + 1]
                try:
                    return json.loads(candidate)
                except (json.JSONDecodeError, ValueError):
                    return None

    return None
