"""
Input sanitization utilities.
Provides functions to clean string inputs from callers and from model output.
"""

import re
from typing import Any, Optional

_CONTROL_RE = re.compile(r"[\x00-\x1F\x7F]")
_SPACE_RE = re.compile(r"\s+")


def sanitize_string(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    # Remove leading/trailing whitespace and dangerous characters
    value = value.strip()
    # Remove control characters
    value = _CONTROL_RE.sub("", value)
    # Escape HTML
    value = value.replace("<", "&lt;").replace(">", "&gt;")
    return value


def clean_text(value: Any, max_length: int = 255) -> Optional[str]:
    """Normalise a free-text field from model output.

    Non-strings are rejected, whitespace runs collapse to one space and
    the result is truncated to ``max_length``. Returns ``None`` when
    nothing printable is left.
    """
    if not isinstance(value, str):
        return None
    cleaned = sanitize_string(_SPACE_RE.sub(" ", value))
    if not cleaned:
        return None
    return cleaned[:max_length]
