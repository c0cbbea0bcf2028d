"""
Keepsake - Response Repair
Tolerant parsing of model output that should contain a JSON value
"""

import json
import re
from typing import Any, Optional

_TRAILING_COMMA = re.compile(r',\s*([}\]])')
_OPEN_FENCE = re.compile(r'^```[a-zA-Z]*\s*')
_CLOSE_FENCE = re.compile(r'\s*```$')

_BRACKETS = {"object": ("{", "}"), "array": ("[", "]")}


def _strip_fences(text: str) -> str:
    text = _OPEN_FENCE.sub("", text, count=1)
    return _CLOSE_FENCE.sub("", text, count=1)


def _slice_structure(text: str, expect: Optional[str]) -> Optional[str]:
    """Cut text down to the outermost bracketed structure."""
    if expect is None:
        starts = [(text.find(o), kind) for kind, (o, _) in _BRACKETS.items() if o in text]
        if not starts:
            return None
        expect = min(starts)[1]

    opener, closer = _BRACKETS[expect]
    start = text.find(opener)
    end = text.rfind(closer)
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


def repair_json(raw: Optional[str], expect: Optional[str] = None) -> Any:
    """
    Parse model output into a JSON value, or return None.

    Strips code fences, trims to the outermost ``{...}`` (or ``[...]``
    when ``expect="array"``) and retries once with trailing commas
    removed. Never raises.

    Args:
        raw: Raw model output
        expect: "object", "array", or None for whichever opens first

    Returns:
        The parsed value, or None
    """
    if not raw or not isinstance(raw, str):
        return None

    text = _strip_fences(raw.strip())
    candidate = _slice_structure(text, expect)
    if candidate is None:
        return None

    try:
        return json.loads(candidate)
    except (ValueError, TypeError):
        pass

    try:
        return json.loads(_TRAILING_COMMA.sub(r'\1', candidate))
    except (ValueError, TypeError):
        return None


# -----------------------------------------------------------------------------
# Field coercion for untrusted model output
# -----------------------------------------------------------------------------

def as_bool(value: Any) -> bool:
    """True only for a real boolean true or the string "true"."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def as_str(value: Any) -> Optional[str]:
    """Stripped non-empty string, or None."""
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def as_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    if isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def as_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if isinstance(value, bool):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default
