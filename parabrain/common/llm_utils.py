"""Shared utilities for parsing and coercing LLM responses."""

from __future__ import annotations

import json
import math
import re
from typing import Any, Optional

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z]*\s*$")


def parse_llm_json(raw: str) -> dict:
    """Parse a JSON object from an LLM response.

    Tries in order:
    1. Drop markdown code-fence lines, then json.loads
    2. Extract substring between first '{' and last '}', then json.loads
    3. Return empty dict

    Anything that is not a JSON object (lists, scalars) yields ``{}``.
    """
    if not raw or not raw.strip():
        return {}

    text = "\n".join(line for line in raw.splitlines() if not _FENCE_RE.match(line))

    try:
        parsed = json.loads(text)
        return parsed if isinstance(parsed, dict) else {}
    except json.JSONDecodeError:
        pass

    start = raw.find("{")
    end = raw.rfind("}") + 1
    if start >= 0 and end > start:
        try:
            parsed = json.loads(raw[start:end])
            return parsed if isinstance(parsed, dict) else {}
        except json.JSONDecodeError:
            pass

    return {}


def safe_number(value: Any) -> Optional[float]:
    """Finite float from a number or numeric string, else None"""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(value.replace(",", "").strip())
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def clamp_confidence(value: Any, default: float = 0.5) -> float:
    """Clamp a model-reported confidence into [0, 1]"""
    number = safe_number(value)
    if number is None:
        return default
    return max(0.0, min(1.0, number))
