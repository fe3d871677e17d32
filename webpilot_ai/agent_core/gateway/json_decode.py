"""Tolerant JSON decoding for model responses.

Models are asked to "output only JSON" but routinely wrap the object in a
fenced code block, prepend commentary, or emit something that is not JSON at
all. Every model consumer in the engine decodes through these helpers, which
return ``None`` instead of raising so callers can fall back deterministically.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_TRAILING_OBJECT = re.compile(r"\{[\s\S]*\}\Z")
_ANY_OBJECT = re.compile(r"\{[\s\S]*\}")


def _loads_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_plan_json(content: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode a planner-style response.

    A fenced ```json block wins when present; otherwise the whole text is
    used. Within that text the object that runs to the end of the text is
    preferred, so leading chatter such as ``"Sure! {...}"`` is ignored.
    """
    if not content:
        return None
    fenced = _FENCED_JSON.search(content)
    raw = (fenced.group(1) if fenced else content).strip()
    match = _TRAILING_OBJECT.search(raw)
    return _loads_object(match.group(0) if match else raw)


def parse_json_object(content: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode the span from the first ``{`` to the last ``}``."""
    if not content:
        return None
    match = _ANY_OBJECT.search(content)
    return _loads_object(match.group(0) if match else content)
