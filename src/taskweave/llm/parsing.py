"""Helpers for pulling structured payloads out of model text."""

from __future__ import annotations

import json
import re
from typing import Any

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json_payload(text: str) -> Any:
    """Return the first JSON object or array found in ``text``, or ``None``."""

    if not isinstance(text, str):
        return text
    stripped = text.strip()
    if not stripped:
        return None
    fenced = _FENCE.search(stripped)
    if fenced:
        stripped = fenced.group(1).strip()
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        pass
    decoder = json.JSONDecoder()
    for start in ("{", "["):
        idx = stripped.find(start)
        if idx == -1:
            continue
        try:
            payload, _ = decoder.raw_decode(stripped[idx:])
        except json.JSONDecodeError:
            continue
        return payload
    return None
