"""
Extraction response parsing.

Models answer the extraction prompt in several shapes. parse_candidate_list
tries them in a fixed order and always returns a list:

1. a bare JSON array
2. an object with a known wrapper key (insights, items, results, data, facts)
3. an object's first array-valued field
4. otherwise an empty list

Markdown code fences around the JSON are stripped first.
"""

import json
import logging
import re
from typing import Any, List

logger = logging.getLogger(__name__)

WRAPPER_KEYS = ("insights", "items", "results", "data", "facts")

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_ARRAY_RE = re.compile(r"\[.*\]", re.DOTALL)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def _load_json(text: str) -> Any:
    text = text.strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    # Prose around the payload: take the outermost array, then object
    for pattern in (_ARRAY_RE, _OBJECT_RE):
        match = pattern.search(text)
        if match:
            try:
                return json.loads(match.group(0))
            except json.JSONDecodeError:
                continue
    return None


def parse_candidate_list(raw: str) -> List[Any]:
    """Extract the list of candidate records from a model response."""
    if not raw or not raw.strip():
        return []

    payload = _load_json(raw)

    if isinstance(payload, list):
        return payload

    if isinstance(payload, dict):
        for key in WRAPPER_KEYS:
            value = payload.get(key)
            if isinstance(value, list):
                return value
        for value in payload.values():
            if isinstance(value, list):
                return value

    logger.debug(f"[MEMORY] No candidate list in response: {raw[:120]}")
    return []
