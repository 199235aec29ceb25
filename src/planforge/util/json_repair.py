"""Lenient JSON extraction for model replies."""

from __future__ import annotations

import json
import re
from typing import Any


_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


class JsonRepairError(ValueError):
    """Raised when no JSON object can be recovered from a reply."""


def _strip_fences(text: str) -> str:
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def extract_object_block(text: str) -> str:
    """Return the first balanced ``{...}`` block in ``text``."""
    start_index = text.find("{")
    if start_index < 0:
        raise JsonRepairError("No JSON object found")
    depth = 0
    in_string = False
    escape = False
    for idx in range(start_index, len(text)):
        char = text[idx]
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start_index : idx + 1]
    raise JsonRepairError("Unbalanced JSON braces")


def _remove_trailing_commas(text: str) -> str:
    return re.sub(r",\s*([}\]])", r"\1", text)


def loads_object(text: str) -> dict[str, Any]:
    """Parse a JSON object strictly, then with one extraction fallback pass.

    The fallback unwraps a fenced ``json`` block, takes the first balanced
    object and drops trailing commas. Anything else is a JsonRepairError.
    """
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, dict):
        return payload
    block = extract_object_block(_strip_fences(text))
    try:
        return json.loads(_remove_trailing_commas(block))
    except json.JSONDecodeError as exc:
        raise JsonRepairError(f"Failed to parse JSON object: {exc}") from exc
