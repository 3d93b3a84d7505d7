"""
Tolerant JSON extraction from free-form model output.

Classifier responses are prose that is expected to embed one JSON
object, sometimes wrapped in code fences or carrying trailing commas.
Decoding returns the object or None; it never raises.
"""

import json
import re
from typing import Any, Dict, Iterator, Optional

_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def decode_first_object(raw: Any) -> Optional[Dict[str, Any]]:
    """Decode the first JSON object embedded in ``raw``.

    Tries strict parsing of each balanced ``{...}`` block in order,
    then the same block with trailing commas stripped.

    Args:
        raw: Model output; non-strings yield None

    Returns:
        Decoded dict, or None when no block decodes to an object
    """
    if not isinstance(raw, str):
        return None

    for block in _balanced_objects(raw):
        for candidate in (block, _TRAILING_COMMA_RE.sub(r"\1", block)):
            try:
                value = json.loads(candidate)
            except ValueError:
                continue
            if isinstance(value, dict):
                return value
    return None


def _balanced_objects(raw: str) -> Iterator[str]:
    """Yield the balanced ``{...}`` block starting at each ``{``, in order.

    An opening brace that is never closed is skipped, so a stray ``{`` in
    the prose does not hide a complete object after it.
    """
    start = raw.find("{")
    while start != -1:
        end = _closing_brace(raw, start)
        if end is not None:
            yield raw[start:end + 1]
        start = raw.find("{", start + 1)


def _closing_brace(raw: str, start: int) -> Optional[int]:
    """Index of the brace closing the one at ``start``, honoring string escapes."""
    depth = 0
    in_string = False
    escape = False

    for index in range(start, len(raw)):
        char = raw[index]
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
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return None
