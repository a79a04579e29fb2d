"""
Locate the JSON object inside free-text model output.
Handles markdown code fences and prose before or after the object.
"""

import json
import re

from quotedesk.errors import ParseError

_FENCE = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)```")
_GREEDY_OBJECT = re.compile(r"\{[\s\S]*\}")


def _candidates(text: str):
    for match in _FENCE.finditer(text):
        yield match.group(1).strip()
    match = _GREEDY_OBJECT.search(text)
    if match:
        yield match.group(0)


def extract_json(text: str) -> dict:
    """
    Return the first JSON object found in text.

    >>> extract_json('Sure! ```json\\n{"a": 1}\\n``` hope that helps')
    {'a': 1}
    """
    if not text:
        raise ParseError("Empty model response")

    for candidate in _candidates(text):
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    # Greedy match can span two objects or trailing braces in prose;
    # fall back to decoding from each opening brace.
    decoder = json.JSONDecoder()
    for idx, char in enumerate(text):
        if char != "{":
            continue
        try:
            parsed, _ = decoder.raw_decode(text, idx)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    raise ParseError("No JSON object found in model response")
