"""
JSON extraction from AI replies.

Replies often wrap the object in markdown fences or surround it with prose,
and regex patterns inside string values carry braces of their own, so the
object boundary is found by string-aware brace counting rather than a regex.
"""

import json
import logging
import re
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

CODE_FENCE_OPEN_RE = re.compile(r'^```(?:json)?\s*', re.I)
CODE_FENCE_CLOSE_RE = re.compile(r'\s*```$')
CONTROL_CHARS_RE = re.compile(r'[\x00-\x1f\x7f]')


def extract_json_string(text: str) -> Optional[str]:
    """Return the first balanced {...} in text, or None when there is none."""
    start = text.find('{')
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape_next:
            escape_next = False
            continue
        if ch == '\\' and in_string:
            escape_next = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == '{':
            depth += 1
        elif ch == '}':
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def extract_json_object(response: str) -> Optional[Dict[str, Any]]:
    """Parse the first JSON object found in an AI reply."""
    if not response:
        return None

    cleaned = response.strip()
    if cleaned.startswith("```"):
        cleaned = CODE_FENCE_OPEN_RE.sub('', cleaned)
        cleaned = CODE_FENCE_CLOSE_RE.sub('', cleaned).strip()

    json_str = extract_json_string(cleaned)
    if json_str is None:
        logger.warning(f"No JSON object found in AI response: {response[:200]!r}")
        return None

    try:
        data = json.loads(json_str)
    except json.JSONDecodeError:
        # Models sometimes leave raw newlines inside string values
        try:
            data = json.loads(json_str, strict=False)
        except json.JSONDecodeError:
            sanitized = CONTROL_CHARS_RE.sub(' ', json_str)
            try:
                data = json.loads(sanitized)
            except json.JSONDecodeError as e:
                logger.error(f"Failed to parse JSON: {e}\nResponse: {json_str[:500]}")
                return None

    return data if isinstance(data, dict) else None
