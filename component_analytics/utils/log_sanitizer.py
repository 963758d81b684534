"""
Log hygiene for third-party strings.

Component ids, error names and messages arrive from code we do not control and
must not be able to forge or flood log lines.
"""

import re
from typing import Any

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")


def sanitize_for_log(value: Any, max_length: int = 100) -> str:
    """
    Render an untrusted value as a single safe log token.

    Args:
        value: Anything with a str() form
        max_length: Characters kept before truncating with "..."

    Returns:
        The value without control characters (newlines included)
    """
    text = _CONTROL_CHARS.sub("", str(value))
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text
