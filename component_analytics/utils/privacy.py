"""
Privacy helpers applied at ingestion.

Raw network identifiers never reach the store: they are replaced by a salted
one-way hash before an event is buffered.
"""

import hashlib
import re
from typing import Optional

IDENTIFIER_HASH_LENGTH = 16

_MOBILE_RE = re.compile(r"mobile", re.IGNORECASE)
_TABLET_RE = re.compile(r"tablet|ipad", re.IGNORECASE)


def hash_identifier(value: Optional[str], salt: str) -> Optional[str]:
    """
    One-way hash of an identifying value such as an IP address.

    Args:
        value: Raw identifier (None or empty passes through as None)
        salt: Deployment-specific salt

    Returns:
        First 16 hex characters of SHA-256(salt:value), or None
    """
    if not value:
        return None
    digest = hashlib.sha256(f"{salt}:{value}".encode("utf-8")).hexdigest()
    return digest[:IDENTIFIER_HASH_LENGTH]


def detect_device_type(user_agent: Optional[str]) -> str:
    """Classify a user agent as mobile, tablet or desktop."""
    ua = user_agent or ""
    if _TABLET_RE.search(ua):
        return "tablet"
    if _MOBILE_RE.search(ua):
        return "mobile"
    return "desktop"
