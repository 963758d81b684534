"""
Error fingerprinting and grouping.

An error's fingerprint ignores the parts of a stack trace that change between
builds and page loads (line/column numbers, cache-busting query strings) so that
repeated occurrences of the same failure collapse into one ErrorGroup.
"""

import hashlib
import logging
import re
import uuid
from typing import Optional

from component_analytics.protocols import EventStore
from component_analytics.schemas import ErrorEvent, ErrorGroup, ErrorRecord
from component_analytics.utils.log_sanitizer import sanitize_for_log

logger = logging.getLogger(__name__)

MAX_STACK_CHARS = 500
FINGERPRINT_LENGTH = 32

_LINE_COLUMN_RE = re.compile(r":\d+:\d+")
_QUERY_STRING_RE = re.compile(r"\?[^\s:)]*")


def normalize_stack(stack: Optional[str]) -> str:
    """
    Strip volatile fragments from a stack trace.

    Args:
        stack: Raw stack text, possibly missing

    Returns:
        Normalized stack, at most MAX_STACK_CHARS long ("" for a missing stack)
    """
    if not stack:
        return ""
    normalized = _LINE_COLUMN_RE.sub(":X:X", stack)
    normalized = _QUERY_STRING_RE.sub("", normalized)
    return normalized[:MAX_STACK_CHARS]


def compute_fingerprint(error_type: str, error_name: str, stack: Optional[str]) -> str:
    """
    Stable identifier for "the same kind of error".

    Returns:
        First 32 hex characters of SHA-256 over "type:name:normalized_stack"
    """
    basis = f"{error_type}:{error_name}:{normalize_stack(stack)}"
    return hashlib.sha256(basis.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


class ErrorGrouper:
    """Merges error occurrences into persistent error groups."""

    def __init__(self, store: EventStore):
        self.store = store

    def build_record(self, error: ErrorEvent) -> ErrorRecord:
        """Attach an id and fingerprint to a reported error."""
        return ErrorRecord(
            **error.model_dump(),
            id=str(uuid.uuid4()),
            fingerprint=compute_fingerprint(error.error_type, error.error_name, error.stack),
        )

    async def group(self, record: ErrorRecord) -> ErrorGroup:
        """
        Merge one occurrence into its group.

        The merge itself (count increment, version union, resolved -> open) is
        delegated to the store's atomic upsert so that concurrent recurrences of
        one fingerprint never lose updates.

        Args:
            record: Fingerprinted error occurrence

        Returns:
            The group after the merge
        """
        group = await self.store.upsert_error_group(record)

        if group.occurrence_count == 1:
            logger.info(
                f"New error group {group.fingerprint} for component "
                f"{sanitize_for_log(group.component_id)}: "
                f"{sanitize_for_log(group.error_name)}"
            )
        else:
            logger.debug(
                f"Error group {group.fingerprint} now at {group.occurrence_count} occurrences "
                f"(status={group.status.value})"
            )
        return group
