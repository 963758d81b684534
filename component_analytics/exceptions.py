"""
Exception hierarchy for the component analytics pipeline.

None of these reach component producers: the collector logs and absorbs them.
They surface to the scheduler loops (which log and retry next cycle) and to the
query API (which maps them to HTTP status codes).
"""


class AnalyticsError(Exception):
    """Base class for all analytics pipeline errors."""


class StoreUnavailableError(AnalyticsError):
    """The event store could not be reached or rejected the operation."""


class ConfigurationError(AnalyticsError):
    """Configuration file or environment values are invalid."""


class InvalidEventError(AnalyticsError):
    """A telemetry record failed validation at ingestion."""
