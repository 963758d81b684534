"""
Event store implementations.
"""

import logging
from typing import Union

from component_analytics.config import DatabaseSettings
from component_analytics.storage.backend import PostgresEventStore
from component_analytics.storage.memory import InMemoryEventStore

logger = logging.getLogger(__name__)


def create_store(settings: DatabaseSettings) -> Union[PostgresEventStore, InMemoryEventStore]:
    """PostgreSQL when a DSN is configured, otherwise an in-process store."""
    if settings.dsn:
        return PostgresEventStore(
            dsn=settings.dsn,
            pool_min_size=settings.pool_min_size,
            pool_max_size=settings.pool_max_size,
            command_timeout=settings.command_timeout,
        )
    logger.warning("No database DSN configured, using in-memory event store")
    return InMemoryEventStore()


__all__ = ["PostgresEventStore", "InMemoryEventStore", "create_store"]
