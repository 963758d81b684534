"""
Base class for the pipeline's periodic jobs.

Flushing, hourly/daily aggregation and alert evaluation each run as an
independent, cancellable asyncio task on their own interval.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from component_analytics.schemas import TaskStats

logger = logging.getLogger(__name__)


class PeriodicTask(ABC):
    """
    Runs `run_once()` every `interval_seconds` until stopped.

    A failing run is logged and counted; the loop always continues to the
    next cycle, so a missed run is simply retried on schedule.
    """

    def __init__(self, name: str, interval_seconds: float, timeout_seconds: Optional[float] = None):
        """
        Initialize periodic task.

        Args:
            name: Task name for logging and identification
            interval_seconds: Delay between the end of one run and the start of the next
            timeout_seconds: Maximum time allowed for a single run (None for no limit)
        """
        self.name = name
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_run_time: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._run_count = 0
        self._error_count = 0

    @abstractmethod
    async def run_once(self) -> None:
        """
        Perform one cycle of work.

        Must be implemented by subclasses. May raise; the loop handles it.
        """
        pass

    async def run_with_timeout(self) -> bool:
        """
        Run one cycle with timeout and error handling.

        Returns:
            True if the cycle completed, False on timeout or error
        """
        self._run_count += 1
        start_time = datetime.now(timezone.utc)
        try:
            if self.timeout_seconds:
                await asyncio.wait_for(self.run_once(), timeout=self.timeout_seconds)
            else:
                await self.run_once()

            self._last_run_time = datetime.now(timezone.utc)
            logger.debug(
                f"{self.name} completed in "
                f"{(self._last_run_time - start_time).total_seconds():.2f}s"
            )
            return True

        except asyncio.TimeoutError:
            self._error_count += 1
            self._last_error = f"Run timeout after {self.timeout_seconds}s"
            logger.error(f"{self.name}: {self._last_error}")
            return False

        except Exception as e:
            self._error_count += 1
            self._last_error = str(e)
            logger.error(f"{self.name} run failed: {e}")
            return False

    async def start(self) -> None:
        """Start the periodic loop."""
        if self._running:
            logger.warning(f"{self.name} already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Started {self.name} every {self.interval_seconds}s")

    async def stop(self) -> None:
        """Stop the periodic loop. An in-flight run is cancelled."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info(f"Stopped {self.name}")

    async def _loop(self) -> None:
        while self._running:
            await self.run_with_timeout()
            await asyncio.sleep(self.interval_seconds)

    def get_stats(self) -> TaskStats:
        """Get task statistics."""
        return TaskStats(
            name=self.name,
            runs=self._run_count,
            errors=self._error_count,
            error_rate=self._error_count / max(1, self._run_count),
            last_run=self._last_run_time.isoformat() if self._last_run_time else None,
            last_error=self._last_error,
        )

    @property
    def is_running(self) -> bool:
        """Check if the loop is running."""
        return self._running
