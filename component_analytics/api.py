"""
HTTP API for ingestion and dashboard queries.

Ingestion endpoints feed the collector; read endpoints are thin wrappers over
AnalyticsQueries. Store outages surface as 503 so callers can retry.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from component_analytics.exceptions import StoreUnavailableError
from component_analytics.schemas import (
    Alert,
    ComponentHealth,
    DailyAggregate,
    ErrorGroup,
    ErrorGroupStatus,
    ErrorPriority,
    Event,
    EventType,
    HourlyAggregate,
    RollupBucket,
    RollupGranularity,
    TopEvent,
    as_utc,
)
from component_analytics.service import AnalyticsService

logger = logging.getLogger(__name__)

T = TypeVar("T")


class IngestEvent(BaseModel):
    """One telemetry event as sent by a component runtime."""

    component_id: str = Field(min_length=1, max_length=255)
    site_id: str = Field(min_length=1, max_length=255)
    event_type: EventType
    event_name: str = Field(min_length=1, max_length=255)
    version_id: Optional[str] = None
    category: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    duration_ms: Optional[float] = Field(None, ge=0)
    memory_kb: Optional[float] = Field(None, ge=0)
    page_path: Optional[str] = None
    session_id: Optional[str] = None
    country_code: Optional[str] = Field(None, max_length=2)
    created_at: Optional[datetime] = None


class IngestEventBatch(BaseModel):
    events: List[IngestEvent] = Field(min_length=1, max_length=1000)


class IngestError(BaseModel):
    """One error occurrence as sent by a component runtime."""

    component_id: str = Field(min_length=1, max_length=255)
    site_id: str = Field(min_length=1, max_length=255)
    error_type: str = Field(min_length=1)
    error_name: str = Field(min_length=1)
    message: str = ""
    stack: Optional[str] = None
    version_id: Optional[str] = None
    source_file: Optional[str] = None
    source_line: Optional[int] = None
    source_column: Optional[int] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    page_path: Optional[str] = None
    session_id: Optional[str] = None
    component_state: Dict[str, Any] = Field(default_factory=dict)
    props_snapshot: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[datetime] = None


class ErrorGroupUpdate(BaseModel):
    """Triage change for an error group."""

    status: Optional[ErrorGroupStatus] = None
    priority: Optional[ErrorPriority] = None
    assigned_to: Optional[str] = None
    resolution_notes: Optional[str] = None


class AcceptedResponse(BaseModel):
    accepted: int


class ActiveSessionsResponse(BaseModel):
    component_id: str
    active_sessions: int
    window_minutes: int = 30


async def _store_call(operation: Awaitable[T]) -> T:
    """Await a store-backed operation, mapping outages to 503."""
    try:
        return await operation
    except StoreUnavailableError as e:
        logger.error(f"Store unavailable: {e}")
        raise HTTPException(status_code=503, detail="Analytics store unavailable")


def _default_range(
    start: Optional[datetime], end: Optional[datetime], hours: int = 24
) -> tuple:
    end = as_utc(end) if end else datetime.now(timezone.utc)
    start = as_utc(start) if start else end - timedelta(hours=hours)
    if start >= end:
        raise HTTPException(status_code=422, detail="start must be before end")
    return start, end


def _default_days(start: Optional[date], end: Optional[date], days: int = 30) -> tuple:
    end = end or datetime.now(timezone.utc).date()
    start = start or end - timedelta(days=days)
    if start > end:
        raise HTTPException(status_code=422, detail="start must not be after end")
    return start, end


class AnalyticsAPI:
    """
    API interface for component analytics.

    Provides endpoints for:
    - Event and error ingestion
    - Hourly, daily and re-bucketed rollups
    - Error groups and triage
    - Raw events, top events, active sessions and health
    - Open alerts and pipeline status
    """

    def __init__(self, analytics_service: AnalyticsService):
        """
        Initialize analytics API.

        Args:
            analytics_service: The analytics service instance
        """
        self.service = analytics_service
        self.router = APIRouter(prefix="/analytics", tags=["analytics"])
        self._setup_routes()

    def _setup_routes(self):
        """Set up API routes."""
        # Ingestion
        self.router.post("/events", status_code=202, response_model=AcceptedResponse)(
            self.ingest_events
        )
        self.router.post("/errors", status_code=202, response_model=AcceptedResponse)(
            self.ingest_error
        )

        # Rollups
        base = "/components/{component_id}"
        self.router.get(f"{base}/hourly", response_model=List[HourlyAggregate])(self.get_hourly)
        self.router.get(f"{base}/daily", response_model=List[DailyAggregate])(self.get_daily)
        self.router.get(f"{base}/rollups", response_model=List[RollupBucket])(self.get_rollups)

        # Errors
        self.router.get(f"{base}/errors", response_model=List[ErrorGroup])(self.get_error_groups)
        self.router.patch("/error-groups/{group_id}", response_model=ErrorGroup)(
            self.update_error_group
        )

        # Raw activity
        self.router.get(f"{base}/events", response_model=List[Event])(self.get_events)
        self.router.get(f"{base}/top-events", response_model=List[TopEvent])(self.get_top_events)
        self.router.get(f"{base}/active-sessions", response_model=ActiveSessionsResponse)(
            self.get_active_sessions
        )
        self.router.get(f"{base}/health", response_model=ComponentHealth)(self.get_health)

        # Alerts and status
        self.router.get("/alerts", response_model=List[Alert])(self.get_alerts)
        self.router.get("/status")(self.get_status)

    async def ingest_events(self, batch: IngestEventBatch, request: Request) -> AcceptedResponse:
        """Buffer a batch of events. Returns as soon as they are buffered."""
        ip_address = request.client.host if request.client else None
        user_agent = request.headers.get("user-agent")
        for event in batch.events:
            self.service.collector.record(
                **event.model_dump(),
                ip_address=ip_address,
                user_agent=user_agent,
            )
        return AcceptedResponse(accepted=len(batch.events))

    async def ingest_error(self, error: IngestError, request: Request) -> AcceptedResponse:
        """Record one error; written through before responding."""
        data = error.model_dump()
        data["os_name"] = data.pop("os")
        await self.service.collector.record_error(
            **data,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
        return AcceptedResponse(accepted=1)

    async def get_hourly(
        self,
        component_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[HourlyAggregate]:
        start, end = _default_range(start, end)
        return await _store_call(self.service.queries.hourly(component_id, start, end))

    async def get_daily(
        self,
        component_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[DailyAggregate]:
        start, end = _default_days(start, end)
        return await _store_call(self.service.queries.daily(component_id, start, end))

    async def get_rollups(
        self,
        component_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        granularity: RollupGranularity = RollupGranularity.DAY,
    ) -> List[RollupBucket]:
        start, end = _default_days(start, end, days=90)
        return await _store_call(
            self.service.queries.rollups(component_id, start, end, granularity)
        )

    async def get_error_groups(
        self,
        component_id: str,
        status: Optional[ErrorGroupStatus] = None,
        priority: Optional[ErrorPriority] = None,
        limit: int = Query(100, ge=1, le=1000),
    ) -> List[ErrorGroup]:
        return await _store_call(
            self.service.queries.error_groups(component_id, status, priority, limit)
        )

    async def update_error_group(self, group_id: str, update: ErrorGroupUpdate) -> ErrorGroup:
        group = await _store_call(
            self.service.store.update_error_group(
                group_id,
                status=update.status,
                priority=update.priority,
                assigned_to=update.assigned_to,
                resolution_notes=update.resolution_notes,
            )
        )
        if group is None:
            raise HTTPException(status_code=404, detail=f"Error group {group_id} not found")
        logger.info(f"Error group {group_id} updated: {update.model_dump(exclude_none=True)}")
        return group

    async def get_events(
        self,
        component_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        event_type: Optional[List[EventType]] = Query(None),
        limit: int = Query(500, ge=1, le=10000),
    ) -> List[Event]:
        start, end = _default_range(start, end, hours=1)
        return await _store_call(
            self.service.queries.events(component_id, start, end, event_type, limit)
        )

    async def get_top_events(
        self,
        component_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = Query(10, ge=1, le=100),
    ) -> List[TopEvent]:
        start, end = _default_range(start, end)
        return await _store_call(self.service.queries.top_events(component_id, start, end, limit))

    async def get_active_sessions(self, component_id: str) -> ActiveSessionsResponse:
        count = await _store_call(self.service.queries.active_sessions(component_id))
        return ActiveSessionsResponse(component_id=component_id, active_sessions=count)

    async def get_health(self, component_id: str) -> ComponentHealth:
        return await _store_call(self.service.queries.component_health(component_id))

    async def get_alerts(self, component_id: Optional[str] = None) -> List[Alert]:
        return await _store_call(self.service.queries.open_alerts(component_id))

    async def get_status(self) -> Dict[str, Any]:
        return await self.service.get_status()


def create_app(analytics_service: AnalyticsService) -> FastAPI:
    """Build the FastAPI application around a service instance."""
    app = FastAPI(title="Component Analytics", version="1.0.0")
    app.include_router(AnalyticsAPI(analytics_service).router)
    return app
