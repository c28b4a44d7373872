"""
Lab Audit API - read endpoints for audit timelines, analytics and incidents.
Thin API layer: parameter parsing here, everything else delegated to views.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

import config
from lab_audit import views
from lab_audit.adapters import orm
from lab_audit.domain.errors import InvalidCursor, WorkOrderNotFound
from lab_audit.domain.queries import (
    RANGE_PRESETS,
    AnalyticsFilters,
    FeedPagination,
    IncidentFeedFilters,
    TimeRange,
)
from lab_audit.service_layer.unit_of_work import AbstractUnitOfWork, SqlAlchemyUnitOfWork

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Lab Audit API",
    description="Read models over the laboratory audit log: timelines, analytics and incidents",
    version="1.0.0",
)


@app.on_event("startup")
async def startup_event():
    orm.start_mappers()
    logger.info("ORM mappers initialized")


def get_uow() -> AbstractUnitOfWork:
    return SqlAlchemyUnitOfWork()


# ---------- Request/Response models ----------

class RangeParams(BaseModel):
    start: Optional[str] = Field(None, alias="from")
    end: Optional[str] = Field(None, alias="to")
    preset: Optional[str] = None

    model_config = {"populate_by_name": True}


class FeedFiltersRequest(RangeParams):
    type: Optional[str] = None
    exam_type_id: Optional[str] = None
    technician_id: Optional[str] = None
    search: Optional[str] = None


class PaginationRequest(BaseModel):
    limit: Optional[int] = None
    cursor: Optional[str] = None


class IncidentFeedRequest(BaseModel):
    filters: FeedFiltersRequest = Field(default_factory=FeedFiltersRequest)
    pagination: PaginationRequest = Field(default_factory=PaginationRequest)


class SearchResponse(BaseModel):
    work_order_id: str
    matched_by: str


def resolve_time_range(start: Optional[str], end: Optional[str], preset: Optional[str]) -> TimeRange:
    """Explicit bounds win over a preset; no range at all means the default window."""
    try:
        if start and end:
            return TimeRange.normalized(start, end)
        if preset:
            return TimeRange.preset(preset)
        if start or end:
            raise ValueError("both 'from' and 'to' are required for an explicit range")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    now = datetime.now(timezone.utc)
    return TimeRange(start=now - timedelta(days=config.get_default_range_days()), end=now)


def range_params(
    start: Optional[str] = Query(None, alias="from"),
    end: Optional[str] = Query(None, alias="to"),
    preset: Optional[str] = Query(None, description=f"One of {', '.join(RANGE_PRESETS)}"),
) -> TimeRange:
    return resolve_time_range(start, end, preset)


def analytics_filters(exam_type_code: Optional[str] = None, priority: Optional[str] = None) -> AnalyticsFilters:
    return AnalyticsFilters(exam_type_code=exam_type_code, priority=priority)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "lab-audit-api",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------- Audit ----------

@app.get("/api/v1/audit/work-orders/{work_order_id}/timeline")
def get_work_order_timeline(work_order_id: str, uow: AbstractUnitOfWork = Depends(get_uow)):
    try:
        return views.get_work_order_timeline(work_order_id, uow)
    except WorkOrderNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get("/api/v1/audit/search", response_model=SearchResponse)
def search_audit(q: str = Query(..., min_length=1), uow: AbstractUnitOfWork = Depends(get_uow)):
    result = views.search_audit(q, uow)
    if result is None:
        raise HTTPException(status_code=404, detail=f"No work order matches {q!r}")
    return result


@app.get("/api/v1/audit/recent")
def get_recent_audit_activity(limit: int = 10, uow: AbstractUnitOfWork = Depends(get_uow)):
    return {"items": views.get_recent_audit_activity(uow, limit=limit)}


# ---------- Analytics ----------

@app.get("/api/v1/analytics/dashboard")
def get_analytics_dashboard(
    time_range: TimeRange = Depends(range_params),
    filters: AnalyticsFilters = Depends(analytics_filters),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return views.get_analytics_dashboard(time_range, uow, filters)


@app.get("/api/v1/analytics/detailed")
def get_detailed_charts(
    time_range: TimeRange = Depends(range_params),
    filters: AnalyticsFilters = Depends(analytics_filters),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return views.get_detailed_charts(time_range, uow, filters)


@app.get("/api/v1/analytics/kpis")
def get_kpi_summary(
    with_trends: bool = False,
    time_range: TimeRange = Depends(range_params),
    filters: AnalyticsFilters = Depends(analytics_filters),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return views.get_kpi_summary(time_range, uow, filters, with_trends=with_trends)


# ---------- Incidents ----------

@app.post("/api/v1/incidents/feed")
def list_incident_feed(request: IncidentFeedRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    time_range = resolve_time_range(request.filters.start, request.filters.end, request.filters.preset)
    filters = IncidentFeedFilters(
        time_range=time_range,
        incident_type=request.filters.type,
        exam_type_id=request.filters.exam_type_id,
        technician_id=request.filters.technician_id,
        search=request.filters.search,
    )
    pagination = FeedPagination(limit=request.pagination.limit, cursor=request.pagination.cursor)
    try:
        return views.list_incident_feed(filters, pagination, uow)
    except InvalidCursor as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/api/v1/incidents/patterns")
def get_incident_patterns(
    time_range: TimeRange = Depends(range_params),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return views.get_incident_patterns(time_range, uow)


@app.get("/api/v1/incidents/summary")
def get_incident_summary_cards(
    time_range: TimeRange = Depends(range_params),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return views.get_incident_summary_cards(time_range, uow)
