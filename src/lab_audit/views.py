"""
Read views for the audit, analytics and incident screens.

Each view opens the unit of work, builds its request-scoped collaborators
(memo, link resolver) and returns plain JSON-ready dicts, so nothing loaded
here outlives the request or the session.
"""
import logging
from typing import Any, Dict, List, Optional

from shared.service_layer.memo import RequestMemo
from lab_audit.domain.errors import WorkOrderNotFound
from lab_audit.domain.queries import AnalyticsFilters, FeedPagination, IncidentFeedFilters, TimeRange
from lab_audit.service_layer import analytics, audit_search, incidents, timeline
from lab_audit.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


# ---------- audit ----------

def get_work_order_timeline(work_order_id: str, uow: AbstractUnitOfWork) -> Dict[str, Any]:
    with uow:
        result = timeline.build_work_order_timeline(work_order_id, uow)
        if result is None:
            raise WorkOrderNotFound(f"Work order {work_order_id} not found")
        return result.to_dict()


def search_audit(query: str, uow: AbstractUnitOfWork) -> Optional[Dict[str, Any]]:
    with uow:
        result = audit_search.search_audit(query, uow)
        return result.to_dict() if result else None


def get_recent_audit_activity(uow: AbstractUnitOfWork, limit: int = 10) -> List[Dict[str, Any]]:
    with uow:
        return [entry.to_dict() for entry in audit_search.get_recent_audit_activity(uow, limit=limit)]


# ---------- analytics ----------

def get_kpi_summary(
    time_range: TimeRange,
    uow: AbstractUnitOfWork,
    filters: Optional[AnalyticsFilters] = None,
    with_trends: bool = False,
) -> Dict[str, Any]:
    with uow:
        aggregator = analytics.AnalyticsAggregator(uow)
        return aggregator.kpi_summary(time_range, filters, with_trends=with_trends).to_dict()


def get_analytics_dashboard(
    time_range: TimeRange,
    uow: AbstractUnitOfWork,
    filters: Optional[AnalyticsFilters] = None,
) -> Dict[str, Any]:
    """KPIs with trends, daily throughput and exam mix."""
    with uow:
        aggregator = analytics.AnalyticsAggregator(uow, RequestMemo())
        dashboard = aggregator.dashboard(time_range, filters)
        logger.info(
            f"Analytics dashboard: {dashboard.kpis.exams_completed} terminal exams, "
            f"{len(dashboard.throughput)} days, memo hits {aggregator.memo.hits}"
        )
        return dashboard.to_dict()


def get_detailed_charts(
    time_range: TimeRange,
    uow: AbstractUnitOfWork,
    filters: Optional[AnalyticsFilters] = None,
) -> Dict[str, Any]:
    """TAT distribution, technician workload, rejections, doctor volume and peak hours."""
    with uow:
        aggregator = analytics.AnalyticsAggregator(uow, RequestMemo())
        return aggregator.detailed_charts(time_range, filters).to_dict()


# ---------- incidents ----------

def list_incident_feed(
    filters: IncidentFeedFilters,
    pagination: FeedPagination,
    uow: AbstractUnitOfWork,
) -> Dict[str, Any]:
    with uow:
        return incidents.list_incident_feed(filters, pagination, uow).to_dict()


def get_incident_patterns(time_range: TimeRange, uow: AbstractUnitOfWork) -> Dict[str, Any]:
    with uow:
        return incidents.get_incident_patterns(time_range, uow).to_dict()


def get_incident_summary_cards(time_range: TimeRange, uow: AbstractUnitOfWork) -> Dict[str, Any]:
    with uow:
        return incidents.get_incident_summary_cards(time_range, uow).to_dict()
