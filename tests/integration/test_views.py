"""
Integration tests for views on SQLite.

Snapshots and events are written with a plain session, then every view runs
in its own SqlAlchemyUnitOfWork the way the API calls it.
"""
from datetime import datetime, timedelta, timezone

import pytest

from lab_audit import views
from lab_audit.domain import model
from lab_audit.domain.errors import WorkOrderNotFound
from lab_audit.domain.queries import AnalyticsFilters, FeedPagination, IncidentFeedFilters, TimeRange
from lab_audit.service_layer.unit_of_work import SqlAlchemyUnitOfWork

T0 = datetime(2024, 1, 15, 8, 0, tzinfo=timezone.utc)
RANGE = TimeRange(T0 - timedelta(hours=8), T0 + timedelta(hours=16))


def at(minutes):
    return T0 + timedelta(minutes=minutes)


@pytest.fixture
def uow(sqlite_session_factory):
    session = sqlite_session_factory()
    session.add_all([
        model.Patient(id="P1", first_name="Ana", last_name="García"),
        model.WorkOrder(id="W1", patient_id="P1", accession_number="ACC-1", priority="stat",
                        requested_at=at(0), referring_doctor="Dr. House", status="completed"),
        model.ExamType(id="ET1", code="HEM", name="Hemogram", field_schema='{"sections": [{"id": "r", '
                       '"label": "R", "fields": [{"key": "hb", "label": "Hb", "type": "numeric", '
                       '"referenceRange": "12 - 17.5"}]}]}'),
        model.Specimen(id="S1", work_order_id="W1", exam_type_id="ET1", barcode="LAB-1", status="completed"),
        model.Exam(id="E1", specimen_id="S1", exam_type_id="ET1", status="approved", results={"hb": "LOW"},
                   started_at=at(40), performed_by="tech-1", validated_by="val-1", validated_at=at(150)),
    ])
    events = [
        ("ev-1", "ORDER_CREATED", "WorkOrder", "W1", at(0), None),
        ("ev-2", "LABEL_PRINTED", "Specimen", "S1", at(0), None),
        ("ev-3", "SPECIMEN_RECEIVED", "Specimen", "S1", at(30), None),
        ("ev-4", "EXAM_STARTED", "Exam", "E1", at(40), None),
        ("ev-5", "INCIDENCE_CREATED", "Exam", "E1", at(60), {"description": "Re-run requested"}),
        ("ev-6", "EXAM_SENT_TO_VALIDATION", "Exam", "E1", at(120), None),
        ("ev-7", "EXAM_APPROVED", "Exam", "E1", at(150), None),
    ]
    for id, action, subject_type, subject_id, timestamp, metadata in events:
        session.add(model.AuditEvent(id=id, action=action, subject_type=subject_type, subject_id=subject_id,
                                     timestamp=timestamp, actor_id="user-1", metadata=metadata))
    session.commit()
    session.close()
    return SqlAlchemyUnitOfWork(session_factory=sqlite_session_factory, event_page_size=3)


def test_work_order_timeline_view(uow):
    timeline = views.get_work_order_timeline("W1", uow)

    assert timeline["patient"]["full_name"] == "Ana García"
    assert timeline["requested_at"] == "2024-01-15T08:00:00Z"
    specimen = timeline["specimen_timelines"][0]
    assert specimen["durations"] == {
        "pre_analytical_minutes": 30,
        "analytical_minutes": 80,
        "post_analytical_minutes": 30,
        "total_lifecycle_minutes": 150,
    }
    assert specimen["incidence_count"] == 1
    assert [e["id"] for e in timeline["order_events"]] == ["ev-1"]


def test_unknown_work_order_raises(uow):
    with pytest.raises(WorkOrderNotFound):
        views.get_work_order_timeline("W-missing", uow)


def test_search_and_recent_activity_views(uow):
    assert views.search_audit("lab-1", uow) is None
    assert views.search_audit("LAB-1", uow) == {"work_order_id": "W1", "matched_by": "barcode"}
    assert views.get_recent_audit_activity(uow) == [{
        "work_order_id": "W1",
        "accession_number": "ACC-1",
        "patient_name": "Ana García",
        "last_event_at": "2024-01-15T10:30:00Z",
        "event_count": 7,
    }]


def test_analytics_views(uow):
    dashboard = views.get_analytics_dashboard(RANGE, uow, AnalyticsFilters(priority="stat"))
    detailed = views.get_detailed_charts(RANGE, uow)

    assert dashboard["kpis"]["exams_completed"] == 1
    assert dashboard["kpis"]["average_tat_minutes"] == 110
    assert dashboard["kpis"]["incidences_count"] == 1
    assert dashboard["exam_mix"][0]["percentage"] == 1.0
    assert detailed["tat_distribution"][1]["stat"] == 0
    assert detailed["tat_distribution"][2]["stat"] == 1
    assert detailed["technician_workload"][0]["technician_id"] == "tech-1"


def test_incident_views(uow):
    feed = views.list_incident_feed(IncidentFeedFilters(time_range=RANGE), FeedPagination(limit=5), uow)
    cards = views.get_incident_summary_cards(RANGE, uow)
    patterns = views.get_incident_patterns(RANGE, uow)

    assert [i["id"] for i in feed["items"]] == ["incident-ev-5"]
    assert feed["items"][0]["status"] == "resolved"
    assert feed["items"][0]["timestamp"] == "2024-01-15T09:00:00Z"
    assert cards == {"active_incidences": 0, "rejected_exams": 0, "rejected_specimens": 0, "critical_results": 1}
    assert patterns["incidence_trend"] == [{"date": "2024-01-15", "count": 1}]
