"""Unit tests for the per-work-order timeline"""
from datetime import datetime, timedelta, timezone

from lab_audit.domain.model import AuditAction, AuditEvent, SubjectType
from lab_audit.service_layer.timeline import build_work_order_timeline, sort_events

T0 = datetime(2024, 1, 15, 8, 0, tzinfo=timezone.utc)


def at(minutes):
    return T0 + timedelta(minutes=minutes)


def _order_with_one_specimen(lab):
    lab.patient()
    lab.work_order()
    lab.exam_type()
    lab.specimen()
    lab.exam(status="approved", started_at=at(40), validated_at=at(150))
    lab.event(AuditAction.ORDER_CREATED, SubjectType.WORK_ORDER, "W1", at(0))
    lab.event(AuditAction.LABEL_PRINTED, SubjectType.SPECIMEN, "S1", at(0))
    lab.event(AuditAction.SPECIMEN_RECEIVED, SubjectType.SPECIMEN, "S1", at(30))
    lab.event(AuditAction.EXAM_STARTED, SubjectType.EXAM, "E1", at(40))
    lab.event(AuditAction.EXAM_SENT_TO_VALIDATION, SubjectType.EXAM, "E1", at(120))
    lab.event(AuditAction.EXAM_APPROVED, SubjectType.EXAM, "E1", at(150))


def test_stage_durations(uow, lab):
    _order_with_one_specimen(lab)

    timeline = build_work_order_timeline("W1", uow)

    durations = timeline.specimen_timelines[0].durations
    assert durations.pre_analytical_minutes == 30
    assert durations.analytical_minutes == 80
    assert durations.post_analytical_minutes == 30
    assert durations.total_lifecycle_minutes == 150


def test_specimen_events_merge_exam_events_in_order(uow, lab):
    _order_with_one_specimen(lab)

    timeline = build_work_order_timeline("W1", uow)

    assert [e.id for e in timeline.order_events] == ["ev-001"]
    specimen = timeline.specimen_timelines[0]
    assert [e.action for e in specimen.events] == [
        "LABEL_PRINTED", "SPECIMEN_RECEIVED", "EXAM_STARTED", "EXAM_SENT_TO_VALIDATION", "EXAM_APPROVED",
    ]
    assert specimen.events[0].label == "Label printed"
    assert specimen.exam_type_code == "HEM"
    assert timeline.summary.total_events == 6
    assert timeline.summary.first_event_at == at(0)
    assert timeline.summary.last_event_at == at(150)
    assert timeline.patient.full_name == "Ana García"


def test_missing_endpoints_and_reversed_stages_are_none(uow, lab):
    lab.work_order()
    lab.specimen()
    lab.exam(status="inprogress")
    lab.event(AuditAction.SPECIMEN_RECEIVED, SubjectType.SPECIMEN, "S1", at(30))
    lab.event(AuditAction.EXAM_SENT_TO_VALIDATION, SubjectType.EXAM, "E1", at(50))
    lab.event(AuditAction.EXAM_STARTED, SubjectType.EXAM, "E1", at(60))

    durations = build_work_order_timeline("W1", uow).specimen_timelines[0].durations

    assert durations.pre_analytical_minutes is None
    assert durations.analytical_minutes is None
    assert durations.post_analytical_minutes is None
    assert durations.total_lifecycle_minutes == 30


def test_incident_and_rejection_counts(uow, lab):
    lab.work_order()
    lab.specimen("S1")
    lab.specimen("S2")
    lab.exam("E1", specimen_id="S1", status="rejected")
    lab.exam("E2", specimen_id="S2", status="pending")
    lab.event(AuditAction.INCIDENCE_CREATED, SubjectType.WORK_ORDER, "W1", at(5), metadata={"specimenId": "S2"})
    lab.event(AuditAction.INCIDENCE_CREATED, SubjectType.EXAM, "E1", at(10))
    lab.event(AuditAction.EXAM_REJECTED, SubjectType.EXAM, "E1", at(20))
    lab.event(AuditAction.SPECIMEN_REJECTED, "Sample", "S1", at(25))

    timeline = build_work_order_timeline("W1", uow)

    by_id = {t.specimen_id: t for t in timeline.specimen_timelines}
    assert (by_id["S1"].incidence_count, by_id["S1"].rejection_count) == (1, 2)
    assert (by_id["S2"].incidence_count, by_id["S2"].rejection_count) == (0, 0)
    assert timeline.summary.specimens_with_incidence == 1
    assert timeline.summary.specimens_with_rejection == 1


def test_specimens_sorted_by_barcode_then_id(uow, lab):
    lab.work_order()
    lab.specimen("S3", barcode="b-200")
    lab.specimen("S1", barcode="B-300")
    lab.specimen("S2", barcode="Á-100")

    timeline = build_work_order_timeline("W1", uow)

    assert [t.specimen_id for t in timeline.specimen_timelines] == ["S2", "S3", "S1"]


def test_equal_timestamps_break_ties_by_id():
    events = [
        AuditEvent(id=i, action="EXAM_STARTED", subject_type="Exam", subject_id="E1", timestamp=T0)
        for i in ("ev-b", "ev-c", "ev-a")
    ]
    for _ in range(3):
        assert [e.id for e in sort_events(events)] == ["ev-a", "ev-b", "ev-c"]
        events.reverse()


def test_unknown_work_order_is_none(uow):
    assert build_work_order_timeline("W-missing", uow) is None
    assert build_work_order_timeline("  ", uow) is None


def test_missing_patient_still_builds(uow, lab):
    lab.work_order(patient_id="P-gone")

    timeline = build_work_order_timeline("W1", uow)

    assert timeline.patient.full_name == "Unknown"
    assert timeline.specimen_timelines == []
    assert timeline.summary.first_event_at is None
