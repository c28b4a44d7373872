"""Unit tests for resolving events to their entity chain"""
from lab_audit.domain.model import AuditAction, SubjectType
from lab_audit.service_layer.link_resolver import EntityLinkResolver, linked_ids


def _chain(lab):
    lab.patient()
    lab.work_order()
    lab.exam_type()
    lab.exam_type(id="ET2", code="GLU", name="Glucose")
    lab.specimen(exam_type_id="ET2")
    lab.exam(exam_type_id="ET1")


def test_exam_subject_resolves_the_whole_chain(uow, lab):
    _chain(lab)
    event = lab.event(AuditAction.EXAM_REJECTED, SubjectType.EXAM, "E1", "2024-01-15T10:00:00Z")

    links = EntityLinkResolver(uow).resolve(event)

    assert (links.exam_id, links.specimen_id, links.work_order_id, links.patient_id) == ("E1", "S1", "W1", "P1")
    assert links.patient.full_name == "Ana García"


def test_exam_type_prefers_exam_over_specimen(uow, lab):
    _chain(lab)
    event = lab.event(AuditAction.EXAM_STARTED, SubjectType.EXAM, "E1", "2024-01-15T10:00:00Z")

    links = EntityLinkResolver(uow).resolve(event)

    assert (links.exam_type_id, links.exam_type_code, links.exam_type_name) == ("ET1", "HEM", "Hemogram")


def test_metadata_fills_in_when_subject_is_of_another_type(uow, lab):
    _chain(lab)
    event = lab.event(
        AuditAction.INCIDENCE_CREATED, SubjectType.WORK_ORDER, "W1", "2024-01-15T10:00:00Z",
        metadata={"sampleId": "S1"},
    )

    links = EntityLinkResolver(uow).resolve(event)

    assert (links.work_order_id, links.specimen_id, links.exam_id) == ("W1", "S1", None)
    assert links.exam_type_id == "ET2"


def test_subject_wins_over_metadata():
    from lab_audit.domain.model import AuditEvent
    event = AuditEvent(
        id="ev-1", action="SPECIMEN_REJECTED", subject_type="Sample", subject_id="S1",
        timestamp="2024-01-15T10:00:00Z", metadata={"specimenId": "S9"},
    )

    assert linked_ids(event).specimen_id == "S1"


def test_deleted_entities_leave_partial_links(uow, lab):
    event = lab.event(
        AuditAction.EXAM_REJECTED, SubjectType.EXAM, "E-gone", "2024-01-15T10:00:00Z",
        metadata={"examTypeId": "ET-meta"},
    )

    links = EntityLinkResolver(uow).resolve(event)

    assert links.exam_id == "E-gone"
    assert links.specimen_id is None
    assert links.work_order_id is None
    assert links.patient is None
    assert links.exam_type_id == "ET-meta"
    assert links.exam_type is None


def test_prefetch_batches_lookups(uow, lab):
    _chain(lab)
    events = [
        lab.event(AuditAction.EXAM_STARTED, SubjectType.EXAM, "E1", "2024-01-15T10:00:00Z"),
        lab.event(AuditAction.EXAM_APPROVED, SubjectType.EXAM, "E1", "2024-01-15T11:00:00Z"),
    ]
    resolver = EntityLinkResolver(uow)
    resolver.prefetch(events)

    uow.exams = None
    uow.specimens = None
    uow.work_orders = None

    assert resolver.resolve(events[1]).work_order_id == "W1"
