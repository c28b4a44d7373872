"""
Per-work-order audit timeline.

All events of a work order, its specimens and their exams are merged into one
chronological history per specimen, with stage durations:

- pre-analytical: first ORDER_CREATED of the order -> first SPECIMEN_RECEIVED
- analytical: first EXAM_STARTED -> first EXAM_SENT_TO_VALIDATION
- post-analytical: first EXAM_SENT_TO_VALIDATION -> first EXAM_APPROVED/EXAM_REJECTED
- total lifecycle: earliest -> latest specimen event

A duration is None when an endpoint is missing or the end precedes the start.
"""
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from shared.domain.records import minutes_between
from shared.domain.text import collation_key
from lab_audit.domain import model
from lab_audit.domain.model import AuditAction
from lab_audit.domain.read_models import (
    PatientRef,
    SpecimenTimeline,
    TimelineDurations,
    TimelineEvent,
    TimelineSummary,
    WorkOrderTimeline,
)
from lab_audit.service_layer.link_resolver import EntityLinkResolver
from lab_audit.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


def sort_events(events: Iterable[model.AuditEvent]) -> List[model.AuditEvent]:
    """Chronological order with the event id as a deterministic tie-break."""
    return sorted((e for e in events if e.timestamp is not None), key=lambda e: e.sort_key)


def first_timestamp(events: List[model.AuditEvent], *actions):
    for event in events:
        if event.action in actions:
            return event.timestamp
    return None


def compute_durations(
    order_events: List[model.AuditEvent],
    specimen_events: List[model.AuditEvent],
) -> TimelineDurations:
    """Stage durations in minutes. Both lists must already be sorted."""
    order_created = first_timestamp(order_events, AuditAction.ORDER_CREATED)
    received = first_timestamp(specimen_events, AuditAction.SPECIMEN_RECEIVED)
    started = first_timestamp(specimen_events, AuditAction.EXAM_STARTED)
    sent_to_validation = first_timestamp(specimen_events, AuditAction.EXAM_SENT_TO_VALIDATION)
    validated = first_timestamp(specimen_events, *model.VALIDATION_OUTCOME_ACTIONS)
    first_event = specimen_events[0].timestamp if specimen_events else None
    last_event = specimen_events[-1].timestamp if specimen_events else None

    return TimelineDurations(
        pre_analytical_minutes=minutes_between(order_created, received),
        analytical_minutes=minutes_between(started, sent_to_validation),
        post_analytical_minutes=minutes_between(sent_to_validation, validated),
        total_lifecycle_minutes=minutes_between(first_event, last_event),
    )


def to_timeline_event(event: model.AuditEvent) -> TimelineEvent:
    label, category = model.action_label(event.action)
    return TimelineEvent(
        id=event.id,
        action=str(getattr(event.action, "value", event.action)),
        label=label,
        category=category.value,
        subject_type=model.normalize_subject(event.subject_type),
        subject_id=event.subject_id,
        timestamp=event.timestamp,
        actor_id=event.actor_id,
        metadata=event.metadata.to_dict() if event.metadata is not None else None,
    )


def _collect_events(uow: AbstractUnitOfWork, subjects) -> List[model.AuditEvent]:
    by_id = {}  # type: Dict[str, model.AuditEvent]
    for subject_type, subject_id in subjects:
        for event in uow.events.list_by_subject(subject_type.value, subject_id):
            by_id[event.id] = event
    return sort_events(by_id.values())


def build_work_order_timeline(
    work_order_id: str,
    uow: AbstractUnitOfWork,
) -> Optional[WorkOrderTimeline]:
    """Timeline of one work order, or None when the order does not exist."""
    work_order_id = (work_order_id or "").strip()
    if not work_order_id:
        return None

    resolver = EntityLinkResolver(uow)
    work_order = resolver.work_order(work_order_id)
    if work_order is None:
        logger.info(f"Work order {work_order_id} not found")
        return None
    patient = resolver.patient(work_order.patient_id)
    if patient is None:
        logger.warning(f"Patient {work_order.patient_id} of work order {work_order_id} is missing")

    specimens = uow.specimens.list(work_order_id=work_order.id)
    resolver.remember("specimens", specimens)
    exams = uow.exams.list(specimen_id=[s.id for s in specimens]) if specimens else []
    resolver.remember("exams", exams)
    exam_by_specimen = {}  # type: Dict[str, model.Exam]
    for exam in sorted(exams, key=lambda e: e.id):
        exam_by_specimen.setdefault(exam.specimen_id, exam)

    subjects = [(model.SubjectType.WORK_ORDER, work_order.id)]
    subjects += [(model.SubjectType.SPECIMEN, s.id) for s in specimens]
    subjects += [(model.SubjectType.EXAM, e.id) for e in exams]
    all_events = _collect_events(uow, subjects)

    specimen_ids = {s.id for s in specimens}
    order_events = []
    events_by_specimen = defaultdict(list)
    for event in all_events:
        subject = model.normalize_subject(event.subject_type)
        if subject == model.SubjectType.WORK_ORDER.value:
            order_events.append(event)
            continue
        links = resolver.resolve(event)
        if links.specimen_id in specimen_ids:
            events_by_specimen[links.specimen_id].append(event)
        else:
            logger.debug(f"Event {event.id} could not be attached to a specimen of {work_order.id}")

    specimen_timelines = []
    for specimen in specimens:
        exam = exam_by_specimen.get(specimen.id)
        events = events_by_specimen.get(specimen.id, [])
        links = resolver.resolve_ids(specimen_id=specimen.id, exam_id=exam.id if exam else None)
        specimen_timelines.append(
            SpecimenTimeline(
                specimen_id=specimen.id,
                barcode=specimen.barcode,
                specimen_status=specimen.status,
                exam_id=exam.id if exam else None,
                exam_type_id=links.exam_type_id,
                exam_type_code=links.exam_type_code,
                exam_type_name=links.exam_type_name,
                events=[to_timeline_event(e) for e in events],
                durations=compute_durations(order_events, events),
                incidence_count=sum(1 for e in events if e.action == AuditAction.INCIDENCE_CREATED),
                rejection_count=sum(1 for e in events if e.action in model.REJECTION_ACTIONS),
            )
        )
    specimen_timelines.sort(key=lambda t: collation_key(t.barcode or t.specimen_id))

    logger.info(
        f"Built timeline for work order {work_order.id}: "
        f"{len(all_events)} events across {len(specimen_timelines)} specimens"
    )
    return WorkOrderTimeline(
        work_order_id=work_order.id,
        accession_number=work_order.accession_number,
        requested_at=work_order.requested_at,
        priority=work_order.priority,
        referring_doctor=work_order.referring_doctor,
        patient=PatientRef(
            id=work_order.patient_id,
            full_name=patient.full_name if patient else "Unknown",
        ),
        order_events=[to_timeline_event(e) for e in order_events],
        specimen_timelines=specimen_timelines,
        summary=TimelineSummary(
            total_events=len(all_events),
            total_specimens=len(specimen_timelines),
            specimens_with_incidence=sum(1 for t in specimen_timelines if t.incidence_count > 0),
            specimens_with_rejection=sum(1 for t in specimen_timelines if t.rejection_count > 0),
            first_event_at=all_events[0].timestamp if all_events else None,
            last_event_at=all_events[-1].timestamp if all_events else None,
        ),
    )
