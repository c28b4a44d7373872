"""
Incident feed and pattern aggregation.

Three event kinds are incidents: EXAM_REJECTED, SPECIMEN_REJECTED and
INCIDENCE_CREATED. Each is classified into an IncidentFeedItem with a
severity (high for rejections, medium otherwise) and a status (resolved when
the related exam is currently approved, open otherwise).

The feed is sorted by timestamp descending with the event id descending as
tie-break, and paginated with an opaque cursor holding the (timestamp, event
id) of the last item served.
"""
import base64
import binascii
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

import config
from shared.domain.records import isoformat, parse_timestamp
from shared.domain.text import fold
from shared.service_layer.memo import RequestMemo
from lab_audit.adapters.repository import Between
from lab_audit.domain import model
from lab_audit.domain.clinical import ClinicalFlag, derive_clinical_flag
from lab_audit.domain.errors import InvalidCursor
from lab_audit.domain.model import AuditAction
from lab_audit.domain.queries import FeedPagination, IncidentFeedFilters, TimeRange
from lab_audit.domain.read_models import (
    DailyCount,
    ExamTypeRejections,
    IncidentFeedItem,
    IncidentFeedPage,
    IncidentPatterns,
    IncidentSummaryCards,
    ReasonCount,
    TechnicianRejections,
)
from lab_audit.service_layer.link_resolver import EntityLinkResolver
from lab_audit.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

INCIDENT_TYPES = {
    AuditAction.EXAM_REJECTED.value: ("exam_rejected", "Exam rejected", "high"),
    AuditAction.SPECIMEN_REJECTED.value: ("specimen_rejected", "Specimen rejected", "high"),
    AuditAction.INCIDENCE_CREATED.value: ("incidence_created", "Incidence reported", "medium"),
}

UNKNOWN_WORK_ORDER = "unknown"
NO_REASON = "no reason given"
UNKNOWN_EXAM_TYPE_NAME = "Exam"
CURSOR_SEPARATOR = "::"


# ---------- cursor ----------

def encode_cursor(item: IncidentFeedItem) -> str:
    raw = f"{isoformat(item.timestamp)}{CURSOR_SEPARATOR}{item.event_id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> Tuple:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise InvalidCursor(f"Malformed cursor {cursor!r}") from e
    timestamp, separator, event_id = raw.partition(CURSOR_SEPARATOR)
    parsed = parse_timestamp(timestamp)
    if not separator or parsed is None or not event_id:
        raise InvalidCursor(f"Malformed cursor {cursor!r}")
    return parsed, event_id


def effective_limit(limit: Optional[int]) -> int:
    limits = config.get_feed_limits()
    if limit is None or limit <= 0:
        return limits["default_limit"]
    return min(int(limit), limits["max_limit"])


def _feed_order(item: IncidentFeedItem):
    return item.timestamp, item.event_id


# ---------- classification ----------

class IncidentClassifier:
    """Loads incident events for a range and turns them into feed items.

    Belongs to one request: the resolver cache and the memo are discarded with
    it.
    """

    def __init__(self, uow: AbstractUnitOfWork, memo: Optional[RequestMemo] = None):
        self.uow = uow
        self.memo = memo if memo is not None else RequestMemo()
        self.resolver = EntityLinkResolver(uow)

    def events(self, time_range: TimeRange) -> List[model.AuditEvent]:
        return self.memo.call(self._load_events, time_range)

    def _load_events(self, time_range: TimeRange) -> List[model.AuditEvent]:
        events = [
            event
            for event in self.uow.events.iter_time_range(
                time_range.start, time_range.end, actions=sorted(model.INCIDENT_ACTIONS)
            )
            if event.action in INCIDENT_TYPES and time_range.contains(event.timestamp)
        ]
        self.resolver.prefetch(events)
        logger.info(f"Loaded {len(events)} incident events")
        return events

    def items(self, time_range: TimeRange) -> List[IncidentFeedItem]:
        return self.memo.call(self._classify_all, time_range)

    def _classify_all(self, time_range: TimeRange) -> List[IncidentFeedItem]:
        items = [self.classify(event) for event in self.events(time_range)]
        items.sort(key=_feed_order, reverse=True)
        return items

    def classify(self, event: model.AuditEvent) -> IncidentFeedItem:
        incident_type, title, severity = INCIDENT_TYPES[event.action]
        links = self.resolver.resolve(event)
        technician_id = links.exam.performed_by if links.exam else None
        metadata = event.metadata.to_dict() if event.metadata else {}
        metadata["technicianId"] = technician_id

        return IncidentFeedItem(
            id=f"incident-{event.id}",
            event_id=event.id,
            work_order_id=links.work_order_id or UNKNOWN_WORK_ORDER,
            specimen_id=links.specimen_id,
            exam_id=links.exam_id,
            accession_number=links.work_order.accession_number if links.work_order else None,
            patient_name=links.patient.full_name if links.patient else "Unknown",
            exam_type_id=links.exam_type_id,
            exam_type_name=links.exam_type_name,
            specimen_barcode=links.specimen.barcode if links.specimen else None,
            incident_type=incident_type,
            severity=severity,
            title=title,
            description=event.metadata.description if event.metadata else None,
            reason=event.metadata.reason if event.metadata else None,
            status="resolved" if links.exam is not None and links.exam.status == "approved" else "open",
            timestamp=event.timestamp,
            actor_id=event.actor_id,
            metadata=metadata,
        )


def matches_feed_filters(item: IncidentFeedItem, filters: IncidentFeedFilters) -> bool:
    if filters.incident_type and item.incident_type != filters.incident_type:
        return False
    if filters.exam_type_id and item.exam_type_id != filters.exam_type_id:
        return False
    if filters.technician_id:
        technician_id = item.metadata.get("technicianId")
        if technician_id != filters.technician_id and item.actor_id != filters.technician_id:
            return False
    term = fold((filters.search or "").strip())
    if term:
        searchable = " ".join(
            value or ""
            for value in (
                item.patient_name,
                item.accession_number,
                item.specimen_barcode,
                item.exam_type_name,
                item.reason,
                item.description,
            )
        )
        if term not in fold(searchable):
            return False
    return True


# ---------- operations ----------

def list_incident_feed(
    filters: IncidentFeedFilters,
    pagination: FeedPagination,
    uow: AbstractUnitOfWork,
    classifier: Optional[IncidentClassifier] = None,
) -> IncidentFeedPage:
    classifier = classifier or IncidentClassifier(uow)
    limit = effective_limit(pagination.limit)
    items = [item for item in classifier.items(filters.time_range) if matches_feed_filters(item, filters)]

    if pagination.cursor:
        position = decode_cursor(pagination.cursor)
        items = [item for item in items if _feed_order(item) < position]

    page = items[:limit]
    next_cursor = encode_cursor(page[-1]) if page and len(items) > limit else None
    return IncidentFeedPage(items=page, next_cursor=next_cursor)


def get_incident_patterns(
    time_range: TimeRange,
    uow: AbstractUnitOfWork,
    classifier: Optional[IncidentClassifier] = None,
) -> IncidentPatterns:
    """Reason, technician, exam type and daily breakdowns in a single pass."""
    classifier = classifier or IncidentClassifier(uow)
    reasons = defaultdict(int)           # type: Dict[str, int]
    technicians = defaultdict(int)       # type: Dict[str, int]
    exam_types = {}                      # type: Dict[str, ExamTypeRejections]
    daily = defaultdict(int)             # type: Dict[str, int]

    for event in classifier.events(time_range):
        daily[event.timestamp.date().isoformat()] += 1
        if event.action not in model.REJECTION_ACTIONS:
            continue

        links = classifier.resolver.resolve(event)
        reasons[(event.metadata.reason if event.metadata else None) or NO_REASON] += 1

        technician_id = links.exam.performed_by if links.exam else None
        if technician_id:
            technicians[technician_id] += 1

        if links.exam_type_id:
            entry = exam_types.get(links.exam_type_id)
            if entry is None:
                entry = exam_types[links.exam_type_id] = ExamTypeRejections(
                    exam_type_id=links.exam_type_id,
                    exam_type_code=links.exam_type_code or links.exam_type_id,
                    exam_type_name=links.exam_type_name or UNKNOWN_EXAM_TYPE_NAME,
                    count=0,
                )
            entry.count += 1

    return IncidentPatterns(
        reason_distribution=[
            ReasonCount(reason=reason, count=count)
            for reason, count in sorted(reasons.items(), key=lambda item: (-item[1], item[0]))
        ],
        rejection_by_technician=[
            TechnicianRejections(technician_id=technician_id, technician_name=technician_id, count=count)
            for technician_id, count in sorted(technicians.items(), key=lambda item: (-item[1], item[0]))
        ],
        rejection_by_exam_type=sorted(exam_types.values(), key=lambda e: (-e.count, e.exam_type_id)),
        incidence_trend=[DailyCount(date=day, count=count) for day, count in sorted(daily.items())],
    )


def count_critical_results(time_range: TimeRange, uow: AbstractUnitOfWork) -> int:
    """Approved exams validated in range whose results are clinically critical."""
    exams = [
        exam
        for exam in uow.exams.list(status="approved", validated_at=Between(time_range.start, time_range.end))
        if time_range.contains(exam.validated_at)
    ]
    exam_types = uow.exam_types.get_many({exam.exam_type_id for exam in exams if exam.exam_type_id})

    critical = 0
    for exam in exams:
        exam_type = exam_types.get(exam.exam_type_id)
        if exam_type is None:
            logger.debug(f"Exam {exam.id} references missing exam type {exam.exam_type_id}")
            continue
        if derive_clinical_flag(exam.results, exam_type.field_schema) is ClinicalFlag.CRITICAL:
            critical += 1
    return critical


def get_incident_summary_cards(
    time_range: TimeRange,
    uow: AbstractUnitOfWork,
    classifier: Optional[IncidentClassifier] = None,
) -> IncidentSummaryCards:
    classifier = classifier or IncidentClassifier(uow)
    cards = IncidentSummaryCards()
    for item in classifier.items(time_range):
        if item.incident_type == "incidence_created":
            if item.status == "open":
                cards.active_incidences += 1
        elif item.incident_type == "exam_rejected":
            cards.rejected_exams += 1
        elif item.incident_type == "specimen_rejected":
            cards.rejected_specimens += 1
    cards.critical_results = count_critical_results(time_range, uow)
    return cards
