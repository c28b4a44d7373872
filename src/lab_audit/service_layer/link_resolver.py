"""
Resolution of an audit event to the entities it belongs to.

An event points at exactly one subject, but it usually matters for the whole
chain Exam -> Specimen -> WorkOrder -> Patient. The chain is resolved with a
fixed priority:

1. the event subject itself, when it is of the wanted type;
2. an id embedded in the event metadata;
3. the snapshot of the next entity down the chain (exam -> specimen ->
   work order).

Resolution never fails. Historical events may reference entities that have
since been deleted, so whatever cannot be determined is left as None and every
caller must cope with partial links.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from lab_audit.domain import model
from lab_audit.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinkedIds:
    """Ids known from the event alone (subject and metadata)."""
    specimen_id: Optional[str]
    exam_id: Optional[str]
    work_order_id: Optional[str]


@dataclass
class ResolvedLinks:
    specimen_id: Optional[str] = None
    exam_id: Optional[str] = None
    work_order_id: Optional[str] = None
    patient_id: Optional[str] = None
    exam_type_id: Optional[str] = None
    exam_type_code: Optional[str] = None
    exam_type_name: Optional[str] = None
    specimen: Optional[model.Specimen] = None
    exam: Optional[model.Exam] = None
    work_order: Optional[model.WorkOrder] = None
    patient: Optional[model.Patient] = None
    exam_type: Optional[model.ExamType] = None


def linked_ids(event: model.AuditEvent) -> LinkedIds:
    subject = model.normalize_subject(event.subject_type)
    metadata = event.metadata

    def pick(subject_type: model.SubjectType, from_metadata: Optional[str]) -> Optional[str]:
        if subject == subject_type.value and event.subject_id:
            return event.subject_id
        return from_metadata

    return LinkedIds(
        specimen_id=pick(model.SubjectType.SPECIMEN, metadata.specimen_id if metadata else None),
        exam_id=pick(model.SubjectType.EXAM, metadata.exam_id if metadata else None),
        work_order_id=pick(model.SubjectType.WORK_ORDER, metadata.work_order_id if metadata else None),
    )


class EntityLinkResolver:
    """Per-request resolver with its own snapshot cache.

    Create one per request; snapshots cached here are only valid for the
    request that loaded them.
    """

    def __init__(self, uow: AbstractUnitOfWork):
        self.uow = uow
        self._cache = {
            "exams": {},
            "specimens": {},
            "work_orders": {},
            "patients": {},
            "exam_types": {},
        }  # type: Dict[str, Dict[str, object]]

    # ---------- snapshot access ----------

    def remember(self, kind: str, entities: Iterable) -> None:
        """Seed the cache with snapshots the caller already loaded."""
        cache = self._cache[kind]
        for entity in entities:
            cache[entity.id] = entity

    def _load_many(self, kind: str, ids: Iterable[Optional[str]]) -> None:
        cache = self._cache[kind]
        missing = {entity_id for entity_id in ids if entity_id and entity_id not in cache}
        if not missing:
            return
        found = getattr(self.uow, kind).get_many(missing)
        for entity_id in missing:
            cache[entity_id] = found.get(entity_id)
        if len(found) < len(missing):
            logger.debug(f"{len(missing) - len(found)} {kind} referenced by events are missing")

    def _lookup(self, kind: str, entity_id: Optional[str]):
        if not entity_id:
            return None
        self._load_many(kind, [entity_id])
        return self._cache[kind].get(entity_id)

    def exam(self, exam_id):
        return self._lookup("exams", exam_id)

    def specimen(self, specimen_id):
        return self._lookup("specimens", specimen_id)

    def work_order(self, work_order_id):
        return self._lookup("work_orders", work_order_id)

    def patient(self, patient_id):
        return self._lookup("patients", patient_id)

    def exam_type(self, exam_type_id):
        return self._lookup("exam_types", exam_type_id)

    def prefetch(self, events: Iterable[model.AuditEvent]) -> None:
        """Batch-load every snapshot the given events can reach.

        One get_many per entity kind and chain level instead of one get per
        event.
        """
        events = list(events)
        links = [linked_ids(event) for event in events]
        self._load_many("exams", (link.exam_id for link in links))

        specimen_ids = {link.specimen_id for link in links}
        specimen_ids.update(exam.specimen_id for exam in self._cached("exams"))
        self._load_many("specimens", specimen_ids)

        work_order_ids = {link.work_order_id for link in links}
        work_order_ids.update(specimen.work_order_id for specimen in self._cached("specimens"))
        self._load_many("work_orders", work_order_ids)
        self._load_many("patients", (wo.patient_id for wo in self._cached("work_orders")))

        exam_type_ids = {exam.exam_type_id for exam in self._cached("exams")}
        exam_type_ids.update(specimen.exam_type_id for specimen in self._cached("specimens"))
        exam_type_ids.update(
            event.metadata.exam_type_id for event in events if event.metadata is not None
        )
        self._load_many("exam_types", exam_type_ids)

    def _cached(self, kind: str):
        return [entity for entity in self._cache[kind].values() if entity is not None]

    # ---------- resolution ----------

    def resolve(self, event: model.AuditEvent) -> ResolvedLinks:
        links = linked_ids(event)

        exam = self.exam(links.exam_id)
        specimen_id = links.specimen_id or (exam.specimen_id if exam else None)
        specimen = self.specimen(specimen_id)
        work_order_id = links.work_order_id or (specimen.work_order_id if specimen else None)
        return self.resolve_ids(
            specimen_id=specimen_id,
            exam_id=links.exam_id,
            work_order_id=work_order_id,
            fallback_exam_type_id=event.metadata.exam_type_id if event.metadata else None,
        )

    def resolve_ids(
        self,
        specimen_id: Optional[str] = None,
        exam_id: Optional[str] = None,
        work_order_id: Optional[str] = None,
        fallback_exam_type_id: Optional[str] = None,
    ) -> ResolvedLinks:
        exam = self.exam(exam_id)
        specimen = self.specimen(specimen_id)
        work_order = self.work_order(work_order_id)
        patient_id = work_order.patient_id if work_order else None

        # Exam type: prefer the exam, then the specimen, then metadata.
        exam_type_id = (
            (exam.exam_type_id if exam else None)
            or (specimen.exam_type_id if specimen else None)
            or fallback_exam_type_id
        )
        exam_type = self.exam_type(exam_type_id)
        return ResolvedLinks(
            specimen_id=specimen_id,
            exam_id=exam_id,
            work_order_id=work_order_id,
            patient_id=patient_id,
            exam_type_id=exam_type_id,
            exam_type_code=exam_type.code if exam_type else None,
            exam_type_name=exam_type.name if exam_type else None,
            specimen=specimen,
            exam=exam,
            work_order=work_order,
            patient=self.patient(patient_id),
            exam_type=exam_type,
        )
