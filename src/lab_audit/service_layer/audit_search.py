"""Locating a work order for the audit view, and recent audit activity."""
import logging
from typing import List, Optional

from shared.domain.records import EPOCH_MIN
from shared.domain.text import fold
from lab_audit.domain.read_models import AuditSearchResult, RecentAuditActivity
from lab_audit.service_layer.link_resolver import EntityLinkResolver
from lab_audit.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

RECENT_ACTIVITY_MAX = 50


def _most_recently_requested(work_orders):
    candidates = [wo for wo in work_orders if wo is not None]
    if not candidates:
        return None
    return max(candidates, key=lambda wo: (wo.requested_at or EPOCH_MIN, wo.id))


def search_audit(query: str, uow: AbstractUnitOfWork) -> Optional[AuditSearchResult]:
    """Find a work order by id, specimen barcode, accession number or patient name."""
    query = (query or "").strip()
    if not query:
        return None

    work_order = uow.work_orders.get(query)
    if work_order is not None:
        return AuditSearchResult(work_order_id=work_order.id, matched_by="work_order_id")

    for specimen in sorted(uow.specimens.list(barcode=query), key=lambda s: s.id):
        if specimen.work_order_id:
            return AuditSearchResult(work_order_id=specimen.work_order_id, matched_by="barcode")

    by_accession = _most_recently_requested(uow.work_orders.list(accession_number=query))
    if by_accession is not None:
        return AuditSearchResult(work_order_id=by_accession.id, matched_by="accession")

    needle = fold(query)
    patient_ids = [p.id for p in uow.patients.list() if needle in fold(p.full_name)]
    if not patient_ids:
        return None
    by_patient = _most_recently_requested(uow.work_orders.list(patient_id=patient_ids))
    if by_patient is None:
        return None
    return AuditSearchResult(work_order_id=by_patient.id, matched_by="patient")


def get_recent_audit_activity(uow: AbstractUnitOfWork, limit: int = 10) -> List[RecentAuditActivity]:
    """Work orders with the most recent audit activity, newest first."""
    limit = max(1, min(RECENT_ACTIVITY_MAX, int(limit)))
    events = [e for e in uow.events.iter_all() if e.timestamp is not None]
    resolver = EntityLinkResolver(uow)
    resolver.prefetch(events)

    grouped = {}
    for event in events:
        work_order_id = resolver.resolve(event).work_order_id
        if not work_order_id:
            continue
        last_event_at, count = grouped.get(work_order_id, (event.timestamp, 0))
        grouped[work_order_id] = (max(last_event_at, event.timestamp), count + 1)

    activity = []
    for work_order_id, (last_event_at, count) in grouped.items():
        work_order = resolver.work_order(work_order_id)
        if work_order is None:
            continue
        patient = resolver.patient(work_order.patient_id)
        activity.append(
            RecentAuditActivity(
                work_order_id=work_order_id,
                accession_number=work_order.accession_number,
                patient_name=patient.full_name if patient else "Unknown",
                last_event_at=last_event_at,
                event_count=count,
            )
        )
    activity.sort(key=lambda a: (a.last_event_at, a.work_order_id), reverse=True)
    return activity[:limit]
