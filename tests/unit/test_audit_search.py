"""Unit tests for locating work orders and recent audit activity"""
from datetime import datetime, timedelta, timezone

import pytest

from lab_audit.domain.model import AuditAction, SubjectType
from lab_audit.service_layer.audit_search import get_recent_audit_activity, search_audit

T0 = datetime(2024, 1, 15, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def populated(uow, lab):
    lab.patient("P1", "Ana", "García")
    lab.patient("P2", "Luis", "Pérez")
    lab.work_order("W1", patient_id="P1", accession_number="ACC-1", requested_at=T0)
    lab.work_order("W2", patient_id="P1", accession_number="ACC-1", requested_at=T0 + timedelta(days=1))
    lab.work_order("W3", patient_id="P2", accession_number="ACC-3", requested_at=T0)
    lab.specimen("S1", work_order_id="W3", barcode="LAB-0001")
    return uow


@pytest.mark.parametrize("query, expected", [
    ("W1", ("W1", "work_order_id")),
    ("LAB-0001", ("W3", "barcode")),
    ("ACC-1", ("W2", "accession")),
    ("  garcia ", ("W2", "patient")),
    ("PÉREZ", ("W3", "patient")),
])
def test_search_audit(populated, query, expected):
    result = search_audit(query, populated)
    assert (result.work_order_id, result.matched_by) == expected


@pytest.mark.parametrize("query", ["", "   ", "nobody"])
def test_search_without_match(populated, query):
    assert search_audit(query, populated) is None


def test_recent_activity_groups_by_resolved_work_order(populated, lab):
    lab.event(AuditAction.ORDER_CREATED, SubjectType.WORK_ORDER, "W1", T0)
    lab.event(AuditAction.SPECIMEN_RECEIVED, SubjectType.SPECIMEN, "S1", T0 + timedelta(hours=2))
    lab.event(AuditAction.ORDER_CREATED, SubjectType.WORK_ORDER, "W3", T0 + timedelta(hours=1))
    lab.event(AuditAction.INCIDENCE_CREATED, SubjectType.EXAM, "E-gone", T0 + timedelta(hours=3))

    activity = get_recent_audit_activity(populated)

    assert [(a.work_order_id, a.event_count) for a in activity] == [("W3", 2), ("W1", 1)]
    assert activity[0].last_event_at == T0 + timedelta(hours=2)
    assert activity[0].patient_name == "Luis Pérez"


@pytest.mark.parametrize("limit, expected", [(0, 1), (1, 1), (100, 2)])
def test_recent_activity_limit_is_clamped(populated, lab, limit, expected):
    lab.event(AuditAction.ORDER_CREATED, SubjectType.WORK_ORDER, "W1", T0)
    lab.event(AuditAction.ORDER_CREATED, SubjectType.WORK_ORDER, "W2", T0)

    assert len(get_recent_audit_activity(populated, limit=limit)) == expected
