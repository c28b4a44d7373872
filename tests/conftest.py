# pylint: disable=redefined-outer-name
from datetime import datetime, timedelta, timezone

import pytest

from lab_audit.adapters.repository import AbstractEventLog, AbstractRepository, Between, EventPage
from lab_audit.domain import model
from lab_audit.service_layer.unit_of_work import AbstractUnitOfWork

T0 = datetime(2024, 1, 15, 8, 0, tzinfo=timezone.utc)


class FakeRepository(AbstractRepository):
    def __init__(self, entities=()):
        super().__init__()
        self._entities = {e.id: e for e in entities}

    def _add(self, entity):
        self._entities[entity.id] = entity

    def _get(self, entity_id):
        return self._entities.get(entity_id)

    def _get_many(self, entity_ids):
        return [self._entities[i] for i in entity_ids if i in self._entities]

    def _list(self, criteria):
        return [e for e in self._entities.values() if all(_matches(getattr(e, k), v) for k, v in criteria.items())]


def _matches(value, expected):
    if value is None:
        return False
    if isinstance(expected, Between):
        return expected.start <= value <= expected.end
    if isinstance(expected, (list, set, frozenset, tuple)):
        return value in expected
    return value == expected


class FakeEventLog(AbstractEventLog):
    """Serves pages newest-first to prove callers do not rely on ordering."""

    def __init__(self, events=(), page_size=2):
        super().__init__()
        self._events = list(events)
        self.page_size = page_size
        self.pages_served = 0

    def add(self, event):
        self._events.append(event)

    def _list_by_subject(self, subject_types, subject_id):
        return [e for e in reversed(self._events) if e.subject_type in subject_types and e.subject_id == subject_id]

    def _list_by_time_range(self, start, end, actions, next_token):
        matching = [
            e for e in reversed(self._events)
            if start <= e.timestamp <= end and (not actions or e.action in actions)
        ]
        offset = int(next_token) if next_token else 0
        self.pages_served += 1
        page = matching[offset:offset + self.page_size]
        more = offset + self.page_size < len(matching)
        return EventPage(events=page, next_token=str(offset + self.page_size) if more else None)


class FakeUnitOfWork(AbstractUnitOfWork):
    def __init__(self):
        self.work_orders = FakeRepository()
        self.specimens = FakeRepository()
        self.exams = FakeRepository()
        self.exam_types = FakeRepository()
        self.patients = FakeRepository()
        self.events = FakeEventLog()
        self.rolled_back = False

    def rollback(self):
        self.rolled_back = True


class LabBuilder:
    """Populates a unit of work with snapshots and events."""

    def __init__(self, uow):
        self.uow = uow
        self._event_seq = 0

    def patient(self, id="P1", first_name="Ana", last_name="García"):
        return self._add(self.uow.patients, model.Patient(id=id, first_name=first_name, last_name=last_name))

    def work_order(self, id="W1", patient_id="P1", requested_at=T0, priority="routine",
                   accession_number=None, referring_doctor="Dr. House", status="pending"):
        return self._add(self.uow.work_orders, model.WorkOrder(
            id=id, patient_id=patient_id, accession_number=accession_number or f"ACC-{id}",
            priority=priority, requested_at=requested_at, referring_doctor=referring_doctor, status=status,
        ))

    def exam_type(self, id="ET1", code="HEM", name="Hemogram", field_schema=None):
        return self._add(self.uow.exam_types, model.ExamType(id=id, code=code, name=name, field_schema=field_schema))

    def specimen(self, id="S1", work_order_id="W1", exam_type_id="ET1", barcode=None, status="received"):
        return self._add(self.uow.specimens, model.Specimen(
            id=id, work_order_id=work_order_id, exam_type_id=exam_type_id,
            barcode=barcode or f"BC-{id}", status=status,
        ))

    def exam(self, id="E1", specimen_id="S1", exam_type_id="ET1", status="approved", started_at=None,
             resulted_at=None, validated_at=None, performed_by="tech-1", results=None):
        return self._add(self.uow.exams, model.Exam(
            id=id, specimen_id=specimen_id, exam_type_id=exam_type_id, status=status, results=results,
            started_at=started_at, resulted_at=resulted_at, performed_by=performed_by,
            validated_by="val-1" if status in ("approved", "rejected") else None, validated_at=validated_at,
        ))

    def event(self, action, subject_type, subject_id, timestamp, id=None, metadata=None, actor_id="user-1"):
        self._event_seq += 1
        event = model.AuditEvent(
            id=id or f"ev-{self._event_seq:03d}",
            action=getattr(action, "value", action),
            subject_type=getattr(subject_type, "value", subject_type),
            subject_id=subject_id,
            timestamp=timestamp,
            actor_id=actor_id,
            metadata=metadata,
        )
        self.uow.events.add(event)
        return event

    @staticmethod
    def _add(repo, entity):
        repo.add(entity)
        return entity


def minutes(n):
    return timedelta(minutes=n)


@pytest.fixture
def uow():
    return FakeUnitOfWork()


@pytest.fixture
def lab(uow):
    return LabBuilder(uow)


@pytest.fixture
def sqlite_session_factory():
    """Create SQLite in-memory database for fast testing."""
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker, clear_mappers
    from sqlalchemy.pool import StaticPool
    from lab_audit.adapters import orm

    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    orm.metadata.create_all(engine)
    orm.start_mappers()

    yield sessionmaker(bind=engine, expire_on_commit=False)

    clear_mappers()
