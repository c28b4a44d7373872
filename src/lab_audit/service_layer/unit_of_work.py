from __future__ import annotations
import abc
from functools import lru_cache
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.session import Session


import config
from lab_audit.adapters import repository
from lab_audit.domain import model


class AbstractUnitOfWork(abc.ABC):
    """Read-only unit of work: snapshot repositories plus the event log."""
    work_orders: repository.AbstractRepository
    specimens: repository.AbstractRepository
    exams: repository.AbstractRepository
    exam_types: repository.AbstractRepository
    patients: repository.AbstractRepository
    events: repository.AbstractEventLog

    def __enter__(self) -> AbstractUnitOfWork:
        return self

    def __exit__(self, *args):
        self.rollback()

    @abc.abstractmethod
    def rollback(self):
        raise NotImplementedError


@lru_cache(maxsize=1)
def default_session_factory():
    return sessionmaker(
        bind=create_engine(
            config.get_postgres_uri(),
            isolation_level="REPEATABLE READ",
        )
    )


class SqlAlchemyUnitOfWork(AbstractUnitOfWork):
    def __init__(self, session_factory=None, event_page_size=None):
        self.session_factory = session_factory or default_session_factory()
        self.event_page_size = event_page_size or config.get_event_page_size()

    def __enter__(self):
        self.session = self.session_factory()  # type: Session
        self.work_orders = repository.SqlAlchemyRepository(self.session, model.WorkOrder)
        self.specimens = repository.SqlAlchemyRepository(self.session, model.Specimen)
        self.exams = repository.SqlAlchemyRepository(self.session, model.Exam)
        self.exam_types = repository.SqlAlchemyRepository(self.session, model.ExamType)
        self.patients = repository.SqlAlchemyRepository(self.session, model.Patient)
        self.events = repository.SqlAlchemyEventLog(self.session, page_size=self.event_page_size)
        return super().__enter__()

    def __exit__(self, *args):
        super().__exit__(*args)
        self.session.close()

    def rollback(self):
        self.session.rollback()
